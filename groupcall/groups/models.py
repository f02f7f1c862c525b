"""Data types shared by the peer directory and its derived groups."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass
class PeerRecord:
    """A remote participant known to the registry.

    `stream` is a reference to the live media handed over by the peer
    connection layer; the registry never copies or closes it.
    `last_seen` is owned by the registry and overwritten on registration.
    """

    id: str
    stream: Any = None
    network_identity: str = ""
    last_seen: float = 0.0
    audio_level: Optional[float] = None

    @property
    def level(self) -> float:
        """Audio level with "never sampled" read as silence."""
        return self.audio_level or 0.0


@dataclass
class Group:
    """Peers sharing one network identity."""

    id: str
    name: str
    is_local: bool = False
    peers: list[PeerRecord] = field(default_factory=list)

    @property
    def network_prefix(self) -> str:
        return self.id

    @property
    def peer_count(self) -> int:
        return len(self.peers)

    @property
    def peer_ids(self) -> list[str]:
        return [p.id for p in self.peers]


@dataclass(frozen=True)
class GroupStats:
    total_groups: int = 0
    total_peers: int = 0
    groups_with_multiple_peers: int = 0
    largest_group_size: int = 0
