"""Directory of remote peers with a derived grouping by network."""

from __future__ import annotations

import locale
import logging
import math
import time
from dataclasses import replace
from typing import Callable, Dict, Iterable, Optional

from ..net.locator import generate_group_name
from .models import Group, GroupStats, PeerRecord


logger = logging.getLogger(__name__)


DEFAULT_STALE_AFTER_SEC = 30.0


def _clean_level(level: float) -> float:
    """Clamp to [0, 1]; NaN, infinities and garbage read as silence."""
    try:
        value = float(level)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(value) or value <= 0.0:
        return 0.0
    return min(value, 1.0)


def _loudest(peers: Iterable[PeerRecord]) -> Optional[PeerRecord]:
    loudest: Optional[PeerRecord] = None
    for peer in peers:
        # Strict comparison keeps the earliest record on ties.
        if loudest is None or peer.level > loudest.level:
            loudest = peer
    return loudest


class PeerGroupRegistry:
    """In-memory peer directory for one call session.

    All methods are total: unknown ids yield None or do nothing. The local
    participant is never stored here; it only shows up as the local group
    once `set_local_network_identity` has been called.
    """

    def __init__(
        self,
        *,
        stale_after: float = DEFAULT_STALE_AFTER_SEC,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.stale_after = float(stale_after)
        self._clock = clock
        self._peers: Dict[str, PeerRecord] = {}
        self._local_identity: Optional[str] = None

    def __len__(self) -> int:
        return len(self._peers)

    def __contains__(self, peer_id: object) -> bool:
        return peer_id in self._peers

    @property
    def local_network_identity(self) -> Optional[str]:
        return self._local_identity

    def set_local_network_identity(self, identity: str) -> None:
        self._local_identity = identity or None
        logger.debug("groups local identity=%s", self._local_identity)

    def add_peer(self, record: PeerRecord) -> PeerRecord:
        level = None if record.audio_level is None else _clean_level(record.audio_level)
        stored = replace(record, last_seen=self._clock(), audio_level=level)
        replaced = record.id in self._peers
        self._peers[record.id] = stored
        logger.debug(
            "groups %s peer_id=%s network=%s",
            "updated" if replaced else "added",
            record.id,
            record.network_identity,
        )
        return stored

    def remove_peer(self, peer_id: str) -> None:
        if self._peers.pop(peer_id, None) is not None:
            logger.debug("groups removed peer_id=%s", peer_id)

    def update_audio_level(self, peer_id: str, level: float) -> None:
        peer = self._peers.get(peer_id)
        if peer is None:
            return
        peer.audio_level = _clean_level(level)
        peer.last_seen = self._clock()

    def get_peer(self, peer_id: str) -> Optional[PeerRecord]:
        return self._peers.get(peer_id)

    def get_all_peers(self) -> list[PeerRecord]:
        return list(self._peers.values())

    def clear(self) -> None:
        self._peers.clear()

    def get_groups(self) -> list[Group]:
        """Recompute the grouping from the current directory.

        The local group is present (possibly empty) as soon as the local
        identity is known and always sorts first; the rest sort by label.
        """
        groups: Dict[str, Group] = {}
        local = self._local_identity
        if local:
            groups[local] = Group(id=local, name=generate_group_name(local), is_local=True)

        for peer in self._peers.values():
            identity = peer.network_identity
            group = groups.get(identity)
            if group is None:
                group = Group(id=identity, name=generate_group_name(identity), is_local=identity == local)
                groups[identity] = group
            group.peers.append(peer)

        return sorted(groups.values(), key=lambda g: (not g.is_local, locale.strxfrm(g.name)))

    def get_group_by_peer_id(self, peer_id: str) -> Optional[Group]:
        if peer_id not in self._peers:
            return None
        for group in self.get_groups():
            if any(p.id == peer_id for p in group.peers):
                return group
        return None

    def get_loudest_peer_in_group(self, group_id: str) -> Optional[PeerRecord]:
        for group in self.get_groups():
            if group.id == group_id:
                return _loudest(group.peers)
        return None

    def get_overall_loudest_peer(self) -> Optional[PeerRecord]:
        return _loudest(self._peers.values())

    def cleanup_stale_peers(self) -> list[str]:
        """Drop peers not refreshed within `stale_after` seconds.

        Returns the removed ids so the caller can tear down their media.
        """
        cutoff = self._clock() - self.stale_after
        stale = [peer_id for peer_id, peer in self._peers.items() if peer.last_seen < cutoff]
        for peer_id in stale:
            self.remove_peer(peer_id)
        if stale:
            logger.info("groups evicted stale peers=%s", stale)
        return stale

    def get_group_stats(self) -> GroupStats:
        groups = self.get_groups()
        sizes = [g.peer_count for g in groups]
        return GroupStats(
            total_groups=len(groups),
            total_peers=len(self._peers),
            groups_with_multiple_peers=sum(1 for n in sizes if n > 1),
            largest_group_size=max(sizes, default=0),
        )
