"""One call session: signaling, peer mesh, grouping and speaker detection.

The session owns exactly one peer registry, one level tracker and one
network locator, and runs the periodic work around them on the event loop:
level sampling (inside the tracker), stale-peer sweeps and the speaker
view report.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Optional

from aiortc.contrib.media import MediaRelay
from aiortc.rtcconfiguration import RTCConfiguration, RTCIceServer

from .config import SessionConfig
from .groups.models import PeerRecord
from .groups.registry import PeerGroupRegistry
from .net import protocol
from .net.locator import UNKNOWN_NETWORK, NetworkLocator, generate_group_name
from .net.signaling_client import SignalingCallbacks, SignalingClient
from .rtc.levels import AudioLevelTracker, StreamVolume
from .rtc.media import LocalMedia, MediaStream
from .rtc.peer_manager import ManagerCallbacks, PeerManager


logger = logging.getLogger(__name__)


LOCAL_STREAM_ID = "local"

_TERMINAL_STATES = ("failed", "closed")


@dataclass(frozen=True)
class SpeakerView:
    stream_id: str
    volume: float
    is_local: bool
    group_name: Optional[str] = None

    @property
    def label(self) -> str:
        if self.is_local:
            return "You are speaking"
        origin = f" from {self.group_name}" if self.group_name else ""
        return f"{self.stream_id[-4:]} is speaking{origin}"


class CallSession:
    def __init__(
        self,
        cfg: SessionConfig,
        *,
        locator: Optional[NetworkLocator] = None,
        registry: Optional[PeerGroupRegistry] = None,
        tracker: Optional[AudioLevelTracker] = None,
        relay: Optional[MediaRelay] = None,
    ):
        self.cfg = cfg
        self.relay = relay if relay is not None else MediaRelay()

        self.locator = locator if locator is not None else NetworkLocator(
            stun_urls=cfg.stun_urls,
            ip_echo_url=cfg.ip_echo_url,
            probe_timeout=cfg.probe_timeout,
            mobile_lookup_timeout=cfg.mobile_lookup_timeout,
            lookup_timeout=cfg.lookup_timeout,
            user_agent=cfg.user_agent,
        )
        self.registry = registry if registry is not None else PeerGroupRegistry(stale_after=cfg.stale_after)
        self.tracker = tracker if tracker is not None else AudioLevelTracker(
            relay=self.relay,
            enabled=cfg.audio_levels,
            sample_interval=cfg.sample_interval,
            threshold=cfg.speaking_threshold,
        )
        if self.tracker.on_tick is None:
            self.tracker.on_tick = self._on_volume_tick

        self.network_identity: Optional[str] = None
        self.local_media: Optional[LocalMedia] = None

        # peer_id -> network identity announced over signaling
        self._peer_networks: Dict[str, str] = {}
        self._tasks: list[asyncio.Task[None]] = []

        self.peer_manager = PeerManager(
            callbacks=ManagerCallbacks(
                on_log=self._on_async_log,
                on_peer_state=self._on_peer_state,
                on_remote_stream=self._on_remote_stream,
            ),
            relay=self.relay,
            keepalive_interval=cfg.keepalive_interval,
            play_audio=cfg.play_audio,
        )
        self.peer_manager.set_rtc_configuration(
            RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in cfg.stun_urls])
        )

        self.signaling = SignalingClient(
            url=cfg.server_url,
            callbacks=SignalingCallbacks(
                on_log=self._on_async_log,
                on_welcome=self._on_welcome,
                on_joined=self._on_joined,
                on_left=self._on_left,
                on_peer_joined=self._on_peer_joined,
                on_peer_left=self._on_peer_left,
                on_peer_updated=self._on_peer_updated,
                on_offer=self._on_offer,
                on_answer=self._on_answer,
                on_ice=self._on_ice,
                on_error=self._on_error,
            ),
        )
        self.peer_manager.set_signaling(self.signaling)

    async def start(self) -> None:
        await self.detect_network()

        self.local_media = LocalMedia.create(stream_id=LOCAL_STREAM_ID, video=self.cfg.video)
        self.peer_manager.set_local_stream(self.local_media.stream)
        self.tracker.add_stream(LOCAL_STREAM_ID, self.local_media.stream)

        self._start_periodic(self.cfg.cleanup_interval, self.sweep_stale_peers, "stale-sweep")
        self._start_periodic(self.cfg.report_interval, self._report, "speaker-report")

        await self.signaling.connect()
        logger.info("session started room=%s network=%s", self.cfg.room, self.network_identity)

    async def shutdown(self) -> None:
        logger.info("session shutdown")
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

        await self.peer_manager.leave_room()
        await self.signaling.disconnect()
        self.tracker.destroy()
        if self.local_media is not None:
            self.local_media.close()
            self.local_media = None
        self.registry.clear()
        self._peer_networks.clear()

    async def detect_network(self) -> str:
        identity = await self.locator.detect()
        self.network_identity = identity
        self.registry.set_local_network_identity(identity)
        return identity

    async def refresh_network(self) -> str:
        """Re-run detection and tell the room when our identity changed."""
        previous = self.network_identity
        identity = await self.detect_network()
        if identity != previous and self.signaling.is_connected:
            await self.signaling.announce_network(identity)
        return identity

    async def drop_peer(self, peer_id: str) -> None:
        self.registry.remove_peer(peer_id)
        self.tracker.remove_stream(peer_id)
        self._peer_networks.pop(peer_id, None)
        await self.peer_manager.remove_peer(peer_id)

    async def sweep_stale_peers(self) -> list[str]:
        removed = self.registry.cleanup_stale_peers()
        for peer_id in removed:
            self.tracker.remove_stream(peer_id)
            await self.peer_manager.remove_peer(peer_id)
        return removed

    def loudest_speaker(self) -> Optional[SpeakerView]:
        stream_id = self.tracker.loudest_stream_id
        if stream_id is None:
            return None
        sv = self.tracker.get_stream_volume(stream_id)
        volume = sv.smoothed_volume if sv else self.tracker.get_volume(stream_id)
        if stream_id == LOCAL_STREAM_ID:
            local = self.network_identity
            return SpeakerView(stream_id, volume, True, generate_group_name(local) if local else None)
        group = self.registry.get_group_by_peer_id(stream_id)
        return SpeakerView(stream_id, volume, False, group.name if group else None)

    def describe(self) -> list[str]:
        """Plain-text speaker view: one line per group, then who is speaking."""
        lines = []
        for group in self.registry.get_groups():
            marker = " [you]" if group.is_local else ""
            loudest = self.registry.get_loudest_peer_in_group(group.id)
            loudest_txt = f" loudest={loudest.id}" if loudest and loudest.level > self.tracker.threshold else ""
            lines.append(f"{group.name}{marker} peers={group.peer_count}{loudest_txt}")
        speaker = self.loudest_speaker()
        lines.append(speaker.label if speaker else "No one is speaking")
        return lines

    def _report(self) -> None:
        stats = self.registry.get_group_stats()
        logger.info(
            "session groups=%s peers=%s multi=%s largest=%s",
            stats.total_groups,
            stats.total_peers,
            stats.groups_with_multiple_peers,
            stats.largest_group_size,
        )
        for line in self.describe():
            logger.info("session view %s", line)

    def _start_periodic(self, interval: float, fn: Callable[[], Any], name: str) -> None:
        if interval <= 0:
            return

        async def _loop() -> None:
            while True:
                await asyncio.sleep(interval)
                try:
                    result = fn()
                    if inspect.isawaitable(result):
                        await result
                except asyncio.CancelledError:
                    raise
                except Exception:
                    logger.exception("session periodic task failed name=%s", name)

        self._tasks.append(asyncio.get_running_loop().create_task(_loop(), name=name))

    def _on_volume_tick(self, volumes: list[StreamVolume]) -> None:
        for v in volumes:
            if v.stream_id != LOCAL_STREAM_ID:
                self.registry.update_audio_level(v.stream_id, v.smoothed_volume)

    # ----------------------
    # Peer connection callbacks
    # ----------------------
    async def _on_remote_stream(self, peer_id: str, stream: MediaStream, kind: str) -> None:
        existing = self.registry.get_peer(peer_id)
        self.registry.add_peer(
            PeerRecord(
                id=peer_id,
                stream=stream,
                network_identity=self._peer_networks.get(peer_id, UNKNOWN_NETWORK),
                audio_level=existing.audio_level if existing else None,
            )
        )
        if kind == "audio":
            self.tracker.add_stream(peer_id, stream)

    async def _on_peer_state(self, peer_id: str, state: str) -> None:
        logger.info("session peer state peer_id=%s state=%s", peer_id, state)
        if state in _TERMINAL_STATES:
            await self.drop_peer(peer_id)

    async def _on_async_log(self, message: str) -> None:
        logger.debug("%s", message)

    # ----------------------
    # Signaling callbacks
    # ----------------------
    def _remember_network(self, peer: dict) -> Optional[str]:
        peer_id = str(peer.get("peer_id", ""))
        if not peer_id:
            return None
        self._peer_networks[peer_id] = protocol.peer_network(peer) or UNKNOWN_NETWORK
        return peer_id

    async def _on_welcome(self, peer_id: str) -> None:
        self.peer_manager.set_self_id(peer_id)
        await self.signaling.join(self.cfg.room, self.cfg.name, self.network_identity)

    async def _on_joined(self, room: str, peers: list[dict]) -> None:
        for peer in peers:
            self._remember_network(peer)
        await self.peer_manager.join_room(room, peers)

    async def _on_left(self, room: str) -> None:
        logger.info("session left room=%s", room)
        for peer_id in [p.id for p in self.registry.get_all_peers()]:
            self.tracker.remove_stream(peer_id)
        self.registry.clear()
        self._peer_networks.clear()
        await self.peer_manager.leave_room()

    async def _on_peer_joined(self, peer: dict) -> None:
        self._remember_network(peer)
        await self.peer_manager.handle_peer_joined(peer)

    async def _on_peer_updated(self, peer: dict) -> None:
        peer_id = self._remember_network(peer)
        if peer_id is None:
            return
        record = self.registry.get_peer(peer_id)
        if record is not None:
            self.registry.add_peer(replace(record, network_identity=self._peer_networks[peer_id]))

    async def _on_peer_left(self, peer_id: str, reason: str) -> None:
        await self.drop_peer(peer_id)

    async def _on_offer(self, from_peer: str, sdp: str) -> None:
        await self.peer_manager.handle_offer(from_peer, sdp)

    async def _on_answer(self, from_peer: str, sdp: str) -> None:
        await self.peer_manager.handle_answer(from_peer, sdp)

    async def _on_ice(self, from_peer: str, candidate: Any) -> None:
        await self.peer_manager.handle_ice(from_peer, candidate)

    async def _on_error(self, error: str, payload: dict) -> None:
        logger.warning("session signaling error=%s payload=%s", error, payload)
