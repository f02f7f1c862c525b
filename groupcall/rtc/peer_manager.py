"""Peer manager (audio/video mesh)."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, cast

from aiortc.contrib.media import MediaRelay
from aiortc.rtcconfiguration import RTCConfiguration

from ..net.protocol import IceCandidateDict
from ..net.signaling_client import SignalingClient
from .media import MediaStream
from .webrtc_peer import PeerCallbacks, WebRTCPeer


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class ManagerCallbacks:
    on_log: Optional[AsyncCallback] = None
    on_peer_state: Optional[AsyncCallback] = None  # (peer_id: str, state: str)
    on_remote_stream: Optional[AsyncCallback] = None  # (peer_id: str, stream: MediaStream, kind: str)


class PeerManager:
    def __init__(
        self,
        callbacks: Optional[ManagerCallbacks] = None,
        *,
        relay: Optional[MediaRelay] = None,
        keepalive_interval: float = 5.0,
        play_audio: bool = True,
    ):
        self._callbacks = callbacks or ManagerCallbacks()
        self._signaling: Optional[SignalingClient] = None
        self._self_id: Optional[str] = None
        self._room: Optional[str] = None

        self._peers: Dict[str, WebRTCPeer] = {}
        self._relay = relay if relay is not None else MediaRelay()
        self._local_stream: Optional[MediaStream] = None
        self._rtc_config: Optional[RTCConfiguration] = None
        self._play_audio = play_audio

        self.keepalive_interval = float(keepalive_interval)
        self._keepalive_task: Optional[asyncio.Task[None]] = None

        self._lock = asyncio.Lock()

    @property
    def relay(self) -> MediaRelay:
        return self._relay

    @property
    def room(self) -> Optional[str]:
        return self._room

    @property
    def peer_ids(self) -> list[str]:
        return list(self._peers.keys())

    def get_peer(self, peer_id: str) -> Optional[WebRTCPeer]:
        return self._peers.get(peer_id)

    def set_local_stream(self, stream: Optional[MediaStream]) -> None:
        """Set the local media sent to peers.

        Existing connections are not renegotiated; only peers created after
        the change send the new tracks.
        """
        self._local_stream = stream

    def set_signaling(self, signaling: SignalingClient) -> None:
        self._signaling = signaling

    def set_self_id(self, peer_id: str) -> None:
        self._self_id = peer_id

    def set_rtc_configuration(self, rtc_config: RTCConfiguration) -> None:
        self._rtc_config = rtc_config

    async def join_room(self, room: str, peers_list: list[dict]) -> None:
        self._room = room
        logger.info("rtc join room=%s peers=%s", room, len(peers_list))
        for peer in peers_list:
            other_id = str(peer.get("peer_id", ""))
            if other_id and other_id != self._self_id:
                await self._ensure_peer(other_id)

        # Start offers where we are the offerer.
        for other_id in list(self._peers.keys()):
            await self._maybe_make_offer(other_id)
        self._ensure_keepalive()

    async def handle_peer_joined(self, peer: dict) -> None:
        other_id = str(peer.get("peer_id", ""))
        if not other_id or other_id == self._self_id:
            return
        logger.info("rtc peer joined peer_id=%s", other_id)
        await self._ensure_peer(other_id)
        await self._maybe_make_offer(other_id)
        self._ensure_keepalive()

    async def handle_offer(self, from_peer: str, sdp: str) -> None:
        logger.info("rtc offer received from=%s sdp_len=%s", from_peer, len(sdp))
        p = await self._ensure_peer(from_peer)
        answer_sdp = await p.apply_offer_and_create_answer(sdp)
        if self._signaling:
            await self._signaling.send_answer(from_peer, answer_sdp)
        self._ensure_keepalive()

    async def handle_answer(self, from_peer: str, sdp: str) -> None:
        p = self._peers.get(from_peer)
        if not p:
            return
        logger.info("rtc answer received from=%s sdp_len=%s", from_peer, len(sdp))
        await p.apply_answer(sdp)

    async def handle_ice(self, from_peer: str, candidate: Any) -> None:
        p = self._peers.get(from_peer)
        if not p:
            # ICE may arrive before the offer that creates the peer.
            p = await self._ensure_peer(from_peer)
        logger.debug("rtc ice received from=%s has_candidate=%s", from_peer, bool(candidate))
        await p.add_ice_candidate(candidate)

    async def leave_room(self) -> None:
        self._room = None
        logger.info("rtc leave room")
        self._stop_keepalive()
        for pid in list(self._peers.keys()):
            await self.remove_peer(pid)

    async def remove_peer(self, peer_id: str) -> None:
        async with self._lock:
            peer = self._peers.pop(peer_id, None)
        if peer:
            await self._log(f"Closing peer pc for {peer_id}")
            logger.debug("rtc closing peer pc peer_id=%s", peer_id)
            await peer.close()

    def send_keepalives(self) -> int:
        sent = 0
        for peer in list(self._peers.values()):
            try:
                if peer.send_keepalive():
                    sent += 1
            except Exception as e:
                logger.debug("rtc keepalive failed peer_id=%s: %s", peer.peer_id, e)
        return sent

    async def _ensure_peer(self, peer_id: str) -> WebRTCPeer:
        async with self._lock:
            existing = self._peers.get(peer_id)
            if existing:
                return existing

            cb = PeerCallbacks(
                on_log=self._log,
                on_connection_state=self._on_peer_state,
                on_local_ice=self._on_local_ice,
                on_remote_stream=self._on_remote_stream,
            )
            peer = WebRTCPeer(
                peer_id=peer_id,
                local_stream=self._local_stream,
                relay=self._relay,
                callbacks=cb,
                rtc_config=self._rtc_config,
                play_audio=self._play_audio,
            )
            self._peers[peer_id] = peer
            await self._log(f"Created peer pc for {peer_id}")
            logger.debug("rtc created peer pc peer_id=%s", peer_id)
            return peer

    async def _maybe_make_offer(self, other_id: str) -> None:
        if not self._signaling or not self._self_id:
            return

        # Offerer rule: lexicographically smaller peer_id offers.
        if self._self_id >= other_id:
            logger.debug("rtc offer skipped (not offerer) self=%s other=%s", self._self_id, other_id)
            return

        peer = self._peers.get(other_id)
        if not peer:
            return

        await self._log(f"Creating offer to {other_id}")
        logger.info("rtc creating offer to=%s", other_id)
        sdp = await peer.create_offer()
        await self._signaling.send_offer(other_id, sdp)

    def _ensure_keepalive(self) -> None:
        if self.keepalive_interval <= 0:
            return
        if self._keepalive_task and not self._keepalive_task.done():
            return
        self._keepalive_task = asyncio.get_running_loop().create_task(self._keepalive_loop(), name="rtc-keepalive")

    def _stop_keepalive(self) -> None:
        if self._keepalive_task:
            self._keepalive_task.cancel()
            self._keepalive_task = None

    async def _keepalive_loop(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.keepalive_interval)
                sent = self.send_keepalives()
                logger.debug("rtc keepalive sent=%s peers=%s", sent, len(self._peers))
        except asyncio.CancelledError:
            pass

    async def _on_local_ice(self, peer_id: str, candidate: dict) -> None:
        if self._signaling:
            logger.debug("rtc local ice peer_id=%s", peer_id)
            await self._signaling.send_ice(peer_id, cast(IceCandidateDict, candidate))

    async def _on_peer_state(self, peer_id: str, state: str) -> None:
        if self._callbacks.on_peer_state:
            await self._callbacks.on_peer_state(peer_id, state)

    async def _on_remote_stream(self, peer_id: str, stream: MediaStream, kind: str) -> None:
        if self._callbacks.on_remote_stream:
            await self._callbacks.on_remote_stream(peer_id, stream, kind)

    async def _log(self, message: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(message)
