"""One WebRTC connection to one peer (audio/video mesh)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

from aiortc import (
    RTCDataChannel,
    RTCIceCandidate,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaRelay
from aiortc.rtcconfiguration import RTCConfiguration
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .media import MediaStream, RemoteMediaSink


logger = logging.getLogger(__name__)


AsyncPeerCallback = Callable[..., Awaitable[None]]

KEEPALIVE_LABEL = "keepalive"


def _candidate_to_json(candidate: RTCIceCandidate) -> Dict[str, Any]:
    return {
        "candidate": candidate_to_sdp(candidate),
        "sdpMid": getattr(candidate, "sdpMid", None),
        "sdpMLineIndex": getattr(candidate, "sdpMLineIndex", None),
    }


def _candidate_from_json(obj: Dict[str, Any]) -> RTCIceCandidate:
    cand_sdp = obj.get("candidate")
    if not isinstance(cand_sdp, str) or not cand_sdp:
        raise ValueError("missing candidate")
    if cand_sdp.startswith("candidate:"):
        cand_sdp = cand_sdp[len("candidate:"):]
    cand = candidate_from_sdp(cand_sdp)
    cand.sdpMid = obj.get("sdpMid")
    cand.sdpMLineIndex = obj.get("sdpMLineIndex")
    return cand


@dataclass
class PeerCallbacks:
    on_log: Optional[AsyncPeerCallback] = None  # (msg: str)
    on_connection_state: Optional[AsyncPeerCallback] = None  # (peer_id: str, state: str)
    on_local_ice: Optional[AsyncPeerCallback] = None  # (peer_id: str, candidate: dict)
    on_remote_stream: Optional[AsyncPeerCallback] = None  # (peer_id: str, stream: MediaStream, kind: str)


class WebRTCPeer:
    def __init__(
        self,
        peer_id: str,
        local_stream: Optional[MediaStream] = None,
        relay: Optional[MediaRelay] = None,
        callbacks: Optional[PeerCallbacks] = None,
        rtc_config: Optional[RTCConfiguration] = None,
        play_audio: bool = True,
    ):
        self.peer_id = peer_id
        self._callbacks = callbacks or PeerCallbacks()
        self._pc = RTCPeerConnection(configuration=rtc_config)
        self._relay = relay

        self.remote_stream = MediaStream(id=peer_id)
        self._remote_sink = RemoteMediaSink(relay=relay, play_audio=play_audio)
        self._keepalive: Optional[RTCDataChannel] = None
        self._closed = False

        if local_stream is not None:
            # Every connection gets its own relay subscription of the local tracks.
            for track in local_stream.get_tracks():
                self._pc.addTrack(relay.subscribe(track) if relay is not None else track)

        @self._pc.on("icecandidate")
        async def on_icecandidate(event) -> None:
            if event is None or event.candidate is None:
                return
            if self._callbacks.on_local_ice:
                await self._callbacks.on_local_ice(self.peer_id, _candidate_to_json(event.candidate))

        @self._pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = self._pc.connectionState
            await self._log(f"pc[{self.peer_id}] connectionState={state}")
            if self._callbacks.on_connection_state:
                await self._callbacks.on_connection_state(self.peer_id, state)

        @self._pc.on("datachannel")
        def on_datachannel(channel: RTCDataChannel) -> None:
            if channel.label == KEEPALIVE_LABEL:
                logger.debug("rtc keepalive channel received peer_id=%s", self.peer_id)
                self._bind_keepalive(channel)

        @self._pc.on("track")
        async def on_track(track) -> None:
            await self._log(f"pc[{self.peer_id}] remote track kind={track.kind}")
            if track.kind == "audio":
                self.remote_stream.audio = track
            elif track.kind == "video":
                self.remote_stream.video = track
            else:
                return
            await self._remote_sink.add_track(track)
            if self._callbacks.on_remote_stream:
                await self._callbacks.on_remote_stream(self.peer_id, self.remote_stream, track.kind)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def keepalive_open(self) -> bool:
        return self._keepalive is not None and self._keepalive.readyState == "open"

    def _bind_keepalive(self, channel: RTCDataChannel) -> None:
        self._keepalive = channel

        @channel.on("message")
        def on_message(message) -> None:
            logger.debug("rtc keepalive peer_id=%s message=%s", self.peer_id, message)

    def send_keepalive(self) -> bool:
        if not self.keepalive_open:
            return False
        assert self._keepalive is not None
        self._keepalive.send("ping")
        return True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._remote_sink.stop()
        finally:
            await self._pc.close()

    async def create_offer(self) -> str:
        if self._keepalive is None:
            self._bind_keepalive(self._pc.createDataChannel(KEEPALIVE_LABEL))
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def apply_answer(self, sdp: str) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="answer"))

    async def apply_offer_and_create_answer(self, sdp: str) -> str:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type="offer"))
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        assert self._pc.localDescription is not None
        return self._pc.localDescription.sdp

    async def add_ice_candidate(self, candidate_obj: Any) -> None:
        if not candidate_obj or not isinstance(candidate_obj, dict):
            return
        try:
            cand = _candidate_from_json(candidate_obj)
        except Exception as e:
            logger.debug("rtc ice candidate rejected peer_id=%s: %s", self.peer_id, e)
            return
        await self._pc.addIceCandidate(cand)

    async def _log(self, msg: str) -> None:
        if self._callbacks.on_log:
            await self._callbacks.on_log(msg)
