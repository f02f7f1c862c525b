"""WebSocket signaling client.

This is intentionally unaware of aiortc and of grouping. It only speaks the
JSON protocol in `protocol.py` and hands decoded events to callbacks.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional

import websockets
from websockets.protocol import State

from . import protocol


logger = logging.getLogger(__name__)


AsyncCallback = Callable[..., Awaitable[None]]


@dataclass
class SignalingCallbacks:
	on_log: Optional[AsyncCallback] = None
	on_welcome: Optional[AsyncCallback] = None  # (peer_id: str)
	on_joined: Optional[AsyncCallback] = None  # (room: str, peers: list[dict])
	on_left: Optional[AsyncCallback] = None  # (room: str)
	on_peer_joined: Optional[AsyncCallback] = None  # (peer: dict)
	on_peer_left: Optional[AsyncCallback] = None  # (peer_id: str, reason: str)
	on_peer_updated: Optional[AsyncCallback] = None  # (peer: dict)
	on_offer: Optional[AsyncCallback] = None  # (from_peer: str, sdp: str)
	on_answer: Optional[AsyncCallback] = None  # (from_peer: str, sdp: str)
	on_ice: Optional[AsyncCallback] = None  # (from_peer: str, candidate: dict)
	on_error: Optional[AsyncCallback] = None  # (error: str, payload: dict)


class SignalingClient:
	def __init__(self, url: str, callbacks: Optional[SignalingCallbacks] = None):
		self.url = url
		self.callbacks = callbacks or SignalingCallbacks()

		self.peer_id: Optional[str] = None
		# websockets' connection classes differ between versions; only `.state` is relied on.
		self._ws: Optional[Any] = None
		self._recv_task: Optional[asyncio.Task[None]] = None
		self._send_lock = asyncio.Lock()
		self._connected_evt = asyncio.Event()

	@property
	def is_connected(self) -> bool:
		return self._ws is not None and self._ws.state is State.OPEN

	async def connect(self) -> None:
		if self._recv_task and not self._recv_task.done():
			return

		await self._log(f"Connecting to {self.url}")
		logger.info("signaling connect url=%s", self.url)
		try:
			self._ws = await websockets.connect(self.url)
		except Exception:
			logger.exception("signaling connect failed url=%s", self.url)
			await self._emit_error("connect-failed", {"url": self.url})
			return
		self._connected_evt.set()
		self._recv_task = asyncio.create_task(self._recv_loop(), name="signaling-recv")

	async def disconnect(self) -> None:
		await self._log("Disconnecting")
		logger.info("signaling disconnect")
		self._connected_evt.clear()
		task, self._recv_task = self._recv_task, None
		if task:
			task.cancel()
			try:
				await task
			except asyncio.CancelledError:
				pass

		ws, self._ws = self._ws, None
		if ws:
			try:
				await ws.close()
			except Exception as e:
				logger.debug("signaling close failed: %s", e)
		self.peer_id = None

	async def join(self, room: str, name: str, network: Optional[str] = None) -> None:
		await self._send(protocol.make_join(room, name, network))

	async def leave(self) -> None:
		await self._send(protocol.make_leave())

	async def announce_network(self, network: str) -> None:
		await self._send(protocol.make_network(network))

	async def send_offer(self, to_peer: str, sdp: str) -> None:
		await self._send(protocol.make_offer(to_peer, sdp))

	async def send_answer(self, to_peer: str, sdp: str) -> None:
		await self._send(protocol.make_answer(to_peer, sdp))

	async def send_ice(self, to_peer: str, candidate: protocol.IceCandidateDict) -> None:
		await self._send(protocol.make_ice(to_peer, candidate))

	async def _send(self, payload: Dict[str, Any]) -> None:
		await self._connected_evt.wait()
		if not self._ws:
			raise protocol.ProtocolError("Signaling not connected")
		mtype = payload.get("type")
		to_peer = payload.get("to")
		if mtype in (protocol.OFFER, protocol.ANSWER):
			logger.info("signaling send type=%s to=%s sdp_len=%s", mtype, to_peer, len(str(payload.get("sdp", ""))))
		elif mtype == protocol.ICE:
			logger.debug("signaling send type=ice to=%s", to_peer)
		else:
			logger.debug("signaling send type=%s", mtype)
		raw = json.dumps(payload, separators=(",", ":"), ensure_ascii=False)
		async with self._send_lock:
			await self._ws.send(raw)

	async def _recv_loop(self) -> None:
		assert self._ws is not None
		ws = self._ws
		logger.debug("signaling recv loop started")

		try:
			async for raw in ws:
				try:
					msg = json.loads(raw)
				except json.JSONDecodeError:
					await self._emit_error("invalid-json", {"raw": raw})
					continue

				if not isinstance(msg, dict):
					await self._emit_error("invalid-message", {"msg": msg})
					continue

				mtype = msg.get("type")
				if not isinstance(mtype, str):
					await self._emit_error("missing-type", msg)
					continue

				await self._dispatch(mtype, msg)

		except asyncio.CancelledError:
			pass
		except Exception as e:
			logger.exception("signaling recv loop crashed")
			await self._emit_error(f"recv-loop-exception: {e}", {})
		finally:
			self._connected_evt.clear()
			logger.debug("signaling recv loop stopped")
			try:
				await ws.close()
			except Exception as e:
				logger.debug("signaling close failed: %s", e)
			if self._ws is ws:
				self._ws = None

	async def _dispatch(self, mtype: str, msg: Dict[str, Any]) -> None:
		cb = self.callbacks

		if mtype == protocol.PING:
			await self._send(protocol.make_pong(msg.get("ts")))

		elif mtype == protocol.WELCOME:
			self.peer_id = str(msg.get("peer_id", "")) or None
			logger.info("signaling welcome peer_id=%s", self.peer_id)
			if self.peer_id and cb.on_welcome:
				await cb.on_welcome(self.peer_id)

		elif mtype == protocol.JOINED:
			room = str(msg.get("room", ""))
			peers = msg.get("peers", [])
			if not isinstance(peers, list):
				peers = []
			logger.info("signaling joined room=%s peers=%s", room, len(peers))
			if cb.on_joined:
				await cb.on_joined(room, [p for p in peers if isinstance(p, dict)])

		elif mtype == protocol.LEFT:
			room = str(msg.get("room", ""))
			logger.info("signaling left room=%s", room)
			if cb.on_left:
				await cb.on_left(room)

		elif mtype in (protocol.PEER_JOINED, protocol.PEER_UPDATED):
			peer = msg.get("peer", {})
			if not isinstance(peer, dict):
				await self._emit_error("invalid-peer", msg)
				return
			logger.info(
				"signaling %s peer_id=%s network=%s",
				mtype,
				peer.get("peer_id"),
				protocol.peer_network(peer),
			)
			handler = cb.on_peer_joined if mtype == protocol.PEER_JOINED else cb.on_peer_updated
			if handler:
				await handler(peer)

		elif mtype == protocol.PEER_LEFT:
			peer_id = str(msg.get("peer_id", ""))
			reason = str(msg.get("reason", ""))
			logger.info("signaling peer-left peer_id=%s reason=%s", peer_id, reason)
			if cb.on_peer_left:
				await cb.on_peer_left(peer_id, reason)

		elif mtype in (protocol.OFFER, protocol.ANSWER):
			from_peer = str(msg.get("from", ""))
			sdp = str(msg.get("sdp", ""))
			logger.info("signaling %s from=%s sdp_len=%s", mtype, from_peer, len(sdp))
			handler = cb.on_offer if mtype == protocol.OFFER else cb.on_answer
			if handler:
				await handler(from_peer, sdp)

		elif mtype == protocol.ICE:
			from_peer = str(msg.get("from", ""))
			candidate = msg.get("candidate")
			logger.debug("signaling ice from=%s has_candidate=%s", from_peer, bool(candidate))
			if cb.on_ice:
				await cb.on_ice(from_peer, candidate)

		elif mtype == protocol.ERROR:
			await self._emit_error(str(msg.get("error", "error")), msg)

		else:
			await self._emit_error("unknown-type", msg)

	async def _emit_error(self, error: str, payload: Dict[str, Any]) -> None:
		await self._log(f"Signaling error: {error}")
		if self.callbacks.on_error:
			await self.callbacks.on_error(error, payload)

	async def _log(self, message: str) -> None:
		if self.callbacks.on_log:
			await self.callbacks.on_log(message)
