"""Signaling protocol helpers.

The signaling server relays JSON objects over a single WebSocket. Besides
room presence and SDP/ICE relay, every participant announces the network
identity it detected so others can group it.
"""

from __future__ import annotations

from typing import Any, Dict, Optional, TypedDict


# Message type constants
WELCOME = "welcome"
JOIN = "join"
JOINED = "joined"
LEAVE = "leave"
LEFT = "left"
PEER_JOINED = "peer-joined"
PEER_LEFT = "peer-left"
PEER_UPDATED = "peer-updated"
NETWORK = "network"

OFFER = "offer"
ANSWER = "answer"
ICE = "ice"

PING = "ping"
PONG = "pong"
ERROR = "error"


class PeerInfo(TypedDict, total=False):
	peer_id: str
	name: str
	network: str


class IceCandidateDict(TypedDict, total=False):
	candidate: str
	sdpMid: Optional[str]
	sdpMLineIndex: Optional[int]


def peer_network(peer: Any) -> Optional[str]:
	"""Network identity announced by a peer, if any."""
	if not isinstance(peer, dict):
		return None
	network = peer.get("network")
	return str(network) if isinstance(network, str) and network else None


def make_join(room: str, name: str, network: Optional[str] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": JOIN, "room": room, "name": name}
	if network:
		msg["network"] = network
	return msg


def make_leave() -> Dict[str, Any]:
	return {"type": LEAVE}


def make_network(network: str) -> Dict[str, Any]:
	return {"type": NETWORK, "network": network}


def make_pong(ts: Optional[int] = None) -> Dict[str, Any]:
	msg: Dict[str, Any] = {"type": PONG}
	if ts is not None:
		msg["ts"] = ts
	return msg


def make_offer(to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"type": OFFER, "to": to_peer, "sdp": sdp}


def make_answer(to_peer: str, sdp: str) -> Dict[str, Any]:
	return {"type": ANSWER, "to": to_peer, "sdp": sdp}


def make_ice(to_peer: str, candidate: IceCandidateDict) -> Dict[str, Any]:
	return {"type": ICE, "to": to_peer, "candidate": candidate}


class ProtocolError(Exception):
	"""Raised when a message cannot be sent or is malformed."""

	def __init__(self, message: str):
		super().__init__(message)
		self.message = message
