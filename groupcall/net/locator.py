"""Best-effort detection of which local network this device is on.

The result is a coarse fingerprint (e.g. `192.168.1.x`) used to cluster
peers that are likely on the same LAN. It is never authoritative: every
failure resolves to one of the sentinels below.
"""

from __future__ import annotations

import asyncio
import logging
import re
import sys
from typing import Optional, Sequence

import aiohttp
from aiortc import RTCPeerConnection
from aiortc.rtcconfiguration import RTCConfiguration, RTCIceServer


logger = logging.getLogger(__name__)


MOBILE_NETWORK = "mobile-network"
UNKNOWN_NETWORK = "unknown-network"

DEFAULT_STUN_URLS = (
	"stun:stun.l.google.com:19302",
	"stun:stun1.l.google.com:19302",
)
DEFAULT_IP_ECHO_URL = "https://api.ipify.org?format=json"

_PRIVATE_PREFIXES = ("192.168.", "10.", "172.")
_IPV4_RE = re.compile(r"(?:[0-9]{1,3}\.){3}[0-9]{1,3}")
_MOBILE_UA_RE = re.compile(r"Android|webOS|iPhone|iPad|iPod|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE)


def get_network_prefix(ip: str) -> str:
	"""Reduce an IPv4 address to its grouping prefix.

	Private addresses keep three octets, public ones only two since exact
	public addresses say little about who shares a network.
	"""
	parts = ip.split(".")
	if len(parts) != 4:
		return ip
	if ip.startswith(_PRIVATE_PREFIXES):
		return f"{parts[0]}.{parts[1]}.{parts[2]}.x"
	return f"{parts[0]}.{parts[1]}.x.x"


def generate_group_name(network_identity: str) -> str:
	if network_identity.startswith("192.168."):
		return f"Home Network ({network_identity})"
	if network_identity.startswith("10."):
		return f"Office Network ({network_identity})"
	if network_identity.startswith("172."):
		return f"Corporate Network ({network_identity})"
	if network_identity == MOBILE_NETWORK:
		return "Mobile Network"
	if network_identity == UNKNOWN_NETWORK:
		return "Unknown Network"
	return f"Public Network ({network_identity})"


def is_fallback_identity(network_identity: str) -> bool:
	return network_identity in (MOBILE_NETWORK, UNKNOWN_NETWORK)


def extract_ip_from_candidate(candidate: str) -> Optional[str]:
	m = _IPV4_RE.search(candidate or "")
	return m.group(0) if m else None


def _usable_probe_ip(ip: Optional[str]) -> bool:
	if not ip:
		return False
	# 0.x shows up for mDNS-obfuscated and unbound candidates.
	return not ip.startswith(("0.", "127.", "169.254."))


def candidate_ips_from_sdp(sdp: str) -> list[str]:
	"""Usable IPv4 addresses from the `a=candidate` lines of an SDP blob."""
	ips: list[str] = []
	for line in (sdp or "").splitlines():
		line = line.strip()
		if not line.startswith("a=candidate:"):
			continue
		# candidate:<foundation> <component> <transport> <priority> <address> <port> typ ...
		fields = line.split()
		address = fields[4] if len(fields) > 4 else ""
		if ":" in address:
			continue
		ip = extract_ip_from_candidate(address)
		if _usable_probe_ip(ip) and ip not in ips:
			ips.append(ip)  # type: ignore[arg-type]
	return ips


def is_mobile_user_agent(user_agent: Optional[str]) -> bool:
	return bool(user_agent) and _MOBILE_UA_RE.search(user_agent or "") is not None


def _platform_is_mobile() -> bool:
	return sys.platform in ("android", "ios")


class NetworkLocator:
	def __init__(
		self,
		*,
		stun_urls: Sequence[str] = DEFAULT_STUN_URLS,
		ip_echo_url: str = DEFAULT_IP_ECHO_URL,
		probe_timeout: float = 3.0,
		mobile_lookup_timeout: float = 2.0,
		lookup_timeout: float = 10.0,
		user_agent: Optional[str] = None,
		is_mobile: Optional[bool] = None,
	):
		self.stun_urls = list(stun_urls)
		self.ip_echo_url = ip_echo_url
		self.probe_timeout = float(probe_timeout)
		self.mobile_lookup_timeout = float(mobile_lookup_timeout)
		self.lookup_timeout = float(lookup_timeout)
		if is_mobile is None:
			is_mobile = is_mobile_user_agent(user_agent) if user_agent else _platform_is_mobile()
		self.is_mobile = bool(is_mobile)

		# Probes that outlived their timeout; kept referenced until they finish.
		self._stray: set[asyncio.Future] = set()

	async def detect(self) -> str:
		logger.info("network detect start mobile=%s", self.is_mobile)
		try:
			ip = await self._bounded_probe()
		except Exception:
			logger.debug("network probe failed", exc_info=True)
			ip = None

		if ip:
			identity = get_network_prefix(ip)
			logger.info("network detect via ice ip=%s identity=%s", ip, identity)
			return identity

		identity = await self._fallback()
		logger.info("network detect via fallback identity=%s", identity)
		return identity

	async def _bounded_probe(self) -> Optional[str]:
		task = asyncio.ensure_future(self.probe_local_ip())
		done, _ = await asyncio.wait({task}, timeout=self.probe_timeout)
		if task in done:
			return task.result()

		logger.info("network ice probe timeout after %ss", self.probe_timeout)
		self._stray.add(task)
		task.add_done_callback(self._discard_stray)
		return None

	def _discard_stray(self, task: asyncio.Future) -> None:
		self._stray.discard(task)
		if not task.cancelled() and task.exception() is not None:
			logger.debug("network late probe failed: %s", task.exception())

	async def probe_local_ip(self) -> Optional[str]:
		"""Gather ICE candidates on a throwaway connection and pick an address.

		Nothing is sent to a remote peer; setting the local description is
		enough for aiortc to gather host and server-reflexive candidates.
		"""
		servers = [RTCIceServer(urls=url) for url in self.stun_urls]
		pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
		try:
			pc.createDataChannel("probe")
			offer = await pc.createOffer()
			await pc.setLocalDescription(offer)
			sdp = pc.localDescription.sdp if pc.localDescription else ""
			ips = candidate_ips_from_sdp(sdp)
			logger.debug("network ice probe candidates=%s", ips)
			return ips[0] if ips else None
		finally:
			await pc.close()

	async def lookup_external_ip(self, timeout: Optional[float] = None) -> str:
		"""Ask the IP-echo endpoint for our public address. Raises on failure."""
		client_timeout = aiohttp.ClientTimeout(total=timeout if timeout is not None else self.lookup_timeout)
		async with aiohttp.ClientSession(timeout=client_timeout) as session:
			async with session.get(self.ip_echo_url) as resp:
				resp.raise_for_status()
				payload = await resp.json(content_type=None)
		ip = payload.get("ip") if isinstance(payload, dict) else None
		if not isinstance(ip, str) or not ip:
			raise ValueError(f"ip echo response without ip: {payload!r}")
		logger.debug("network external ip=%s", ip)
		return ip

	async def _fallback(self) -> str:
		if self.is_mobile:
			try:
				ip = await self.lookup_external_ip(timeout=self.mobile_lookup_timeout)
			except Exception as e:
				logger.info("network external ip lookup failed (mobile): %s", str(e) or type(e).__name__)
				return MOBILE_NETWORK
			return get_network_prefix(ip)

		try:
			ip = await self.lookup_external_ip()
		except Exception as e:
			logger.warning("network external ip lookup failed: %s", str(e) or type(e).__name__)
			return UNKNOWN_NETWORK
		return get_network_prefix(ip)
