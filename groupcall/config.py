"""Session configuration.

Defaults can be overridden with GROUPCALL_* environment variables, and the
CLI overrides those.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from .net.locator import DEFAULT_IP_ECHO_URL, DEFAULT_STUN_URLS


ENV_PREFIX = "GROUPCALL_"


def _env(name: str) -> Optional[str]:
    return os.environ.get(ENV_PREFIX + name)


def _env_str(name: str, default: str) -> str:
    v = _env(name)
    return v if v is not None and v.strip() else default


def _env_float(name: str, default: float) -> float:
    v = _env(name)
    if v is None:
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_truthy(name: str, default: bool) -> bool:
    v = _env(name)
    if v is None:
        return default
    return v.strip().casefold() in {"1", "true", "yes", "on"}


def _env_list(name: str, default: tuple[str, ...]) -> list[str]:
    v = _env(name)
    if v is None:
        return list(default)
    return [item.strip() for item in v.split(",") if item.strip()]


@dataclass
class SessionConfig:
    server_url: str = "ws://127.0.0.1:8765/ws"
    room: str = "default"
    name: str = ""

    stun_urls: list[str] = field(default_factory=lambda: list(DEFAULT_STUN_URLS))
    ip_echo_url: str = DEFAULT_IP_ECHO_URL
    probe_timeout: float = 3.0
    mobile_lookup_timeout: float = 2.0
    lookup_timeout: float = 10.0
    user_agent: Optional[str] = None

    stale_after: float = 30.0
    cleanup_interval: float = 30.0
    sample_interval: float = 0.2
    speaking_threshold: float = 0.01
    keepalive_interval: float = 5.0
    report_interval: float = 5.0

    video: bool = True
    audio_levels: bool = True
    play_audio: bool = True

    @classmethod
    def from_env(cls) -> "SessionConfig":
        d = cls()
        return cls(
            server_url=_env_str("SERVER_URL", d.server_url),
            room=_env_str("ROOM", d.room),
            name=_env_str("NAME", os.environ.get("USER", d.name)),
            stun_urls=_env_list("STUN_URLS", DEFAULT_STUN_URLS),
            ip_echo_url=_env_str("IP_ECHO_URL", d.ip_echo_url),
            probe_timeout=_env_float("PROBE_TIMEOUT", d.probe_timeout),
            mobile_lookup_timeout=_env_float("MOBILE_LOOKUP_TIMEOUT", d.mobile_lookup_timeout),
            lookup_timeout=_env_float("LOOKUP_TIMEOUT", d.lookup_timeout),
            user_agent=_env("USER_AGENT") or None,
            stale_after=_env_float("STALE_AFTER", d.stale_after),
            cleanup_interval=_env_float("CLEANUP_INTERVAL", d.cleanup_interval),
            sample_interval=_env_float("SAMPLE_INTERVAL", d.sample_interval),
            speaking_threshold=_env_float("SPEAKING_THRESHOLD", d.speaking_threshold),
            keepalive_interval=_env_float("KEEPALIVE_INTERVAL", d.keepalive_interval),
            report_interval=_env_float("REPORT_INTERVAL", d.report_interval),
            video=_env_truthy("VIDEO", d.video),
            audio_levels=_env_truthy("AUDIO_LEVELS", d.audio_levels),
            play_audio=_env_truthy("PLAY_AUDIO", d.play_audio),
        )
