"""groupcall: multi-party WebRTC calls grouped by local network."""

__version__ = "0.1.0"
