from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace

from .config import SessionConfig
from .logging_config import setup_logging


logger = logging.getLogger(__name__)


def build_parser(defaults: SessionConfig) -> argparse.ArgumentParser:
	parser = argparse.ArgumentParser(description="groupcall headless client")
	parser.add_argument(
		"--log-level",
		default=None,
		help="Logging level (debug, info, warning, error). Can also use GROUPCALL_LOG_LEVEL.",
	)
	parser.add_argument("--server-url", default=defaults.server_url, help="WebSocket signaling URL")
	parser.add_argument("--room", default=defaults.room, help="Room to join")
	parser.add_argument("--name", default=defaults.name, help="Display name")
	parser.add_argument(
		"--ip-echo-url",
		default=defaults.ip_echo_url,
		help="IP echo endpoint used when the ICE probe finds no address",
	)
	parser.add_argument("--user-agent", default=defaults.user_agent, help="User agent used for mobile detection")
	parser.add_argument(
		"--no-video",
		dest="video",
		action="store_false",
		default=defaults.video,
		help="Do not open the camera",
	)
	parser.add_argument(
		"--no-audio-levels",
		dest="audio_levels",
		action="store_false",
		default=defaults.audio_levels,
		help="Disable loudest-speaker detection",
	)
	parser.add_argument(
		"--detect-only",
		action="store_true",
		help="Print the detected network identity and its group label, then exit",
	)
	return parser


async def _detect_only(cfg: SessionConfig) -> int:
	from .net.locator import NetworkLocator, generate_group_name

	locator = NetworkLocator(
		stun_urls=cfg.stun_urls,
		ip_echo_url=cfg.ip_echo_url,
		probe_timeout=cfg.probe_timeout,
		mobile_lookup_timeout=cfg.mobile_lookup_timeout,
		lookup_timeout=cfg.lookup_timeout,
		user_agent=cfg.user_agent,
	)
	identity = await locator.detect()
	print(f"{identity}\t{generate_group_name(identity)}")
	return 0


async def _run(cfg: SessionConfig) -> int:
	from .session import CallSession

	session = CallSession(cfg)
	try:
		await session.start()
		await asyncio.Event().wait()
	finally:
		await session.shutdown()
	return 0


def main(argv: list[str] | None = None) -> int:
	defaults = SessionConfig.from_env()
	args = build_parser(defaults).parse_args(argv)

	setup_logging(args.log_level)

	cfg = replace(
		defaults,
		server_url=args.server_url,
		room=args.room,
		name=args.name,
		ip_echo_url=args.ip_echo_url,
		user_agent=args.user_agent,
		video=args.video,
		audio_levels=args.audio_levels,
	)

	try:
		if args.detect_only:
			return asyncio.run(_detect_only(cfg))
		return asyncio.run(_run(cfg))
	except KeyboardInterrupt:
		logger.info("interrupted")
		return 130


if __name__ == "__main__":
	raise SystemExit(main(sys.argv[1:]))
