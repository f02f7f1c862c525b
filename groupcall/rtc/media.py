"""Media helpers for aiortc.

- A `MediaStream` handle grouping the audio/video tracks of one participant.
- Local camera/microphone capture (best-effort per platform).
- A best-effort sink for remote media (playback if possible, else discard).
"""

from __future__ import annotations

import logging
import sys
from dataclasses import dataclass, field
from typing import Any, Optional, Tuple

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder, MediaRelay


logger = logging.getLogger(__name__)


@dataclass
class MediaStream:
	"""Reference to the live tracks of one participant.

	Tracks are not owned: their lifetime belongs to whoever produced them
	(the local player or the peer connection).
	"""

	id: str
	audio: Optional[MediaStreamTrack] = None
	video: Optional[MediaStreamTrack] = None

	def get_audio_tracks(self) -> list[MediaStreamTrack]:
		return [self.audio] if self.audio is not None else []

	def get_video_tracks(self) -> list[MediaStreamTrack]:
		return [self.video] if self.video is not None else []

	def get_tracks(self) -> list[MediaStreamTrack]:
		return self.get_audio_tracks() + self.get_video_tracks()


def _is_windows() -> bool:
	return sys.platform.startswith("win")


def _audio_capture_candidates() -> list[Tuple[str, str]]:
	if _is_windows():
		return [("audio=default", "dshow")]
	if sys.platform == "darwin":
		return [("none:default", "avfoundation")]
	# PulseAudio is typical on desktop Linux, ALSA as fallback.
	return [("default", "pulse"), ("default", "alsa")]


def _video_capture_candidates() -> list[Tuple[str, str, dict]]:
	options = {"framerate": "30", "video_size": "640x480"}
	if _is_windows():
		return [("video=Integrated Camera", "dshow", options)]
	if sys.platform == "darwin":
		return [("default:none", "avfoundation", options)]
	return [("/dev/video0", "v4l2", options)]


def _try_create_player(candidates: list[Tuple[str, str, dict]]) -> Tuple[Optional[MediaPlayer], Optional[str]]:
	for device, fmt, options in candidates:
		try:
			player = MediaPlayer(device, format=fmt, options=options or None)
			return player, fmt
		except Exception as e:
			logger.debug("media player unavailable device=%s format=%s: %s", device, fmt, e)
	return None, None


@dataclass
class LocalMedia:
	"""Owns the capture players so their tracks stay alive."""

	audio_player: Optional[MediaPlayer] = None
	video_player: Optional[MediaPlayer] = None
	stream: MediaStream = field(default_factory=lambda: MediaStream(id="local"))

	@classmethod
	def create(cls, *, stream_id: str = "local", video: bool = True) -> "LocalMedia":
		audio_player, audio_backend = _try_create_player([(d, f, {}) for d, f in _audio_capture_candidates()])
		video_player, video_backend = (None, None)
		if video:
			video_player, video_backend = _try_create_player(_video_capture_candidates())

		stream = MediaStream(
			id=stream_id,
			audio=audio_player.audio if audio_player else None,
			video=video_player.video if video_player else None,
		)
		logger.info(
			"local media audio_backend=%s video_backend=%s audio=%s video=%s",
			audio_backend,
			video_backend,
			stream.audio is not None,
			stream.video is not None,
		)
		return cls(audio_player=audio_player, video_player=video_player, stream=stream)

	def close(self) -> None:
		"""Best-effort stop for the underlying ffmpeg processes."""
		for track in self.stream.get_tracks():
			try:
				track.stop()
			except Exception as e:
				logger.debug("local media track stop failed: %s", e)
		self.stream = MediaStream(id=self.stream.id)
		self.audio_player = None
		self.video_player = None


def _create_audio_recorder() -> Tuple[Any, str]:
	for device, fmt in (("default", "pulse"), ("default", "alsa")):
		try:
			return MediaRecorder(device, format=fmt), f"{fmt}:{device}"
		except Exception:
			continue
	return MediaBlackhole(), "blackhole"


@dataclass
class RemoteMediaSink:
	"""Consumes the tracks of one remote participant.

	Audio goes to the default output when ffmpeg supports it, else it is
	discarded; video is drained so the connection keeps decoding. Tracks are
	read through the shared relay so the level tracker can subscribe too.
	"""

	relay: Optional[MediaRelay] = None
	play_audio: bool = True
	_recorders: list = field(default_factory=list)

	async def add_track(self, track: MediaStreamTrack) -> None:
		if track.kind == "audio" and self.play_audio:
			recorder, sink = _create_audio_recorder()
		else:
			recorder, sink = MediaBlackhole(), "blackhole"
		recorder.addTrack(self.relay.subscribe(track) if self.relay is not None else track)
		await recorder.start()
		self._recorders.append(recorder)
		logger.info("remote media sink=%s kind=%s", sink, track.kind)

	async def stop(self) -> None:
		recorders, self._recorders = self._recorders, []
		for recorder in recorders:
			try:
				await recorder.stop()
			except Exception as e:
				logger.debug("remote media sink stop failed: %s", e)
