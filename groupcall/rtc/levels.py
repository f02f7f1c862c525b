"""Per-stream audio levels and "who is speaking" detection.

Every tracked stream gets an analysis handle that reads each decoded audio
frame and keeps an 8-bit frequency magnitude buffer, the same shape a
browser analyser node produces. The volume of a stream is the RMS of that
buffer scaled to [0, 1]. A shared sampling task publishes recency-weighted
smoothed volumes every `sample_interval` seconds.
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

import av
import numpy as np
from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaRelay
from aiortc.mediastreams import MediaStreamError

from .media import MediaStream


logger = logging.getLogger(__name__)


SPEAKING_THRESHOLD = 0.01
HISTORY_SIZE = 5
SAMPLE_INTERVAL_SEC = 0.2


def get_volume_threshold() -> float:
	return SPEAKING_THRESHOLD


def _finite_volume(value: Any) -> float:
	"""Coerce a volume to a float in [0, 1]; NaN and garbage become 0."""
	try:
		v = float(value)
	except (TypeError, ValueError):
		return 0.0
	if not math.isfinite(v) or v <= 0.0:
		return 0.0
	return min(v, 1.0)


def rms_volume(bins: Any) -> float:
	"""RMS of 8-bit magnitude bins, normalized to [0, 1]."""
	arr = np.asarray(bins, dtype=np.float64)
	if arr.size == 0:
		return 0.0
	return _finite_volume(math.sqrt(float(np.mean(arr * arr))) / 255.0)


def frame_to_mono(frame: av.AudioFrame) -> np.ndarray:
	"""Decode an audio frame to mono float samples in [-1, 1]."""
	raw = frame.to_ndarray()
	# Scale from the integer dtype before mixdown turns it into float.
	if np.issubdtype(raw.dtype, np.integer):
		arr = raw.astype(np.float64) / (float(np.iinfo(raw.dtype).max) + 1.0)
	else:
		arr = raw.astype(np.float64, copy=False)

	channels = max(1, len(frame.layout.channels))
	if channels == 1:
		return arr.reshape(-1)
	if frame.format.is_planar:
		return arr.reshape(channels, -1).mean(axis=0)
	return arr.reshape(-1, channels).mean(axis=1)


@dataclass
class StreamVolume:
	stream_id: str
	volume: float
	smoothed_volume: float


class VolumeSmoothing:
	"""Recency-weighted moving average over the last few samples per stream.

	The i-th stored sample (oldest first) has weight i + 1.
	"""

	def __init__(self, history_size: int = HISTORY_SIZE):
		self.history_size = int(history_size)
		self._history: Dict[str, Deque[float]] = {}

	def add_sample(self, stream_id: str, volume: float) -> None:
		samples = self._history.get(stream_id)
		if samples is None:
			samples = deque(maxlen=self.history_size)
			self._history[stream_id] = samples
		samples.append(_finite_volume(volume))

	def get_smoothed_volume(self, stream_id: str) -> float:
		samples = self._history.get(stream_id)
		if not samples:
			return 0.0
		weighted_sum = 0.0
		total_weight = 0
		for index, sample in enumerate(samples):
			weight = index + 1
			weighted_sum += sample * weight
			total_weight += weight
		return _finite_volume(weighted_sum / total_weight)

	def get_history(self, stream_id: str) -> list[float]:
		return list(self._history.get(stream_id, ()))

	def remove(self, stream_id: str) -> None:
		self._history.pop(stream_id, None)

	def clear(self) -> None:
		self._history.clear()


class AudioAnalyser:
	"""Reads one audio track and reports a volume for every frame.

	Frequency data follows the browser analyser node: Blackman window over
	the last `fft_size` samples, magnitudes smoothed over time and mapped
	from [min_decibels, max_decibels] onto 0..255.
	"""

	def __init__(
		self,
		stream_id: str,
		track: Optional[MediaStreamTrack],
		on_volume: Callable[[str, float], None],
		*,
		fft_size: int = 256,
		smoothing_time_constant: float = 0.3,
		min_decibels: float = -100.0,
		max_decibels: float = -30.0,
	):
		self.stream_id = stream_id
		self._track = track
		self._on_volume = on_volume
		self.fft_size = int(fft_size)
		self.smoothing_time_constant = float(smoothing_time_constant)
		self.min_decibels = float(min_decibels)
		self.max_decibels = float(max_decibels)

		self._window = np.blackman(self.fft_size)
		self._samples = np.zeros(self.fft_size, dtype=np.float64)
		self._magnitudes = np.zeros(self.fft_size // 2, dtype=np.float64)
		self._task: Optional[asyncio.Task[None]] = None

	@property
	def frequency_bin_count(self) -> int:
		return self.fft_size // 2

	def start(self) -> None:
		if self._track is None or self._task is not None:
			return
		loop = asyncio.get_running_loop()
		self._task = loop.create_task(self._run(), name=f"audio-analyser-{self.stream_id}")

	def stop(self) -> None:
		if self._task is not None:
			self._task.cancel()
			self._task = None
		if self._track is not None:
			try:
				self._track.stop()
			except Exception as e:
				logger.debug("audio analyser track stop failed stream=%s: %s", self.stream_id, e)

	async def _run(self) -> None:
		assert self._track is not None
		track = self._track
		try:
			while True:
				frame = await track.recv()
				self.process_frame(frame)
		except asyncio.CancelledError:
			return
		except MediaStreamError:
			logger.debug("audio analyser track ended stream=%s", self.stream_id)
		except Exception:
			logger.exception("audio analyser crashed stream=%s", self.stream_id)
		# An ended track must not keep reporting its last level.
		self._on_volume(self.stream_id, 0.0)

	def process_frame(self, frame: Any) -> Optional[float]:
		if not isinstance(frame, av.AudioFrame):
			return None
		try:
			samples = frame_to_mono(frame)
		except Exception as e:
			logger.debug("audio analyser decode failed stream=%s: %s", self.stream_id, e)
			return None
		self.push_samples(samples)
		volume = rms_volume(self.byte_frequency_data())
		self._on_volume(self.stream_id, volume)
		return volume

	def push_samples(self, samples: np.ndarray) -> None:
		samples = np.asarray(samples, dtype=np.float64).reshape(-1)
		n = self.fft_size
		if samples.size >= n:
			self._samples = samples[-n:].copy()
		elif samples.size:
			self._samples = np.concatenate((self._samples[samples.size:], samples))

	def byte_frequency_data(self) -> np.ndarray:
		spectrum = np.fft.rfft(self._samples * self._window)[: self.frequency_bin_count]
		magnitudes = np.abs(spectrum) / self.fft_size
		tau = self.smoothing_time_constant
		self._magnitudes = tau * self._magnitudes + (1.0 - tau) * magnitudes
		with np.errstate(divide="ignore"):
			decibels = 20.0 * np.log10(self._magnitudes)
		scaled = (decibels - self.min_decibels) * (255.0 / (self.max_decibels - self.min_decibels))
		scaled = np.nan_to_num(scaled, nan=0.0, neginf=0.0, posinf=255.0)
		return np.clip(np.floor(scaled), 0, 255).astype(np.uint8)


class AudioLevelTracker:
	"""Live volume estimates for every stream of interest.

	Instantaneous volumes update on every decoded frame. Smoothed volumes
	and the "loudest" decision update on the sampling tick. When disabled,
	or when the relay cannot be built, the tracker silently does nothing.
	"""

	def __init__(
		self,
		*,
		relay: Optional[MediaRelay] = None,
		enabled: bool = True,
		sample_interval: float = SAMPLE_INTERVAL_SEC,
		threshold: float = SPEAKING_THRESHOLD,
		history_size: int = HISTORY_SIZE,
		fft_size: int = 256,
		on_tick: Optional[Callable[[list[StreamVolume]], None]] = None,
	):
		self.sample_interval = float(sample_interval)
		self.threshold = float(threshold)
		self.fft_size = int(fft_size)
		self.on_tick = on_tick

		self._relay: Optional[MediaRelay] = None
		if enabled:
			try:
				self._relay = relay if relay is not None else MediaRelay()
			except Exception as e:
				logger.warning("audio levels unavailable: %s", e)
		self._destroyed = False

		self._analysers: Dict[str, AudioAnalyser] = {}
		self._volumes: Dict[str, float] = {}
		self._smoothing = VolumeSmoothing(history_size)
		self._published: list[StreamVolume] = []
		self._loudest_id: Optional[str] = None
		self._task: Optional[asyncio.Task[None]] = None

	@property
	def available(self) -> bool:
		return self._relay is not None and not self._destroyed

	@property
	def is_analyzing(self) -> bool:
		return self._task is not None and not self._task.done()

	@property
	def stream_ids(self) -> list[str]:
		return list(self._analysers.keys())

	@property
	def loudest_stream_id(self) -> Optional[str]:
		"""Loudest stream by smoothed volume as of the last tick."""
		return self._loudest_id

	def add_stream(self, stream_id: str, stream: Any) -> None:
		if not self.available:
			return
		if isinstance(stream, MediaStreamTrack):
			tracks = [stream]
		elif isinstance(stream, MediaStream):
			tracks = stream.get_audio_tracks()
		else:
			tracks = []
		audio = tracks[0] if tracks else None
		if audio is None or audio.kind != "audio":
			logger.debug("audio levels skip stream without audio stream=%s", stream_id)
			return

		assert self._relay is not None
		analyser = AudioAnalyser(stream_id, self._relay.subscribe(audio), self.update_volume, fft_size=self.fft_size)
		try:
			analyser.start()
		except Exception as e:
			analyser.stop()
			logger.warning("audio levels cannot analyse stream=%s: %s", stream_id, e)
			return

		previous = self._analysers.get(stream_id)
		if previous is not None:
			previous.stop()
		self._analysers[stream_id] = analyser
		self._volumes.setdefault(stream_id, 0.0)
		logger.info("audio levels tracking stream=%s rebind=%s", stream_id, previous is not None)
		self._ensure_sampling()

	def remove_stream(self, stream_id: str) -> None:
		analyser = self._analysers.pop(stream_id, None)
		if analyser is not None:
			analyser.stop()
			logger.info("audio levels untracked stream=%s", stream_id)
		self._volumes.pop(stream_id, None)
		self._smoothing.remove(stream_id)
		self._published = [v for v in self._published if v.stream_id != stream_id]
		if self._loudest_id == stream_id:
			self._loudest_id = None
		if not self._analysers:
			self._stop_sampling()

	def update_volume(self, stream_id: str, volume: float) -> None:
		if stream_id in self._analysers:
			self._volumes[stream_id] = _finite_volume(volume)

	def get_volume(self, stream_id: str) -> float:
		return self._volumes.get(stream_id, 0.0)

	def get_all_volumes(self) -> Dict[str, float]:
		return dict(self._volumes)

	def get_loudest_stream(self) -> Optional[Tuple[str, float]]:
		"""Stream with the highest instantaneous volume, or None if nobody speaks."""
		loudest_id: Optional[str] = None
		loudest_volume = 0.0
		for stream_id, volume in self._volumes.items():
			if volume > loudest_volume:
				loudest_id, loudest_volume = stream_id, volume
		if loudest_id is None or loudest_volume <= self.threshold:
			return None
		return loudest_id, loudest_volume

	def get_volumes(self) -> list[StreamVolume]:
		return list(self._published)

	def get_stream_volume(self, stream_id: str) -> Optional[StreamVolume]:
		for v in self._published:
			if v.stream_id == stream_id:
				return v
		return None

	def get_top_loudest_streams(self, count: int = 3) -> list[StreamVolume]:
		speaking = [v for v in self._published if v.smoothed_volume > self.threshold]
		speaking.sort(key=lambda v: v.smoothed_volume, reverse=True)
		return speaking[: max(0, count)]

	def sample(self) -> list[StreamVolume]:
		"""Run one smoothing tick and publish the result."""
		published: list[StreamVolume] = []
		loudest_id: Optional[str] = None
		loudest = 0.0
		for stream_id, volume in self._volumes.items():
			self._smoothing.add_sample(stream_id, volume)
			smoothed = self._smoothing.get_smoothed_volume(stream_id)
			published.append(StreamVolume(stream_id=stream_id, volume=volume, smoothed_volume=smoothed))
			if smoothed > loudest and smoothed > self.threshold:
				loudest_id, loudest = stream_id, smoothed

		self._published = published
		self._loudest_id = loudest_id

		if self.on_tick is not None:
			try:
				self.on_tick(list(published))
			except Exception:
				logger.exception("audio levels tick callback failed")
		return published

	def destroy(self) -> None:
		if self._destroyed:
			return
		self._destroyed = True
		self._stop_sampling()
		for analyser in self._analysers.values():
			analyser.stop()
		self._analysers.clear()
		self._volumes.clear()
		self._smoothing.clear()
		self._published = []
		self._loudest_id = None
		logger.debug("audio levels destroyed")

	def _ensure_sampling(self) -> None:
		if self.is_analyzing:
			return
		try:
			loop = asyncio.get_running_loop()
		except RuntimeError:
			logger.debug("audio levels no running loop; sampling is manual")
			return
		self._task = loop.create_task(self._sampling_loop(), name="audio-levels-sampling")

	def _stop_sampling(self) -> None:
		if self._task is not None:
			self._task.cancel()
			self._task = None

	async def _sampling_loop(self) -> None:
		try:
			while True:
				await asyncio.sleep(self.sample_interval)
				self.sample()
		except asyncio.CancelledError:
			pass
