"""Shared fixtures for groupcall tests."""

import asyncio

import av
import numpy as np
import pytest
from aiortc import MediaStreamTrack
from aiortc.mediastreams import MediaStreamError

from groupcall.rtc.media import MediaStream


class FakeClock:
    """Manually advanced replacement for time.monotonic."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class SilentTrack(MediaStreamTrack):
    """Audio track that never delivers a frame."""

    kind = "audio"

    async def recv(self):  # type: ignore[override]
        await asyncio.sleep(3600)


class StillVideoTrack(MediaStreamTrack):
    kind = "video"

    async def recv(self):  # type: ignore[override]
        await asyncio.sleep(3600)


class FrameTrack(MediaStreamTrack):
    """Audio track that delivers the given frames, then ends or idles."""

    kind = "audio"

    def __init__(self, frames: list, *, end: bool = False) -> None:
        super().__init__()
        self._frames = list(frames)
        self._end = end

    async def recv(self):  # type: ignore[override]
        if self._frames:
            await asyncio.sleep(0.001)
            return self._frames.pop(0)
        if self._end:
            raise MediaStreamError
        await asyncio.sleep(3600)


def stereo_s16_frame(mono: np.ndarray) -> av.AudioFrame:
    """Interleaved stereo s16 frame with both channels equal to `mono`."""
    interleaved = np.repeat(mono.astype(np.int16), 2).reshape(1, -1)
    return make_audio_frame(interleaved, layout="stereo", fmt="s16")


def make_audio_frame(samples: np.ndarray, *, layout: str = "mono", fmt: str = "s16") -> av.AudioFrame:
    frame = av.AudioFrame.from_ndarray(samples, format=fmt, layout=layout)
    frame.sample_rate = 48000
    return frame


def sine_wave(freq: float = 1000.0, amplitude: float = 0.5, n: int = 960, rate: int = 48000) -> np.ndarray:
    t = np.arange(n) / rate
    return (amplitude * 32767 * np.sin(2 * np.pi * freq * t)).astype(np.int16)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def audio_stream() -> MediaStream:
    return MediaStream(id="s-audio", audio=SilentTrack())


@pytest.fixture
def video_only_stream() -> MediaStream:
    return MediaStream(id="s-video", video=StillVideoTrack())
