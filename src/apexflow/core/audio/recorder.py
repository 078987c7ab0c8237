import asyncio
import time
from collections import deque
from enum import Enum
from typing import Callable, Deque, List, Optional, Union

import numpy as np

from ...utils.logger import get_logger
from ..errors import DeviceLost, Overrun, PipelineError
from .types import AudioDevice, AudioSegment
from .vad import SILENCE_THRESHOLD, TRAILING_SILENCE_SECONDS, VoiceActivityDetector

try:
    import sounddevice as sd
except OSError:  # PortAudio shared library missing on this host
    sd = None

logger = get_logger(__name__)

DeviceId = Union[int, str, None]


class SegmentMode(Enum):
    VAD = "vad"
    FRAMES = "frames"


class AudioSource:
    """
    Captures microphone audio and yields AudioSegments as an async iterator.

    In VAD mode a segment closes on trailing silence or on stop(). In FRAMES
    mode every captured block is its own segment, for real-time streaming.
    Undelivered segments wait in a bounded channel; once more than
    ``max_queue_depth`` are waiting the consumer receives Overrun.

    Example:
        source = AudioSource(mode=SegmentMode.FRAMES)
        async for segment in source.start("USB Microphone"):
            ...
    """

    def __init__(
        self,
        sample_rate: int = 16000,
        channels: int = 1,
        device: DeviceId = None,
        mode: SegmentMode = SegmentMode.VAD,
        block_duration: float = 0.05,
        silence_threshold: float = SILENCE_THRESHOLD,
        trailing_silence: float = TRAILING_SILENCE_SECONDS,
        max_queue_depth: int = 50,
        stream_factory: Optional[Callable[..., object]] = None,
    ):
        self.sample_rate = sample_rate
        self.channels = channels
        self.device = device
        self.mode = mode
        self.block_duration = block_duration
        self.max_queue_depth = max_queue_depth

        self._stream_factory = stream_factory
        self._vad = VoiceActivityDetector(
            sample_rate,
            silence_threshold=silence_threshold,
            trailing_silence=trailing_silence,
        )

        self._stream = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Deque[AudioSegment] = deque()
        self._wakeup: Optional[asyncio.Event] = None
        self._error: Optional[PipelineError] = None
        self._is_recording = False
        self._stopping = False
        self._closed = True
        self._sequence = 0

    @property
    def is_recording(self) -> bool:
        return self._is_recording

    @property
    def backlog(self) -> int:
        return len(self._pending)

    def start(self, device_id: DeviceId = None) -> "AudioSource":
        if self._is_recording:
            return self

        self._loop = asyncio.get_running_loop()
        self._pending = deque()
        self._wakeup = asyncio.Event()
        self._error = None
        self._stopping = False
        self._closed = False
        self._sequence = 0
        self._vad.reset()

        factory = self._stream_factory
        if factory is None:
            if sd is None:
                self._closed = True
                raise DeviceLost("No audio backend available (PortAudio not found)")
            factory = sd.InputStream

        device = device_id if device_id is not None else self.device
        try:
            self._stream = factory(
                samplerate=float(self.sample_rate),
                channels=self.channels,
                device=self._get_device_index(device),
                blocksize=int(self.sample_rate * self.block_duration),
                dtype="float32",
                callback=self._audio_callback,
                finished_callback=self._on_stream_finished,
            )
            self._stream.start()
        except Exception as e:
            self._stream = None
            self._closed = True
            raise DeviceLost(f"Failed to start recording: {e}") from e

        self._is_recording = True
        logger.debug(
            f"Audio capture started: device={device!r}, rate={self.sample_rate}, mode={self.mode.value}"
        )
        return self

    def stop(self) -> None:
        if self._closed:
            return

        self._stopping = True
        self._is_recording = False
        self._close_stream()

        if self._error is None and self.mode is SegmentMode.VAD:
            remainder = self._vad.flush()
            if remainder is not None:
                self._deliver(remainder, time.time())

        self._closed = True
        self._signal()
        logger.debug(f"Audio capture stopped with {len(self._pending)} segment(s) pending")

    def __aiter__(self) -> "AudioSource":
        return self

    async def __anext__(self) -> AudioSegment:
        while True:
            if self._wakeup is None:
                raise StopAsyncIteration
            self._wakeup.clear()
            if self._error is not None:
                raise self._error
            if self._pending:
                return self._pending.popleft()
            if self._closed:
                raise StopAsyncIteration
            await self._wakeup.wait()

    def _audio_callback(self, indata: np.ndarray, frames: int, time_info, status) -> None:
        if not self._is_recording or self._loop is None:
            return

        if status:
            logger.debug(f"Audio callback status: {status}")

        block = indata.copy()
        captured_at = time.time()

        try:
            self._loop.call_soon_threadsafe(self._ingest, block, captured_at)
        except RuntimeError:
            pass  # loop already closed

    def _on_stream_finished(self) -> None:
        if self._stopping or self._loop is None:
            return
        try:
            self._loop.call_soon_threadsafe(
                self._fail, DeviceLost("Input stream ended unexpectedly")
            )
        except RuntimeError:
            pass

    def _ingest(self, block: np.ndarray, captured_at: float) -> None:
        if self._closed or self._error is not None:
            return

        if self.mode is SegmentMode.FRAMES:
            self._deliver(block, captured_at)
            return

        samples = self._vad.process(block)
        if samples is not None:
            self._deliver(samples, captured_at)

    def _deliver(self, samples: np.ndarray, captured_at: float) -> None:
        if len(self._pending) >= self.max_queue_depth:
            self._fail(
                Overrun(
                    f"Audio backlog exceeded {self.max_queue_depth} undelivered segments"
                )
            )
            return

        self._sequence += 1
        self._pending.append(
            AudioSegment(
                samples=samples,
                sample_rate=self.sample_rate,
                channels=self.channels,
                sequence=self._sequence,
                started_at=captured_at - len(samples) / self.sample_rate,
            )
        )
        self._signal()

    def _fail(self, error: PipelineError) -> None:
        if self._error is not None or self._closed:
            return

        logger.error(f"Audio capture failed: {error}")
        self._error = error
        self._stopping = True
        self._is_recording = False
        self._close_stream()
        self._pending.clear()
        self._closed = True
        self._signal()

    def _signal(self) -> None:
        if self._wakeup is not None:
            self._wakeup.set()

    def _close_stream(self) -> None:
        if self._stream is None:
            return
        stream = self._stream
        self._stream = None
        try:
            stream.stop()
            stream.close()
        except Exception as e:
            logger.warning(f"Error closing input stream: {e}")

    def _get_device_index(self, device: DeviceId) -> Optional[int]:
        if device is None:
            return None
        if isinstance(device, int):
            return device

        for candidate in self.list_devices():
            if candidate.name == device:
                return candidate.index

        logger.warning(f"Input device {device!r} not found, using system default")
        return None

    @staticmethod
    def list_devices() -> List[AudioDevice]:
        devices = []
        if sd is None:
            return devices

        for i, device in enumerate(sd.query_devices()):
            if device["max_input_channels"] > 0:
                devices.append(
                    AudioDevice(
                        name=device["name"],
                        index=i,
                        channels=device["max_input_channels"],
                        default_sample_rate=device["default_samplerate"],
                    )
                )

        return devices
