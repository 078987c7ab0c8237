import io
import time
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
import scipy.io.wavfile as wav


@dataclass
class AudioDevice:
    name: str
    index: int
    channels: int
    default_sample_rate: float


@dataclass(frozen=True, eq=False)
class AudioSegment:
    """
    A contiguous run of captured PCM audio.

    Samples are float32 in [-1.0, 1.0] shaped (frames, channels). The array is
    made read-only on construction; segments never change after capture.
    """

    samples: np.ndarray
    sample_rate: int
    channels: int
    sequence: int
    started_at: float = field(default_factory=time.time)

    def __post_init__(self):
        data = np.asarray(self.samples, dtype=np.float32)
        if data.ndim == 1:
            data = data.reshape(-1, 1)
        if data.flags.writeable:
            data = data.copy()
            data.flags.writeable = False
        object.__setattr__(self, "samples", data)

    @property
    def frame_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def duration(self) -> float:
        if self.sample_rate <= 0:
            return 0.0
        return self.frame_count / self.sample_rate

    @property
    def is_empty(self) -> bool:
        return self.frame_count == 0

    def mono(self) -> np.ndarray:
        if self.samples.shape[1] == 1:
            return self.samples[:, 0]
        return self.samples.mean(axis=1)

    def to_pcm16(self) -> np.ndarray:
        clipped = np.clip(self.mono(), -1.0, 1.0)
        return (clipped * 32767).astype(np.int16)

    def to_pcm16_bytes(self) -> bytes:
        return self.to_pcm16().tobytes()

    def to_wav_bytes(self) -> bytes:
        buffer = io.BytesIO()
        wav.write(buffer, self.sample_rate, self.to_pcm16())
        return buffer.getvalue()


def concatenate_segments(segments: Sequence[AudioSegment]) -> AudioSegment:
    if not segments:
        raise ValueError("No segments to concatenate")

    first = segments[0]
    if len(segments) == 1:
        return first

    for segment in segments[1:]:
        if segment.sample_rate != first.sample_rate:
            raise ValueError(
                f"Sample rate mismatch: {segment.sample_rate} != {first.sample_rate}"
            )

    samples = np.concatenate([s.samples for s in segments], axis=0)
    return AudioSegment(
        samples=samples,
        sample_rate=first.sample_rate,
        channels=first.channels,
        sequence=segments[-1].sequence,
        started_at=first.started_at,
    )
