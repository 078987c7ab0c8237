"""
Energy-based voice activity detection.

Blocks are classified as speech or silence by RMS energy. A segment opens on
the first speech block (with a short pre-roll of preceding audio) and closes
once trailing silence exceeds the configured threshold.
"""

from collections import deque
from typing import Deque, List, Optional

import numpy as np

from ...utils.logger import get_logger

logger = get_logger(__name__)


SILENCE_THRESHOLD = 0.02
TRAILING_SILENCE_SECONDS = 1.0
MIN_SPEECH_SECONDS = 0.2
PRE_ROLL_SECONDS = 0.3


def block_rms(block: np.ndarray) -> float:
    if block.size == 0:
        return 0.0
    mono = block.mean(axis=1) if block.ndim > 1 else block
    return float(np.sqrt(np.mean(np.square(mono, dtype=np.float64))))


class VoiceActivityDetector:

    def __init__(
        self,
        sample_rate: int,
        silence_threshold: float = SILENCE_THRESHOLD,
        trailing_silence: float = TRAILING_SILENCE_SECONDS,
        min_speech: float = MIN_SPEECH_SECONDS,
        pre_roll: float = PRE_ROLL_SECONDS,
    ):
        self.sample_rate = sample_rate
        self.silence_threshold = silence_threshold
        self.trailing_silence_samples = int(trailing_silence * sample_rate)
        self.min_speech_samples = int(min_speech * sample_rate)
        self.pre_roll_samples = int(pre_roll * sample_rate)

        self._pre_roll: Deque[np.ndarray] = deque()
        self._pre_roll_len = 0
        self._active: List[np.ndarray] = []
        self._speech_samples = 0
        self._silence_run = 0

    @property
    def in_speech(self) -> bool:
        return bool(self._active)

    def is_speech(self, block: np.ndarray) -> bool:
        return block_rms(block) >= self.silence_threshold

    def process(self, block: np.ndarray) -> Optional[np.ndarray]:
        """Feed one block; returns the closed segment's samples, if any."""
        speech = self.is_speech(block)

        if not self._active:
            if not speech:
                self._remember(block)
                return None
            self._active = list(self._pre_roll)
            self._pre_roll.clear()
            self._pre_roll_len = 0

        self._active.append(block)
        frames = len(block)

        if speech:
            self._speech_samples += frames
            self._silence_run = 0
            return None

        self._silence_run += frames
        if self._silence_run < self.trailing_silence_samples:
            return None

        return self._close()

    def flush(self) -> Optional[np.ndarray]:
        """Close whatever is buffered; used on explicit stop."""
        if not self._active:
            self._pre_roll.clear()
            self._pre_roll_len = 0
            return None
        return self._close()

    def reset(self) -> None:
        self._pre_roll.clear()
        self._pre_roll_len = 0
        self._active = []
        self._speech_samples = 0
        self._silence_run = 0

    def _remember(self, block: np.ndarray) -> None:
        self._pre_roll.append(block)
        self._pre_roll_len += len(block)
        while self._pre_roll and self._pre_roll_len - len(self._pre_roll[0]) >= self.pre_roll_samples:
            self._pre_roll_len -= len(self._pre_roll.popleft())

    def _close(self) -> Optional[np.ndarray]:
        blocks = self._active
        speech_samples = self._speech_samples
        self.reset()

        if speech_samples < self.min_speech_samples:
            logger.debug(
                f"Discarding {speech_samples / self.sample_rate:.2f}s blip below minimum speech length"
            )
            return None

        return np.concatenate(blocks, axis=0)
