"""
Shared pytest fixtures.

Provides fake audio streams, audio segments and an isolated config directory
so tests never touch real hardware or the user's settings.
"""

from unittest.mock import patch

import numpy as np
import pytest

from apexflow.core.audio.types import AudioSegment
from apexflow.core.settings import Settings


class FakeInputStream:
    """Stands in for sounddevice.InputStream; tests drive the callbacks."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.started = False
        self.closed = False

    def start(self):
        self.started = True

    def stop(self):
        self.started = False

    def close(self):
        self.closed = True

    def feed(self, block: np.ndarray):
        self.kwargs["callback"](block, len(block), None, None)

    def finish(self):
        self.kwargs["finished_callback"]()


@pytest.fixture
def stream_factory():
    """Factory recording every FakeInputStream it creates in ``.streams``."""

    def factory(**kwargs):
        stream = FakeInputStream(**kwargs)
        factory.streams.append(stream)
        return stream

    factory.streams = []
    return factory


@pytest.fixture
def make_segment():
    def _make(seconds=0.5, sample_rate=16000, sequence=1, amplitude=0.1):
        frames = int(seconds * sample_rate)
        samples = np.full((frames, 1), amplitude, dtype=np.float32)
        return AudioSegment(
            samples=samples, sample_rate=sample_rate, channels=1, sequence=sequence
        )

    return _make


@pytest.fixture
def config_dir(tmp_path):
    directory = tmp_path / "config"
    directory.mkdir()
    with patch(
        "apexflow.core.settings.settings.get_config_dir",
        return_value=directory,
    ):
        yield directory


@pytest.fixture
def settings():
    return Settings(
        enhancements=[{"id": "clean-up", "title": "Clean Up", "prompt": "Fix it."}],
        cancel_grace_period=1.0,
    )
