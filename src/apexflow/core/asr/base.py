"""
Transcription provider contract.

Two interaction patterns share one capability (transcribe):

- Batch providers take one complete AudioSegment and return a single result.
- Streaming providers connect first, then consume live frames and yield
  partial results terminated by exactly one final result.

Vendors are separate subclasses chosen from configuration by the registry.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import AsyncIterator, Optional

from ...utils.logger import get_logger
from ..audio.types import AudioSegment
from ..cancellation import CancellationToken

logger = get_logger(__name__)


class ProviderKind(Enum):
    BATCH = "batch"
    STREAMING = "streaming"


@dataclass(frozen=True)
class ProviderDescriptor:
    """Opaque endpoint description plus the resolved secret for one session."""

    provider_id: str
    model: str = ""
    endpoint: Optional[str] = None
    language: Optional[str] = None
    secret: Optional[str] = field(default=None, repr=False)
    sample_rate: int = 16000
    request_timeout: float = 30.0
    connect_timeout: float = 10.0
    idle_timeout: float = 10.0


@dataclass
class TranscriptionResult:
    text: str
    confidence: Optional[float] = None
    segment_sequence: Optional[int] = None
    provider_id: str = ""
    completed_at: float = field(default_factory=time.time)
    is_final: bool = True
    revision: int = 0
    timestamps: Optional[list] = None
    tokens: Optional[list] = None
    durations: Optional[list] = None


class TranscriptionProvider(ABC):
    kind: ProviderKind
    display_name: str = ""

    def __init__(self, descriptor: ProviderDescriptor):
        self.descriptor = descriptor

    @property
    def provider_id(self) -> str:
        return self.descriptor.provider_id

    @property
    def is_streaming(self) -> bool:
        return self.kind is ProviderKind.STREAMING

    async def aclose(self) -> None:
        """Release any connection or model held by the provider."""


class BatchTranscriptionProvider(TranscriptionProvider):
    kind = ProviderKind.BATCH

    async def submit(
        self, segment: AudioSegment, token: Optional[CancellationToken] = None
    ) -> TranscriptionResult:
        if token is not None:
            token.raise_if_cancelled()

        start_time = time.monotonic()
        result = await self._transcribe(segment)
        processing_time = time.monotonic() - start_time

        result.segment_sequence = segment.sequence
        result.provider_id = self.provider_id
        result.is_final = True

        if processing_time > 0:
            logger.debug(
                f"{self.provider_id} transcription finished: audio_len={segment.duration:.2f}s, "
                f"time={processing_time:.2f}s, speed={segment.duration / processing_time:.2f}x"
            )
        return result

    @abstractmethod
    async def _transcribe(self, segment: AudioSegment) -> TranscriptionResult:
        ...


class StreamingTranscriptionProvider(TranscriptionProvider):
    kind = ProviderKind.STREAMING

    @abstractmethod
    async def connect(self, token: Optional[CancellationToken] = None) -> None:
        ...

    @abstractmethod
    def submit(
        self,
        frames: AsyncIterator[AudioSegment],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[TranscriptionResult]:
        ...
