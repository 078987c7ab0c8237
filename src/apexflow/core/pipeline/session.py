import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ...utils.logger import get_logger
from ..asr.base import TranscriptionProvider, TranscriptionResult
from ..audio.recorder import AudioSource
from ..audio.types import AudioSegment
from ..cancellation import CancellationToken
from ..context.types import ContextSnapshot
from ..transcript_processor.prompt_assembler import SanitizedPrompt
from .diagnostics import Diagnostics

logger = get_logger(__name__)


class SessionState(Enum):
    IDLE = "idle"
    RECORDING = "recording"
    TRANSCRIBING = "transcribing"
    ENHANCING = "enhancing"
    DELIVERING = "delivering"
    CANCELLED = "cancelled"
    FAILED = "failed"


TERMINAL_STATES = (SessionState.IDLE, SessionState.CANCELLED, SessionState.FAILED)


class OutcomeStatus(Enum):
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass(frozen=True)
class SessionOutcome:
    session_id: str
    status: OutcomeStatus
    reason: Optional[str] = None
    text: Optional[str] = field(default=None, repr=False)
    raw_text: Optional[str] = field(default=None, repr=False)
    enhanced: bool = False
    provider_id: Optional[str] = None
    cost_usd: Optional[float] = None
    duration: float = 0.0


@dataclass(eq=False)
class PipelineSession:
    """
    One capture → transcribe → enhance → deliver run.

    Owned by the controller's control loop; worker tasks only append captured
    segments and post events back.
    """

    settings: object
    token: CancellationToken
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    state: SessionState = SessionState.IDLE
    started_at: float = field(default_factory=time.monotonic)

    segments: List[AudioSegment] = field(default_factory=list)
    transcript: Optional[TranscriptionResult] = None
    raw_text: Optional[str] = None
    snapshot: Optional[ContextSnapshot] = None
    prompt: Optional[SanitizedPrompt] = None
    output_text: Optional[str] = None
    enhanced: bool = False
    cost_usd: Optional[float] = None

    audio: Optional[AudioSource] = None
    provider: Optional[TranscriptionProvider] = None
    streaming: bool = False
    stop_requested: bool = False
    final_received: bool = False
    revision: int = -1
    diagnostics: Optional[Diagnostics] = field(default=None, repr=False)

    outcome: "asyncio.Future[SessionOutcome]" = field(
        default_factory=lambda: asyncio.get_running_loop().create_future()
    )

    @property
    def is_terminal(self) -> bool:
        return self.outcome.done()

    @property
    def elapsed(self) -> float:
        return time.monotonic() - self.started_at

    def transition(self, state: SessionState) -> None:
        if state is self.state:
            return
        previous = self.state
        logger.info(f"Session {self.id}: {previous.value} -> {state.value}")
        self.state = state
        if self.diagnostics is not None:
            self.diagnostics.emit(
                "state_changed",
                session_id=self.id,
                state=state.value,
                previous_state=previous.value,
            )
