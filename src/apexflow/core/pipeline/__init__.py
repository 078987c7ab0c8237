from .controller import PipelineController, default_audio_source_factory
from .diagnostics import DiagnosticEvent, Diagnostics
from .session import OutcomeStatus, PipelineSession, SessionOutcome, SessionState

__all__ = [
    "PipelineController",
    "PipelineSession",
    "SessionOutcome",
    "SessionState",
    "OutcomeStatus",
    "Diagnostics",
    "DiagnosticEvent",
    "default_audio_source_factory",
]
