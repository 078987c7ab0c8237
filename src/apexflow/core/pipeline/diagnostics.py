"""
Structured pipeline events for observability.

Events carry identifiers, states and error codes only. Transcript text,
context contents and secrets never appear in them.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Callable, List, Optional

from ...utils.logger import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class DiagnosticEvent:
    name: str
    session_id: Optional[str] = None
    state: Optional[str] = None
    previous_state: Optional[str] = None
    outcome: Optional[str] = None  # "success" or "failure" for provider calls
    code: Optional[str] = None
    provider_id: Optional[str] = None
    duration: Optional[float] = None
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {k: v for k, v in asdict(self).items() if v is not None}


DiagnosticListener = Callable[[DiagnosticEvent], None]


class Diagnostics:
    def __init__(self):
        self._listeners: List[DiagnosticListener] = []

    def add_listener(self, listener: DiagnosticListener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: DiagnosticListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def emit(self, name: str, **fields) -> DiagnosticEvent:
        event = DiagnosticEvent(name=name, **fields)
        fields_text = [
            f"{k}={v}" for k, v in event.to_dict().items() if k not in ("name", "timestamp")
        ]
        details = ", ".join(fields_text)
        logger.info(f"[diag] {name}: {details}" if details else f"[diag] {name}")

        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Diagnostic listener failed: {e}")
        return event
