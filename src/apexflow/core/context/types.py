import time
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Dict, Mapping, Optional


class SignalKind(Enum):
    TRANSCRIPT = "transcript"
    CLIPBOARD = "clipboard"
    SCREEN = "screen"
    SELECTED_TEXT = "selected_text"
    VOCABULARY = "vocabulary"


@dataclass(frozen=True)
class ContextSignal:
    kind: SignalKind
    text: str = field(default="", repr=False)
    enabled: bool = True
    captured_at: float = field(default_factory=time.time)
    warning: Optional[str] = None


@dataclass(frozen=True)
class ContextSnapshot:
    """Read-only view of the signals captured for one enhancement run."""

    signals: Mapping[SignalKind, ContextSignal]
    captured_at: float = field(default_factory=time.time)

    def __post_init__(self):
        object.__setattr__(self, "signals", MappingProxyType(dict(self.signals)))

    def get(self, kind: SignalKind) -> Optional[ContextSignal]:
        return self.signals.get(kind)

    def is_enabled(self, kind: SignalKind) -> bool:
        signal = self.signals.get(kind)
        return signal is not None and signal.enabled

    def text(self, kind: SignalKind) -> str:
        signal = self.signals.get(kind)
        if signal is None or not signal.enabled:
            return ""
        return signal.text

    @property
    def warnings(self) -> Dict[SignalKind, str]:
        return {k: s.warning for k, s in self.signals.items() if s.warning}
