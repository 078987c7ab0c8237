from .collector import ContextCollector, create_context_collector, signals_from_settings
from .sources import (
    ClipboardSource,
    ContextSource,
    ScreenTextSource,
    SelectedTextSource,
    VocabularySource,
)
from .types import ContextSignal, ContextSnapshot, SignalKind

__all__ = [
    "ContextCollector",
    "ContextSignal",
    "ContextSnapshot",
    "ContextSource",
    "SignalKind",
    "ClipboardSource",
    "SelectedTextSource",
    "ScreenTextSource",
    "VocabularySource",
    "create_context_collector",
    "signals_from_settings",
]
