"""
Context capture for enhancement.

Each enabled signal is read from its source concurrently. A source that fails
or exceeds the timeout yields empty text and a warning instead of failing the
capture. Signal contents are never logged.
"""

import asyncio
from typing import Dict, Iterable, Optional, Set

from ...utils.logger import get_logger
from .sources import ContextSource, default_sources
from .types import ContextSignal, ContextSnapshot, SignalKind

logger = get_logger(__name__)

DEFAULT_CAPTURE_TIMEOUT = 2.0


def signals_from_settings(settings) -> Set[SignalKind]:
    enabled = set()
    if settings.use_clipboard_context:
        enabled.add(SignalKind.CLIPBOARD)
    if settings.use_screen_capture_context:
        enabled.add(SignalKind.SCREEN)
    if settings.use_selected_text_context:
        enabled.add(SignalKind.SELECTED_TEXT)
    if settings.use_vocabulary_context:
        enabled.add(SignalKind.VOCABULARY)
    return enabled


class ContextCollector:
    def __init__(
        self,
        sources: Iterable[ContextSource] = (),
        timeout: float = DEFAULT_CAPTURE_TIMEOUT,
    ):
        self.sources: Dict[SignalKind, ContextSource] = {s.kind: s for s in sources}
        self.timeout = timeout

    async def capture(
        self, enabled: Iterable[SignalKind], transcript: Optional[str] = None
    ) -> ContextSnapshot:
        enabled = set(enabled)
        signals: Dict[SignalKind, ContextSignal] = {}

        if transcript is not None:
            signals[SignalKind.TRANSCRIPT] = ContextSignal(SignalKind.TRANSCRIPT, transcript)

        kinds = [k for k in SignalKind if k is not SignalKind.TRANSCRIPT]
        for kind in kinds:
            if kind not in enabled:
                signals[kind] = ContextSignal(kind, enabled=False)

        wanted = [k for k in kinds if k in enabled]
        results = await asyncio.gather(*(self._read(kind) for kind in wanted))
        for kind, signal in zip(wanted, results):
            signals[kind] = signal

        snapshot = ContextSnapshot(signals)
        logger.debug(
            f"Context captured: {len(wanted)} signal(s), {len(snapshot.warnings)} warning(s)"
        )
        return snapshot

    async def _read(self, kind: SignalKind) -> ContextSignal:
        source = self.sources.get(kind)
        if source is None:
            return ContextSignal(kind, warning="no source configured")

        try:
            text = await asyncio.wait_for(source.read(), timeout=self.timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{kind.value} context timed out after {self.timeout:.1f}s")
            return ContextSignal(kind, warning="timed out")
        except Exception as e:
            logger.warning(f"{kind.value} context unavailable: {type(e).__name__}")
            return ContextSignal(kind, warning=f"unavailable: {type(e).__name__}")

        return ContextSignal(kind, text=(text or "").strip())


def create_context_collector(settings) -> ContextCollector:
    return ContextCollector(default_sources(settings), timeout=settings.context_timeout)
