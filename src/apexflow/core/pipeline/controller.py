"""
Pipeline controller.

A single control task owns the session and serializes every command
(start/stop/cancel) and every worker event (audio closed, transcript events,
stage completion, failures) through one queue. Worker tasks never change
session state themselves; they post events. Events from a session that is no
longer current are ignored, so a cancelled session can never deliver.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass
from typing import Any, Callable, List, Optional

from ...utils.logger import get_logger
from ..asr.base import BatchTranscriptionProvider, TranscriptionProvider, TranscriptionResult
from ..asr.registry import create_transcription_provider
from ..audio.recorder import AudioSource, SegmentMode
from ..audio.types import AudioSegment, concatenate_segments
from ..cancellation import CancellationToken
from ..context.collector import ContextCollector, create_context_collector, signals_from_settings
from ..context.types import ContextSnapshot
from ..credentials import EnvironmentSecretResolver, SecretResolver
from ..errors import AlreadyActive, NoSpeechDetected, Overrun, PipelineError, StreamBroken
from ..output.text_output import OutputSink, TextOutputController
from ..settings.settings import get_settings
from ..transcript_processor.llm_processor import EnhancementProvider
from ..transcript_processor.prompt_assembler import (
    PromptAssembler,
    PromptTemplate,
    SanitizedPrompt,
)
from ..transcript_processor.vocabulary_processor import apply_vocabulary_replacements
from .diagnostics import Diagnostics
from .session import (
    OutcomeStatus,
    PipelineSession,
    SessionOutcome,
    SessionState,
)

logger = get_logger(__name__)

OutcomeListener = Callable[[SessionOutcome], None]


@dataclass
class _Command:
    kind: str
    future: asyncio.Future


@dataclass
class _AudioOpened:
    session_id: str
    audio: AudioSource


@dataclass
class _AudioClosed:
    session_id: str


@dataclass
class _SilenceClosed:
    session_id: str


@dataclass
class _TranscriptEvent:
    session_id: str
    result: TranscriptionResult


@dataclass
class _Failure:
    session_id: str
    error: BaseException


@dataclass
class _EnhancementDone:
    session_id: str
    text: str
    enhanced: bool
    snapshot: Optional[ContextSnapshot] = None
    prompt: Optional[SanitizedPrompt] = None
    cost_usd: Optional[float] = None


@dataclass
class _DeliveryDone:
    session_id: str
    delivered: bool


class _BufferingFrames:
    """
    Async iterator over an AudioSource that can keep the frames it hands out.

    Frames are copied into ``buffer`` when one is given, up to ``max_duration``
    seconds of audio. Past that the buffer is emptied and ``overflowed`` is
    set; frames keep flowing to the consumer either way.

    Stays usable after the consuming task is cancelled mid-await, so the same
    capture can be drained again after a stream failure.
    """

    def __init__(
        self,
        source: Optional[AudioSource],
        buffer: Optional[List[AudioSegment]] = None,
        max_duration: float = float("inf"),
    ):
        self._source = source
        self._buffer = buffer
        self._max_duration = max_duration
        self._buffered_duration = 0.0
        self.overflowed = False

    def __aiter__(self) -> "_BufferingFrames":
        return self

    async def __anext__(self) -> AudioSegment:
        if self._source is None:
            raise StopAsyncIteration
        segment = await self._source.__anext__()
        if self._buffer is not None and not self.overflowed:
            self._buffered_duration += segment.duration
            if self._buffered_duration > self._max_duration:
                logger.warning(
                    f"Fallback audio buffer passed {self._max_duration:.0f}s, "
                    f"batch fallback disabled for this session"
                )
                self.overflowed = True
                self._buffer.clear()
            else:
                self._buffer.append(segment)
        return segment


def default_audio_source_factory(settings, mode: SegmentMode) -> AudioSource:
    return AudioSource(
        sample_rate=settings.sample_rate,
        device=settings.input_device,
        mode=mode,
        silence_threshold=settings.vad_silence_threshold,
        trailing_silence=settings.vad_trailing_silence,
        max_queue_depth=settings.max_queue_depth,
    )


class PipelineController:
    """
    Sequences capture → transcribe → (enhance) → deliver for one device.

    Use as an async context manager; the control loop runs while the context
    is open.

    Example:
        async with PipelineController(output_sink=sink) as controller:
            session = await controller.start()
            ...
            await controller.stop()
            outcome = await session.outcome
    """

    def __init__(
        self,
        settings_provider: Callable[[], Any] = get_settings,
        audio_source_factory: Callable[[Any, SegmentMode], AudioSource] = default_audio_source_factory,
        provider_factory: Optional[Callable[[Any], TranscriptionProvider]] = None,
        fallback_provider_factory: Optional[Callable[[Any], BatchTranscriptionProvider]] = None,
        context_collector_factory: Callable[[Any], ContextCollector] = create_context_collector,
        enhancer_factory: Optional[Callable[[Any], EnhancementProvider]] = None,
        output_sink: Optional[OutputSink] = None,
        secret_resolver: Optional[SecretResolver] = None,
        diagnostics: Optional[Diagnostics] = None,
    ):
        resolver = secret_resolver or EnvironmentSecretResolver()

        self._settings_provider = settings_provider
        self._audio_source_factory = audio_source_factory
        self._provider_factory = provider_factory or (
            lambda settings: create_transcription_provider(settings, resolver)
        )
        self._fallback_provider_factory = fallback_provider_factory or (
            lambda settings: create_transcription_provider(settings, resolver, fallback=True)
        )
        self._context_collector_factory = context_collector_factory
        self._enhancer_factory = enhancer_factory or (
            lambda settings: EnhancementProvider.from_settings(settings, resolver)
        )
        self._output_sink = output_sink if output_sink is not None else TextOutputController()
        self.diagnostics = diagnostics or Diagnostics()

        self._session: Optional[PipelineSession] = None
        self._queue: Optional[asyncio.Queue] = None
        self._loop_task: Optional[asyncio.Task] = None
        self._outcome_listeners: List[OutcomeListener] = []

    # -- lifecycle ---------------------------------------------------------

    async def __aenter__(self) -> "PipelineController":
        self._queue = asyncio.Queue()
        self._loop_task = asyncio.create_task(self._run(), name="pipeline-control")
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        session = self._session
        if session is not None:
            await self.cancel()
            if not session.is_terminal:
                await self._await_delivery(session)
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session is not None else SessionState.IDLE

    @property
    def session(self) -> Optional[PipelineSession]:
        return self._session

    def add_outcome_listener(self, listener: OutcomeListener) -> None:
        self._outcome_listeners.append(listener)

    async def _await_delivery(self, session: PipelineSession) -> None:
        # Text already handed to the sink cannot be recalled, so let it land
        try:
            await asyncio.wait_for(asyncio.shield(session.outcome), session.token.grace_period)
        except asyncio.TimeoutError:
            logger.warning(f"Session {session.id}: output sink did not return before shutdown")
            self._finish(session, OutcomeStatus.FAILED, reason="delivery_timeout")

    # -- commands ----------------------------------------------------------

    async def start(self) -> PipelineSession:
        """Begin a new session; raises AlreadyActive if one is in progress."""
        return await self._command("start")

    async def stop(self) -> None:
        """End capture. No-op unless the session is recording."""
        await self._command("stop")

    async def cancel(self) -> None:
        """Abort the active session; nothing is delivered. No-op when idle."""
        await self._command("cancel")

    async def _command(self, kind: str):
        if self._queue is None:
            raise RuntimeError("PipelineController must be used as 'async with'")
        future = asyncio.get_running_loop().create_future()
        await self._queue.put(_Command(kind, future))
        return await future

    def _post(self, message) -> None:
        if self._queue is not None:
            self._queue.put_nowait(message)

    # -- control loop ------------------------------------------------------

    async def _run(self) -> None:
        while True:
            message = await self._queue.get()
            try:
                if isinstance(message, _Command):
                    await self._handle_command(message)
                else:
                    self._handle_event(message)
            except Exception as e:
                logger.error(f"Control loop error handling {type(message).__name__}: {e}", exc_info=True)
                if isinstance(message, _Command) and not message.future.done():
                    message.future.set_exception(e)

    async def _handle_command(self, command: _Command) -> None:
        if command.kind == "start":
            try:
                session = self._handle_start()
            except AlreadyActive as e:
                command.future.set_exception(e)
            else:
                command.future.set_result(session)
        elif command.kind == "stop":
            self._handle_stop()
            command.future.set_result(None)
        elif command.kind == "cancel":
            await self._handle_cancel()
            command.future.set_result(None)
        else:
            raise ValueError(f"Unknown command {command.kind!r}")

    def _handle_event(self, event) -> None:
        session = self._session
        if session is None or event.session_id != session.id or session.is_terminal:
            logger.debug(f"Ignoring {type(event).__name__} from stale session {event.session_id}")
            return

        if isinstance(event, _AudioOpened):
            self._on_audio_opened(session, event.audio)
        elif isinstance(event, _SilenceClosed):
            if session.state is SessionState.RECORDING:
                logger.info(f"Session {session.id}: trailing silence, stopping capture")
                self._handle_stop()
        elif isinstance(event, _AudioClosed):
            self._on_audio_closed(session)
        elif isinstance(event, _TranscriptEvent):
            self._on_transcript_event(session, event.result)
        elif isinstance(event, _EnhancementDone):
            self._on_enhancement_done(session, event)
        elif isinstance(event, _DeliveryDone):
            if event.delivered:
                self._finish(session, OutcomeStatus.DELIVERED)
            else:
                self._finish(session, OutcomeStatus.FAILED, reason="delivery_failed")
        elif isinstance(event, _Failure):
            self._on_failure(session, event.error)

    # -- start / stop / cancel --------------------------------------------

    def _handle_start(self) -> PipelineSession:
        if self._session is not None:
            raise AlreadyActive(f"Session {self._session.id} is {self._session.state.value}")

        settings = self._settings_provider()
        if hasattr(settings, "snapshot"):
            settings = settings.snapshot()

        session = PipelineSession(
            settings=settings,
            token=CancellationToken(settings.cancel_grace_period),
            diagnostics=self.diagnostics,
        )
        self._session = session
        self.diagnostics.emit("session_started", session_id=session.id)

        try:
            provider = self._provider_factory(settings)
            session.provider = provider
            session.streaming = provider.is_streaming
            session.transition(SessionState.RECORDING)

            if session.streaming:
                self._spawn(session, self._run_streaming(session))
            else:
                audio = self._audio_source_factory(settings, SegmentMode.VAD)
                audio.start(settings.input_device)
                session.audio = audio
                self._spawn(session, self._capture_batch(session, audio))
        except Exception as e:
            self._on_failure(session, e)

        return session

    def _handle_stop(self) -> None:
        session = self._session
        if session is None or session.state is not SessionState.RECORDING:
            return

        session.stop_requested = True
        session.transition(SessionState.TRANSCRIBING)
        if session.audio is not None:
            session.audio.stop()

    async def _handle_cancel(self) -> None:
        session = self._session
        if session is None or session.is_terminal:
            return
        if session.state is SessionState.DELIVERING:
            logger.info(f"Session {session.id}: delivery already started, ignoring cancel")
            return

        logger.info(f"Session {session.id}: cancelling from {session.state.value}")
        session.token.cancel()
        if session.audio is not None:
            session.audio.stop()

        drained = await session.token.drain()
        if session.provider is not None:
            await self._close_provider(session.provider, session.token.grace_period)

        session.segments.clear()
        session.transcript = None
        session.output_text = None
        self._finish(
            session,
            OutcomeStatus.CANCELLED,
            reason="cancelled" if drained else "cancel_timeout",
        )

    # -- event handlers ----------------------------------------------------

    def _on_audio_opened(self, session: PipelineSession, audio: AudioSource) -> None:
        session.audio = audio
        if session.stop_requested:
            audio.stop()

    def _on_audio_closed(self, session: PipelineSession) -> None:
        if session.streaming:
            return
        if session.state is SessionState.RECORDING:
            session.transition(SessionState.TRANSCRIBING)
        if session.state is not SessionState.TRANSCRIBING:
            return

        segments = [s for s in session.segments if not s.is_empty]
        if not segments:
            self._on_failure(session, NoSpeechDetected("No speech captured"))
            return

        audio = concatenate_segments(segments)
        logger.info(
            f"Session {session.id}: transcribing {len(segments)} segment(s), {audio.duration:.2f}s"
        )
        self._spawn(session, self._transcribe_batch(session, session.provider, audio))

    def _on_transcript_event(self, session: PipelineSession, result: TranscriptionResult) -> None:
        if session.final_received:
            logger.debug(f"Session {session.id}: discarding result after final")
            return
        if result.revision <= session.revision:
            logger.debug(
                f"Session {session.id}: discarding stale revision {result.revision} "
                f"(current {session.revision})"
            )
            return

        session.revision = result.revision
        session.transcript = result

        if not result.is_final:
            return

        session.final_received = True
        if session.state is SessionState.RECORDING:
            # Provider ended the stream on its own
            self._handle_stop()
        self._on_transcribed(session, result)

    def _on_transcribed(self, session: PipelineSession, result: TranscriptionResult) -> None:
        text = (result.text or "").strip()
        if not text:
            self._on_failure(
                session, NoSpeechDetected("Transcript is empty", provider_id=result.provider_id)
            )
            return

        settings = session.settings
        raw_text = apply_vocabulary_replacements(text, settings.vocabulary_replacements)
        session.raw_text = raw_text
        self.diagnostics.emit(
            "transcription_complete",
            session_id=session.id,
            provider_id=result.provider_id,
            duration=session.elapsed,
        )

        if settings.enhancement_enabled:
            session.transition(SessionState.ENHANCING)
            self._spawn(session, self._enhance(session, raw_text))
        else:
            self._begin_delivery(session, raw_text)

    def _on_enhancement_done(self, session: PipelineSession, event: _EnhancementDone) -> None:
        if session.state is not SessionState.ENHANCING:
            return
        session.snapshot = event.snapshot
        session.prompt = event.prompt
        session.enhanced = event.enhanced
        session.cost_usd = event.cost_usd
        self._begin_delivery(session, event.text)

    def _begin_delivery(self, session: PipelineSession, text: str) -> None:
        session.transition(SessionState.DELIVERING)
        session.output_text = text
        self._spawn(session, self._deliver(session, text))

    def _on_failure(self, session: PipelineSession, error: BaseException) -> None:
        code = error.code if isinstance(error, PipelineError) else "internal_error"
        provider_id = getattr(error, "provider_id", None)
        logger.error(f"Session {session.id} failed in {session.state.value}: [{code}] {error}")
        self._finish(session, OutcomeStatus.FAILED, reason=code, provider_id=provider_id)

    def _finish(
        self,
        session: PipelineSession,
        status: OutcomeStatus,
        reason: Optional[str] = None,
        provider_id: Optional[str] = None,
    ) -> None:
        if session.is_terminal:
            return

        if status is OutcomeStatus.DELIVERED:
            session.transition(SessionState.IDLE)
        elif status is OutcomeStatus.CANCELLED:
            session.transition(SessionState.CANCELLED)
        else:
            session.transition(SessionState.FAILED)
            session.token.cancel()
            if session.audio is not None:
                session.audio.stop()

        if provider_id is None and session.provider is not None:
            provider_id = session.provider.provider_id

        outcome = SessionOutcome(
            session_id=session.id,
            status=status,
            reason=reason,
            text=session.output_text if status is OutcomeStatus.DELIVERED else None,
            raw_text=session.raw_text if status is OutcomeStatus.DELIVERED else None,
            enhanced=session.enhanced if status is OutcomeStatus.DELIVERED else False,
            provider_id=provider_id,
            cost_usd=session.cost_usd,
            duration=session.elapsed,
        )
        session.outcome.set_result(outcome)
        if self._session is session:
            self._session = None

        self.diagnostics.emit(
            "session_finished",
            session_id=session.id,
            state=session.state.value,
            code=reason or status.value,
            provider_id=provider_id,
            duration=outcome.duration,
        )

        for listener in list(self._outcome_listeners):
            try:
                listener(outcome)
            except Exception as e:
                logger.warning(f"Outcome listener failed: {e}", exc_info=True)

    # -- workers -----------------------------------------------------------

    def _spawn(self, session: PipelineSession, coro) -> asyncio.Task:
        return session.token.spawn(self._worker(session, coro))

    def _record_call(
        self,
        session: PipelineSession,
        provider_id: Optional[str],
        started: float,
        error: Optional[BaseException] = None,
    ) -> None:
        if error is None:
            outcome, code = "success", None
        else:
            outcome = "failure"
            code = error.code if isinstance(error, PipelineError) else "internal_error"
        self.diagnostics.emit(
            "provider_call",
            session_id=session.id,
            state=session.state.value,
            provider_id=provider_id,
            outcome=outcome,
            code=code,
            duration=time.monotonic() - started,
        )

    async def _worker(self, session: PipelineSession, coro) -> None:
        try:
            await coro
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self._post(_Failure(session.id, e))

    async def _capture_batch(self, session: PipelineSession, audio: AudioSource) -> None:
        auto_stop = session.settings.auto_stop_on_silence
        async for segment in audio:
            session.segments.append(segment)
            if auto_stop:
                self._post(_SilenceClosed(session.id))
        self._post(_AudioClosed(session.id))

    async def _transcribe_batch(
        self,
        session: PipelineSession,
        provider: BatchTranscriptionProvider,
        audio: AudioSegment,
    ) -> None:
        started = time.monotonic()
        try:
            result = await provider.submit(audio, session.token)
        except Exception as e:
            self._record_call(session, provider.provider_id, started, e)
            raise
        finally:
            await provider.aclose()
        self._record_call(session, provider.provider_id, started)
        result.is_final = True
        result.revision = max(result.revision, session.revision + 1)
        self._post(_TranscriptEvent(session.id, result))

    async def _run_streaming(self, session: PipelineSession) -> None:
        settings = session.settings
        provider = session.provider
        audio: Optional[AudioSource] = None
        # Frames are only kept when a batch fallback may need them
        buffer = session.segments if settings.streaming_fallback == "batch" else None

        def buffered(source: Optional[AudioSource]) -> _BufferingFrames:
            return _BufferingFrames(source, buffer, settings.fallback_buffer_seconds)

        frames = buffered(None)
        final_seen = False
        started = time.monotonic()

        try:
            await provider.connect(session.token)
            self.diagnostics.emit(
                "stream_connected", session_id=session.id, provider_id=provider.provider_id
            )

            if not session.stop_requested:
                audio = self._audio_source_factory(settings, SegmentMode.FRAMES)
                audio.start(settings.input_device)
                self._post(_AudioOpened(session.id, audio))
                frames = buffered(audio)

            async for result in provider.submit(frames, session.token):
                final_seen = final_seen or result.is_final
                self._post(_TranscriptEvent(session.id, result))
            self._record_call(session, provider.provider_id, started)

        except StreamBroken as e:
            self._record_call(session, provider.provider_id, started, e)
            if final_seen or buffer is None or frames.overflowed:
                raise
            self.diagnostics.emit(
                "stream_fallback",
                session_id=session.id,
                code=e.code,
                provider_id=provider.provider_id,
            )
            logger.warning(f"Session {session.id}: stream broken, falling back to batch: {e}")

            if audio is None and not session.stop_requested:
                audio = self._audio_source_factory(settings, SegmentMode.FRAMES)
                audio.start(settings.input_device)
                self._post(_AudioOpened(session.id, audio))
                frames = buffered(audio)

            # Keep capturing until the user stops, then transcribe everything
            async for _ in frames:
                pass
            if frames.overflowed:
                raise Overrun(
                    f"More than {settings.fallback_buffer_seconds:.0f}s of audio to re-transcribe"
                )
            await self._transcribe_fallback(session)
        except PipelineError as e:
            if e.provider_id is not None:
                self._record_call(session, provider.provider_id, started, e)
            raise
        finally:
            await provider.aclose()
            if audio is not None:
                audio.stop()

    async def _transcribe_fallback(self, session: PipelineSession) -> None:
        segments = [s for s in session.segments if not s.is_empty]
        if not segments:
            raise NoSpeechDetected("No speech captured before stream failure")

        provider = self._fallback_provider_factory(session.settings)
        await self._transcribe_batch(session, provider, concatenate_segments(segments))

    async def _enhance(self, session: PipelineSession, raw_text: str) -> None:
        settings = session.settings
        snapshot = None
        prompt = None

        try:
            collector = self._context_collector_factory(settings)
            snapshot = await collector.capture(signals_from_settings(settings), transcript=raw_text)

            assembler = PromptAssembler(PromptTemplate.from_config(settings.prompt_tags))
            prompt = assembler.assemble(raw_text, snapshot)

            enhancer = self._enhancer_factory(settings)
            enhancer_id = getattr(enhancer, "model", None)
            started = time.monotonic()
            try:
                response = await enhancer.enhance(
                    prompt, settings.enhancement_mode, settings.get_active_enhancement()
                )
            except Exception as e:
                self._record_call(session, enhancer_id, started, e)
                raise
            self._record_call(session, enhancer_id, started)
        except Exception as e:
            # Any enhancement failure degrades to the raw transcript
            if isinstance(e, PipelineError) and not e.fatal:
                code = e.code
                logger.warning(f"Session {session.id}: enhancement skipped [{code}], using raw transcript")
            else:
                code = e.code if isinstance(e, PipelineError) else "enhancement_failed"
                logger.error(
                    f"Session {session.id}: enhancement failed [{code}], using raw transcript: {e}",
                    exc_info=True,
                )
            self.diagnostics.emit("enhancement_fallback", session_id=session.id, code=code)
            self._post(_EnhancementDone(session.id, raw_text, False, snapshot, prompt))
            return

        self._post(
            _EnhancementDone(
                session.id, response.content, True, snapshot, prompt, response.cost_usd
            )
        )

    async def _deliver(self, session: PipelineSession, text: str) -> None:
        sink = self._output_sink
        try:
            if inspect.iscoroutinefunction(sink.deliver):
                delivered = await sink.deliver(text)
            else:
                delivered = await asyncio.to_thread(sink.deliver, text)
                if inspect.isawaitable(delivered):
                    delivered = await delivered
        except Exception as e:
            logger.error(f"Session {session.id}: output sink raised {type(e).__name__}: {e}")
            delivered = False

        self._post(_DeliveryDone(session.id, bool(delivered)))

    @staticmethod
    async def _close_provider(provider: TranscriptionProvider, timeout: float) -> None:
        try:
            await asyncio.wait_for(provider.aclose(), timeout=max(timeout, 0.1))
        except Exception as e:
            logger.warning(f"Error closing provider {provider.provider_id}: {e}")
