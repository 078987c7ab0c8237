"""
Real-time transcription over persistent websocket connections.

The shared base owns the connection lifecycle: a sender task pushes audio
frames while the caller's iterator receives vendor events. Vendor subclasses
only describe the URL, frame encoding and how to read their event messages.
Utterance-level finals are folded into cumulative partial results; exactly one
final result is emitted once the vendor confirms the end of the stream.
"""

import asyncio
import base64
import json
import time
import urllib.parse
from enum import Enum
from functools import cached_property
from typing import AsyncIterator, Callable, Dict, List, Optional, Union

import numpy as np
import websockets
from scipy.signal import resample_poly
from websockets.exceptions import ConnectionClosed, ConnectionClosedOK, InvalidStatus

from ...utils.logger import get_logger
from ..audio.types import AudioSegment
from ..cancellation import CancellationToken
from ..errors import ProviderUnavailable, StreamBroken
from .base import ProviderDescriptor, StreamingTranscriptionProvider, TranscriptionResult

logger = get_logger(__name__)

Payload = Union[bytes, str]


class StreamState(Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FINISHING = "finishing"
    CLOSED = "closed"


class WebSocketStreamingProvider(StreamingTranscriptionProvider):
    supports_resume = False

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        connect: Optional[Callable[..., object]] = None,
    ):
        super().__init__(descriptor)
        self._connect_factory = connect or websockets.connect
        self._ws = None
        self._send_lock = asyncio.Lock()
        self.state = StreamState.DISCONNECTED

        self._committed: List[str] = []
        self._current = ""
        self._revision = 0
        self._last_emitted = ""
        self._replay: List[AudioSegment] = []
        self._finished = False
        self._resumed = False
        self._last_activity = 0.0

    @property
    def ws_url(self) -> str:
        raise NotImplementedError

    @property
    def ws_headers(self) -> Dict[str, str]:
        return {}

    async def on_connected(self, ws) -> None:
        pass

    async def on_resumed(self, ws) -> None:
        await self.on_connected(ws)

    def encode_frame(self, segment: AudioSegment) -> Payload:
        return segment.to_pcm16_bytes()

    def finish_message(self) -> Optional[Payload]:
        return None

    def handle_event(self, event: dict) -> bool:
        """Apply one vendor event; return True when the stream has ended."""
        raise NotImplementedError

    @property
    def transcript(self) -> str:
        parts = [p for p in self._committed if p]
        if self._current:
            parts.append(self._current)
        return " ".join(parts)

    def update_partial(self, text: str) -> None:
        self._current = text.strip()

    def commit(self, text: str) -> None:
        text = text.strip()
        if text:
            self._committed.append(text)
        self._current = ""
        self._replay.clear()

    async def connect(self, token: Optional[CancellationToken] = None) -> None:
        if token is not None:
            token.raise_if_cancelled()
        if self.state is StreamState.CONNECTED:
            return

        self.state = StreamState.CONNECTING
        logger.info(f"Connecting to {self.provider_id} streaming endpoint")
        self._ws = await self._open()
        await self.on_connected(self._ws)
        self._touch()
        self.state = StreamState.CONNECTED
        logger.info(f"{self.provider_id} stream connected")

    async def submit(
        self,
        frames: AsyncIterator[AudioSegment],
        token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[TranscriptionResult]:
        if self._ws is None:
            await self.connect(token)

        sender = asyncio.ensure_future(self._send_frames(frames))
        try:
            while True:
                if token is not None:
                    token.raise_if_cancelled()

                try:
                    message = await self._receive(sender)
                except ConnectionClosed as e:
                    if self._finished and isinstance(e, ConnectionClosedOK):
                        break
                    if await self._try_resume():
                        continue
                    raise StreamBroken(
                        f"{self.provider_id} connection dropped: {e}",
                        provider_id=self.provider_id,
                    ) from e

                if message is None:
                    continue

                try:
                    event = json.loads(message)
                except ValueError:
                    logger.debug(f"Ignoring non-JSON message from {self.provider_id}")
                    continue

                ended = self.handle_event(event)

                result = self._emit(final=False)
                if result is not None:
                    yield result

                if ended:
                    break

            self._revision += 1
            yield TranscriptionResult(
                text=self.transcript,
                provider_id=self.provider_id,
                is_final=True,
                revision=self._revision,
            )
        finally:
            sender.cancel()
            await asyncio.gather(sender, return_exceptions=True)
            await self.aclose()

    async def aclose(self) -> None:
        ws = self._ws
        self._ws = None
        self.state = StreamState.CLOSED
        if ws is None:
            return
        try:
            await ws.close()
        except Exception as e:
            logger.debug(f"Error closing {self.provider_id} websocket: {e}")

    async def _open(self):
        try:
            return await asyncio.wait_for(
                self._connect_factory(
                    self.ws_url,
                    additional_headers=self.ws_headers,
                    max_size=None,
                ),
                timeout=self.descriptor.connect_timeout,
            )
        except InvalidStatus as e:
            status = e.response.status_code
            self.state = StreamState.CLOSED
            if 400 <= status < 500:
                raise ProviderUnavailable(
                    f"{self.provider_id} rejected the connection: HTTP {status}",
                    provider_id=self.provider_id,
                ) from e
            raise StreamBroken(
                f"{self.provider_id} handshake failed: HTTP {status}",
                provider_id=self.provider_id,
            ) from e
        except (OSError, asyncio.TimeoutError, websockets.WebSocketException) as e:
            self.state = StreamState.CLOSED
            raise StreamBroken(
                f"Could not connect to {self.provider_id}: {type(e).__name__}",
                provider_id=self.provider_id,
            ) from e

    async def _receive(self, sender: asyncio.Future) -> Optional[Payload]:
        ws = self._ws
        if ws is None:
            raise StreamBroken("Connection is closed", provider_id=self.provider_id)

        remaining = self.descriptor.idle_timeout - (time.monotonic() - self._last_activity)
        if remaining <= 0:
            raise StreamBroken(
                f"{self.provider_id} idle for {self.descriptor.idle_timeout:.0f}s",
                provider_id=self.provider_id,
            )

        self._raise_sender_error(sender)

        recv = asyncio.ensure_future(ws.recv())
        waiters = {recv} if sender.done() else {recv, sender}
        try:
            done, _ = await asyncio.wait(
                waiters, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not recv.done():
                recv.cancel()

        self._raise_sender_error(sender)

        if recv in done:
            message = recv.result()
            self._touch()
            return message
        return None

    @staticmethod
    def _raise_sender_error(sender: asyncio.Future) -> None:
        if sender.done() and not sender.cancelled() and sender.exception() is not None:
            raise sender.exception()

    async def _send_frames(self, frames: AsyncIterator[AudioSegment]) -> None:
        async for segment in frames:
            async with self._send_lock:
                self._replay.append(segment)
                await self._send(self.encode_frame(segment))

        self._finished = True
        self.state = StreamState.FINISHING
        message = self.finish_message()
        if message is not None:
            async with self._send_lock:
                await self._send(message)
        logger.debug(f"{self.provider_id}: audio finished, awaiting final result")

    async def _send(self, payload: Payload) -> None:
        ws = self._ws
        if ws is None:
            return
        try:
            await ws.send(payload)
            self._touch()
        except ConnectionClosed:
            # receiver decides between resume and StreamBroken; frame stays in replay
            pass

    async def _try_resume(self) -> bool:
        if not self.supports_resume or self._resumed:
            return False

        self._resumed = True
        logger.warning(f"{self.provider_id} connection dropped, attempting to resume")
        async with self._send_lock:
            self.state = StreamState.CONNECTING
            try:
                self._ws = await self._open()
                await self.on_resumed(self._ws)
                for segment in self._replay:
                    await self._ws.send(self.encode_frame(segment))
                if self._finished:
                    message = self.finish_message()
                    if message is not None:
                        await self._ws.send(message)
            except Exception as e:
                logger.error(f"{self.provider_id} resume failed: {e}")
                self._ws = None
                return False

        self._current = ""
        self._touch()
        self.state = StreamState.FINISHING if self._finished else StreamState.CONNECTED
        logger.info(f"{self.provider_id} stream resumed, replayed {len(self._replay)} frame(s)")
        return True

    def _emit(self, final: bool) -> Optional[TranscriptionResult]:
        text = self.transcript
        if text == self._last_emitted:
            return None
        self._last_emitted = text
        self._revision += 1
        return TranscriptionResult(
            text=text,
            provider_id=self.provider_id,
            is_final=final,
            revision=self._revision,
        )

    def _touch(self) -> None:
        self._last_activity = time.monotonic()


class DeepgramStreamingProvider(WebSocketStreamingProvider):
    display_name = "Deepgram (live)"
    WS_URL = "wss://api.deepgram.com/v1/listen"

    @cached_property
    def ws_url(self) -> str:
        params = {
            "model": self.descriptor.model or "nova-3",
            "encoding": "linear16",
            "sample_rate": str(self.descriptor.sample_rate),
            "channels": "1",
            "smart_format": "true",
            "interim_results": "true",
            "endpointing": "300",
        }
        if self.descriptor.language:
            params["language"] = self.descriptor.language
        base = self.descriptor.endpoint or self.WS_URL
        return base + "?" + urllib.parse.urlencode(params)

    @property
    def ws_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Token {self.descriptor.secret}"}

    def finish_message(self) -> Optional[Payload]:
        return json.dumps({"type": "CloseStream"})

    def handle_event(self, event: dict) -> bool:
        event_type = event.get("type")
        if event_type == "Results":
            alternatives = event.get("channel", {}).get("alternatives") or [{}]
            transcript = alternatives[0].get("transcript", "")
            if event.get("is_final") or event.get("speech_final"):
                self.commit(transcript)
            else:
                self.update_partial(transcript)
            return False
        # Deepgram sends its Metadata summary right before closing a finished stream
        return event_type == "Metadata" and self._finished


class OpenAIRealtimeStreamingProvider(WebSocketStreamingProvider):
    display_name = "OpenAI (realtime)"
    WS_URL = "wss://api.openai.com/v1/realtime?intent=transcription"
    SAMPLE_RATE = 24_000

    def __init__(self, descriptor: ProviderDescriptor, connect=None):
        super().__init__(descriptor, connect=connect)
        self._pending_items = 0
        self._awaiting_commit = False
        # raw deltas of the item being transcribed, unstripped so word spacing survives
        self._item_text = ""

    @property
    def ws_url(self) -> str:
        return self.descriptor.endpoint or self.WS_URL

    @property
    def ws_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.descriptor.secret}",
            "OpenAI-Beta": "realtime=v1",
        }

    async def on_connected(self, ws) -> None:
        transcription = {"model": self.descriptor.model or "gpt-4o-transcribe"}
        if self.descriptor.language:
            transcription["language"] = self.descriptor.language
        await ws.send(
            json.dumps(
                {
                    "type": "transcription_session.update",
                    "session": {
                        "input_audio_format": "pcm16",
                        "input_audio_transcription": transcription,
                        "turn_detection": {
                            "type": "server_vad",
                            "threshold": 0.5,
                            "prefix_padding_ms": 300,
                            "silence_duration_ms": 500,
                        },
                    },
                }
            )
        )

    def encode_frame(self, segment: AudioSegment) -> Payload:
        pcm = segment.to_pcm16()
        if segment.sample_rate != self.SAMPLE_RATE:
            resampled = resample_poly(pcm.astype(np.float32), self.SAMPLE_RATE, segment.sample_rate)
            pcm = np.clip(resampled, -32768, 32767).astype(np.int16)
        return json.dumps(
            {
                "type": "input_audio_buffer.append",
                "audio": base64.b64encode(pcm.tobytes()).decode("ascii"),
            }
        )

    def finish_message(self) -> Optional[Payload]:
        self._awaiting_commit = True
        return json.dumps({"type": "input_audio_buffer.commit"})

    def handle_event(self, event: dict) -> bool:
        event_type = event.get("type", "")

        if event_type == "input_audio_buffer.committed":
            self._pending_items += 1
            if self._finished:
                self._awaiting_commit = False
        elif event_type == "conversation.item.input_audio_transcription.delta":
            self._item_text += event.get("delta") or ""
            self.update_partial(self._item_text)
        elif event_type == "conversation.item.input_audio_transcription.completed":
            self._item_text = ""
            self._pending_items = max(0, self._pending_items - 1)
            self.commit(event.get("transcript") or "")
        elif event_type == "conversation.item.input_audio_transcription.failed":
            self._item_text = ""
            self._pending_items = max(0, self._pending_items - 1)
            logger.warning("OpenAI realtime transcription of one item failed")
        elif event_type == "error":
            error = event.get("error") or {}
            if self._finished and error.get("code") == "input_audio_buffer_commit_empty":
                self._awaiting_commit = False
            else:
                raise StreamBroken(
                    f"OpenAI realtime error: {error.get('code') or 'unknown'}",
                    provider_id=self.provider_id,
                )

        return self._finished and not self._awaiting_commit and self._pending_items == 0


class AssemblyAIStreamingProvider(WebSocketStreamingProvider):
    display_name = "AssemblyAI (streaming)"
    WS_URL = "wss://streaming.assemblyai.com/v3/ws"

    @cached_property
    def ws_url(self) -> str:
        params = {
            "sample_rate": str(self.descriptor.sample_rate),
            "encoding": "pcm_s16le",
            "format_turns": "true",
        }
        base = self.descriptor.endpoint or self.WS_URL
        return base + "?" + urllib.parse.urlencode(params)

    @property
    def ws_headers(self) -> Dict[str, str]:
        return {"Authorization": self.descriptor.secret or ""}

    def finish_message(self) -> Optional[Payload]:
        return json.dumps({"type": "Terminate"})

    def handle_event(self, event: dict) -> bool:
        event_type = event.get("type")
        if event_type == "Turn":
            transcript = event.get("transcript", "")
            if event.get("end_of_turn") and event.get("turn_is_formatted"):
                self.commit(transcript)
            else:
                self.update_partial(transcript)
        return event_type == "Termination"


class JsonEventStreamingProvider(WebSocketStreamingProvider):
    """
    Generic protocol for self-hosted streaming servers.

    Client sends binary PCM16 frames and ``{"type": "finish"}`` when done.
    Server sends ``{"type": "session", "session_id"}``, ``{"type": "partial",
    "text"}`` for the utterance in progress, ``{"type": "final", "text"}`` when
    an utterance is settled and ``{"type": "end"}`` after finish. A dropped
    connection is resumed once with ``{"type": "resume", "session_id"}``.
    """

    display_name = "Custom streaming endpoint"
    supports_resume = True

    def __init__(self, descriptor: ProviderDescriptor, connect=None):
        super().__init__(descriptor, connect=connect)
        self.session_id: Optional[str] = None

    @property
    def ws_url(self) -> str:
        if not self.descriptor.endpoint:
            raise ProviderUnavailable(
                "No endpoint configured for custom streaming provider",
                provider_id=self.provider_id,
            )
        return self.descriptor.endpoint

    @property
    def ws_headers(self) -> Dict[str, str]:
        if self.descriptor.secret:
            return {"Authorization": f"Bearer {self.descriptor.secret}"}
        return {}

    async def on_connected(self, ws) -> None:
        await ws.send(
            json.dumps(
                {
                    "type": "start",
                    "sample_rate": self.descriptor.sample_rate,
                    "model": self.descriptor.model or None,
                    "language": self.descriptor.language,
                }
            )
        )

    async def on_resumed(self, ws) -> None:
        if self.session_id is None:
            await self.on_connected(ws)
            return
        await ws.send(json.dumps({"type": "resume", "session_id": self.session_id}))

    def finish_message(self) -> Optional[Payload]:
        return json.dumps({"type": "finish"})

    def handle_event(self, event: dict) -> bool:
        event_type = event.get("type")
        if event_type == "session":
            self.session_id = event.get("session_id")
        elif event_type == "partial":
            self.update_partial(event.get("text") or "")
        elif event_type == "final":
            self.commit(event.get("text") or "")
        elif event_type == "error":
            raise StreamBroken(
                f"Streaming server error: {event.get('code') or 'unknown'}",
                provider_id=self.provider_id,
            )
        return event_type == "end"
