"""
Remote batch transcription over HTTPS.

All vendors share one request path: a single POST per segment, one retry on
timeouts, transport errors and 5xx responses, no retry on 4xx.
"""

import asyncio
import base64
from typing import Any, Dict, Optional

import httpx

from ...utils.logger import get_logger
from ..audio.types import AudioSegment
from ..errors import ProviderUnavailable, TransientNetworkFailure, is_transient_status
from .base import BatchTranscriptionProvider, ProviderDescriptor, TranscriptionResult

logger = get_logger(__name__)

MAX_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 0.5


class HttpBatchProvider(BatchTranscriptionProvider):
    default_endpoint: str = ""
    requires_secret = True

    def __init__(
        self,
        descriptor: ProviderDescriptor,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(descriptor)
        self._transport = transport

    @property
    def endpoint(self) -> str:
        return (self.descriptor.endpoint or self.default_endpoint).rstrip("/")

    async def _transcribe(self, segment: AudioSegment) -> TranscriptionResult:
        if self.requires_secret and not self.descriptor.secret:
            raise ProviderUnavailable(
                f"No API key configured for {self.provider_id}",
                provider_id=self.provider_id,
            )

        payload = await self._post(self.build_request(segment))
        return self.parse_response(payload)

    def build_request(self, segment: AudioSegment) -> Dict[str, Any]:
        """Keyword arguments for ``httpx.AsyncClient.request``."""
        raise NotImplementedError

    def parse_response(self, payload: Dict[str, Any]) -> TranscriptionResult:
        raise NotImplementedError

    async def _post(self, request_kwargs: Dict[str, Any]) -> Dict[str, Any]:
        last_error: Optional[Exception] = None

        async with httpx.AsyncClient(
            timeout=self.descriptor.request_timeout, transport=self._transport
        ) as client:
            for attempt in range(1, MAX_ATTEMPTS + 1):
                try:
                    response = await client.request("POST", **request_kwargs)
                except (httpx.TimeoutException, httpx.TransportError) as e:
                    last_error = e
                    logger.warning(
                        f"{self.provider_id} request failed (attempt {attempt}/{MAX_ATTEMPTS}): "
                        f"{type(e).__name__}"
                    )
                else:
                    if response.status_code < 400:
                        try:
                            return response.json()
                        except ValueError as e:
                            raise ProviderUnavailable(
                                f"Invalid response from {self.provider_id}: {e}",
                                provider_id=self.provider_id,
                            ) from e

                    if not is_transient_status(response.status_code):
                        raise ProviderUnavailable(
                            f"{self.provider_id} rejected the request: HTTP {response.status_code}",
                            provider_id=self.provider_id,
                        )

                    last_error = TransientNetworkFailure(
                        f"HTTP {response.status_code}",
                        provider_id=self.provider_id,
                        status_code=response.status_code,
                    )
                    logger.warning(
                        f"{self.provider_id} returned HTTP {response.status_code} "
                        f"(attempt {attempt}/{MAX_ATTEMPTS})"
                    )

                if attempt < MAX_ATTEMPTS:
                    await asyncio.sleep(RETRY_DELAY_SECONDS)

        status_code = getattr(last_error, "status_code", None)
        raise TransientNetworkFailure(
            f"{self.provider_id} unavailable after {MAX_ATTEMPTS} attempts: {last_error}",
            provider_id=self.provider_id,
            status_code=status_code,
        ) from last_error

    def _bearer_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.descriptor.secret}"}


class OpenAICompatibleProvider(HttpBatchProvider):
    """POST /audio/transcriptions as served by OpenAI, Groq and compatible servers."""

    display_name = "OpenAI-compatible"
    default_endpoint = "https://api.openai.com/v1"
    default_model = "whisper-1"

    def build_request(self, segment: AudioSegment) -> Dict[str, Any]:
        data = {
            "model": self.descriptor.model or self.default_model,
            "response_format": "json",
        }
        if self.descriptor.language:
            data["language"] = self.descriptor.language

        return {
            "url": f"{self.endpoint}/audio/transcriptions",
            "headers": self._bearer_headers(),
            "files": {"file": ("audio.wav", segment.to_wav_bytes(), "audio/wav")},
            "data": data,
        }

    def parse_response(self, payload: Dict[str, Any]) -> TranscriptionResult:
        return TranscriptionResult(text=(payload.get("text") or "").strip())


class GroqProvider(OpenAICompatibleProvider):
    display_name = "Groq"
    default_endpoint = "https://api.groq.com/openai/v1"
    default_model = "whisper-large-v3-turbo"


class DeepgramBatchProvider(HttpBatchProvider):
    display_name = "Deepgram"
    default_endpoint = "https://api.deepgram.com/v1"

    def build_request(self, segment: AudioSegment) -> Dict[str, Any]:
        params = {
            "model": self.descriptor.model or "nova-3",
            "smart_format": "true",
        }
        if self.descriptor.language:
            params["language"] = self.descriptor.language

        return {
            "url": f"{self.endpoint}/listen",
            "headers": {
                "Authorization": f"Token {self.descriptor.secret}",
                "Content-Type": "audio/wav",
            },
            "params": params,
            "content": segment.to_wav_bytes(),
        }

    def parse_response(self, payload: Dict[str, Any]) -> TranscriptionResult:
        channels = payload.get("results", {}).get("channels", [])
        alternatives = (channels[0].get("alternatives") if channels else None) or [{}]
        best = alternatives[0]
        return TranscriptionResult(
            text=(best.get("transcript") or "").strip(),
            confidence=best.get("confidence"),
        )


class ElevenLabsProvider(HttpBatchProvider):
    display_name = "ElevenLabs"
    default_endpoint = "https://api.elevenlabs.io/v1"

    def build_request(self, segment: AudioSegment) -> Dict[str, Any]:
        data = {"model_id": self.descriptor.model or "scribe_v1"}
        if self.descriptor.language:
            data["language_code"] = self.descriptor.language

        return {
            "url": f"{self.endpoint}/speech-to-text",
            "headers": {"xi-api-key": self.descriptor.secret or ""},
            "files": {"file": ("audio.wav", segment.to_wav_bytes(), "audio/wav")},
            "data": data,
        }

    def parse_response(self, payload: Dict[str, Any]) -> TranscriptionResult:
        return TranscriptionResult(
            text=(payload.get("text") or "").strip(),
            confidence=payload.get("language_probability"),
        )


class JsonEndpointProvider(HttpBatchProvider):
    """
    Generic JSON endpoint for self-hosted servers.

    Request body: {"audio": <base64 WAV>, "sample_rate", "model", "language"}.
    Response body: {"text": str, "confidence": float | null}.
    """

    display_name = "Custom JSON endpoint"
    requires_secret = False

    def build_request(self, segment: AudioSegment) -> Dict[str, Any]:
        if not self.endpoint:
            raise ProviderUnavailable(
                "No endpoint configured for custom provider",
                provider_id=self.provider_id,
            )

        headers = self._bearer_headers() if self.descriptor.secret else {}
        return {
            "url": self.endpoint,
            "headers": headers,
            "json": {
                "audio": base64.b64encode(segment.to_wav_bytes()).decode("ascii"),
                "sample_rate": segment.sample_rate,
                "model": self.descriptor.model or None,
                "language": self.descriptor.language,
            },
        }

    def parse_response(self, payload: Dict[str, Any]) -> TranscriptionResult:
        return TranscriptionResult(
            text=(payload.get("text") or "").strip(),
            confidence=payload.get("confidence"),
        )
