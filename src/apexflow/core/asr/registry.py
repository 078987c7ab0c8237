from dataclasses import dataclass
from typing import Dict, List, Optional, Type

from ...utils.logger import get_logger
from ..credentials import EnvironmentSecretResolver, SecretResolver
from ..errors import ProviderUnavailable
from .base import ProviderDescriptor, ProviderKind, TranscriptionProvider
from .cloud import (
    DeepgramBatchProvider,
    ElevenLabsProvider,
    GroqProvider,
    JsonEndpointProvider,
    OpenAICompatibleProvider,
)
from .local import LocalSherpaProvider
from .streaming import (
    AssemblyAIStreamingProvider,
    DeepgramStreamingProvider,
    JsonEventStreamingProvider,
    OpenAIRealtimeStreamingProvider,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class ProviderEntry:
    display_name: str
    provider_class: Type[TranscriptionProvider]
    secret_key: Optional[str]  # id passed to the SecretResolver

    @property
    def kind(self) -> ProviderKind:
        return self.provider_class.kind


PROVIDERS: Dict[str, ProviderEntry] = {
    "local": ProviderEntry("Local (sherpa-onnx)", LocalSherpaProvider, None),
    "openai": ProviderEntry("OpenAI", OpenAICompatibleProvider, "openai"),
    "groq": ProviderEntry("Groq", GroqProvider, "groq"),
    "deepgram": ProviderEntry("Deepgram", DeepgramBatchProvider, "deepgram"),
    "elevenlabs": ProviderEntry("ElevenLabs", ElevenLabsProvider, "elevenlabs"),
    "custom": ProviderEntry("Custom JSON endpoint", JsonEndpointProvider, "custom"),
    "deepgram-live": ProviderEntry("Deepgram (live)", DeepgramStreamingProvider, "deepgram"),
    "openai-realtime": ProviderEntry(
        "OpenAI (realtime)", OpenAIRealtimeStreamingProvider, "openai"
    ),
    "assemblyai-streaming": ProviderEntry(
        "AssemblyAI (streaming)", AssemblyAIStreamingProvider, "assemblyai"
    ),
    "custom-streaming": ProviderEntry(
        "Custom streaming endpoint", JsonEventStreamingProvider, "custom"
    ),
}


def get_provider_entry(provider_id: str) -> ProviderEntry:
    entry = PROVIDERS.get(provider_id)
    if entry is None:
        raise ProviderUnavailable(
            f"Unknown transcription provider '{provider_id}'", provider_id=provider_id
        )
    return entry


def get_provider_ids(kind: Optional[ProviderKind] = None) -> List[str]:
    return [pid for pid, entry in PROVIDERS.items() if kind is None or entry.kind is kind]


def is_streaming_provider(provider_id: str) -> bool:
    return get_provider_entry(provider_id).kind is ProviderKind.STREAMING


def create_transcription_provider(
    settings,
    secret_resolver: Optional[SecretResolver] = None,
    *,
    fallback: bool = False,
    **provider_kwargs,
) -> TranscriptionProvider:
    """
    Build the configured provider for one session.

    Args:
        settings: Settings (or a snapshot of it) taken at session start
        secret_resolver: Callable returning the secret for a provider id
        fallback: Build the streaming fallback batch provider instead
        provider_kwargs: Passed through to the provider class (test transports)
    """
    if fallback:
        provider_id = settings.fallback_transcription_provider
        model = settings.fallback_transcription_model
        endpoint = settings.fallback_transcription_endpoint
    else:
        provider_id = settings.transcription_provider
        model = settings.transcription_model
        endpoint = settings.transcription_endpoint

    entry = get_provider_entry(provider_id)
    if fallback and entry.kind is not ProviderKind.BATCH:
        raise ProviderUnavailable(
            f"Fallback provider '{provider_id}' must be a batch provider",
            provider_id=provider_id,
        )

    resolver = secret_resolver or EnvironmentSecretResolver()
    secret = resolver(entry.secret_key) if entry.secret_key else None

    descriptor = ProviderDescriptor(
        provider_id=provider_id,
        model=model,
        endpoint=endpoint,
        language=settings.transcription_language,
        secret=secret,
        sample_rate=settings.sample_rate,
        request_timeout=settings.request_timeout,
        connect_timeout=settings.connect_timeout,
        idle_timeout=settings.idle_timeout,
    )

    logger.info(
        f"Using {entry.kind.value} transcription provider '{provider_id}' "
        f"(model={model or 'default'})"
    )
    return entry.provider_class(descriptor, **provider_kwargs)
