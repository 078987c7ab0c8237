from .base import (
    BatchTranscriptionProvider,
    ProviderDescriptor,
    ProviderKind,
    StreamingTranscriptionProvider,
    TranscriptionProvider,
    TranscriptionResult,
)
from .cloud import (
    DeepgramBatchProvider,
    ElevenLabsProvider,
    GroqProvider,
    JsonEndpointProvider,
    OpenAICompatibleProvider,
)
from .local import LocalSherpaProvider, is_model_cached, list_local_models, unload_models
from .registry import (
    PROVIDERS,
    create_transcription_provider,
    get_provider_ids,
    is_streaming_provider,
)
from .streaming import (
    AssemblyAIStreamingProvider,
    DeepgramStreamingProvider,
    JsonEventStreamingProvider,
    OpenAIRealtimeStreamingProvider,
    StreamState,
)

__all__ = [
    "TranscriptionProvider",
    "BatchTranscriptionProvider",
    "StreamingTranscriptionProvider",
    "ProviderDescriptor",
    "ProviderKind",
    "TranscriptionResult",
    "LocalSherpaProvider",
    "OpenAICompatibleProvider",
    "GroqProvider",
    "DeepgramBatchProvider",
    "ElevenLabsProvider",
    "JsonEndpointProvider",
    "DeepgramStreamingProvider",
    "OpenAIRealtimeStreamingProvider",
    "AssemblyAIStreamingProvider",
    "JsonEventStreamingProvider",
    "StreamState",
    "PROVIDERS",
    "create_transcription_provider",
    "get_provider_ids",
    "is_streaming_provider",
    "is_model_cached",
    "list_local_models",
    "unload_models",
]
