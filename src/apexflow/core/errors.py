"""
Pipeline error taxonomy.

Every failure the pipeline reports carries a stable ``code`` so that callers
and diagnostics can match on it without inspecting messages. Cancellation is
not part of this hierarchy: it is a normal terminal state.
"""

from typing import Optional


class PipelineError(Exception):
    code = "error"
    fatal = True

    def __init__(self, message: str = "", *, provider_id: Optional[str] = None):
        super().__init__(message or self.code)
        self.provider_id = provider_id


class DeviceLost(PipelineError):
    code = "device_lost"


class Overrun(PipelineError):
    """Capture backpressure exceeded the bounded queue depth."""

    code = "overrun"


class NoSpeechDetected(PipelineError):
    code = "no_speech"


class ProviderUnavailable(PipelineError):
    """Provider rejected the request (4xx) or is misconfigured."""

    code = "provider_unavailable"


class TransientNetworkFailure(PipelineError):
    """Timeout or 5xx that persisted after the retry budget."""

    code = "transient_network_failure"

    def __init__(
        self,
        message: str = "",
        *,
        provider_id: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, provider_id=provider_id)
        self.status_code = status_code


class StreamBroken(PipelineError):
    code = "stream_broken"


class EnhancementFailed(PipelineError):
    code = "enhancement_failed"
    fatal = False


class SanitizationAnomaly(PipelineError):
    code = "sanitization_anomaly"
    fatal = False


class AlreadyActive(PipelineError):
    code = "already_active"


def is_transient_status(status_code: int) -> bool:
    return status_code >= 500
