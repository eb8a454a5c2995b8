"""
Voice pipeline error taxonomy.

Everything except CaptureUnavailable is recovered inside the pipeline:
capture errors end a listening session, synthesis failures skip a segment,
responder failures become a spoken fallback reply. Provider errors are also
mapped to stable categories so logs stay comparable across providers.
"""
from typing import Optional


TRANSIENT_CAPTURE_ERRORS = frozenset({"no-speech"})


class VoicePipelineError(Exception):
    """Base class for voice pipeline errors."""


class CaptureUnavailable(VoicePipelineError):
    """No capture capability is present; starting a session is impossible."""


class CaptureError(VoicePipelineError):
    """Capture engine reported an error for the current listening session."""

    def __init__(self, kind: str):
        super().__init__(f"capture error: {kind}")
        self.kind = kind

    @property
    def transient(self) -> bool:
        return self.kind in TRANSIENT_CAPTURE_ERRORS


class SynthesisFailure(VoicePipelineError):
    """Synthesis for one segment failed; the segment is skipped."""

    def __init__(self, message: str, segment_index: Optional[int] = None):
        super().__init__(message)
        self.segment_index = segment_index


class ResponderFailure(VoicePipelineError):
    """The responder did not produce a usable reply."""


class ProviderErrorCategory:
    """Stable categories for upstream provider failures."""

    AUTH_FAILED = "provider.auth_failed"
    RATE_LIMITED = "provider.rate_limited"
    CAPACITY_LIMITED = "provider.capacity_limited"
    NETWORK_ERROR = "provider.network_error"
    BAD_RESPONSE = "provider.bad_response"
    UNKNOWN_ERROR = "provider.unknown_error"


def classify_provider_error(error: Exception, status: Optional[int] = None) -> str:
    """
    Classify a provider error into a stable category.

    `status` is the HTTP status when one was received.
    """
    if status is not None:
        if status in (401, 403):
            return ProviderErrorCategory.AUTH_FAILED
        if status == 429:
            return ProviderErrorCategory.RATE_LIMITED
        if status in (500, 502, 503, 504):
            return ProviderErrorCategory.CAPACITY_LIMITED
        if 400 <= status < 500:
            return ProviderErrorCategory.BAD_RESPONSE

    error_str = str(error).lower()
    if "api key" in error_str or "unauthorized" in error_str or "permission" in error_str:
        return ProviderErrorCategory.AUTH_FAILED
    if "quota" in error_str or "rate limit" in error_str or "429" in error_str:
        return ProviderErrorCategory.RATE_LIMITED
    if "timeout" in error_str or "connect" in error_str or "network" in error_str:
        return ProviderErrorCategory.NETWORK_ERROR
    if isinstance(error, (TimeoutError, ConnectionError)):
        return ProviderErrorCategory.NETWORK_ERROR
    if "json" in error_str or "empty response" in error_str:
        return ProviderErrorCategory.BAD_RESPONSE
    return ProviderErrorCategory.UNKNOWN_ERROR
