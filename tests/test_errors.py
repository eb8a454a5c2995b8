"""
Voice pipeline error taxonomy and provider error classification.
"""
import pytest

from voice_pipeline.errors import (
    CaptureError,
    CaptureUnavailable,
    ProviderErrorCategory,
    ResponderFailure,
    SynthesisFailure,
    VoicePipelineError,
    classify_provider_error,
)


class TestTaxonomy:
    def test_all_errors_share_a_base(self):
        for error in (
            CaptureUnavailable("none"),
            CaptureError("network"),
            SynthesisFailure("boom", segment_index=1),
            ResponderFailure("empty"),
        ):
            assert isinstance(error, VoicePipelineError)

    def test_no_speech_is_transient(self):
        assert CaptureError("no-speech").transient is True

    @pytest.mark.parametrize("kind", ["network", "not-allowed", "audio-capture", "aborted"])
    def test_other_capture_errors_are_not_transient(self, kind):
        error = CaptureError(kind)
        assert error.transient is False
        assert error.kind == kind

    def test_synthesis_failure_keeps_segment(self):
        assert SynthesisFailure("boom", segment_index=3).segment_index == 3


class TestProviderErrorClassification:
    @pytest.mark.parametrize("status,category", [
        (401, ProviderErrorCategory.AUTH_FAILED),
        (403, ProviderErrorCategory.AUTH_FAILED),
        (429, ProviderErrorCategory.RATE_LIMITED),
        (503, ProviderErrorCategory.CAPACITY_LIMITED),
        (400, ProviderErrorCategory.BAD_RESPONSE),
    ])
    def test_http_status(self, status, category):
        assert classify_provider_error(Exception("http error"), status=status) == category

    def test_auth_failed(self):
        assert classify_provider_error(Exception("API key not valid")) == ProviderErrorCategory.AUTH_FAILED

    def test_rate_limited(self):
        assert classify_provider_error(Exception("Quota exceeded")) == ProviderErrorCategory.RATE_LIMITED

    def test_network_error(self):
        assert classify_provider_error(Exception("Connection refused")) == ProviderErrorCategory.NETWORK_ERROR
        assert classify_provider_error(TimeoutError()) == ProviderErrorCategory.NETWORK_ERROR

    def test_bad_response(self):
        assert classify_provider_error(Exception("Empty response from Gemini")) == ProviderErrorCategory.BAD_RESPONSE

    def test_unknown_error(self):
        assert classify_provider_error(Exception("Something weird happened")) == ProviderErrorCategory.UNKNOWN_ERROR
