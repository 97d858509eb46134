"""Tests for the error taxonomy and the single raise path."""

import httpx
import pytest

from ai_models_bridge.errors import (
    AIModelError,
    ErrorKind,
    ensure_stream_success,
    ensure_success,
    infer_error_kind,
    kind_for_status,
    raise_model_error,
)
from ai_models_bridge.models.events import ErrorEvent


class TestAIModelError:
    """Test the AIModelError type."""

    def test_defaults_to_unknown_kind(self) -> None:
        """Test an error without a kind is UNKNOWN_ERROR."""
        error = AIModelError("boom")
        assert error.kind is ErrorKind.UNKNOWN_ERROR
        assert str(error) == "boom"
        assert error.reported is False

    def test_transient_kinds(self) -> None:
        """Test which kinds are considered transient."""
        assert AIModelError("x", ErrorKind.NETWORK_ERROR).is_transient
        assert AIModelError("x", ErrorKind.UNAUTHORIZED).is_transient
        assert not AIModelError("x", ErrorKind.INVALID_MODEL).is_transient

    def test_repr_includes_kind(self) -> None:
        """Test repr names the kind."""
        assert "RATE_LIMIT_EXCEEDED" in repr(AIModelError("x", ErrorKind.RATE_LIMIT_EXCEEDED))


class TestInferErrorKind:
    """Test error kind inference."""

    def test_none_is_unknown(self) -> None:
        """Test None maps to UNKNOWN_ERROR."""
        assert infer_error_kind(None) is ErrorKind.UNKNOWN_ERROR

    def test_model_error_keeps_kind(self) -> None:
        """Test an AIModelError keeps its own kind."""
        error = AIModelError("x", ErrorKind.CONTENT_FILTERED)
        assert infer_error_kind(error) is ErrorKind.CONTENT_FILTERED

    def test_httpx_errors(self) -> None:
        """Test transport failures map to network and timeout kinds."""
        assert infer_error_kind(httpx.ConnectError("refused")) is ErrorKind.NETWORK_ERROR
        assert infer_error_kind(httpx.ReadTimeout("slow")) is ErrorKind.SERVICE_UNAVAILABLE

    def test_message_heuristics(self) -> None:
        """Test kinds inferred from the error message."""
        assert infer_error_kind(RuntimeError("connection reset")) is ErrorKind.NETWORK_ERROR
        assert infer_error_kind(RuntimeError("Permission denied")) is ErrorKind.UNAUTHORIZED
        assert infer_error_kind(RuntimeError("request timed out")) is ErrorKind.SERVICE_UNAVAILABLE
        assert infer_error_kind(RuntimeError("weird")) is ErrorKind.UNKNOWN_ERROR

    @pytest.mark.parametrize(
        ("status", "kind"),
        [
            (401, ErrorKind.UNAUTHORIZED),
            (403, ErrorKind.UNAUTHORIZED),
            (429, ErrorKind.RATE_LIMIT_EXCEEDED),
            (400, ErrorKind.INVALID_REQUEST),
            (503, ErrorKind.SERVICE_UNAVAILABLE),
        ],
    )
    def test_kind_for_status(self, status: int, kind: ErrorKind) -> None:
        """Test status code mapping."""
        assert kind_for_status(status) is kind


class TestRaiseModelError:
    """Test raise_model_error."""

    def test_always_raises(self) -> None:
        """Test the function raises even without a sink."""
        with pytest.raises(AIModelError) as exc_info:
            raise_model_error("Doing work", ErrorKind.INVALID_REQUEST)
        assert exc_info.value.kind is ErrorKind.INVALID_REQUEST
        assert exc_info.value.message == "Doing work"

    def test_wraps_cause_message(self) -> None:
        """Test the cause message is prefixed and chained."""
        cause = ValueError("bad value")
        with pytest.raises(AIModelError) as exc_info:
            raise_model_error("Parsing reply", cause=cause)
        assert exc_info.value.message == "bad value - Parsing reply"
        assert exc_info.value.__cause__ is cause

    def test_emits_error_event_once(self) -> None:
        """Test the sink receives one ERROR event."""
        events: list[object] = []
        with pytest.raises(AIModelError) as exc_info:
            raise_model_error("Sending", ErrorKind.NETWORK_ERROR, emit=events.append)
        assert len(events) == 1
        assert isinstance(events[0], ErrorEvent)
        assert events[0].error is exc_info.value
        assert exc_info.value.reported

    def test_reported_cause_is_not_emitted_again(self) -> None:
        """Test re-wrapping a reported error does not emit a second event."""
        events: list[object] = []
        with pytest.raises(AIModelError) as first:
            raise_model_error("Inner", ErrorKind.UNAUTHORIZED, emit=events.append)
        with pytest.raises(AIModelError) as second:
            raise_model_error("Outer", emit=events.append, cause=first.value)
        assert len(events) == 1
        assert second.value.kind is ErrorKind.UNAUTHORIZED
        assert second.value.reported


class TestEnsureSuccess:
    """Test response status checks."""

    def test_success_passes(self) -> None:
        """Test a 2xx response does not raise."""
        ensure_success(httpx.Response(200), "Request")

    def test_failure_raises_mapped_kind(self) -> None:
        """Test a 429 raises RATE_LIMIT_EXCEEDED."""
        with pytest.raises(AIModelError) as exc_info:
            ensure_success(httpx.Response(429), "Request")
        assert exc_info.value.kind is ErrorKind.RATE_LIMIT_EXCEEDED
        assert "429" in str(exc_info.value)

    async def test_stream_failure_includes_body(self) -> None:
        """Test the streamed variant includes the body prefix."""
        response = httpx.Response(500, content=b"upstream exploded")
        with pytest.raises(AIModelError) as exc_info:
            await ensure_stream_success(response, "Stream")
        assert "upstream exploded" in str(exc_info.value)
        assert exc_info.value.kind is ErrorKind.SERVICE_UNAVAILABLE

    async def test_stream_failure_explicit_kind(self) -> None:
        """Test an explicit kind overrides the status mapping."""
        response = httpx.Response(403, content=b"nope")
        with pytest.raises(AIModelError) as exc_info:
            await ensure_stream_success(response, "Stream", ErrorKind.SERVICE_UNAVAILABLE)
        assert exc_info.value.kind is ErrorKind.SERVICE_UNAVAILABLE
