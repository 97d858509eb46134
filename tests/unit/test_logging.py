"""Tests for the logging configuration module."""

from pathlib import Path

from ai_models_bridge.utils.logging import (
    LogEventNames,
    LogFormat,
    LogLevel,
    add_context_processor,
    bind_context,
    clear_context,
    configure_logging,
    get_logger,
    sanitize_log_value,
    secret_sanitizer,
    unbind_context,
)


class TestSanitizeLogValue:
    """Tests for sanitize_log_value function."""

    def test_sanitize_bearer_header(self) -> None:
        """Test that Authorization header values are redacted."""
        text = "headers: Authorization: Bearer abcdef0123456789xyz"
        result = sanitize_log_value(text)
        assert "abcdef0123456789xyz" not in result
        assert "[REDACTED]" in result

    def test_sanitize_session_cookie(self) -> None:
        """Test that the Claude session cookie is redacted."""
        result = sanitize_log_value("Cookie: sessionKey=sk-ant-sid01-FAKEVALUE")
        assert "FAKEVALUE" not in result

    def test_sanitize_socket_url(self) -> None:
        """Test that the access token query parameter is redacted."""
        url = "wss://copilot.microsoft.com/c/api/chat?api-version=2&accessToken=eyFAKE.token"
        result = sanitize_log_value(url)
        assert "eyFAKE.token" not in result
        assert "api-version=2" in result

    def test_sanitize_string_without_secrets(self) -> None:
        """Test that strings without secrets are unchanged."""
        text = "Normal log message without secrets"
        assert sanitize_log_value(text) == text

    def test_sanitize_nested_dict(self) -> None:
        """Test that nested dicts are recursively sanitized."""
        data = {
            "message": "test",
            "nested": {"key": "sk-or-v1-" + "a" * 40},
        }
        result = sanitize_log_value(data)
        assert result["nested"]["key"] == "[REDACTED]"

    def test_sensitive_keys_masked(self) -> None:
        """Test credential keys are masked even when the value looks harmless."""
        data = {"cookies": {"sid": "abc"}, "Token": "short", "thread_id": "t1", "api_key": None}
        result = sanitize_log_value(data)
        assert result["cookies"] == "[REDACTED]"
        assert result["Token"] == "[REDACTED]"
        assert result["thread_id"] == "t1"
        assert result["api_key"] is None

    def test_sanitize_list_and_tuple(self) -> None:
        """Test that lists and tuples keep their type."""
        result = sanitize_log_value(["normal", "Bearer abcdefghijklmnop"])
        assert result[0] == "normal"
        assert "[REDACTED]" in result[1]
        assert isinstance(sanitize_log_value(("a", "b")), tuple)

    def test_sanitize_non_string(self) -> None:
        """Test that non-strings are passed through."""
        assert sanitize_log_value(123) == 123
        assert sanitize_log_value(12.5) == 12.5
        assert sanitize_log_value(True) is True
        assert sanitize_log_value(None) is None


class TestProcessors:
    """Tests for the structlog processors."""

    def test_sanitizer_redacts_secrets(self) -> None:
        """Test that the processor redacts secrets."""
        event_dict = {
            "event": "test",
            "token": "sk-ant-api03-" + "x" * 40,
        }
        result = secret_sanitizer(None, "info", event_dict)  # type: ignore
        assert "[REDACTED]" in result["token"]

    def test_sanitizer_preserves_non_secrets(self) -> None:
        """Test that non-secret values are preserved."""
        event_dict = {"event": "thread_saved", "level": "info", "messages": 4}
        result = secret_sanitizer(None, "info", event_dict)  # type: ignore
        assert result == event_dict

    def test_context_processor_adds_service(self) -> None:
        """Test the service name is injected."""
        result = add_context_processor(None, "info", {"event": "x"})  # type: ignore
        assert result["service"] == "ai-models-bridge"


class TestConfigureLogging:
    """Tests for configure_logging function."""

    def test_configure_with_console_format(self) -> None:
        """Test configuration with console format."""
        configure_logging(level=LogLevel.DEBUG, log_format=LogFormat.CONSOLE)

    def test_configure_with_string_values(self) -> None:
        """Test configuration with string values."""
        configure_logging(level="warning", log_format="JSON")

    def test_configure_with_file_logging(self, tmp_path: Path) -> None:
        """Test that the log file directory is created."""
        log_file = tmp_path / "logs" / "bridge.log"
        configure_logging(
            level=LogLevel.INFO,
            log_format=LogFormat.JSON,
            file_path=log_file,
            file_enabled=True,
        )
        assert log_file.parent.exists()


class TestContextFunctions:
    """Tests for context binding functions."""

    def test_bind_unbind_and_clear(self) -> None:
        """Test binding, unbinding and clearing context."""
        configure_logging()
        assert get_logger("test") is not None
        bind_context(model="DeepSeek", thread_id="t1")
        unbind_context("thread_id")
        clear_context()


class TestLogEventNames:
    """Tests for the event name constants."""

    def test_names_are_snake_case(self) -> None:
        """Test every event name is a snake_case string."""
        names = [v for k, v in vars(LogEventNames).items() if k.isupper()]
        assert names
        for name in names:
            assert name == name.lower()
            assert " " not in name
