"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
from pydantic import ValidationError

from ai_models_bridge.config.loader import load_config, substitute_env_vars, validate_config
from ai_models_bridge.config.schema import (
    AuthConfig,
    BridgeConfig,
    ClaudeConfig,
    DeepSeekConfig,
    OpenRouterConfig,
    PowConfig,
    StorageConfig,
)


class TestSubstituteEnvVars:
    """Test environment variable substitution."""

    def test_substitute_single_var(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test substituting a single environment variable."""
        monkeypatch.setenv("TEST_VAR", "test_value")
        assert substitute_env_vars("Value is ${TEST_VAR}") == "Value is test_value"

    def test_substitute_multiple_vars(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test substituting multiple environment variables."""
        monkeypatch.setenv("VAR1", "value1")
        monkeypatch.setenv("VAR2", "value2")
        assert substitute_env_vars("${VAR1} and ${VAR2}") == "value1 and value2"

    def test_missing_env_var_raises(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test that missing environment variables raise ValueError."""
        monkeypatch.delenv("MISSING", raising=False)
        with pytest.raises(ValueError, match="Environment variable MISSING not found"):
            substitute_env_vars("Value is ${MISSING}")

    def test_no_substitution_needed(self) -> None:
        """Test text without environment variables passes through unchanged."""
        assert substitute_env_vars("plain text without vars") == "plain text without vars"


class TestServiceUrls:
    """Test backend and helper URL validation."""

    def test_trailing_slash_dropped(self) -> None:
        """Test base URLs are normalized."""
        config = DeepSeekConfig(base_url="https://chat.deepseek.com/")
        assert config.base_url == "https://chat.deepseek.com"

    def test_insecure_remote_url_rejected(self) -> None:
        """Test plain http to a remote host is rejected."""
        with pytest.raises(ValidationError, match="Invalid service URL"):
            OpenRouterConfig(base_url="http://openrouter.ai/api/v1")

    def test_local_solver_url_allowed(self) -> None:
        """Test a loopback http solver URL is accepted."""
        url = "http://127.0.0.1:9000/solve"
        assert PowConfig(solver_url=url).solver_url == url


class TestAuthConfig:
    """Test auth configuration."""

    def test_defaults(self) -> None:
        """Test the token cache defaults."""
        config = AuthConfig()
        assert config.broker == "static"
        assert config.token_ttl == 1800
        assert config.refresh_threshold == 300

    def test_threshold_must_be_below_ttl(self) -> None:
        """Test refresh_threshold >= token_ttl is rejected."""
        with pytest.raises(ValidationError, match="refresh_threshold"):
            AuthConfig(token_ttl=600, refresh_threshold=600)

    def test_broker_url_validated(self) -> None:
        """Test the broker URL goes through service URL validation."""
        with pytest.raises(ValidationError):
            AuthConfig(broker="http", broker_url="http://example.com/auth")


class TestStorageConfig:
    """Test storage configuration."""

    def test_path_is_expanded(self) -> None:
        """Test ``~`` is expanded in the store path."""
        config = StorageConfig(path=Path("~/threads.json"))
        assert "~" not in str(config.path)
        assert config.key == "chat_threads"


class TestValidateConfig:
    """Test cross-field validation."""

    def test_default_config_is_valid(self) -> None:
        """Test defaults pass validation."""
        validate_config(BridgeConfig())

    def test_http_broker_requires_url(self) -> None:
        """Test an http broker without URL is rejected."""
        config = BridgeConfig(auth=AuthConfig(broker="http"))
        with pytest.raises(ValueError, match="broker_url"):
            validate_config(config)

    def test_claude_requires_session_key(self) -> None:
        """Test selecting Claude without a session key is rejected."""
        config = BridgeConfig.model_validate({"models": {"default": "claude"}})
        with pytest.raises(ValueError, match="session_key"):
            validate_config(config)

    def test_claude_with_session_key(self) -> None:
        """Test Claude with a session key passes."""
        config = BridgeConfig.model_validate(
            {"models": {"default": "claude", "claude": ClaudeConfig(session_key="sk").model_dump()}}
        )
        validate_config(config)

    def test_deepseek_requires_solver(self) -> None:
        """Test selecting DeepSeek without a PoW solver is rejected."""
        config = BridgeConfig.model_validate({"models": {"default": "deepseek"}})
        with pytest.raises(ValueError, match="solver_url"):
            validate_config(config)


class TestLoadConfig:
    """Test loading configuration files."""

    def test_load_yaml_with_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test a YAML file with environment substitution."""
        monkeypatch.setenv("OPENROUTER_KEY", "sk-or-v1-test")
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "models:\n"
            "  default: openrouter\n"
            "  openrouter:\n"
            "    api_key: ${OPENROUTER_KEY}\n"
            "    model: openai/gpt-4o\n"
            "storage:\n"
            "  backend: memory\n"
            "logging:\n"
            "  level: DEBUG\n"
        )

        config = load_config(config_file)

        assert config.models.openrouter.api_key == "sk-or-v1-test"
        assert config.models.openrouter.model == "openai/gpt-4o"
        assert config.storage.backend == "memory"
        assert config.logging.level == "DEBUG"

    def test_empty_file_uses_defaults(self, tmp_path: Path) -> None:
        """Test an empty YAML document yields the defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")
        config = load_config(config_file)
        assert config.models.default == "openrouter"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        """Test a missing file raises FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml")

    def test_invalid_backend_rejected(self, tmp_path: Path) -> None:
        """Test an unknown default backend fails schema validation."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("models:\n  default: chatgpt\n")
        with pytest.raises(ValidationError):
            load_config(config_file)

    def test_no_path_uses_environment(self, monkeypatch: pytest.MonkeyPatch) -> None:
        """Test nested settings are read from BRIDGE_ variables."""
        monkeypatch.setenv("BRIDGE_STORAGE__BACKEND", "memory")
        config = load_config(None)
        assert config.storage.backend == "memory"
