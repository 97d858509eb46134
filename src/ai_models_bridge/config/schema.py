"""Pydantic models for configuration schema."""

from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BackendName = Literal["deepseek", "copilot", "gemini", "claude", "perplexity", "openrouter"]


def _check_service_url(v: str) -> str:
    from ..utils.security import validate_service_url

    if not validate_service_url(v):
        raise ValueError(f"Invalid service URL: {v}. Expected https:// (or http:// on localhost)")
    return v.rstrip("/")


class ServiceConfig(BaseModel):
    """Settings shared by every backend."""

    base_url: str

    @field_validator("base_url")
    @classmethod
    def validate_base_url(cls, v: str) -> str:
        """Validate the backend URL and drop a trailing slash."""
        return _check_service_url(v)


class DeepSeekConfig(ServiceConfig):
    """DeepSeek web configuration."""

    base_url: str = "https://chat.deepseek.com"
    upload_poll_attempts: int = Field(10, ge=1, le=60)
    upload_poll_interval: float = Field(1.5, ge=0.0, le=30.0)


class CopilotConfig(ServiceConfig):
    """Bing Copilot web configuration."""

    base_url: str = "https://copilot.microsoft.com"
    timezone: str = "UTC"
    open_timeout: float = Field(7.0, gt=0, le=60)
    grace_timeout: float = Field(5.0, ge=0, le=60)


class GeminiConfig(ServiceConfig):
    """Gemini web configuration."""

    base_url: str = "https://gemini.google.com"
    cookies: dict[str, str] = {}
    model: str = "gemini-2.0-flash"
    default_model: str = Field(
        "2.0 Flash", description="Model label recorded on threads and shares"
    )
    language: str = "en"


class ClaudeConfig(ServiceConfig):
    """Claude.ai web configuration."""

    base_url: str = "https://claude.ai"
    session_key: str | None = None
    model: str = "claude-2.1"
    fallback_model: str | None = "claude-2.0"


class PerplexityConfig(ServiceConfig):
    """Perplexity web configuration."""

    base_url: str = "https://www.perplexity.ai"
    cookies: dict[str, str] = {}
    default_model: str = "Perplexity Sonar"
    language: str = "en-US"
    timezone: str = "UTC"


class OpenRouterConfig(ServiceConfig):
    """OpenRouter API configuration."""

    api_key: str | None = None
    base_url: str = "https://openrouter.ai/api/v1"
    model: str = "openai/gpt-4o-mini"
    context_size: int = Field(9, ge=0, le=100, description="Prior thread messages sent")
    referer: str | None = None
    title: str | None = "ai-models-bridge"


class ModelsConfig(BaseModel):
    """Backend selection and per-backend settings."""

    default: BackendName = "openrouter"
    deepseek: DeepSeekConfig = DeepSeekConfig()
    copilot: CopilotConfig = CopilotConfig()
    gemini: GeminiConfig = GeminiConfig()
    claude: ClaudeConfig = ClaudeConfig()
    perplexity: PerplexityConfig = PerplexityConfig()
    openrouter: OpenRouterConfig = OpenRouterConfig()


class StorageConfig(BaseModel):
    """Thread store configuration."""

    backend: Literal["memory", "json"] = "json"
    path: Path = Path("~/.ai-models-bridge/threads.json")
    key: str = "chat_threads"

    @field_validator("path")
    @classmethod
    def expand_path(cls, v: Path) -> Path:
        """Expand ``~`` in the store path."""
        return v.expanduser()


class AuthConfig(BaseModel):
    """Auth broker and token cache configuration."""

    broker: Literal["static", "http"] = "static"
    tokens: dict[str, str] = {}
    broker_url: str | None = None
    request_timeout: float = Field(60.0, gt=0, le=600)
    token_ttl: int = Field(1800, ge=60, description="Cached token lifetime in seconds")
    refresh_threshold: int = Field(300, ge=0)

    @model_validator(mode="after")
    def check_broker(self) -> "AuthConfig":
        """Validate the broker URL and cache timings."""
        if self.broker_url is not None:
            self.broker_url = _check_service_url(self.broker_url)
        if self.refresh_threshold >= self.token_ttl:
            raise ValueError("refresh_threshold must be shorter than token_ttl")
        return self


class PowConfig(BaseModel):
    """Proof-of-work solver configuration."""

    solver_url: str | None = None
    timeout: float = Field(30.0, gt=0, le=300)

    @field_validator("solver_url")
    @classmethod
    def validate_solver_url(cls, v: str | None) -> str | None:
        """Validate the solver URL."""
        return _check_service_url(v) if v is not None else None


class HttpConfig(BaseModel):
    """HTTP client configuration."""

    timeout: float = Field(60.0, gt=0, le=600)
    connect_timeout: float = Field(10.0, gt=0, le=120)
    user_agent: str = (
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
    )


class FileLoggingConfig(BaseModel):
    """File logging configuration."""

    enabled: bool = False
    path: Path = Path("~/.ai-models-bridge/bridge.log")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO"
    format: Literal["json", "console"] = "console"
    file: FileLoggingConfig = FileLoggingConfig()


class BridgeConfig(BaseSettings):
    """Root configuration for AI Models Bridge."""

    models: ModelsConfig = ModelsConfig()
    storage: StorageConfig = StorageConfig()
    auth: AuthConfig = AuthConfig()
    pow: PowConfig = PowConfig()
    http: HttpConfig = HttpConfig()
    logging: LoggingConfig = LoggingConfig()

    model_config = SettingsConfigDict(
        env_prefix="BRIDGE_",
        env_file=".env",
        env_nested_delimiter="__",
    )
