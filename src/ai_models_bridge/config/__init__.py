"""Configuration loading and validation."""

from .loader import load_config, validate_config
from .schema import (
    AuthConfig,
    BridgeConfig,
    ClaudeConfig,
    CopilotConfig,
    DeepSeekConfig,
    GeminiConfig,
    HttpConfig,
    LoggingConfig,
    ModelsConfig,
    OpenRouterConfig,
    PerplexityConfig,
    PowConfig,
    StorageConfig,
)

__all__ = [
    # Loader
    "load_config",
    "validate_config",
    # Root config
    "BridgeConfig",
    # Top-level configs
    "ModelsConfig",
    "StorageConfig",
    "AuthConfig",
    "PowConfig",
    "HttpConfig",
    "LoggingConfig",
    # Backend-specific configs
    "DeepSeekConfig",
    "CopilotConfig",
    "GeminiConfig",
    "ClaudeConfig",
    "PerplexityConfig",
    "OpenRouterConfig",
]
