"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path

import yaml

from .schema import BridgeConfig


def substitute_env_vars(text: str) -> str:
    """
    Replace ${VAR_NAME} patterns with environment variable values.

    Args:
        text: Text containing ${VAR_NAME} patterns

    Returns:
        Text with environment variables substituted

    Raises:
        ValueError: If a referenced environment variable is not found
    """

    def replacer(match: re.Match[str]) -> str:
        var_name = match.group(1)
        value = os.environ.get(var_name)
        if value is None:
            raise ValueError(f"Environment variable {var_name} not found")
        return value

    return re.sub(r"\$\{([^}]+)\}", replacer, text)


def load_config(path: Path | None = None) -> BridgeConfig:
    """
    Load configuration from a YAML file, or from the environment alone.

    Args:
        path: Path to YAML configuration file; None uses defaults, ``.env``
            and ``BRIDGE_*`` environment variables only

    Returns:
        Validated BridgeConfig instance

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If environment variables are missing or config is invalid
        ValidationError: If config doesn't match schema
    """
    if path is None:
        config = BridgeConfig()
        validate_config(config)
        return config

    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    with path.open() as f:
        raw_yaml = f.read()

    # Substitute environment variables
    yaml_with_env = substitute_env_vars(raw_yaml)

    # Parse YAML
    config_dict = yaml.safe_load(yaml_with_env) or {}

    # Validate and construct Pydantic model
    config = BridgeConfig.model_validate(config_dict)

    # Additional cross-field validation
    validate_config(config)

    return config


def validate_config(config: BridgeConfig) -> None:
    """
    Perform additional cross-field validation.

    Ensures that the collaborators a selection depends on are configured.

    Args:
        config: Configuration to validate

    Raises:
        ValueError: If a required setting is missing
    """
    if config.auth.broker == "http" and not config.auth.broker_url:
        raise ValueError("HTTP auth broker selected but auth.broker_url missing")

    default = config.models.default
    if default == "claude" and not config.models.claude.session_key:
        raise ValueError("Claude selected but models.claude.session_key missing")
    elif default == "deepseek" and not config.pow.solver_url:
        raise ValueError("DeepSeek selected but pow.solver_url missing")
