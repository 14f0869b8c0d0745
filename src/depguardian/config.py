"""Configuration loading for depguardian.

Settings come from an optional ``.depguardian.json`` file. String values may
reference environment variables as ``${VAR_NAME}``; a ``.env`` file is picked
up by the CLI through python-dotenv before anything is resolved.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from depguardian.models.schemas import Severity

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILENAME = ".depguardian.json"

_ENV_PLACEHOLDER = re.compile(r"\$\{([^}]+)\}")


class ConfigurationError(Exception):
    """Raised when the requested configuration cannot be honored."""


class OSVSettings(BaseModel):
    """OSV source settings. OSV is always queried."""

    endpoint: str = "https://api.osv.dev/v1"


class SnykSettings(BaseModel):
    """Snyk source settings."""

    enabled: bool = False
    token: str | None = None
    organization: str | None = None
    endpoint: str = "https://api.snyk.io"


class ScanSettings(BaseModel):
    """Scan behavior."""

    severity: Severity = Severity.LOW  # Report threshold
    ignore_packages: list[str] = Field(default_factory=list)
    batch_size: int = 20
    include_dev: bool = True


class DetectionSettings(BaseModel):
    """Supply-chain detector tuning."""

    enabled: bool = True
    extra_popular_packages: list[str] = Field(default_factory=list)


class DepGuardianConfig(BaseModel):
    """Top-level configuration."""

    osv: OSVSettings = Field(default_factory=OSVSettings)
    snyk: SnykSettings = Field(default_factory=SnykSettings)
    scanning: ScanSettings = Field(default_factory=ScanSettings)
    detection: DetectionSettings = Field(default_factory=DetectionSettings)

    @property
    def snyk_active(self) -> bool:
        """Snyk is queried when explicitly enabled or when a token is present."""
        return self.snyk.enabled or bool(self.snyk.token)

    def validate_settings(self) -> None:
        """Check cross-field rules.

        Raises:
            ConfigurationError: Listing every violated rule.
        """
        errors = []
        if self.snyk.enabled and not self.snyk.token:
            errors.append("Snyk token is required when Snyk integration is enabled")
        if self.scanning.batch_size < 1:
            errors.append("scanning.batch_size must be at least 1")
        if errors:
            raise ConfigurationError(
                "Configuration validation failed:\n" + "\n".join(errors)
            )


def substitute_env(value: Any, environ: dict[str, str] | None = None) -> Any:
    """Replace ``${VAR}`` placeholders in every string of a JSON structure.

    Unknown variables are left in place and logged.
    """
    env = os.environ if environ is None else environ

    if isinstance(value, str):

        def _replace(match: re.Match) -> str:
            name = match.group(1)
            if name not in env:
                logger.warning(f"Environment variable {name} not found, keeping placeholder")
                return match.group(0)
            return env[name]

        return _ENV_PLACEHOLDER.sub(_replace, value)
    if isinstance(value, list):
        return [substitute_env(item, env) for item in value]
    if isinstance(value, dict):
        return {key: substitute_env(item, env) for key, item in value.items()}
    return value


def load_config(
    path: Path | None = None,
    environ: dict[str, str] | None = None,
) -> DepGuardianConfig:
    """Load, resolve and validate configuration.

    Args:
        path: Config file. Defaults to ``.depguardian.json`` in the working
            directory; a missing default file means defaults.
        environ: Environment to resolve placeholders from. Defaults to
            ``os.environ``.

    Returns:
        Validated DepGuardianConfig.

    Raises:
        ConfigurationError: If the file is unreadable, not JSON, has the wrong
            shape, or fails validation.
    """
    env = os.environ if environ is None else environ
    config_path = path or Path.cwd() / DEFAULT_CONFIG_FILENAME

    raw: dict = {}
    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"Invalid JSON in configuration file {config_path}: {e}") from e
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {config_path}: {e}") from e
        logger.debug(f"Loaded configuration from {config_path}")
    elif path is not None:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    else:
        logger.debug("No configuration file found, using defaults")

    try:
        config = DepGuardianConfig.model_validate(substitute_env(raw, env))
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}") from e

    if not config.snyk.token and env.get("SNYK_TOKEN"):
        config.snyk.token = env["SNYK_TOKEN"]

    config.validate_settings()
    return config
