"""
Centralized configuration for vmprovision.

Uses Pydantic BaseSettings for environment variable integration
and validation.

Configuration sources (in order of precedence):
1. Explicit constructor arguments (CLI options end up here)
2. Environment variables (VMPROVISION_*)
3. .env file
4. Default values

Example:
    from vmprovision.config import get_config

    config = get_config()
    print(config.ledger_dir)  # From VMPROVISION_LEDGER_DIR or default

    # Override at runtime
    config = get_config(cache_dir="/mnt/cache")
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ProvisionConfig(BaseSettings):
    """
    Central configuration for vmprovision.

    All settings can be overridden via environment variables
    prefixed with VMPROVISION_.

    Example:
        export VMPROVISION_LEDGER_DIR=/var/lib/vmprovision
        export VMPROVISION_LOG_LEVEL=debug
    """

    model_config = SettingsConfigDict(
        env_prefix="VMPROVISION_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    service_name: str = Field(
        default="vmprovision",
        description="Service name for telemetry attribution",
    )

    # Durable state
    ledger_dir: str = Field(
        default="~/.vmclaude",
        description="Directory holding one completion marker per finished step",
    )
    cache_dir: str = Field(
        default="~/.vmclaude-cache",
        description="Artifact cache root (only used when <cache_dir>/runtimes exists)",
    )

    # Logging
    log_level: Literal["debug", "info", "warning", "error"] = Field(
        default="warning",
        description="Logging level",
    )
    log_format: Literal["json", "text"] = Field(
        default="text",
        description="Log output format (json for log shippers, text for console)",
    )

    # Environment probe
    probe_timeout_seconds: float = Field(
        default=10.0,
        ge=1,
        description="Timeout for each tool version query",
    )

    # OTLP export
    otlp_endpoint: Optional[str] = Field(
        default=None,
        description="OTLP gRPC endpoint for span export (disabled when unset)",
    )

    @field_validator("ledger_dir", "cache_dir")
    @classmethod
    def expand_path(cls, v: str) -> str:
        """Expand ~ and environment variables in paths."""
        return os.path.expanduser(os.path.expandvars(v))

    @field_validator("otlp_endpoint")
    @classmethod
    def validate_endpoint(cls, v: Optional[str]) -> Optional[str]:
        """Strip protocol prefix; the gRPC exporter adds its own."""
        if not v:
            return None
        if v.startswith("http://"):
            v = v[7:]
        elif v.startswith("https://"):
            v = v[8:]
        return v

    @property
    def ledger_path(self) -> Path:
        return Path(self.ledger_dir)

    @property
    def cache_path(self) -> Path:
        return Path(self.cache_dir)


# Global singleton
_config: Optional[ProvisionConfig] = None


def get_config(**overrides) -> ProvisionConfig:
    """
    Get the global configuration instance.

    Creates a singleton on first call. Subsequent calls return
    the same instance unless overrides are provided.

    Args:
        **overrides: Override any config values; ``None`` values are ignored

    Returns:
        ProvisionConfig instance
    """
    global _config

    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides or _config is None:
        _config = ProvisionConfig(**overrides)

    return _config


def reset_config() -> None:
    """Reset the global configuration (for testing)."""
    global _config
    _config = None
