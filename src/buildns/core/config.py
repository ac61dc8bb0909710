"""Configuration types with environment variable support.

All settings can be configured via environment variables with the BUILDNS_ prefix.
Example: BUILDNS_CERT_MAX_ATTEMPTS=3 caps certificate issuance at three attempts.
"""

from __future__ import annotations

import json
import tomllib
from pathlib import Path
from typing import Any

import yaml
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_TLDS = ["build", "dev.build", "demo.build", "api.build", "app.build", "ai.build"]


def load_config_from_file(path: str | Path) -> dict[str, Any]:
    """Load configuration from a YAML or TOML file.

    Args:
        path: Path to the configuration file (.yaml, .yml, or .toml)

    Returns:
        Configuration dictionary

    Raises:
        FileNotFoundError: If the config file doesn't exist
        ValueError: If the config file has encoding errors, invalid syntax, or unsupported format
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")

    try:
        content = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise ValueError(f"Config file encoding error in {path}: {e}") from e

    try:
        if path.suffix in (".yaml", ".yml"):
            return yaml.safe_load(content) or {}
        elif path.suffix == ".toml":
            return tomllib.loads(content)
        else:
            raise ValueError(f"Unsupported config format: {path.suffix}")
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in {path}: {e}") from e
    except tomllib.TOMLDecodeError as e:
        raise ValueError(f"Invalid TOML in {path}: {e}") from e


def flatten_config(config: dict[str, Any], prefix: str = "") -> dict[str, Any]:
    result: dict[str, Any] = {}
    for key, value in config.items():
        full_key = f"{prefix}_{key}" if prefix else key
        if isinstance(value, dict):
            result.update(flatten_config(value, full_key))
        else:
            result[full_key] = value
    return result


class RegistryConfig(BaseSettings):
    """Name registry and default record settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    allowed_tlds: list[str] = Field(
        default_factory=lambda: list(DEFAULT_TLDS),
        description="TLDs that free subdomains can be claimed under.",
    )
    front_door_target: str = Field(
        default="frontdoor.build",
        description="Shared hostname new claims resolve to before any connect.",
    )
    release_grace_period: float = Field(
        default=3600.0,
        ge=0.0,
        description="Seconds a released name stays blocked for other principals.",
    )
    purge_interval: float = Field(
        default=60.0,
        gt=0.0,
        description="Interval (seconds) of the expired-release purge loop.",
    )


class CertificateConfig(BaseSettings):
    """Certificate issuance and renewal settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    cert_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Issuance attempts before a certificate stays failed.",
    )
    cert_base_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Initial retry delay after a failed attempt (seconds).",
    )
    cert_max_delay: float = Field(
        default=3600.0,
        ge=0.0,
        description="Maximum retry delay (seconds).",
    )
    cert_jitter: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Retry jitter factor (0-1).",
    )
    renewal_window_days: float = Field(
        default=30.0,
        ge=0.0,
        description="Renew when expiry is this many days away.",
    )
    cert_poll_interval: float = Field(
        default=10.0,
        gt=0.0,
        description="How often the background driver looks for due certificates (seconds).",
    )
    cert_status_poll_interval: float = Field(
        default=2.0,
        gt=0.0,
        description="Delay between CA status polls for one order (seconds).",
    )
    issuance_timeout: float = Field(
        default=300.0,
        gt=0.0,
        description="Upper bound for a single issuance attempt (seconds).",
    )
    default_validity_days: int = Field(
        default=90,
        ge=1,
        description="Validity assumed when the CA does not report an expiry.",
    )
    max_concurrent_issuances: int = Field(
        default=10,
        ge=1,
        description="Issuance attempts run in parallel by the driver.",
    )


class PropagationConfig(BaseSettings):
    """DNS publish retry settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    publish_max_attempts: int = Field(
        default=5,
        ge=1,
        description="Publish attempts per record-set snapshot.",
    )
    publish_base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Initial publish retry delay (seconds).",
    )
    publish_max_delay: float = Field(
        default=60.0,
        ge=0.0,
        description="Maximum publish retry delay (seconds).",
    )
    publish_jitter: float = Field(
        default=0.2,
        ge=0.0,
        le=1.0,
        description="Publish retry jitter factor (0-1).",
    )


class StorageConfig(BaseSettings):
    """Persistence settings."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    storage_path: str = Field(
        default="buildns.json",
        description="Path to the JSON document holding domains, records and certificates.",
    )


class BackendConfig(BaseSettings):
    """External collaborator endpoints."""

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    ca_url: str | None = Field(
        default=None,
        description="Base URL of the certificate authority API.",
    )
    ca_token: str | None = Field(
        default=None,
        repr=False,
        description="Bearer token for the certificate authority API.",
    )
    dns_api_url: str | None = Field(
        default=None,
        description="Base URL of the DNS propagation API. Unset logs records only.",
    )
    dns_api_token: str | None = Field(
        default=None,
        repr=False,
        description="Bearer token for the DNS propagation API.",
    )
    http_timeout: float = Field(
        default=30.0,
        gt=0.0,
        description="HTTP timeout for backend calls (seconds).",
    )


class BuildnsConfig(BaseSettings):
    """Master configuration combining all settings.

    Use get_config() to get a cached instance.

    Example:
        config = get_config()
        print(config.registry.front_door_target)
        print(config.certificates.cert_max_attempts)
    """

    model_config = SettingsConfigDict(
        env_prefix="BUILDNS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @property
    def registry(self) -> RegistryConfig:
        return RegistryConfig()

    @property
    def certificates(self) -> CertificateConfig:
        return CertificateConfig()

    @property
    def propagation(self) -> PropagationConfig:
        return PropagationConfig()

    @property
    def storage(self) -> StorageConfig:
        return StorageConfig()

    @property
    def backends(self) -> BackendConfig:
        return BackendConfig()

    def to_display_dict(self) -> dict[str, Any]:
        """Export current configuration as a nested dictionary for display.

        Secrets are masked.
        """
        backends = self.backends.model_dump()
        for secret in ("ca_token", "dns_api_token"):
            if backends.get(secret):
                backends[secret] = "********"
        return {
            "registry": self.registry.model_dump(),
            "certificates": self.certificates.model_dump(),
            "propagation": self.propagation.model_dump(),
            "storage": self.storage.model_dump(),
            "backends": backends,
        }

    def to_env_dict(self) -> dict[str, str]:
        """Export current configuration as environment variable dictionary."""
        result: dict[str, str] = {}
        for section in self.to_display_dict().values():
            for key, value in section.items():
                if value is None:
                    result[f"BUILDNS_{key.upper()}"] = ""
                elif isinstance(value, list):
                    result[f"BUILDNS_{key.upper()}"] = json.dumps(value)
                elif isinstance(value, bool):
                    result[f"BUILDNS_{key.upper()}"] = str(value).lower()
                else:
                    result[f"BUILDNS_{key.upper()}"] = str(value)
        return result


_config: BuildnsConfig | None = None


def get_config() -> BuildnsConfig:
    """Get the global configuration instance.

    The instance is created once and cached for the lifetime of the process.
    To reload config (e.g., in tests), call clear_config() first.
    """
    global _config
    if _config is None:
        _config = BuildnsConfig()
    return _config


def clear_config() -> None:
    """Clear the cached configuration.

    Call this to force reloading of environment variables on next get_config() call.
    """
    global _config
    _config = None


def known_settings() -> set[str]:
    """Names of every setting across the config groups."""
    names: set[str] = set()
    for group in (RegistryConfig, CertificateConfig, PropagationConfig, StorageConfig, BackendConfig):
        names.update(group.model_fields)
    return names
