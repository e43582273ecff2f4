"""
Application configuration management for smtp-echo.

This module provides configuration loading from environment variables
and TOML configuration files, with type-safe settings classes.
"""

import os
import tomllib
from email.utils import parseaddr
from functools import lru_cache
from pathlib import Path
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from .exceptions import InvalidConfigError, MissingConfigError
from .models import ReplierIdentity, TLSPolicy


def _validate_address(value: str, key: str) -> str:
    """Check that a configured value is a single mailbox address."""
    value = value.strip()
    if not value:
        raise ValueError(f"{key} is required")
    _, address = parseaddr(value)
    if not address or address.count("@") != 1:
        raise ValueError(f"{key} invalid: {value!r}")
    local, domain = address.split("@")
    if not local or not domain:
        raise ValueError(f"{key} invalid: {value!r}")
    return value


class ReplySettings(BaseModel):
    """Identity used on outgoing replies."""

    from_address: str = Field(..., description="Address placed in the From header")
    mail_from: str = Field(..., description="Envelope sender for outbound SMTP")
    from_name: str = Field(default="", description="Optional From display name")

    @field_validator("from_address")
    @classmethod
    def validate_from_address(cls, v: str) -> str:
        return _validate_address(v, "reply.from_address")

    @field_validator("mail_from")
    @classmethod
    def validate_mail_from(cls, v: str) -> str:
        return _validate_address(v, "reply.mail_from")


class DKIMSettings(BaseModel):
    """DKIM signing configuration. Signing is enabled when present."""

    domain: str = Field(..., min_length=1, description="Signing domain (d=)")
    selector: str = Field(..., min_length=1, description="DKIM selector (s=)")
    identifier: str = Field(default="", description="Agent identifier (i=)")
    private_key_path: str = Field(
        ..., min_length=1, description="Path to the PEM-encoded RSA private key"
    )

    @field_validator("private_key_path")
    @classmethod
    def validate_private_key_path(cls, v: str) -> str:
        """The key file has to exist at startup."""
        if not Path(v).is_file():
            raise ValueError(f"dkim.private_key_path invalid: {v} does not exist")
        return v


class LoggingSettings(BaseModel):
    """Logging configuration settings."""

    level: str = Field(default="INFO", description="Log level")
    format: str = Field(
        default="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        description="Log format",
    )

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of: {', '.join(valid_levels)}")
        return v_upper


class Settings(BaseSettings):
    """Main application settings aggregating all configuration."""

    model_config = SettingsConfigDict(
        env_prefix="SMTP_ECHO_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # Inbound server
    listen_host: str = Field(default="0.0.0.0", description="SMTP bind host")
    listen_port: int = Field(default=25, ge=1, le=65535, description="SMTP bind port")
    hostname: str = Field(..., min_length=1, description="Hostname for banner and EHLO")
    read_timeout: float = Field(default=30, gt=0, description="Idle timeout in seconds")
    write_timeout: float = Field(
        default=30, gt=0, description="Outbound SMTP operation timeout in seconds"
    )
    max_message_bytes: int = Field(
        default=10 * 1024 * 1024, gt=0, description="Maximum message size in bytes"
    )

    # Outbound delivery
    delivery_port: int = Field(default=25, ge=1, le=65535, description="Remote MX port")
    delivery_timeout: float = Field(
        default=120, gt=0, description="Deadline for one echo in seconds"
    )
    tls_policy: TLSPolicy = Field(
        default=TLSPolicy.OPPORTUNISTIC,
        description="Whether plaintext fallback is allowed after STARTTLS fails",
    )

    # Sub-settings
    reply: ReplySettings
    dkim: Optional[DKIMSettings] = None
    logging: LoggingSettings = Field(default_factory=LoggingSettings)

    @field_validator("hostname")
    @classmethod
    def validate_hostname(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("hostname is required")
        return v

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Environment variables override values read from the config file
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @classmethod
    def from_toml(cls, path: str | Path) -> "Settings":
        """
        Load settings from a TOML configuration file.

        Args:
            path: Path to the TOML configuration file.

        Returns:
            Settings instance with loaded configuration.

        Raises:
            ConfigurationError: If the file cannot be read, parsed or validated.
        """
        path = Path(path)
        if not path.exists():
            raise MissingConfigError(
                "config_file", {"reason": f"Configuration file not found: {path}"}
            )

        try:
            with open(path, "rb") as f:
                config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise InvalidConfigError(
                config_key="config_file",
                value=str(path),
                reason=f"Failed to parse TOML: {e}",
            )

        return cls.from_dict(config_data)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Settings":
        """
        Create settings from a dictionary, reporting the first invalid key.

        Args:
            data: Configuration dictionary.

        Returns:
            Settings instance.
        """
        try:
            return cls(**data)
        except ValidationError as e:
            first = e.errors()[0]
            key = ".".join(str(part) for part in first["loc"]) or "config"
            if first["type"] == "missing":
                raise MissingConfigError(key)
            raise InvalidConfigError(
                config_key=key,
                value=first.get("input"),
                reason=first["msg"],
            )

    def identity(self) -> ReplierIdentity:
        """Build the immutable reply identity."""
        return ReplierIdentity(
            hostname=self.hostname,
            from_address=self.reply.from_address,
            mail_from=self.reply.mail_from,
            from_name=self.reply.from_name or None,
        )


@lru_cache()
def get_settings(config_file: Optional[str] = None) -> Settings:
    """
    Get cached application settings.

    Settings come from the given TOML file, or the file named by
    SMTP_ECHO_CONFIG_FILE, or environment variables alone.

    Returns:
        Settings instance.
    """
    config_file = config_file or os.getenv("SMTP_ECHO_CONFIG_FILE")

    if config_file:
        return Settings.from_toml(config_file)
    return Settings.from_dict({})


def reload_settings(config_file: Optional[str] = None) -> Settings:
    """
    Reload settings, clearing the cache.

    Returns:
        Fresh Settings instance.
    """
    get_settings.cache_clear()
    return get_settings(config_file)
