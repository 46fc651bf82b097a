"""IPTC Editor configuration module.

Loads relay and editor settings from environment variables and an optional
.env file using pydantic-settings. The provider key only ever lives here
(relay variant) or in the local credential file (direct variant).
"""

from __future__ import annotations

from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ── Provider ──
    openrouter_api_key: str = Field(
        default="",
        description="OpenRouter API key attached by the relay",
    )
    upstream_url: str = Field(
        default="https://openrouter.ai/api/v1/chat/completions",
        description="Chat-completions endpoint the relay forwards to",
    )
    relay_timeout_seconds: Optional[float] = Field(
        default=15.0,
        description="Abort the upstream call after this many seconds (None = wait)",
        gt=0,
    )
    default_referer: str = Field(
        default="http://localhost:8080",
        description="HTTP-Referer attribution when the caller sends none",
    )
    app_title: str = Field(default="IPTC Editor", description="X-Title attribution")

    # ── Captioning ──
    model: str = Field(default="deepseek/deepseek-chat:free")
    temperature: float = Field(default=0.3, ge=0, le=2)
    structured_replies: bool = Field(
        default=False,
        description="Ask the model for a JSON reply instead of CAPTION/KEYWORDS text",
    )
    keyword_limit: int = Field(default=25, ge=1, le=64)
    download_prefix: str = Field(default="iptc_edited_")

    # ── Clients ──
    relay_url: str = Field(
        default="http://127.0.0.1:3000/api/generate-caption",
        description="Relay endpoint used by the CLI in relay mode",
    )
    credential_file: str = Field(
        default="data/credentials.json",
        description="Where the direct variant keeps the provider key",
    )

    # ── Server ──
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=3000)
    cors_origins: list[str] = Field(default=["*"])
    max_body_bytes: int = Field(
        default=10 * 1024 * 1024,
        description="Reject request bodies larger than this (base64 images are big)",
        gt=0,
    )
    max_sessions: int = Field(
        default=32,
        description="Editor sessions kept in memory; the least recently used go first",
        ge=1,
    )
    session_ttl_seconds: Optional[float] = Field(
        default=3600.0,
        description="Drop editor sessions idle this long (None = keep until evicted)",
        gt=0,
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR)",
    )

    @field_validator("relay_timeout_seconds", "session_ttl_seconds", mode="before")
    @classmethod
    def blank_means_none(cls, v):
        """Let RELAY_TIMEOUT_SECONDS= or =null in the environment disable the limit."""
        if isinstance(v, str) and v.strip().lower() in ("", "none", "null"):
            return None
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Ensure log level is valid."""
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        upper = v.upper()
        if upper not in valid:
            raise ValueError(f"log_level must be one of {valid}, got '{v}'")
        return upper

    @property
    def credential_path(self) -> Path:
        """Return resolved Path object for the credential file."""
        return Path(self.credential_file)

    def has_api_key(self) -> bool:
        """Check if the relay has a provider key configured."""
        return bool(self.openrouter_api_key and self.openrouter_api_key != "sk-or-...")


def get_settings(**overrides: str) -> Settings:
    """Create a Settings instance with optional overrides.

    Args:
        **overrides: Key-value pairs to override env/defaults.

    Returns:
        Validated Settings instance.

    Raises:
        ValidationError: If any value fails validation.
    """
    return Settings(**overrides)
