"""Client connection settings."""

from __future__ import annotations

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ClientSettings(BaseSettings):
    """Backend endpoint and REST transport settings.

    Environment variables use INSFORGE_ prefix.
    Example: INSFORGE_BASE_URL=https://myapp.insforge.app
    """

    # ──────────────────────────────────────────────────────────────
    # Endpoint and credentials
    # ──────────────────────────────────────────────────────────────

    base_url: str = Field(
        default="http://localhost:7130",
        min_length=1,
        description="Backend base URL (scheme://host[:port])",
    )

    anon_key: SecretStr = Field(
        default=SecretStr(""),
        description="Anonymous API key, used when no session token is available",
    )

    # ──────────────────────────────────────────────────────────────
    # Transport
    # ──────────────────────────────────────────────────────────────

    request_timeout: float = Field(
        default=30.0,
        gt=0,
        le=600,
        description="HTTP request timeout in seconds",
    )

    max_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Maximum attempts for idempotent HTTP requests",
    )

    headers: dict[str, str] = Field(
        default_factory=dict,
        description="Extra headers sent with every HTTP request",
    )

    model_config = SettingsConfigDict(
        env_prefix="INSFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        frozen=True,
        extra="ignore",
        env_ignore_empty=True,
    )

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        """Normalize the base URL so paths can be appended directly."""
        return value.rstrip("/")
