"""Audit settings loaded from environment variables."""

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AuditSettings(BaseSettings):
    """Configuration for az-audit.

    Values are read from ``AZ_AUDIT_*`` environment variables
    (case-insensitive) and optionally from a ``.env`` file in the working
    directory.  List values are given as JSON, e.g.
    ``AZ_AUDIT_EXTRA_TRANSIENT_PATTERNS='["InternalServerError"]'``.
    """

    retry_max_attempts: int = Field(3, ge=1)
    retry_base_delay: float = Field(2.0, ge=0)
    retry_max_delay: float | None = Field(None, gt=0)
    http_timeout: int = Field(30, gt=0)

    # Remote EOL dataset.  Empty URLs disable the remote tier.
    eol_definitions_url: str = ""
    eol_query_url: str = ""
    eol_cache_max_age: int = Field(86400, gt=0)

    extra_transient_patterns: list[str] = Field(default_factory=list)

    model_config = SettingsConfigDict(
        env_prefix="AZ_AUDIT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


settings = AuditSettings()
