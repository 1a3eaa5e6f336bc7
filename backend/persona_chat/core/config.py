from __future__ import annotations

from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_env: str = Field(default="dev", alias="APP_ENV")
    app_host: str = Field(default="0.0.0.0", alias="APP_HOST")
    app_port: int = Field(default=8000, alias="APP_PORT")
    # NOTE: Keep as string to avoid pydantic-settings JSON-decoding complex types from .env.
    cors_origins: str = Field(default="*", alias="CORS_ORIGINS")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    upstream_api_key: str = Field(default="", alias="UPSTREAM_API_KEY")
    upstream_api_url: str = Field(
        default="https://api.anthropic.com/v1/messages", alias="UPSTREAM_API_URL"
    )
    upstream_api_version: str = Field(default="2023-06-01", alias="UPSTREAM_API_VERSION")
    default_model: str = Field(default="claude-opus-4-1-20250805", alias="DEFAULT_MODEL")
    default_max_tokens: int = Field(default=10000, alias="DEFAULT_MAX_TOKENS")
    stream_default_model: str = Field(
        default="claude-sonnet-4-20250514", alias="STREAM_DEFAULT_MODEL"
    )
    stream_default_max_tokens: int = Field(default=4000, alias="STREAM_DEFAULT_MAX_TOKENS")
    request_timeout_sec: float = Field(default=30, alias="REQUEST_TIMEOUT_SEC")
    stream_idle_timeout_sec: float = Field(default=120, alias="STREAM_IDLE_TIMEOUT_SEC")
    stream_web_search_max_uses: int = Field(default=0, alias="STREAM_WEB_SEARCH_MAX_USES")
    history_limit: int = Field(default=20, alias="HISTORY_LIMIT")
    default_session_id: str = Field(default="default-session", alias="DEFAULT_SESSION_ID")
    persona_brand_name: str = Field(default="Nu SkyNet", alias="PERSONA_BRAND_NAME")
    persona_forbidden_terms: str = Field(
        default="Claude,Anthropic", alias="PERSONA_FORBIDDEN_TERMS"
    )
    audit_enabled: bool = Field(default=False, alias="AUDIT_ENABLED")
    audit_dir: str = Field(default="./persona_audit", alias="AUDIT_DIR")
    admin_token: str = Field(default="", alias="ADMIN_TOKEN")

    model_config = SettingsConfigDict(env_file=(".env", "backend/.env"), extra="ignore")

    def parsed_cors_origins(self) -> List[str]:
        """Return CORS origins parsed from env var.

        Supports comma-delimited strings (recommended) and JSON list strings.
        """

        return _split_list(self.cors_origins)

    def parsed_forbidden_terms(self) -> List[str]:
        """Return the configured forbidden persona terms."""

        return _split_list(self.persona_forbidden_terms)


def _split_list(raw_value: str | None) -> List[str]:
    raw = (raw_value or "").strip()
    if not raw:
        return []
    if raw.startswith("["):
        try:
            import json

            value: Any = json.loads(raw)
            if isinstance(value, list):
                items = [str(item).strip() for item in value]
                return [item for item in items if item]
        except ValueError:
            pass
    return [item.strip() for item in raw.split(",") if item.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""

    return Settings()
