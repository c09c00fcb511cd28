"""
Configuration and settings for the storefront service.
"""

from __future__ import annotations

from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from storefront.captcha import TURNSTILE_VERIFY_URL


class Settings(BaseSettings):
    """Environment-backed settings for the FastAPI service."""

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    api_prefix: str = Field(default="/api")

    # Hosted Supabase project (auth + PostgREST + procedures)
    supabase_url: Optional[str] = Field(default=None, env="SUPABASE_URL")
    supabase_anon_key: Optional[str] = Field(default=None, env="SUPABASE_ANON_KEY")

    # Cloudflare Turnstile
    turnstile_secret_key: Optional[str] = Field(
        default=None, env="TURNSTILE_SECRET_KEY"
    )
    turnstile_verify_url: str = Field(
        default=TURNSTILE_VERIFY_URL, env="TURNSTILE_VERIFY_URL"
    )

    # Pending login challenges (Redis)
    redis_url: Optional[str] = Field(default=None, env="REDIS_URL")
    login_challenge_ttl_seconds: int = Field(
        default=600, env="LOGIN_CHALLENGE_TTL_SECONDS"
    )

    # Development toggles
    use_in_memory_backends: bool = Field(
        default=False,
        validation_alias=AliasChoices(
            "STOREFRONT_USE_IN_MEMORY_BACKENDS", "use_in_memory_backends"
        ),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached settings instance."""
    return Settings()
