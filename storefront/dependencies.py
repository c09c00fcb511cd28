"""
Dependency wiring for the FastAPI app.
"""

from __future__ import annotations

from typing import Optional

from fastapi import Header

from storefront.auth import AuthClient, InMemoryAuthClient, SupabaseAuthClient
from storefront.captcha import CaptchaVerifier, TurnstileVerifier
from storefront.challenges import ChallengeStore, InMemoryChallengeStore, RedisChallengeStore
from storefront.config import get_settings
from storefront.db import DbClient, InMemoryDbClient, SupabaseDbClient, create_storefront_schema

_db_client: DbClient | None = None
_auth_client: AuthClient | None = None
_captcha_verifier: CaptchaVerifier | None = None
_challenge_store: ChallengeStore | None = None


def _use_in_memory() -> bool:
    settings = get_settings()
    return (
        settings.use_in_memory_backends
        or not settings.supabase_url
        or not settings.supabase_anon_key
    )


def get_db_client() -> DbClient:
    """
    Return a singleton anonymous DB client; routes bind it to the caller's
    session with `for_user`.
    """
    global _db_client
    if _db_client:
        return _db_client

    settings = get_settings()
    if _use_in_memory():
        _db_client = create_storefront_schema(InMemoryDbClient())
    else:
        _db_client = SupabaseDbClient(settings.supabase_url, settings.supabase_anon_key)
    return _db_client


def get_auth_client() -> AuthClient:
    global _auth_client
    if _auth_client:
        return _auth_client

    settings = get_settings()
    if _use_in_memory():
        _auth_client = InMemoryAuthClient()
    else:
        _auth_client = SupabaseAuthClient(settings.supabase_url, settings.supabase_anon_key)
    return _auth_client


def get_captcha_verifier() -> CaptchaVerifier:
    global _captcha_verifier
    if _captcha_verifier:
        return _captcha_verifier

    settings = get_settings()
    _captcha_verifier = TurnstileVerifier(
        secret_key=settings.turnstile_secret_key,
        verify_url=settings.turnstile_verify_url,
    )
    return _captcha_verifier


def get_challenge_store() -> ChallengeStore:
    """
    Return a singleton store for pending two-step logins.
    """
    global _challenge_store
    if _challenge_store:
        return _challenge_store

    settings = get_settings()
    if settings.redis_url and not settings.use_in_memory_backends:
        _challenge_store = RedisChallengeStore(url=settings.redis_url)
    else:
        _challenge_store = InMemoryChallengeStore()
    return _challenge_store


def get_access_token(authorization: Optional[str] = Header(default=None)) -> Optional[str]:
    """Extracts the bearer token the caller obtained from login."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()
