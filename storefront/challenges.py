"""
Pending-login challenge storage for the two-step (password, then PIN) login.

Supports an in-memory fallback for tests/local runs and a Redis-backed
implementation for production.
"""

from __future__ import annotations

import json
import time
import uuid
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional, Protocol

import redis
from redis import exceptions as redis_exceptions


@dataclass
class LoginChallenge:
    """Issued after the credentials step; the PIN step must present it."""

    username: str
    user_id: str
    pin_hash: str
    challenge_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    created_at: float = field(default_factory=lambda: time.time())

    def as_dict(self) -> dict:
        return asdict(self)


class ChallengeStore(Protocol):
    """Minimal store interface for pending login challenges."""

    def put(self, challenge: LoginChallenge, ttl_seconds: int) -> None:
        ...

    def get(self, challenge_id: str) -> Optional[LoginChallenge]:
        ...

    def discard(self, challenge_id: str) -> None:
        ...


@dataclass
class InMemoryChallengeStore:
    """Simple dict-backed store for testing/dev."""

    items: Dict[str, tuple[LoginChallenge, float]] = field(default_factory=dict)

    def put(self, challenge: LoginChallenge, ttl_seconds: int) -> None:
        self.items[challenge.challenge_id] = (challenge, time.time() + ttl_seconds)

    def get(self, challenge_id: str) -> Optional[LoginChallenge]:
        entry = self.items.get(challenge_id)
        if entry is None:
            return None
        challenge, expires_at = entry
        if time.time() >= expires_at:
            self.items.pop(challenge_id, None)
            return None
        return challenge

    def discard(self, challenge_id: str) -> None:
        self.items.pop(challenge_id, None)


@dataclass
class RedisChallengeStore:
    """Redis-backed store using expiring string keys."""

    url: str
    key_prefix: str = "storefront:login-challenge:"

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    def _key(self, challenge_id: str) -> str:
        return f"{self.key_prefix}{challenge_id}"

    def put(self, challenge: LoginChallenge, ttl_seconds: int) -> None:
        self.client.setex(
            self._key(challenge.challenge_id), ttl_seconds, json.dumps(challenge.as_dict())
        )

    def get(self, challenge_id: str) -> Optional[LoginChallenge]:
        try:
            raw = self.client.get(self._key(challenge_id))
        except redis_exceptions.ConnectionError:
            # Connection resets can happen on managed Redis. Treat as missing so
            # the user restarts the login instead of failing hard.
            self.client = redis.Redis.from_url(self.url)
            return None
        if raw is None:
            return None
        return LoginChallenge(**json.loads(raw))

    def discard(self, challenge_id: str) -> None:
        self.client.delete(self._key(challenge_id))
