"""
Identity abstraction for Supabase Auth and an in-memory test implementation.

Accounts are username based; the identity provider only knows e-mail
addresses, so every username maps to a synthetic `<username>@local.app`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from typing import Dict, Optional, Protocol

from supabase import AuthError, create_client
from supabase.lib.client_options import ClientOptions

logger = logging.getLogger(__name__)

SYNTHETIC_EMAIL_DOMAIN = "local.app"


def username_to_email(username: str) -> str:
    return f"{username.strip()}@{SYNTHETIC_EMAIL_DOMAIN}"


@dataclass
class AuthUser:
    id: str
    email: Optional[str] = None


@dataclass
class AuthSession:
    user: AuthUser
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None

    def as_dict(self) -> dict:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "user_id": self.user.id,
        }


class AuthServiceError(Exception):
    """Raised when the identity provider rejects a call."""

    def __init__(self, message: str, status: Optional[int] = None):
        self.message = message or ""
        self.status = status
        super().__init__(self.message)


class AuthClient(Protocol):
    """Interface for the identity calls the pages make."""

    def sign_up(self, email: str, password: str) -> AuthSession:
        ...

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        ...

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        ...

    def sign_out(self, access_token: str) -> None:
        ...


class SupabaseAuthClient:
    """
    GoTrue access through supabase-py.

    A fresh client is built per call so no session state leaks between
    users of this process.
    """

    def __init__(self, url: str, key: str):
        if not url or not key:
            raise ValueError("SUPABASE_URL and SUPABASE_ANON_KEY are required")
        self.url = url
        self.key = key

    def _fresh(self):
        options = ClientOptions(auto_refresh_token=False, persist_session=False)
        return create_client(self.url, self.key, options=options)

    @staticmethod
    def _to_session(response) -> AuthSession:
        if response is None or response.user is None:
            raise AuthServiceError("No user returned by auth provider")
        user = AuthUser(id=str(response.user.id), email=response.user.email)
        session = response.session
        if session is None:
            return AuthSession(user=user)
        return AuthSession(
            user=user,
            access_token=session.access_token,
            refresh_token=session.refresh_token,
            expires_in=session.expires_in,
        )

    def sign_up(self, email: str, password: str) -> AuthSession:
        try:
            response = self._fresh().auth.sign_up({"email": email, "password": password})
        except AuthError as exc:
            raise AuthServiceError(exc.message, getattr(exc, "status", None)) from exc
        return self._to_session(response)

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        try:
            response = self._fresh().auth.sign_in_with_password(
                {"email": email, "password": password}
            )
        except AuthError as exc:
            raise AuthServiceError(exc.message, getattr(exc, "status", None)) from exc
        return self._to_session(response)

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        try:
            response = self._fresh().auth.get_user(access_token)
        except AuthError as exc:
            logger.info("Rejected access token: %s", exc.message)
            return None
        if response is None or response.user is None:
            return None
        return AuthUser(id=str(response.user.id), email=response.user.email)

    def sign_out(self, access_token: str) -> None:
        try:
            self._fresh().auth.admin.sign_out(access_token)
        except AuthError as exc:
            raise AuthServiceError(exc.message, getattr(exc, "status", None)) from exc


@dataclass
class _Account:
    user_id: str
    email: str
    password: str


@dataclass
class InMemoryAuthClient:
    """Test double for identity interactions."""

    accounts: Dict[str, _Account] = field(default_factory=dict)
    sessions: Dict[str, str] = field(default_factory=dict)
    sign_up_error: Optional[str] = None
    sign_in_error: Optional[str] = None
    sign_out_error: Optional[str] = None

    def add_user(self, email: str, password: str, user_id: Optional[str] = None) -> AuthUser:
        account = _Account(user_id=user_id or str(uuid.uuid4()), email=email, password=password)
        self.accounts[email] = account
        return AuthUser(id=account.user_id, email=email)

    def issue_token(self, user_id: str) -> str:
        token = uuid.uuid4().hex
        self.sessions[token] = user_id
        return token

    def _email_for(self, user_id: str) -> Optional[str]:
        for account in self.accounts.values():
            if account.user_id == user_id:
                return account.email
        return None

    def _open_session(self, account: _Account) -> AuthSession:
        token = self.issue_token(account.user_id)
        return AuthSession(
            user=AuthUser(id=account.user_id, email=account.email),
            access_token=token,
            refresh_token=uuid.uuid4().hex,
            expires_in=3600,
        )

    def sign_up(self, email: str, password: str) -> AuthSession:
        if self.sign_up_error:
            raise AuthServiceError(self.sign_up_error)
        if email in self.accounts:
            raise AuthServiceError("User already registered", 422)
        self.add_user(email, password)
        return self._open_session(self.accounts[email])

    def sign_in_with_password(self, email: str, password: str) -> AuthSession:
        if self.sign_in_error:
            raise AuthServiceError(self.sign_in_error)
        account = self.accounts.get(email)
        if account is None or account.password != password:
            raise AuthServiceError("Invalid login credentials", 400)
        return self._open_session(account)

    def get_user(self, access_token: str) -> Optional[AuthUser]:
        user_id = self.sessions.get(access_token)
        if user_id is None:
            return None
        return AuthUser(id=user_id, email=self._email_for(user_id))

    def sign_out(self, access_token: str) -> None:
        if self.sign_out_error:
            raise AuthServiceError(self.sign_out_error)
        self.sessions.pop(access_token, None)

    def reset(self) -> None:
        self.accounts.clear()
        self.sessions.clear()
        self.sign_up_error = None
        self.sign_in_error = None
        self.sign_out_error = None
