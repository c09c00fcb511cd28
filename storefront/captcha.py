"""
Cloudflare Turnstile token verification.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Protocol

import requests

logger = logging.getLogger(__name__)

TURNSTILE_VERIFY_URL = "https://challenges.cloudflare.com/turnstile/v0/siteverify"
REQUEST_TIMEOUT = 15  # seconds


@dataclass
class CaptchaResult:
    success: bool
    status_code: int
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        if self.success:
            return {"success": True}
        return {"success": False, "errors": self.errors}


class CaptchaVerifier(Protocol):
    def is_configured(self) -> bool:
        ...

    def verify(self, token: str, remote_ip: Optional[str] = None) -> CaptchaResult:
        ...


def first_forwarded_ip(forwarded_for: Optional[str]) -> str:
    if not forwarded_for:
        return ""
    return forwarded_for.split(",")[0].strip()


class TurnstileVerifier:
    """Calls the siteverify endpoint with the server-side secret."""

    def __init__(
        self,
        secret_key: Optional[str],
        verify_url: str = TURNSTILE_VERIFY_URL,
        session: Optional[requests.Session] = None,
    ):
        self.secret_key = (secret_key or "").strip()
        self.verify_url = verify_url
        self.session = session or requests.Session()

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    def verify(self, token: str, remote_ip: Optional[str] = None) -> CaptchaResult:
        """
        Verifies a widget token.

        Args:
            token: The token produced by the Turnstile widget.
            remote_ip: Optional client address forwarded to Cloudflare.

        Returns:
            A CaptchaResult whose status_code is what the HTTP endpoint should answer.
        """
        if not self.secret_key:
            return CaptchaResult(False, 500, ["missing-secret-server-config"])

        token = (token or "").strip()
        if not token:
            return CaptchaResult(False, 400, ["missing-input-response"])

        form = {"secret": self.secret_key, "response": token}
        if remote_ip:
            form["remoteip"] = remote_ip

        try:
            response = self.session.post(
                self.verify_url,
                data=form,
                headers={"Content-Type": "application/x-www-form-urlencoded"},
                timeout=REQUEST_TIMEOUT,
            )
            if not response.ok:
                return CaptchaResult(False, 502, [f"turnstile-http-{response.status_code}"])
            payload = response.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("Turnstile verification request failed: %s", exc)
            return CaptchaResult(False, 502, ["turnstile-request-failed"])

        if payload is None:
            logger.warning("Turnstile verification returned an empty body")
            return CaptchaResult(False, 502, ["turnstile-request-failed"])
        if not isinstance(payload, dict):
            return CaptchaResult(False, 400, ["turnstile-failed"])
        if not bool(payload.get("success")):
            return CaptchaResult(False, 400, payload.get("error-codes") or ["turnstile-failed"])
        return CaptchaResult(True, 200)


@dataclass
class StaticCaptchaVerifier:
    """Development verifier that accepts any non-empty token."""

    accept: bool = True

    def is_configured(self) -> bool:
        return True

    def verify(self, token: str, remote_ip: Optional[str] = None) -> CaptchaResult:
        if not (token or "").strip():
            return CaptchaResult(False, 400, ["missing-input-response"])
        if not self.accept:
            return CaptchaResult(False, 400, ["turnstile-failed"])
        return CaptchaResult(True, 200)
