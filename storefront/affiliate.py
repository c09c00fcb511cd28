"""
Affiliation of a referred user to a referrer, by username.

The hosted procedure `affiliate_user_by_username` is tried first. When it is
missing, fails, or does not recognize the target, the link is written
directly: first through `profiles.referred_by`, then by inserting into one of
the affiliation tables older deployments used. Each step tries several
column shapes because deployed schemas drifted over time.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Literal, Optional

from shared.coerce import to_id_text, to_text
from storefront.db import DbClient, DbError, eq, ilike, is_null

logger = logging.getLogger(__name__)

AffiliateCode = Literal[
    "OK",
    "USER_NOT_FOUND",
    "CANNOT_SELF_AFFILIATE",
    "ALREADY_AFFILIATED",
    "NOT_AUTHENTICATED",
    "PERMISSION_DENIED",
    "INVALID_INPUT",
    "SYSTEM_ERROR",
]

AFFILIATE_RPC = "affiliate_user_by_username"

# Procedure answers that settle the request without any fallback.
TERMINAL_RPC_CODES = ("OK", "CANNOT_SELF_AFFILIATE", "ALREADY_AFFILIATED", "NOT_AUTHENTICATED")
KNOWN_RPC_CODES = TERMINAL_RPC_CODES + ("USER_NOT_FOUND",)

TARGET_LOOKUP_COLUMNS = (
    "id, username, referred_by, is_approved",
    "id, username, is_approved",
    "id, username",
)
CASE_INSENSITIVE_LOOKUP_COLUMNS = "id, username, referred_by"
AFFILIATION_TABLES = ("user_affiliations", "affiliations", "referrals")

BLANK_USERNAME_MESSAGE = "Escribe un username para afiliar."
RESULT_MESSAGES = {
    "OK": "Usuario afiliado y aprobado correctamente.",
    "USER_NOT_FOUND": "El username no existe.",
    "CANNOT_SELF_AFFILIATE": "No puedes afiliarte a ti mismo.",
    "ALREADY_AFFILIATED": "Ese usuario ya fue afiliado antes.",
    "NOT_AUTHENTICATED": "Tu sesion expiro. Cierra sesion y vuelve a entrar.",
    "PERMISSION_DENIED": "No tienes permisos para afiliar en este momento. Avisa al owner.",
    "INVALID_INPUT": "Ingresa un username valido.",
}
DEFAULT_RESULT_MESSAGE = "Error del sistema. Intenta otra vez."


@dataclass
class AffiliateResult:
    code: AffiliateCode
    debug_message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.code == "OK"

    @property
    def message(self) -> str:
        return result_message(self.code)


def result_message(code: str) -> str:
    return RESULT_MESSAGES.get(code, DEFAULT_RESULT_MESSAGE)


def normalize_rpc_code(value) -> Optional[str]:
    text = to_text(value)
    return text if text in KNOWN_RPC_CODES else None


def is_schema_error(message: str) -> bool:
    message = (message or "").lower()
    return (
        "does not exist" in message
        or "does not have" in message
        or "schema cache" in message
        or "could not find" in message
        or "unknown relation" in message
    )


def is_duplicate_error(message: str) -> bool:
    message = (message or "").lower()
    return "duplicate" in message or "unique" in message


def is_permission_error(message: str) -> bool:
    message = (message or "").lower()
    return (
        "row-level security" in message
        or "permission denied" in message
        or "not allowed" in message
    )


def username_candidates(target_username: str) -> List[str]:
    raw = (target_username or "").strip()
    normalized = raw.lstrip("@").strip()
    candidates: List[str] = []
    for value in (raw, normalized):
        if value and value not in candidates:
            candidates.append(value)
    return candidates


def affiliation_payloads(
    referrer_user_id: str,
    referrer_username: str,
    target_id: str,
    target_username: str,
    created_at: str,
) -> List[dict]:
    """Row shapes tried against each affiliation table, richest first."""
    return [
        {
            "referrer_user_id": referrer_user_id,
            "referred_user_id": target_id,
            "referrer_username": referrer_username or None,
            "referred_username": target_username or None,
            "created_at": created_at,
        },
        {
            "referrer_user_id": referrer_user_id,
            "referred_user_id": target_id,
            "referred_username": target_username or None,
            "created_at": created_at,
        },
        {
            "referrer_user_id": referrer_user_id,
            "referred_user_id": target_id,
            "created_at": created_at,
        },
        {"referrer_id": referrer_user_id, "referred_id": target_id, "created_at": created_at},
    ]


class _Attempt:
    """Tracks the last backend message and whether any call hit RLS."""

    def __init__(self):
        self.latest_message = ""
        self.seen_permission_error = False

    def record(self, error: DbError, flag_permission: bool = True) -> None:
        self.latest_message = error.message
        if flag_permission and is_permission_error(error.message):
            self.seen_permission_error = True


@dataclass
class _Target:
    id: str
    username: str
    referred_by: str
    has_referred_by_column: bool


def _target_from_row(row: dict, fallback_username: str) -> _Target:
    return _Target(
        id=to_id_text(row.get("id")),
        username=to_text(row.get("username")) or fallback_username,
        referred_by=to_id_text(row.get("referred_by")),
        has_referred_by_column="referred_by" in row,
    )


def _lookup_target(
    db: DbClient, candidates: List[str], fallback_username: str, attempt: _Attempt
) -> Optional[_Target]:
    for candidate in candidates:
        for columns in TARGET_LOOKUP_COLUMNS:
            try:
                rows = db.select(
                    "profiles", columns, filters=[eq("username", candidate)], limit=1
                )
            except DbError as exc:
                attempt.record(exc, flag_permission=not is_schema_error(exc.message))
                continue
            if not rows:
                continue
            target = _target_from_row(rows[0], fallback_username)
            if target.id:
                return target
            break

    for candidate in candidates:
        try:
            rows = db.select(
                "profiles",
                CASE_INSENSITIVE_LOOKUP_COLUMNS,
                filters=[ilike("username", candidate)],
                limit=1,
            )
        except DbError as exc:
            attempt.record(exc)
            continue
        if rows:
            target = _target_from_row(rows[0], fallback_username)
            if target.id:
                return target
            break
    return None


def affiliate_user_by_username(
    db: DbClient,
    referrer_user_id: str,
    target_username: str,
    referrer_username: Optional[str] = None,
) -> AffiliateResult:
    """
    Links `target_username` to the referrer.

    Args:
        db: Client bound to the referrer's session.
        referrer_user_id: Id of the signed-in referrer.
        target_username: Username to affiliate; a leading `@` is tolerated.
        referrer_username: Optional, stored in affiliation tables that carry it.

    Returns:
        An AffiliateResult; `debug_message` carries the last backend message
        when the outcome is a failure.
    """
    candidates = username_candidates(target_username)
    referrer_username = to_text(referrer_username).lstrip("@").strip()
    if not candidates or not referrer_user_id:
        return AffiliateResult("INVALID_INPUT")

    attempt = _Attempt()
    fallback_username = target_username.strip().lstrip("@").strip()

    for candidate in candidates:
        try:
            answer = db.rpc(AFFILIATE_RPC, {"target_username": candidate})
        except DbError as exc:
            attempt.record(exc)
            continue
        code = normalize_rpc_code(answer)
        if code in TERMINAL_RPC_CODES:
            return AffiliateResult(code)
        # USER_NOT_FOUND or an unexpected answer: try the next candidate,
        # then fall back to direct reads.

    target = _lookup_target(db, candidates, fallback_username, attempt)
    if target is None:
        return AffiliateResult(
            "USER_NOT_FOUND", attempt.latest_message or "target_not_found"
        )
    if target.id == referrer_user_id:
        return AffiliateResult("CANNOT_SELF_AFFILIATE")
    if target.referred_by:
        return AffiliateResult("ALREADY_AFFILIATED")

    unlinked = [eq("id", target.id), is_null("referred_by")]

    if target.has_referred_by_column:
        for payload in (
            {"referred_by": referrer_user_id, "is_approved": True},
            {"referred_by": referrer_user_id},
        ):
            try:
                updated = db.update("profiles", payload, filters=unlinked)
            except DbError as exc:
                attempt.record(exc)
                if is_duplicate_error(exc.message):
                    return AffiliateResult("ALREADY_AFFILIATED")
                continue
            if updated:
                return AffiliateResult("OK")

        try:
            current = db.select_one(
                "profiles", "referred_by", filters=[eq("id", target.id)]
            )
        except DbError as exc:
            logger.info("Could not re-check referred_by for %s: %s", target.id, exc.message)
            current = None
        if current and to_id_text(current.get("referred_by")):
            return AffiliateResult("ALREADY_AFFILIATED")

    created_at = datetime.now(timezone.utc).isoformat()
    payloads = affiliation_payloads(
        referrer_user_id, referrer_username, target.id, target.username, created_at
    )
    for table in AFFILIATION_TABLES:
        for payload in payloads:
            try:
                db.insert(table, payload)
            except DbError as exc:
                attempt.record(exc, flag_permission=not is_schema_error(exc.message))
                if is_duplicate_error(exc.message):
                    return AffiliateResult("ALREADY_AFFILIATED")
                continue
            if target.has_referred_by_column:
                try:
                    db.update(
                        "profiles", {"referred_by": referrer_user_id}, filters=unlinked
                    )
                except DbError as exc:
                    logger.warning(
                        "Affiliation stored in %s but referred_by backfill failed: %s",
                        table,
                        exc.message,
                    )
            return AffiliateResult("OK")

    if attempt.seen_permission_error:
        return AffiliateResult(
            "PERMISSION_DENIED", attempt.latest_message or "permission_denied"
        )
    return AffiliateResult(
        "SYSTEM_ERROR", attempt.latest_message or "affiliate_unknown_error"
    )
