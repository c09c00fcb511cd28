"""
Account flows: registration, two-step login, logout, owner administration
and viewer resolution for the catalog pages.

Every flow takes its collaborators explicitly (identity client, database
client, captcha verifier, challenge store) so routes can inject real or
in-memory backends.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from pydantic import ValidationError

from shared.coerce import is_truthy, to_text
from shared.phone import build_country_options, find_country, is_valid_phone, to_e164
from shared.pin import hash_pin, is_valid_pin, normalize_pin
from shared.validation import RegisterCredentials
from storefront.auth import (
    AuthClient,
    AuthServiceError,
    AuthSession,
    AuthUser,
    username_to_email,
)
from storefront.captcha import CaptchaResult, CaptchaVerifier
from storefront.challenges import ChallengeStore, LoginChallenge
from storefront.db import DbClient, DbError, desc, eq

logger = logging.getLogger(__name__)

HOME_REDIRECT = "/inicio"

CAPTCHA_MISSING = "Completa el captcha de seguridad."
CAPTCHA_NETWORK = "No se pudo validar el captcha por red."
COUNTRY_REQUIRED = "Selecciona un codigo de pais"
PHONE_INVALID = "Numero de telefono invalido"
NOT_APPROVED_BY_OWNER = "Tu cuenta aun no esta aprobada por el owner"
RESTART_LOGIN = "Vuelve al paso anterior y completa el captcha."


class AccountError(Exception):
    """A refused account action, carrying the user-facing message."""

    def __init__(self, message: str, status_code: int = 400):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


def _sign_out(auth: AuthClient, access_token: Optional[str]) -> bool:
    if not access_token:
        return True
    try:
        auth.sign_out(access_token)
    except AuthServiceError as exc:
        logger.warning("Sign-out failed: %s", exc.message)
        return False
    return True


def session_status(auth: AuthClient, access_token: Optional[str]) -> dict:
    """Whether the caller already has a valid session (login/register redirect)."""
    if access_token and auth.get_user(access_token) is not None:
        return {"authenticated": True, "redirect": HOME_REDIRECT}
    return {"authenticated": False}


# Shared checks -----------------------------------------------------------


def _require_phone(country_iso: Optional[str], phone: str) -> Tuple[str, str, str]:
    """Returns (iso, dial_code, e164) or raises with the form message."""
    country = find_country(build_country_options(), country_iso or "")
    if country is None:
        raise AccountError(COUNTRY_REQUIRED)
    if not is_valid_phone(country.dial_code, phone):
        raise AccountError(PHONE_INVALID)
    return country.iso, country.dial_code, to_e164(country.dial_code, phone)


def _check_captcha(
    captcha: CaptchaVerifier,
    token: Optional[str],
    remote_ip: Optional[str],
    with_code: bool,
) -> None:
    if not (token or "").strip():
        raise AccountError(CAPTCHA_MISSING)
    result: CaptchaResult = captcha.verify(token, remote_ip)
    if result.success:
        return
    code = result.errors[0] if result.errors else "turnstile-failed"
    if code == "turnstile-request-failed":
        raise AccountError(CAPTCHA_NETWORK)
    if with_code:
        raise AccountError(f"No se pudo validar el captcha ({code}). Intenta de nuevo.")
    raise AccountError("No se pudo validar el captcha. Intenta de nuevo.")


def _first_validation_message(exc: ValidationError) -> str:
    error = exc.errors()[0]
    context = error.get("ctx") or {}
    return str(context.get("error") or error.get("msg"))


# Registration ------------------------------------------------------------


def register(
    auth: AuthClient,
    db: DbClient,
    captcha: CaptchaVerifier,
    *,
    username: str,
    password: str,
    pin: str,
    country_iso: Optional[str],
    phone: str,
    captcha_token: Optional[str],
    remote_ip: Optional[str] = None,
) -> str:
    """
    Creates the identity and its pending profile.

    Returns:
        The confirmation message. The new account stays unapproved until an
        owner approves it, and no session is left open.

    Raises:
        AccountError: With the first failed check's message.
    """
    pin = normalize_pin(pin)
    if not is_valid_pin(pin):
        raise AccountError("El codigo de compra debe tener 4 digitos")

    iso, dial_code, phone_e164 = _require_phone(country_iso, phone)
    _check_captcha(captcha, captcha_token, remote_ip, with_code=False)

    clean_username = (username or "").strip()
    if not clean_username:
        raise AccountError("Ingresa un usuario valido")
    try:
        RegisterCredentials(username=clean_username, password=password)
    except ValidationError as exc:
        raise AccountError(_first_validation_message(exc)) from exc

    try:
        session = auth.sign_up(username_to_email(clean_username), password)
    except AuthServiceError as exc:
        message = exc.message.lower()
        if "database error granting user" in message:
            raise AccountError(
                "No se pudo crear el usuario en Auth (Database error granting user). "
                "Revisa la configuracion de Auth/DB en Supabase."
            ) from exc
        if "already" in message:
            raise AccountError("Ese usuario ya existe") from exc
        raise AccountError(exc.message or "Error al crear cuenta") from exc

    user_db = db.for_user(session.access_token, session.user.id)
    try:
        user_db.insert(
            "profiles",
            {
                "id": session.user.id,
                "username": clean_username,
                "purchase_pin": pin,
                "is_approved": False,
                "phone_e164": phone_e164,
                "country_iso": iso,
                "country_dial": dial_code,
            },
        )
    except DbError as exc:
        logger.warning("Profile insert failed for %s: %s", clean_username, exc.message)
        if exc.code == "23505" or "duplicate" in exc.message.lower():
            raise AccountError("Ese usuario ya existe") from exc
        raise AccountError(
            "Cuenta creada, pero no se pudo guardar el perfil. "
            "Revisa permisos y columnas en profiles."
        ) from exc
    finally:
        _sign_out(auth, session.access_token)

    logger.info("Registered %s, awaiting owner approval", clean_username)
    return "Cuenta creada. Espera aprobacion del owner."


# Login -------------------------------------------------------------------


def _profile_read_error(message: str) -> str:
    lowered = message.lower()
    if "column" in lowered and "approved" in lowered:
        return (
            "Error de base de datos: aun hay una policy usando 'approved'. "
            "Debe usar 'is_approved'."
        )
    if "permission denied" in lowered or "row-level security" in lowered or "policy" in lowered:
        return "No se pudo leer tu perfil por permisos (RLS). Revisa las policies de profiles."
    return f"No se pudo cargar tu perfil: {message}"


def login_credentials(
    auth: AuthClient,
    db: DbClient,
    captcha: CaptchaVerifier,
    challenges: ChallengeStore,
    *,
    username: str,
    password: str,
    country_iso: Optional[str],
    phone: str,
    captcha_token: Optional[str],
    remote_ip: Optional[str] = None,
    challenge_ttl_seconds: int = 600,
) -> LoginChallenge:
    """
    First login step: password, phone and approval.

    The session opened to read the profile is closed again; the expected
    PIN is kept server-side in a short-lived challenge.
    """
    _, _, input_phone = _require_phone(country_iso, phone)
    _check_captcha(captcha, captcha_token, remote_ip, with_code=True)

    clean_username = (username or "").strip()
    try:
        session = auth.sign_in_with_password(username_to_email(clean_username), password)
    except AuthServiceError as exc:
        message = exc.message.lower()
        if "database error granting user" in message or "unexpected_failure" in message:
            raise AccountError(
                "No se pudo iniciar sesion. Si ya te registraste, espera aprobacion del owner.",
                status_code=401,
            ) from exc
        raise AccountError("Usuario o contrasena incorrectos", status_code=401) from exc

    user_db = db.for_user(session.access_token, session.user.id)
    try:
        profile = user_db.select_one(
            "profiles",
            "purchase_pin, phone_e164, is_approved",
            filters=[eq("id", session.user.id)],
        )
    except DbError as exc:
        _sign_out(auth, session.access_token)
        raise AccountError(_profile_read_error(exc.message)) from exc

    if profile is None:
        _sign_out(auth, session.access_token)
        raise AccountError(
            "No se encontro tu perfil o aun no tienes permisos. "
            "Si te acabas de registrar, espera aprobacion.",
            status_code=403,
        )
    if not is_truthy(profile.get("is_approved")):
        _sign_out(auth, session.access_token)
        raise AccountError(NOT_APPROVED_BY_OWNER, status_code=403)

    stored_phone = profile.get("phone_e164")
    if not stored_phone or stored_phone != input_phone:
        _sign_out(auth, session.access_token)
        raise AccountError("Telefono o codigo de pais incorrecto")

    if not _sign_out(auth, session.access_token):
        raise AccountError("No se pudo preparar la verificacion final. Intenta otra vez.", 502)

    expected_pin = to_text(profile.get("purchase_pin"))
    challenge = LoginChallenge(
        username=clean_username,
        user_id=session.user.id,
        pin_hash=hash_pin(expected_pin) if expected_pin else "",
    )
    challenges.put(challenge, challenge_ttl_seconds)
    return challenge


def login_pin(
    auth: AuthClient,
    db: DbClient,
    challenges: ChallengeStore,
    *,
    challenge_id: str,
    username: str,
    password: str,
    pin: str,
) -> AuthSession:
    """Second login step: the purchase PIN, then the real session."""
    challenge = challenges.get(challenge_id) if challenge_id else None
    if challenge is None or challenge.username != (username or "").strip():
        raise AccountError(RESTART_LOGIN, status_code=409)
    pin = normalize_pin(pin)
    if not is_valid_pin(pin):
        raise AccountError("Ingresa tu codigo de compra de 4 digitos")
    if not challenge.pin_hash or hash_pin(pin) != challenge.pin_hash:
        raise AccountError("Codigo de compra incorrecto")

    try:
        session = auth.sign_in_with_password(username_to_email(challenge.username), password)
    except AuthServiceError as exc:
        challenges.discard(challenge.challenge_id)
        raise AccountError("Tu sesion caduco. Vuelve a iniciar sesion.", 401) from exc
    if session.user.id != challenge.user_id:
        _sign_out(auth, session.access_token)
        challenges.discard(challenge.challenge_id)
        raise AccountError("Tu sesion caduco. Vuelve a iniciar sesion.", 401)

    user_db = db.for_user(session.access_token, session.user.id)
    try:
        profile = user_db.select_one(
            "profiles", "is_approved", filters=[eq("id", session.user.id)]
        )
    except DbError as exc:
        logger.warning("Approval re-check failed: %s", exc.message)
        profile = None

    if profile is None:
        _sign_out(auth, session.access_token)
        challenges.discard(challenge.challenge_id)
        raise AccountError("No se pudo validar la aprobacion de tu cuenta", 403)
    if not is_truthy(profile.get("is_approved")):
        _sign_out(auth, session.access_token)
        challenges.discard(challenge.challenge_id)
        raise AccountError(NOT_APPROVED_BY_OWNER, 403)

    challenges.discard(challenge.challenge_id)
    logger.info("User %s signed in", challenge.username)
    return session


def logout(auth: AuthClient, access_token: Optional[str]) -> None:
    if not access_token:
        return
    try:
        auth.sign_out(access_token)
    except AuthServiceError as exc:
        raise AccountError(exc.message or "No se pudo cerrar sesion", 502) from exc


# Owner administration ----------------------------------------------------

PROFILE_LIST_COLUMNS = "id, username, role, is_approved, balance, created_at"


def require_owner(
    auth: AuthClient, db: DbClient, access_token: Optional[str]
) -> Tuple[AuthUser, DbClient]:
    """Returns the owner and a client bound to their session."""
    user = auth.get_user(access_token) if access_token else None
    if user is None:
        raise AccountError("Inicia sesion para continuar.", 401)

    user_db = db.for_user(access_token, user.id)
    try:
        me = user_db.select_one("profiles", "role, is_approved", filters=[eq("id", user.id)])
    except DbError as exc:
        logger.warning("Owner check failed for %s: %s", user.id, exc.message)
        me = None
    if me is None:
        raise AccountError("Inicia sesion para continuar.", 401)
    if not is_truthy(me.get("is_approved")):
        _sign_out(auth, access_token)
        raise AccountError(NOT_APPROVED_BY_OWNER, 401)
    if to_text(me.get("role")).lower() != "owner":
        raise AccountError("Solo el owner puede administrar usuarios.", 403)
    return user, user_db


def require_approved_member(
    auth: AuthClient, db: DbClient, access_token: Optional[str]
) -> Tuple[AuthUser, DbClient, str]:
    """Returns the approved caller, a client bound to them and their username."""
    user = auth.get_user(access_token) if access_token else None
    if user is None:
        raise AccountError("Inicia sesion para continuar.", 401)

    user_db = db.for_user(access_token, user.id)
    try:
        me = user_db.select_one("profiles", "username, is_approved", filters=[eq("id", user.id)])
    except DbError as exc:
        logger.warning("Member check failed for %s: %s", user.id, exc.message)
        me = None
    if me is None or not is_truthy(me.get("is_approved")):
        raise AccountError("No se pudo validar tu sesion para afiliar.", 403)
    return user, user_db, to_text(me.get("username"))


def list_profiles(db: DbClient) -> List[dict]:
    try:
        return db.select("profiles", PROFILE_LIST_COLUMNS, order=[desc("created_at")])
    except DbError as exc:
        raise AccountError(exc.message, 502) from exc


def approve_profile(db: DbClient, profile_id: str) -> List[dict]:
    """Marks the profile approved and returns the refreshed list."""
    try:
        db.update("profiles", {"is_approved": True}, filters=[eq("id", profile_id)])
    except DbError as exc:
        raise AccountError(exc.message, 502) from exc
    logger.info("Approved profile %s", profile_id)
    return list_profiles(db)


# Viewer resolution -------------------------------------------------------


@dataclass
class Viewer:
    """Who is browsing the catalog and which prices they see."""

    mode: str = "guest"
    logged_in: bool = False
    user_id: Optional[str] = None
    account_label: str = "Ingresa"
    account_href: str = "/login"
    messages: List[str] = field(default_factory=list)
    db: Optional[DbClient] = None

    @property
    def is_affiliate(self) -> bool:
        return self.mode == "affiliate"

    @property
    def message(self) -> str:
        return " ".join(self.messages)


def _rpc_flag(db: DbClient, name: str) -> bool:
    try:
        return is_truthy(db.rpc(name))
    except DbError as exc:
        logger.info("%s unavailable: %s", name, exc.message)
        return False


def _can_use_affiliate_prices(db: DbClient) -> bool:
    enabled = _rpc_flag(db, "is_affiliate_enabled")
    provider_or_owner = _rpc_flag(db, "is_provider_or_owner")
    return enabled or provider_or_owner


def resolve_viewer(
    auth: AuthClient,
    db: DbClient,
    access_token: Optional[str],
    sign_out_unapproved: bool = True,
) -> Viewer:
    """
    Resolves the viewer for the catalog pages.

    With `sign_out_unapproved` (the products page) an unapproved account is
    signed out and treated as a visitor; without it (the home page) the
    session is left alone and the account label keeps the username.
    """
    user = auth.get_user(access_token) if access_token else None
    if user is None:
        return Viewer(db=db)

    user_db = db.for_user(access_token, user.id)
    viewer = Viewer(logged_in=True, user_id=user.id, account_href="/dashboard", db=user_db)
    columns = (
        "username, is_approved, role, balance" if sign_out_unapproved else "username, is_approved, role"
    )
    try:
        profile = user_db.select_one("profiles", columns, filters=[eq("id", user.id)])
    except DbError as exc:
        logger.info("Viewer profile unreadable for %s: %s", user.id, exc.message)
        profile = None

    if sign_out_unapproved:
        if profile is None:
            viewer.account_label = "Mi cuenta"
            viewer.messages.append("No se pudo cargar tu perfil. Mostrando precios de visitante.")
            return viewer
        if not is_truthy(profile.get("is_approved")):
            _sign_out(auth, access_token)
            return Viewer(
                db=db,
                messages=["Tu cuenta aun no esta aprobada. Mostrando precios de visitante."],
            )
        viewer.account_label = to_text(profile.get("username"), "Mi cuenta")
    else:
        email_name = (user.email or "").split("@")[0]
        viewer.account_label = (
            to_text((profile or {}).get("username")) or email_name or "Mi cuenta"
        )
        if profile is None:
            viewer.messages.append("No se pudo cargar tu perfil. Se muestra precio publico.")
            return viewer
        if not is_truthy(profile.get("is_approved")):
            viewer.messages.append("Tu cuenta no esta aprobada todavia. Ves precios de visitante.")
            return viewer

    if _can_use_affiliate_prices(user_db):
        viewer.mode = "affiliate"
    else:
        viewer.messages.append(
            "Tu cuenta esta logueada, pero sin afiliacion activa. Se muestra precio publico."
        )
    return viewer
