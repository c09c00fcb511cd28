"""
HTTP routes for the storefront API.
"""

from __future__ import annotations

import json
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from shared.phone import build_country_options, filter_country_options
from storefront import accounts, catalog, discovery, purchases
from storefront.accounts import AccountError, Viewer
from storefront.affiliate import (
    BLANK_USERNAME_MESSAGE,
    affiliate_user_by_username,
)
from storefront.auth import AuthClient
from storefront.captcha import CaptchaVerifier, first_forwarded_ip
from storefront.catalog import Product
from storefront.challenges import ChallengeStore
from storefront.config import get_settings
from storefront.db import DbClient
from storefront.dependencies import (
    get_access_token,
    get_auth_client,
    get_captcha_verifier,
    get_challenge_store,
    get_db_client,
)
from storefront.schemas import (
    AdminProfile,
    AdminProfilesResponse,
    AffiliateRequest,
    AffiliateResponse,
    CategoryOption,
    CountriesResponse,
    CountryOptionResponse,
    ExtraRequiredFieldResponse,
    HomeResponse,
    LoginCredentialsRequest,
    LoginCredentialsResponse,
    LoginPinRequest,
    LoginPinResponse,
    MessageResponse,
    NameFilterResponse,
    ProductResponse,
    ProductsResponse,
    PurchaseRequest,
    PurchaseResponse,
    RegisterRequest,
    SessionResponse,
    TrendingProductResponse,
    ViewerResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter()

AFFILIATE_STATUS = {
    "OK": 200,
    "INVALID_INPUT": 400,
    "CANNOT_SELF_AFFILIATE": 400,
    "USER_NOT_FOUND": 404,
    "ALREADY_AFFILIATED": 409,
    "NOT_AUTHENTICATED": 401,
    "PERMISSION_DENIED": 403,
}


def _http_error(exc: AccountError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def _remote_ip(request: Request) -> Optional[str]:
    return first_forwarded_ip(request.headers.get("x-forwarded-for")) or None


def _price_label(viewer: Viewer) -> str:
    return "Precio distribuidor" if viewer.is_affiliate else "Precio publico"


def _viewer_response(viewer: Viewer) -> ViewerResponse:
    return ViewerResponse(
        mode="affiliate" if viewer.is_affiliate else "guest",
        logged_in=viewer.logged_in,
        account_label=viewer.account_label,
        account_href=viewer.account_href,
        price_label=_price_label(viewer),
    )


def _product_response(product: Product, viewer: Viewer) -> ProductResponse:
    data = product.as_dict()
    data["extra_required_fields"] = [
        ExtraRequiredFieldResponse(**extra) for extra in data["extra_required_fields"]
    ]
    data["price"] = product.price_affiliate if viewer.is_affiliate else product.price_guest
    data["price_label"] = catalog.format_price(data["price"])
    return ProductResponse(**data)


def _join_messages(*parts: Optional[str]) -> str:
    return " ".join(part for part in parts if part)


@router.get("/session", response_model=SessionResponse)
def session(
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
):
    return SessionResponse(**accounts.session_status(auth, access_token))


@router.get("/countries", response_model=CountriesResponse)
def countries(q: str = Query(default="")):
    options = filter_country_options(build_country_options(), q)
    return CountriesResponse(
        countries=[
            CountryOptionResponse(
                iso=option.iso, name=option.name, dial_code=option.dial_code, flag=option.flag
            )
            for option in options
        ]
    )


@router.post("/turnstile/verify")
async def verify_turnstile(
    request: Request, captcha: CaptchaVerifier = Depends(get_captcha_verifier)
):
    """
    Server-side Turnstile check. Answers `{success}` or `{success, errors}`.
    """
    if not captcha.is_configured():
        return JSONResponse(
            status_code=500,
            content={"success": False, "errors": ["missing-secret-server-config"]},
        )
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return JSONResponse(
            status_code=400, content={"success": False, "errors": ["invalid-json-body"]}
        )
    token = body.get("token") if isinstance(body, dict) else None
    if not isinstance(token, str) or not token.strip():
        return JSONResponse(
            status_code=400, content={"success": False, "errors": ["missing-input-response"]}
        )

    result = await run_in_threadpool(captcha.verify, token.strip(), _remote_ip(request))
    return JSONResponse(status_code=result.status_code, content=result.as_dict())


@router.post("/register", response_model=MessageResponse, status_code=201)
def register(
    payload: RegisterRequest,
    request: Request,
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
    captcha: CaptchaVerifier = Depends(get_captcha_verifier),
):
    try:
        message = accounts.register(
            auth,
            db,
            captcha,
            username=payload.username,
            password=payload.password,
            pin=payload.pin,
            country_iso=payload.country_iso,
            phone=payload.phone,
            captcha_token=payload.captcha_token,
            remote_ip=_remote_ip(request),
        )
    except AccountError as exc:
        raise _http_error(exc)
    return MessageResponse(message=message)


@router.post("/login/credentials", response_model=LoginCredentialsResponse)
def login_credentials(
    payload: LoginCredentialsRequest,
    request: Request,
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
    captcha: CaptchaVerifier = Depends(get_captcha_verifier),
    challenges: ChallengeStore = Depends(get_challenge_store),
):
    try:
        challenge = accounts.login_credentials(
            auth,
            db,
            captcha,
            challenges,
            username=payload.username,
            password=payload.password,
            country_iso=payload.country_iso,
            phone=payload.phone,
            captcha_token=payload.captcha_token,
            remote_ip=_remote_ip(request),
            challenge_ttl_seconds=get_settings().login_challenge_ttl_seconds,
        )
    except AccountError as exc:
        raise _http_error(exc)
    return LoginCredentialsResponse(
        challenge_id=challenge.challenge_id,
        message="Datos correctos. Ahora ingresa tu codigo de compra.",
    )


@router.post("/login/pin", response_model=LoginPinResponse)
def login_pin(
    payload: LoginPinRequest,
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
    challenges: ChallengeStore = Depends(get_challenge_store),
):
    try:
        auth_session = accounts.login_pin(
            auth,
            db,
            challenges,
            challenge_id=payload.challenge_id,
            username=payload.username,
            password=payload.password,
            pin=payload.pin,
        )
    except AccountError as exc:
        raise _http_error(exc)
    return LoginPinResponse(
        message="Acceso correcto. Entrando a inicio...",
        redirect=accounts.HOME_REDIRECT,
        **auth_session.as_dict(),
    )


@router.post("/logout", response_model=MessageResponse)
def logout(
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
):
    try:
        accounts.logout(auth, access_token)
    except AccountError as exc:
        raise _http_error(exc)
    return MessageResponse(message="Sesion cerrada.")


@router.get("/home", response_model=HomeResponse)
def home(
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    viewer = accounts.resolve_viewer(auth, db, access_token, sign_out_unapproved=False)
    products, load_message = catalog.load_products(
        viewer.db or db,
        load_error_message=catalog.FEATURED_LOAD_ERROR,
        empty_message=None,
    )
    return HomeResponse(
        viewer=_viewer_response(viewer),
        featured=[_product_response(p, viewer) for p in discovery.featured_products(products)],
        message=_join_messages(viewer.message, load_message),
    )


@router.get("/products", response_model=ProductsResponse)
def products(
    q: str = Query(default=""),
    category: str = Query(default="all"),
    name_filter: Optional[str] = Query(default=None),
    page: int = Query(default=1),
    viewport_width: int = Query(default=1280),
    seed: int = Query(default=1),
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    if category not in catalog.CATEGORY_KEYS:
        raise HTTPException(status_code=400, detail=f"Unknown category: {category}")

    viewer = accounts.resolve_viewer(auth, db, access_token, sign_out_unapproved=True)
    viewer_db = viewer.db or db
    items, load_message = catalog.load_products(viewer_db)
    name_filters = catalog.load_name_filters(viewer_db)
    active_filter = catalog.find_name_filter(name_filters, name_filter)

    counts = discovery.load_trend_counts(viewer_db)
    paid_ids = discovery.load_paid_product_ids(viewer_db, viewer.user_id)
    ranked = discovery.sort_by_stock(items)
    filtered = discovery.filter_products(ranked, category, active_filter, q, seed)
    catalog_page = discovery.paginate(filtered, page, viewport_width)
    recommendations = discovery.recommend_products(
        ranked, paid_ids, counts, category, active_filter, q
    )

    return ProductsResponse(
        viewer=_viewer_response(viewer),
        message=_join_messages(viewer.message, load_message),
        categories=[CategoryOption(key=key, label=label) for key, label in catalog.CATEGORY_OPTIONS],
        name_filters=[NameFilterResponse(**vars(item)) for item in name_filters],
        trending=[
            TrendingProductResponse(product=_product_response(item, viewer), orders=orders)
            for item, orders in discovery.trending_products(ranked, counts)
        ],
        total_trend_orders=discovery.total_trend_orders(counts),
        recommendations=[_product_response(item, viewer) for item in recommendations],
        products=[_product_response(item, viewer) for item in catalog_page.items],
        page=catalog_page.page,
        page_size=catalog_page.page_size,
        total_pages=catalog_page.total_pages,
        total_items=catalog_page.total_items,
        columns=catalog_page.columns,
        page_numbers=catalog_page.page_numbers,
        seed=seed,
        next_seed=discovery.next_shuffle_seed(seed),
    )


@router.post("/products/{product_id}/purchase", response_model=PurchaseResponse)
def purchase_product(
    product_id: int,
    payload: PurchaseRequest,
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    viewer = accounts.resolve_viewer(auth, db, access_token, sign_out_unapproved=True)
    items, _ = catalog.load_products(viewer.db or db)
    product = next((item for item in items if item.id == product_id), None)
    if product is None:
        raise HTTPException(
            status_code=404, detail=purchases.PURCHASE_ERROR_MESSAGES["PRODUCT_NOT_FOUND"]
        )
    try:
        result = purchases.purchase(
            viewer.db or db,
            viewer,
            product,
            customer_name=payload.customer_name,
            customer_phone=payload.customer_phone,
            extra_values=payload.extra_values,
        )
    except purchases.PurchaseError as exc:
        raise HTTPException(status_code=400, detail=exc.message)
    return PurchaseResponse(
        message=result.message, order_id=result.order_id, on_demand=result.on_demand
    )


@router.post("/affiliations", response_model=AffiliateResponse)
def affiliate(
    payload: AffiliateRequest,
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    if not payload.username.strip():
        raise HTTPException(status_code=400, detail=BLANK_USERNAME_MESSAGE)
    try:
        user, user_db, username = accounts.require_approved_member(auth, db, access_token)
    except AccountError as exc:
        raise _http_error(exc)

    result = affiliate_user_by_username(
        user_db, user.id, payload.username, referrer_username=username
    )
    if not result.ok:
        logger.info("Affiliation of %s failed: %s (%s)", payload.username, result.code, result.debug_message)
    body = AffiliateResponse(
        code=result.code, message=result.message, debug_message=result.debug_message
    )
    return JSONResponse(
        status_code=AFFILIATE_STATUS.get(result.code, 502), content=body.model_dump()
    )


def _admin_profiles(rows: List[dict]) -> AdminProfilesResponse:
    return AdminProfilesResponse(
        profiles=[
            AdminProfile(
                id=str(row.get("id")),
                username=row.get("username"),
                role=row.get("role"),
                is_approved=row.get("is_approved"),
                balance=row.get("balance"),
                created_at=None if row.get("created_at") is None else str(row["created_at"]),
            )
            for row in rows
        ]
    )


@router.get("/admin/profiles", response_model=AdminProfilesResponse)
def admin_profiles(
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    try:
        _, owner_db = accounts.require_owner(auth, db, access_token)
        rows = accounts.list_profiles(owner_db)
    except AccountError as exc:
        raise _http_error(exc)
    return _admin_profiles(rows)


@router.post("/admin/profiles/{profile_id}/approve", response_model=AdminProfilesResponse)
def approve_profile(
    profile_id: str,
    access_token: Optional[str] = Depends(get_access_token),
    auth: AuthClient = Depends(get_auth_client),
    db: DbClient = Depends(get_db_client),
):
    try:
        _, owner_db = accounts.require_owner(auth, db, access_token)
        rows = accounts.approve_profile(owner_db, profile_id)
    except AccountError as exc:
        raise _http_error(exc)
    return _admin_profiles(rows)
