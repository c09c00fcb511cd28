"""
Product catalog loading and normalization.

Product rows come from a table whose columns changed names several times, so
every field is read through a chain of aliases and coerced leniently.
"""

from __future__ import annotations

import json
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from shared.coerce import (
    first_present,
    is_truthy,
    to_id_text,
    to_nullable_number,
    to_number,
    to_text,
)
from storefront.db import DbClient, DbError, asc, desc, eq, in_

logger = logging.getLogger(__name__)

CATEGORY_OPTIONS = (
    ("all", "\u2728 Todo"),
    ("streaming", "\U0001F4FA Cuentas streaming"),
    ("music", "\U0001F3B5 Musica y apps"),
    ("gaming", "\U0001F3AE Gaming"),
    ("software", "\U0001F9E0 Software / IA"),
    ("other", "\U0001F9E9 Otros"),
)
CATEGORY_KEYS = tuple(key for key, _ in CATEGORY_OPTIONS)

CATEGORY_KEYWORDS = (
    ("streaming", ("netflix", "disney", "hbo", "prime", "youtube", "iptv", "viki", "hulu")),
    ("music", ("spotify", "apple", "music", "tidal")),
    ("gaming", ("xbox", "playstation", "steam", "game")),
    (
        "software",
        ("canva", "adobe", "chatgpt", "openai", "perplexity", "office", "software", "licencia"),
    ),
)

DEFAULT_LOGO = "/logo.png"
LOGO_KEYWORDS = (
    (("netflix",), "/particles/netflix.png"),
    (("spotify",), "/particles/spotify.png"),
    (("youtube",), "/particles/youtube.png"),
    (("xbox",), "/particles/xbox.png"),
    (("playstation", "ps"), "/particles/playstation.png"),
    (("steam",), "/particles/steam.png"),
    (("apple",), "/particles/apple-music.png"),
)

IGNORED_EXTRA_FIELD_KEYS = frozenset(
    {
        "fields",
        "field",
        "extra_fields",
        "extra_required_fields",
        "profiles_per_account",
        "profile_per_account",
        "profilesperaccount",
        "profileperaccount",
        "perfiles_por_cuenta",
        "perfilesporcuenta",
        "profiles",
        "perfiles",
        "slot_capacity",
        "slots",
        "stock",
    }
)
IGNORED_EXTRA_FIELD_COMPACT_KEYS = frozenset(
    key.replace("_", "") for key in IGNORED_EXTRA_FIELD_KEYS
)
PROFILE_SLOT_MARKERS = ("profilesperaccount", "profileperaccount", "perfilesporcuenta")

ON_DEMAND_MODES = ("on_demand", "a_pedido", "a pedido")
PROFILE_ACCOUNT_TYPES = ("profiles", "perfiles", "profile", "perfil", "profile_slots")
FULL_ACCOUNT_TYPES = ("full_account", "cuenta_completa")

PRODUCTS_LOAD_ERROR = "No se pudo cargar productos desde DB."
PRODUCTS_EMPTY = "No hay productos cargados en DB."
FEATURED_LOAD_ERROR = "No se pudo cargar la lista destacada desde DB."


@dataclass
class ExtraRequiredField:
    key: str
    label: str
    placeholder: str = ""
    required: bool = False


@dataclass
class ProviderCard:
    name: str
    avatar_url: str = ""


@dataclass
class Product:
    id: int
    name: str
    logo: str
    stock: int
    summary: str
    duration_days: Optional[int]
    price_guest: float
    price_affiliate: float
    renewal_price: Optional[float]
    provider_id: str
    provider_name: str
    provider_avatar_url: str
    delivery_mode: str
    account_type: str
    renewable: bool
    extra_required_fields: List[ExtraRequiredField] = field(default_factory=list)
    is_active: bool = True

    @property
    def category(self) -> str:
        return detect_category(self.name)

    @property
    def is_on_demand(self) -> bool:
        return is_on_demand_delivery_mode(self.delivery_mode)

    def as_dict(self) -> dict:
        data = asdict(self)
        data["category"] = self.category
        data["delivery_mode_label"] = format_delivery_mode(self.delivery_mode)
        data["account_type_label"] = format_account_type(self.account_type)
        data["duration_label"] = format_duration(self.duration_days)
        data["renewable_label"] = format_renewable(self.renewable)
        return data


@dataclass
class ProductNameFilter:
    id: str
    name: str
    keyword: str
    image_url: str
    sort_order: float


# Formatting -------------------------------------------------------------


def format_price(value: float) -> str:
    return f"S/ {value:.2f}"


def detect_category(name: str) -> str:
    normalized = name.lower()
    for category, keywords in CATEGORY_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return category
    return "other"


def guess_logo_from_name(name: str) -> str:
    normalized = name.lower()
    for keywords, logo in LOGO_KEYWORDS:
        if any(keyword in normalized for keyword in keywords):
            return logo
    return DEFAULT_LOGO


def resolve_logo(name: str, value: Any) -> str:
    if not isinstance(value, str) or value.strip() == "":
        return guess_logo_from_name(name)
    if value.startswith(("http://", "https://", "/")):
        return value
    return f"/{value}"


def format_delivery_mode(mode_raw: str) -> str:
    mode = mode_raw.strip().lower()
    if mode in ("instant", "inmediata"):
        return "Inmediata"
    if mode in ON_DEMAND_MODES:
        return "A pedido"
    return mode_raw or "-"


def is_on_demand_delivery_mode(mode_raw: str) -> bool:
    return mode_raw.strip().lower() in ON_DEMAND_MODES


def is_profile_account_type(type_raw: str) -> bool:
    return type_raw.strip().lower() in PROFILE_ACCOUNT_TYPES


def format_account_type(type_raw: str) -> str:
    account_type = type_raw.strip().lower()
    if account_type in FULL_ACCOUNT_TYPES:
        return "Cuenta completa"
    if is_profile_account_type(account_type):
        return "Perfil"
    return type_raw or "-"


def format_renewable(value: bool) -> str:
    return "Renovable" if value else "No renovable"


def format_duration(days: Optional[int]) -> str:
    if days is None:
        return "Sin limite"
    if days <= 1:
        return "1 dia"
    return f"{days} dias"


# Extra required fields ---------------------------------------------------


def to_field_key(value: str, fallback: str) -> str:
    cleaned = re.sub(r"[^a-z0-9]+", "_", value.strip().lower()).strip("_")
    return cleaned or fallback


def label_from_key(value: str) -> str:
    text = re.sub(r"\s+", " ", value.replace("_", " ")).strip()
    return re.sub(r"\b\w", lambda match: match.group().upper(), text, flags=re.ASCII)


def should_ignore_extra_field(key_raw: str, label_raw: str = "") -> bool:
    """True for blanks and for stock / profile-slot settings stored alongside real fields."""
    candidates = [c for c in (to_field_key(key_raw, ""), to_field_key(label_raw, "")) if c]
    if not candidates:
        return True
    for candidate in candidates:
        if candidate in IGNORED_EXTRA_FIELD_KEYS:
            return True
        compact = candidate.replace("_", "")
        if compact in IGNORED_EXTRA_FIELD_COMPACT_KEYS:
            return True
        if any(marker in compact for marker in PROFILE_SLOT_MARKERS):
            return True
    return False


def _reject_constant(name: str):
    raise ValueError(f"Unsupported JSON constant: {name}")


def _field_from_name(item: str, index: int) -> Optional[ExtraRequiredField]:
    key = to_field_key(item, f"extra_{index + 1}")
    if should_ignore_extra_field(key, item):
        return None
    return ExtraRequiredField(key=key, label=label_from_key(key))


def _field_from_record(record: dict, key: str) -> Optional[ExtraRequiredField]:
    label = to_text(record.get("label"), label_from_key(key))
    if should_ignore_extra_field(key, label):
        return None
    return ExtraRequiredField(
        key=key,
        label=label,
        placeholder=to_text(record.get("placeholder")),
        required=is_truthy(record.get("required")),
    )


def parse_extra_required_fields(value: Any) -> List[ExtraRequiredField]:
    """
    Reads the customer fields a product requires at checkout.

    Accepts a JSON string, a comma separated list of names, a list of names
    or field objects, a dict wrapping such a list (`fields`, `campos`, ...),
    or a plain key -> label (or key -> field object) mapping.
    """
    if value is None:
        return []

    raw = value
    if isinstance(raw, str):
        trimmed = raw.strip()
        if not trimmed:
            return []
        try:
            raw = json.loads(trimmed, parse_constant=_reject_constant)
        except ValueError:
            names = [part.strip() for part in trimmed.split(",") if part.strip()]
            return [f for f in (_field_from_name(n, i) for i, n in enumerate(names)) if f]

    if isinstance(raw, list):
        parsed: List[ExtraRequiredField] = []
        for index, item in enumerate(raw):
            if isinstance(item, str):
                extra = _field_from_name(item, index)
            elif isinstance(item, (dict, list)):
                record = item if isinstance(item, dict) else {}
                fallback = f"extra_{index + 1}"
                base = to_text(first_present(record, "key", "name", "id", "field"), fallback)
                extra = _field_from_record(record, to_field_key(base, fallback))
            else:
                extra = None
            if extra:
                parsed.append(extra)
        return parsed

    if isinstance(raw, dict):
        nested = first_present(
            raw, "fields", "extra_fields", "extra_required_fields", "campos", "campos_extra"
        )
        if nested is not None:
            nested_parsed = parse_extra_required_fields(nested)
            if nested_parsed:
                return nested_parsed

        parsed = []
        for key, item in raw.items():
            safe_key = to_field_key(str(key), "extra")
            if isinstance(item, (dict, list)):
                record = item if isinstance(item, dict) else {}
                extra = _field_from_record(record, safe_key)
            else:
                label = to_text(item, label_from_key(safe_key))
                extra = (
                    None
                    if should_ignore_extra_field(safe_key, label)
                    else ExtraRequiredField(key=safe_key, label=label)
                )
            if extra:
                parsed.append(extra)
        return parsed

    return []


# Normalization -----------------------------------------------------------


def _display_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def is_active_row(row: dict) -> bool:
    return row.get("active") is not False and row.get("is_active") is not False


def normalize_product(
    row: dict, index: int, providers: Dict[str, ProviderCard]
) -> Product:
    name = (
        _display_text(first_present(row, "name", "product_name", "platform", "title")).strip()
        or f"Producto {index + 1}"
    )
    stock = max(
        0,
        math.floor(
            to_number(
                first_present(row, "stock_available", "stock", "quantity", "available_stock"), 0
            )
        ),
    )
    price_guest = to_number(
        first_present(row, "price_guest", "guest_price", "public_price", "price"), 0
    )
    price_affiliate = to_number(
        first_present(
            row,
            "price_affiliate",
            "price_logged",
            "price_login",
            "login_price",
            "affiliate_price",
            "price",
        ),
        price_guest,
    )
    renewal_price = to_nullable_number(
        first_present(
            row,
            "renewal_price",
            "price_renewal",
            "renewal_price_affiliate",
            "price_renovation",
            "renewalPrice",
        )
    )
    duration_days = to_nullable_number(
        first_present(row, "duration_days", "subscription_days", "durationDays", "plan_days")
    )

    provider_id = to_text(row.get("provider_id"), "unknown-provider")
    provider = providers.get(provider_id)

    return Product(
        id=max(1, math.floor(to_number(first_present(row, "id", "product_id"), index + 1))),
        name=name,
        logo=resolve_logo(name, first_present(row, "logo_url", "image_url", "logo", "image", "icon")),
        stock=stock,
        summary=to_text(
            first_present(row, "description", "cycle", "plan", "duration"), "Producto digital"
        ),
        duration_days=None if duration_days is None else max(1, math.floor(duration_days)),
        price_guest=price_guest,
        price_affiliate=price_affiliate,
        renewal_price=renewal_price,
        provider_id=provider_id,
        provider_name=provider.name if provider else "Proveedor",
        provider_avatar_url=provider.avatar_url if provider else "",
        delivery_mode=to_text(row.get("delivery_mode"), "instant"),
        account_type=to_text(row.get("account_type"), "profiles"),
        renewable=is_truthy(row.get("renewable")),
        extra_required_fields=parse_extra_required_fields(row.get("extra_required_fields")),
        is_active=is_active_row(row),
    )


def normalize_products(rows: List[dict], providers: Dict[str, ProviderCard]) -> List[Product]:
    """Drops inactive rows; the fallback index is the row's position after filtering."""
    active = [row for row in rows if is_active_row(row)]
    return [normalize_product(row, index, providers) for index, row in enumerate(active)]


# Loading -----------------------------------------------------------------


def _cards_from_rows(rows: Any) -> Dict[str, ProviderCard]:
    cards: Dict[str, ProviderCard] = {}
    for provider in rows or []:
        if not isinstance(provider, dict):
            continue
        provider_id = to_text(provider.get("id"))
        if not provider_id:
            continue
        cards[provider_id] = ProviderCard(
            name=to_text(provider.get("username"), "Proveedor"),
            avatar_url=to_text(provider.get("provider_avatar_url")),
        )
    return cards


def load_provider_cards(db: DbClient, provider_ids: List[str]) -> Dict[str, ProviderCard]:
    """Public provider names/avatars, via the card procedure or a direct read."""
    if not provider_ids:
        return {}
    try:
        rows = db.rpc("get_public_profile_cards", {"p_profile_ids": provider_ids})
    except DbError as exc:
        logger.info("get_public_profile_cards unavailable, reading profiles: %s", exc.message)
        rows = None
    if isinstance(rows, list):
        return _cards_from_rows(rows)

    try:
        fallback_rows = db.select(
            "profiles", "id, username, provider_avatar_url", filters=[in_("id", provider_ids)]
        )
    except DbError as exc:
        logger.warning("Could not read provider profiles: %s", exc.message)
        fallback_rows = []
    return _cards_from_rows(fallback_rows)


def load_products(
    db: DbClient,
    load_error_message: str = PRODUCTS_LOAD_ERROR,
    empty_message: Optional[str] = PRODUCTS_EMPTY,
) -> Tuple[List[Product], Optional[str]]:
    """
    Loads and normalizes every product, newest first.

    Returns the products plus a user-facing message when the list could not
    be loaded or is empty. When `empty_message` is None an empty table is
    reported with `load_error_message`.
    """
    try:
        rows = db.select("products", "*", order=[desc("created_at")])
    except DbError as exc:
        logger.warning("Failed to load products: %s", exc.message)
        return [], load_error_message

    if not rows:
        return [], empty_message or load_error_message

    provider_ids: List[str] = []
    for row in rows:
        provider_id = to_text(row.get("provider_id"))
        if provider_id and provider_id not in provider_ids:
            provider_ids.append(provider_id)

    providers = load_provider_cards(db, provider_ids)
    return normalize_products(rows, providers), None


def load_name_filters(db: DbClient) -> List[ProductNameFilter]:
    """Active platform shortcuts shown above the catalog."""
    try:
        rows = db.select(
            "product_name_filters",
            "id, name, keyword, image_url, sort_order, is_active",
            filters=[eq("is_active", True)],
            order=[asc("sort_order"), asc("created_at")],
        )
    except DbError as exc:
        logger.info("Name filters unavailable: %s", exc.message)
        return []

    filters: List[ProductNameFilter] = []
    for index, row in enumerate(rows):
        filter_id = to_id_text(row.get("id"), f"logo-{index + 1}")
        name = to_text(row.get("name"), "Plataforma")
        keyword = to_text(row.get("keyword"), name).lower()
        image_url = to_text(row.get("image_url"), DEFAULT_LOGO)
        if not filter_id or not keyword or not image_url:
            continue
        filters.append(
            ProductNameFilter(
                id=filter_id,
                name=name,
                keyword=keyword,
                image_url=image_url,
                sort_order=to_number(row.get("sort_order"), index),
            )
        )
    filters.sort(key=lambda item: item.sort_order)
    return filters


def find_name_filter(
    filters: List[ProductNameFilter], filter_id: Optional[str]
) -> Optional[ProductNameFilter]:
    if not filter_id:
        return None
    for item in filters:
        if item.id == filter_id:
            return item
    return None
