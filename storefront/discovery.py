"""
Ordering, trend signals, recommendations and pagination for the catalog.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from shared.coerce import to_number, to_text
from storefront.catalog import (
    Product,
    ProductNameFilter,
    detect_category,
    format_account_type,
    format_delivery_mode,
    format_duration,
)
from storefront.db import DbClient, DbError, desc, eq, gte

logger = logging.getLogger(__name__)

FEATURED_LIMIT = 8
TRENDING_LIMIT = 6
RECOMMENDATION_LIMIT = 5
TREND_WINDOW = timedelta(hours=24)
TREND_ORDERS_LIMIT = 2600
BUYER_ORDERS_LIMIT = 900
PAGE_ROWS = 3
PAGE_WINDOW = 5

ORDER_STATUS_ALIASES = {
    "pendiente": "pending",
    "en_proceso": "in_progress",
    "in process": "in_progress",
    "pagado": "paid",
    "entregado": "delivered",
    "resuelto": "resolved",
    "cancelado": "cancelled",
}
PAID_LIKE_STATUSES = ("paid", "delivered", "resolved", "closed")
TREND_STATUSES = ("pending", "in_progress") + PAID_LIKE_STATUSES


def sort_by_stock(products: Iterable[Product]) -> List[Product]:
    return sorted(products, key=lambda item: -item.stock)


def featured_products(products: Iterable[Product], limit: int = FEATURED_LIMIT) -> List[Product]:
    return sort_by_stock(products)[:limit]


# Order signals -----------------------------------------------------------


def normalize_order_status(status_raw: str) -> str:
    value = status_raw.strip().lower()
    if not value:
        return "pending"
    return ORDER_STATUS_ALIASES.get(value, value)


def is_paid_like_order_status(status_raw: str) -> bool:
    return normalize_order_status(status_raw) in PAID_LIKE_STATUSES


def is_trend_order_status(status_raw: str) -> bool:
    return normalize_order_status(status_raw) in TREND_STATUSES


def _order_product_id(row: dict) -> int:
    return math.floor(to_number(row.get("product_id"), 0))


def trend_counts(rows: Iterable[dict]) -> Dict[int, int]:
    counts: Dict[int, int] = {}
    for row in rows:
        product_id = _order_product_id(row)
        if product_id <= 0 or not is_trend_order_status(to_text(row.get("status"))):
            continue
        counts[product_id] = counts.get(product_id, 0) + 1
    return counts


def paid_product_ids(rows: Iterable[dict]) -> List[int]:
    """Distinct products the buyer has paid for, most recent order first."""
    seen: List[int] = []
    for row in rows:
        product_id = _order_product_id(row)
        if product_id <= 0 or product_id in seen:
            continue
        if not is_paid_like_order_status(to_text(row.get("status"))):
            continue
        seen.append(product_id)
    return seen


def total_trend_orders(counts: Dict[int, int]) -> float:
    return sum(max(0, to_number(value)) for value in counts.values())


def load_trend_counts(db: DbClient, now: Optional[datetime] = None) -> Dict[int, int]:
    since = (now or datetime.now(timezone.utc)) - TREND_WINDOW
    try:
        rows = db.select(
            "orders",
            "product_id, status, created_at",
            filters=[gte("created_at", since.isoformat())],
            order=[desc("created_at")],
            limit=TREND_ORDERS_LIMIT,
        )
    except DbError as exc:
        logger.info("Trend orders unavailable: %s", exc.message)
        return {}
    return trend_counts(rows)


def load_paid_product_ids(db: DbClient, buyer_id: Optional[str]) -> List[int]:
    if not buyer_id:
        return []
    try:
        rows = db.select(
            "orders",
            "product_id, buyer_id, status, created_at",
            filters=[eq("buyer_id", buyer_id)],
            order=[desc("created_at")],
            limit=BUYER_ORDERS_LIMIT,
        )
    except DbError as exc:
        logger.info("Buyer orders unavailable: %s", exc.message)
        return []
    return paid_product_ids(rows)


# Ranking -----------------------------------------------------------------


def trending_products(
    sorted_products: List[Product],
    counts: Dict[int, int],
    limit: int = TRENDING_LIMIT,
) -> List[Tuple[Product, int]]:
    """
    Products with their 24h order count.

    Ranked by orders when any product has orders, otherwise by stock then
    cheapest guest price.
    """
    has_trend_data = any(value > 0 for value in counts.values())
    ranked = [
        (item, counts.get(item.id, 0), index) for index, item in enumerate(sorted_products)
    ]
    if has_trend_data:
        ranked.sort(key=lambda entry: (-entry[1], -entry[0].stock, entry[0].price_guest))
    else:
        ranked.sort(key=lambda entry: (-entry[0].stock, entry[0].price_guest, entry[2]))
    return [(item, orders) for item, orders, _ in ranked[:limit]]


def _matches_name_filter(product: Product, name_filter: Optional[ProductNameFilter]) -> bool:
    return name_filter is None or name_filter.keyword.lower() in product.name.lower()


def recommend_products(
    sorted_products: List[Product],
    paid_ids: List[int],
    counts: Dict[int, int],
    category: str = "all",
    name_filter: Optional[ProductNameFilter] = None,
    search: str = "",
    limit: int = RECOMMENDATION_LIMIT,
) -> List[Product]:
    """Scores products by availability, renewability, trend, purchase history and filters."""
    if not sorted_products:
        return []

    by_id = {item.id: item for item in sorted_products}
    affinity: Dict[str, int] = {}
    for product_id in paid_ids:
        product = by_id.get(product_id)
        if product is None:
            continue
        product_category = detect_category(product.name)
        affinity[product_category] = affinity.get(product_category, 0) + 1
    preferred = [name for name, _ in sorted(affinity.items(), key=lambda entry: -entry[1])]
    purchased = set(paid_ids)
    search = search.strip().lower()

    ranked = []
    for index, item in enumerate(sorted_products):
        item_category = detect_category(item.name)
        trend_count = counts.get(item.id, 0)

        score = 0
        if item.stock > 0 or item.is_on_demand:
            score += 20
        if item.renewable:
            score += 8
        if trend_count > 0:
            score += min(24, trend_count * 4)
        if item_category in preferred:
            score += max(8, 26 - preferred.index(item_category) * 6)
        if category != "all" and item_category == category:
            score += 14
        if name_filter is not None and _matches_name_filter(item, name_filter):
            score += 18
        if search and (
            search in item.name.lower()
            or search in item.summary.lower()
            or search in item.provider_name.lower()
        ):
            score += 12
        if item.id in purchased:
            score -= 22
        score += max(0, 6 - index)
        ranked.append((score, trend_count, item))

    ranked.sort(key=lambda entry: (-entry[0], -entry[1], -entry[2].stock))
    return [item for _, _, item in ranked[:limit]]


# Filtering ---------------------------------------------------------------


def deterministic_shuffle_score(product_id: int, seed: int) -> float:
    value = math.sin(product_id * 12.9898 + seed * 78.233) * 43758.5453
    return value - math.floor(value)


def next_shuffle_seed(seed: int) -> int:
    return ((seed + 7919) % 1000000) + 1


def matches_search(product: Product, search: str) -> bool:
    if not search:
        return True
    return (
        search in product.name.lower()
        or search in product.summary.lower()
        or search in product.provider_name.lower()
        or search in format_delivery_mode(product.delivery_mode).lower()
        or search in format_account_type(product.account_type).lower()
        or search in format_duration(product.duration_days).lower()
    )


def filter_products(
    sorted_products: List[Product],
    category: str = "all",
    name_filter: Optional[ProductNameFilter] = None,
    search: str = "",
    seed: int = 1,
) -> List[Product]:
    """Applies the catalog filters; the unfiltered category is shuffled by `seed`."""
    search = search.strip().lower()
    base = [
        item
        for item in sorted_products
        if (category == "all" or detect_category(item.name) == category)
        and _matches_name_filter(item, name_filter)
        and matches_search(item, search)
    ]
    if category != "all":
        return base
    return sorted(base, key=lambda item: deterministic_shuffle_score(item.id, seed))


# Pagination --------------------------------------------------------------


def catalog_columns(viewport_width: int) -> int:
    if viewport_width <= 860:
        return 2
    if viewport_width <= 980:
        return 3
    return 4


def page_numbers(active_page: int, total_pages: int, window: int = PAGE_WINDOW) -> List[int]:
    if total_pages <= window:
        return list(range(1, total_pages + 1))
    start = max(1, active_page - window // 2)
    end = start + window - 1
    if end > total_pages:
        end = total_pages
        start = end - window + 1
    return list(range(start, end + 1))


@dataclass
class CatalogPage:
    items: List[Product]
    page: int
    page_size: int
    total_pages: int
    total_items: int
    columns: int
    page_numbers: List[int]


def paginate(products: List[Product], page: int, viewport_width: int) -> CatalogPage:
    columns = catalog_columns(viewport_width)
    page_size = max(1, columns * PAGE_ROWS)
    total_pages = max(1, math.ceil(len(products) / page_size))
    active = max(1, min(page, total_pages))
    start = (active - 1) * page_size
    return CatalogPage(
        items=products[start : start + page_size],
        page=active,
        page_size=page_size,
        total_pages=total_pages,
        total_items=len(products),
        columns=columns,
        page_numbers=page_numbers(active, total_pages),
    )
