import unittest
from datetime import datetime, timezone

from storefront.catalog import Product, ProductNameFilter
from storefront.db import InMemoryDbClient, create_storefront_schema
from storefront.discovery import (
    catalog_columns,
    featured_products,
    filter_products,
    load_paid_product_ids,
    load_trend_counts,
    matches_search,
    next_shuffle_seed,
    normalize_order_status,
    page_numbers,
    paginate,
    paid_product_ids,
    recommend_products,
    sort_by_stock,
    trend_counts,
    trending_products,
)


def _product(product_id, name, stock=0, price=10.0, **overrides):
    values = dict(
        id=product_id,
        name=name,
        logo="/logo.png",
        stock=stock,
        summary="Producto digital",
        duration_days=30,
        price_guest=price,
        price_affiliate=price,
        renewal_price=None,
        provider_id="prov",
        provider_name="Proveedor",
        provider_avatar_url="",
        delivery_mode="instant",
        account_type="profiles",
        renewable=False,
    )
    values.update(overrides)
    return Product(**values)


class OrderingTests(unittest.TestCase):
    def test_sort_by_stock_is_stable(self):
        a = _product(1, "A", stock=1)
        b = _product(2, "B", stock=5)
        c = _product(3, "C", stock=5)
        self.assertEqual(sort_by_stock([a, b, c]), [b, c, a])
        self.assertEqual(featured_products([a, b, c], limit=2), [b, c])


class OrderSignalTests(unittest.TestCase):
    def test_status_aliases(self):
        self.assertEqual(normalize_order_status(" Pagado "), "paid")
        self.assertEqual(normalize_order_status(""), "pending")
        self.assertEqual(normalize_order_status("in process"), "in_progress")
        self.assertEqual(normalize_order_status("refunded"), "refunded")

    def test_trend_counts(self):
        rows = [
            {"product_id": 1, "status": "paid"},
            {"product_id": "1", "status": "pendiente"},
            {"product_id": 2, "status": "cancelled"},
            {"product_id": 0, "status": "paid"},
            {"product_id": 3, "status": None},
        ]
        self.assertEqual(trend_counts(rows), {1: 2, 3: 1})

    def test_paid_product_ids_keep_recency_order(self):
        rows = [
            {"product_id": 3, "status": "delivered"},
            {"product_id": 1, "status": "pending"},
            {"product_id": 3, "status": "paid"},
            {"product_id": 2, "status": "Entregado"},
        ]
        self.assertEqual(paid_product_ids(rows), [3, 2])


class OrderLoadingTests(unittest.TestCase):
    def setUp(self):
        self.db = create_storefront_schema(InMemoryDbClient())
        self.db.seed(
            "orders",
            {"id": 1, "product_id": 4, "buyer_id": "u1", "status": "paid", "created_at": "2025-03-02T10:00:00+00:00"},
            {"id": 2, "product_id": 4, "buyer_id": "u2", "status": "pending", "created_at": "2025-03-02T11:00:00+00:00"},
            {"id": 3, "product_id": 5, "buyer_id": "u1", "status": "delivered", "created_at": "2025-02-20T10:00:00+00:00"},
        )

    def test_trend_window(self):
        now = datetime(2025, 3, 2, 12, tzinfo=timezone.utc)
        self.assertEqual(load_trend_counts(self.db, now=now), {4: 2})

    def test_buyer_history(self):
        self.assertEqual(load_paid_product_ids(self.db, "u1"), [4, 5])
        self.assertEqual(load_paid_product_ids(self.db, None), [])

    def test_failures_degrade_to_empty(self):
        self.db.deny("orders", "select")
        self.assertEqual(load_trend_counts(self.db), {})
        self.assertEqual(load_paid_product_ids(self.db, "u1"), [])


class RankingTests(unittest.TestCase):
    def test_trending_without_orders_uses_stock_then_price(self):
        a = _product(1, "A", stock=2, price=10)
        b = _product(2, "B", stock=2, price=5)
        c = _product(3, "C", stock=9, price=20)
        ranked = trending_products(sort_by_stock([a, b, c]), {})
        self.assertEqual(ranked, [(c, 0), (b, 0), (a, 0)])

    def test_trending_with_orders(self):
        a = _product(1, "A", stock=2)
        c = _product(3, "C", stock=9)
        ranked = trending_products(sort_by_stock([a, c]), {1: 3})
        self.assertEqual(ranked, [(a, 3), (c, 0)])

    def test_recommendations(self):
        netflix = _product(1, "Netflix", stock=5)
        steam = _product(3, "Steam Wallet", stock=3)
        spotify = _product(2, "Spotify", stock=0)
        products = [netflix, steam, spotify]

        self.assertEqual(recommend_products(products, [1], {}), [netflix, steam, spotify])
        self.assertEqual(
            recommend_products(products, [1], {}, category="gaming"), [steam, netflix, spotify]
        )
        self.assertEqual(recommend_products([], [1], {}), [])

    def test_on_demand_counts_as_available(self):
        out_of_stock = _product(1, "Canva", stock=0)
        on_demand = _product(2, "Adobe", stock=0, delivery_mode="a_pedido")
        self.assertEqual(recommend_products([out_of_stock, on_demand], [], {})[0], on_demand)


class FilteringTests(unittest.TestCase):
    def setUp(self):
        self.products = [
            _product(1, "Netflix Premium"),
            _product(2, "Disney Plus", delivery_mode="on_demand"),
            _product(3, "Xbox Game Pass"),
            _product(4, "Canva Pro"),
        ]

    def test_shuffle_is_deterministic(self):
        first = filter_products(self.products, seed=42)
        second = filter_products(self.products, seed=42)
        self.assertEqual([p.id for p in first], [p.id for p in second])
        self.assertEqual(sorted(p.id for p in first), [1, 2, 3, 4])

    def test_category_keeps_order(self):
        result = filter_products(self.products, category="streaming", seed=42)
        self.assertEqual([p.id for p in result], [1, 2])

    def test_name_filter_and_search(self):
        name_filter = ProductNameFilter(
            id="1", name="Netflix", keyword="netflix", image_url="/x.png", sort_order=1
        )
        self.assertEqual([p.id for p in filter_products(self.products, name_filter=name_filter)], [1])
        self.assertEqual([p.id for p in filter_products(self.products, search=" A PEDIDO ")], [2])
        self.assertTrue(matches_search(self.products[0], "30 dias"))
        self.assertFalse(matches_search(self.products[0], "spotify"))

    def test_next_seed(self):
        self.assertEqual(next_shuffle_seed(1), 7921)
        self.assertEqual(next_shuffle_seed(999999), 7919)


class PaginationTests(unittest.TestCase):
    def test_columns(self):
        self.assertEqual(catalog_columns(860), 2)
        self.assertEqual(catalog_columns(900), 3)
        self.assertEqual(catalog_columns(1280), 4)

    def test_page_numbers(self):
        self.assertEqual(page_numbers(1, 3), [1, 2, 3])
        self.assertEqual(page_numbers(1, 10), [1, 2, 3, 4, 5])
        self.assertEqual(page_numbers(5, 10), [3, 4, 5, 6, 7])
        self.assertEqual(page_numbers(10, 10), [6, 7, 8, 9, 10])

    def test_paginate_clamps_page(self):
        products = [_product(i, f"P{i}") for i in range(1, 15)]

        last = paginate(products, 5, 1280)
        self.assertEqual(last.page, 2)
        self.assertEqual(last.page_size, 12)
        self.assertEqual(last.total_pages, 2)
        self.assertEqual([p.id for p in last.items], [13, 14])

        first = paginate(products, 0, 700)
        self.assertEqual(first.page, 1)
        self.assertEqual(first.columns, 2)
        self.assertEqual(len(first.items), 6)

        empty = paginate([], 3, 1280)
        self.assertEqual((empty.page, empty.total_pages, empty.items), (1, 1, []))


if __name__ == "__main__":
    unittest.main()
