import unittest

from storefront.accounts import Viewer
from storefront.catalog import ExtraRequiredField, Product
from storefront.db import DbError, InMemoryDbClient
from storefront.purchases import (
    PurchaseError,
    build_purchase_payload,
    map_purchase_error,
    purchase,
)

BUYER_ID = "buyer-1"


def _product(**overrides):
    values = dict(
        id=12,
        name="Netflix 1 mes",
        logo="/particles/netflix.png",
        stock=3,
        summary="Producto digital",
        duration_days=30,
        price_guest=20.0,
        price_affiliate=15.0,
        renewal_price=None,
        provider_id="provider-1",
        provider_name="Carla",
        provider_avatar_url="",
        delivery_mode="instant",
        account_type="profiles",
        renewable=True,
    )
    values.update(overrides)
    return Product(**values)


def _raise(message):
    def handler(params, user_id):
        raise DbError(message)

    return handler


class PurchaseTestCase(unittest.TestCase):
    def setUp(self):
        self.db = InMemoryDbClient().for_user("token", BUYER_ID)
        self.viewer = Viewer(mode="affiliate", logged_in=True, user_id=BUYER_ID, db=self.db)


class PayloadTests(unittest.TestCase):
    def test_required_extra_fields(self):
        product = _product(
            extra_required_fields=[
                ExtraRequiredField(key="email", label="Correo", required=True),
                ExtraRequiredField(key="note", label="Nota"),
            ]
        )
        with self.assertRaises(PurchaseError) as ctx:
            build_purchase_payload(product, extra_values={"email": "  "})
        self.assertEqual(ctx.exception.message, "Completa el campo obligatorio: Correo.")

        payload = build_purchase_payload(
            product, " Ana ", "", {"email": " ana@mail.com ", "note": ""}
        )
        self.assertEqual(
            payload,
            {
                "p_product_id": 12,
                "p_customer_extra": {"email": "ana@mail.com"},
                "p_customer_name": "Ana",
            },
        )

    def test_error_mapping(self):
        self.assertEqual(
            map_purchase_error(" insufficient_balance "),
            "Saldo insuficiente para completar la compra.",
        )
        self.assertIn("wallets ya no existe", map_purchase_error('relation "public.wallets" does not exist'))
        self.assertEqual(map_purchase_error("boom"), "No se pudo completar la compra (boom).")


class StockPurchaseTests(PurchaseTestCase):
    def test_successful_purchase_settles_commission(self):
        self.db.register_procedure("purchase_product", lambda params, user_id: {"order_id": 77})
        self.db.register_procedure("settle_provider_commission", lambda params, user_id: None)

        result = purchase(self.db, self.viewer, _product())

        self.assertTrue(result.ok)
        self.assertEqual(result.order_id, "77")
        self.assertEqual(result.message, "Compra creada correctamente. Pedido #77.")
        self.assertEqual(
            self.db.rpc_calls,
            [
                ("purchase_product", {"p_product_id": 12}, BUYER_ID),
                (
                    "settle_provider_commission",
                    {"p_order_id": "77", "p_credit_mode": "adjust_only"},
                    BUYER_ID,
                ),
            ],
        )

    def test_settlement_failure_is_a_warning(self):
        self.db.register_procedure("purchase_product", lambda params, user_id: {"order_id": "a1"})
        self.db.register_procedure("settle_provider_commission", _raise("no commission"))

        result = purchase(self.db, self.viewer, _product())

        self.assertTrue(result.ok)
        self.assertIn("Aviso: no se pudo liquidar saldo proveedor con comision: no commission", result.message)

    def test_without_order_id(self):
        self.db.register_procedure("purchase_product", lambda params, user_id: None)

        result = purchase(self.db, self.viewer, _product())

        self.assertEqual(result.message, "Compra creada correctamente.")
        self.assertIsNone(result.order_id)
        self.assertEqual(len(self.db.rpc_calls), 1)

    def test_procedure_error_is_mapped(self):
        self.db.register_procedure("purchase_product", _raise("OUT_OF_STOCK"))

        with self.assertRaises(PurchaseError) as ctx:
            purchase(self.db, self.viewer, _product())

        self.assertEqual(ctx.exception.message, "No hay stock disponible en este momento.")

    def test_refusals_before_calling_the_database(self):
        with self.assertRaises(PurchaseError):
            purchase(self.db, Viewer(), _product())
        with self.assertRaises(PurchaseError) as own:
            purchase(self.db, self.viewer, _product(provider_id=BUYER_ID))
        self.assertEqual(own.exception.message, "No puedes comprar tu propio producto.")
        with self.assertRaises(PurchaseError) as empty:
            purchase(self.db, self.viewer, _product(stock=0))
        self.assertEqual(empty.exception.message, "Producto sin stock disponible.")
        self.assertEqual(self.db.rpc_calls, [])


class OnDemandPurchaseTests(PurchaseTestCase):
    def setUp(self):
        super().setUp()
        self.product = _product(
            stock=0,
            delivery_mode="a_pedido",
            extra_required_fields=[ExtraRequiredField(key="email", label="Correo", required=True)],
        )
        self.db.register_procedure("purchase_product", _raise("OUT_OF_STOCK"))

    def test_falls_back_to_on_demand_procedure(self):
        self.db.register_procedure(
            "purchase_on_demand_product", lambda params, user_id: {"order_id": 5}
        )

        result = purchase(self.db, self.viewer, self.product, extra_values={"email": "a@b.c"})

        self.assertTrue(result.on_demand)
        self.assertEqual(result.message, "Solicitud A pedido creada. Pedido #5.")
        self.assertEqual(
            [name for name, _, _ in self.db.rpc_calls],
            ["purchase_product", "purchase_on_demand_product"],
        )

    def test_retries_without_jsonb_extras(self):
        def handler(params, user_id):
            if "p_customer_extra" in params:
                raise DbError(
                    'column "customer_extra" is of type jsonb but expression is of type text'
                )
            return {}

        self.db.register_procedure("purchase_on_demand_product", handler)

        result = purchase(self.db, self.viewer, self.product, extra_values={"email": "a@b.c"})

        self.assertEqual(result.message, "Solicitud A pedido creada correctamente.")
        self.assertEqual(self.db.rpc_calls[-1][1], {"p_product_id": 12})

    def test_on_demand_failure(self):
        self.db.register_procedure("purchase_on_demand_product", _raise("NOT_APPROVED"))

        with self.assertRaises(PurchaseError) as ctx:
            purchase(self.db, self.viewer, self.product, extra_values={"email": "a@b.c"})

        self.assertIn("purchase_on_demand_product", ctx.exception.message)
        self.assertIn("NOT_APPROVED", ctx.exception.message)


if __name__ == "__main__":
    unittest.main()
