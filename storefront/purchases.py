"""
Product purchase through the hosted purchase procedures.

Stock, balances and order creation happen inside `purchase_product` /
`purchase_on_demand_product`; this module only validates the request,
picks the procedure and settles the provider commission afterwards.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from shared.coerce import to_id_text
from storefront.accounts import Viewer
from storefront.catalog import Product
from storefront.db import DbClient, DbError

logger = logging.getLogger(__name__)

PURCHASE_ERROR_MESSAGES = {
    "NO_AUTH": "Debes iniciar sesion para comprar.",
    "NOT_APPROVED": "Tu cuenta aun no esta aprobada.",
    "AFFILIATE_REQUIRED": "Tu cuenta no tiene afiliacion activa para comprar.",
    "SELF_PURCHASE_NOT_ALLOWED": "No puedes comprar tu propio producto.",
    "PRODUCT_NOT_FOUND": "El producto ya no existe o no esta disponible.",
    "PRODUCT_INACTIVE": "El producto no esta activo.",
    "OUT_OF_STOCK": "No hay stock disponible en este momento.",
    "INSUFFICIENT_BALANCE": "Saldo insuficiente para completar la compra.",
}


@dataclass
class PurchaseResult:
    ok: bool
    message: str
    order_id: Optional[str] = None
    on_demand: bool = False


class PurchaseError(Exception):
    """Raised when a purchase is refused before or by the procedures."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


def map_purchase_error(raw_message: str) -> str:
    code = raw_message.strip().upper()
    if code in PURCHASE_ERROR_MESSAGES:
        return PURCHASE_ERROR_MESSAGES[code]
    if 'relation "public.wallets" does not exist' in raw_message.lower():
        return "Falta actualizar la funcion purchase_product en Supabase (wallets ya no existe)."
    return f"No se pudo completar la compra ({raw_message})."


def is_customer_extra_type_error(message: str) -> bool:
    message = (message or "").lower()
    return (
        "customer_extra" in message
        and "is of type jsonb but expression is of type text" in message
    )


def _order_id(data: Any) -> str:
    if isinstance(data, dict):
        return to_id_text(data.get("order_id"))
    return ""


def build_purchase_payload(
    product: Product,
    customer_name: str = "",
    customer_phone: str = "",
    extra_values: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """Validates required extra fields and builds the procedure arguments."""
    extra_values = extra_values or {}
    extra_payload: Dict[str, str] = {}
    for extra in product.extra_required_fields:
        value = (extra_values.get(extra.key) or "").strip()
        if extra.required and not value:
            raise PurchaseError(f"Completa el campo obligatorio: {extra.label}.")
        if value:
            extra_payload[extra.key] = value

    payload: Dict[str, Any] = {"p_product_id": product.id}
    if extra_payload:
        payload["p_customer_extra"] = extra_payload
    customer_name = (customer_name or "").strip()
    customer_phone = (customer_phone or "").strip()
    if customer_name:
        payload["p_customer_name"] = customer_name
    if customer_phone:
        payload["p_customer_phone"] = customer_phone
    return payload


def _purchase_on_demand(db: DbClient, payload: Dict[str, Any]) -> PurchaseResult:
    try:
        data = db.rpc("purchase_on_demand_product", payload)
    except DbError as exc:
        if not is_customer_extra_type_error(exc.message):
            raise PurchaseError(
                "Producto A pedido, pero fallo el fallback en DB "
                f"(purchase_on_demand_product). ({exc.message})"
            ) from exc
        # Older deployments declare p_customer_extra as text.
        logger.warning("purchase_on_demand_product rejected jsonb extras; retrying without them")
        retry_payload = {k: v for k, v in payload.items() if k != "p_customer_extra"}
        try:
            data = db.rpc("purchase_on_demand_product", retry_payload)
        except DbError as retry_exc:
            raise PurchaseError(
                "Producto A pedido, pero fallo el fallback en DB "
                f"(purchase_on_demand_product). ({retry_exc.message})"
            ) from retry_exc

    order_id = _order_id(data)
    message = (
        f"Solicitud A pedido creada. Pedido #{order_id}."
        if order_id
        else "Solicitud A pedido creada correctamente."
    )
    return PurchaseResult(ok=True, message=message, order_id=order_id or None, on_demand=True)


def purchase(
    db: DbClient,
    viewer: Viewer,
    product: Product,
    customer_name: str = "",
    customer_phone: str = "",
    extra_values: Optional[Mapping[str, str]] = None,
) -> PurchaseResult:
    """
    Buys one unit of `product` for the viewer.

    Args:
        db: Client bound to the viewer's session.
        viewer: Resolved viewer; only affiliates may buy.
        product: The normalized product being bought.
        customer_name: Optional end-customer name.
        customer_phone: Optional end-customer phone.
        extra_values: Values for the product's extra required fields, by key.

    Returns:
        The PurchaseResult with the confirmation message.

    Raises:
        PurchaseError: With the user-facing reason when the purchase fails.
    """
    if viewer.mode != "affiliate":
        raise PurchaseError("Tu cuenta no puede comprar en este momento.")
    if viewer.user_id and product.provider_id == viewer.user_id:
        raise PurchaseError("No puedes comprar tu propio producto.")
    on_demand = product.is_on_demand
    if not on_demand and product.stock <= 0:
        raise PurchaseError("Producto sin stock disponible.")

    payload = build_purchase_payload(product, customer_name, customer_phone, extra_values)

    try:
        data = db.rpc("purchase_product", payload)
    except DbError as exc:
        if exc.message.strip().upper() == "OUT_OF_STOCK" and on_demand:
            return _purchase_on_demand(db, payload)
        raise PurchaseError(map_purchase_error(exc.message)) from exc

    order_id = _order_id(data)
    message = (
        f"Compra creada correctamente. Pedido #{order_id}."
        if order_id
        else "Compra creada correctamente."
    )

    if not on_demand and order_id:
        try:
            db.rpc(
                "settle_provider_commission",
                {"p_order_id": order_id, "p_credit_mode": "adjust_only"},
            )
        except DbError as exc:
            logger.warning("Commission settlement failed for order %s: %s", order_id, exc.message)
            message += (
                f" (Aviso: no se pudo liquidar saldo proveedor con comision: {exc.message})"
            )

    return PurchaseResult(ok=True, message=message, order_id=order_id or None)
