from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import ORDER_ESTIMATED_DELIVERY_MINUTES
from app.models.coupon import Coupon
from app.models.customer import Customer
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.pending_payment import PendingPayment

logger = logging.getLogger(__name__)


def _money(value: Any) -> Decimal:
    try:
        return Decimal(str(value or 0))
    except (InvalidOperation, ValueError):
        return Decimal("0")


def _int(value: Any, default: int = 0) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def resolve_customer(db: Session, order_data: dict[str, Any]) -> Customer | None:
    """Busca o cliente por e-mail ou telefone; cria se não existir."""
    email = str(order_data.get("customer_email") or "").strip().lower() or None
    phone = str(order_data.get("customer_phone") or "").strip()
    if not email and not phone:
        return None

    filters = []
    if email:
        filters.append(Customer.email == email)
    if phone:
        filters.append(Customer.phone == phone)
    customer = db.query(Customer).filter(or_(*filters)).order_by(Customer.id).first()
    if customer:
        return customer

    customer = Customer(
        name=str(order_data.get("customer_name") or "Cliente"),
        email=email,
        phone=phone,
    )
    db.add(customer)
    db.flush()
    return customer


def create_order_items(db: Session, order_id: str, items: list[dict[str, Any]]) -> list[OrderItem]:
    order_items: list[OrderItem] = []
    for item in items or []:
        if not isinstance(item, dict):
            continue
        quantity = _int(item.get("quantity"), 1)
        unit_price = _money(item.get("unit_price"))
        total_price = item.get("total_price")
        order_item = OrderItem(
            order_id=order_id,
            product_id=str(item["product_id"]) if item.get("product_id") is not None else None,
            product_name=str(item.get("product_name") or item.get("name") or "").strip() or "Item",
            quantity=quantity,
            unit_price=unit_price,
            total_price=_money(total_price) if total_price is not None else unit_price * quantity,
            notes=item.get("notes") or None,
            options=item.get("options") or [],
        )
        db.add(order_item)
        order_items.append(order_item)
    return order_items


def increment_coupon_usage(db: Session, coupon_id: Any) -> bool:
    # Incremento no banco, sem read-modify-write.
    coupon_id = _int(coupon_id, 0)
    if not coupon_id:
        return False
    updated = (
        db.query(Coupon)
        .filter(Coupon.id == coupon_id)
        .update({"current_uses": Coupon.current_uses + 1}, synchronize_session=False)
    )
    return updated == 1


def materialize_order(
    db: Session,
    pending: PendingPayment,
    *,
    payment_ref: str | None = None,
    now: datetime | None = None,
) -> Order:
    """Cria ``Order`` e ``OrderItem``s a partir do snapshot do checkout.

    Only flushes. The caller owns the transaction so the order and the
    ``processing -> completed`` transition commit together.
    """
    order_data = dict(pending.order_data or {})
    now = now or datetime.now(timezone.utc)
    is_table_order = bool(order_data.get("table_session_id"))

    customer = resolve_customer(db, order_data)
    email = str(order_data.get("customer_email") or "").strip().lower() or None

    order = Order(
        company_id=pending.company_id,
        customer_id=customer.id if customer else None,
        customer_name=str(order_data.get("customer_name") or "Cliente"),
        customer_phone=str(order_data.get("customer_phone") or ""),
        customer_email=email,
        delivery_address_id=order_data.get("delivery_address_id") or None,
        table_session_id=order_data.get("table_session_id") or None,
        source=order_data.get("source") or ("table" if is_table_order else "online"),
        payment_method="pix",
        payment_status="paid",
        provider_payment_ref=f"{pending.provider}_{payment_ref}" if payment_ref else None,
        subtotal=_money(order_data.get("subtotal")),
        delivery_fee=_money(order_data.get("delivery_fee")),
        discount_amount=_money(order_data.get("discount_amount")),
        total=_money(order_data.get("total")),
        coupon_id=_int(order_data.get("coupon_id"), 0) or None,
        notes=order_data.get("notes") or None,
        status="pending",
        estimated_delivery_time=None
        if is_table_order
        else now + timedelta(minutes=ORDER_ESTIMATED_DELIVERY_MINUTES),
    )
    db.add(order)
    db.flush()

    items = create_order_items(db, order.id, order_data.get("items") or [])
    if order.coupon_id:
        increment_coupon_usage(db, order.coupon_id)
    db.flush()

    logger.info(
        "order materialized items=%s total=%s",
        len(items),
        order.total,
        extra={"company_id": pending.company_id, "pending_id": pending.id, "step": "materialize"},
    )
    return order
