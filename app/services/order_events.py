from __future__ import annotations

from app.models.order import Order
from app.services.event_bus import ORDER_CREATED_EVENT, event_bus


def build_order_payload(order: Order, pending_id: str | None = None) -> dict:
    return {
        "order_id": order.id,
        "company_id": order.company_id,
        "pending_payment_id": pending_id,
        "status": (order.status or "").strip().lower(),
        "customer_name": order.customer_name,
        "customer_phone": order.customer_phone,
        "total": str(order.total or 0),
        "source": order.source,
        "table_session_id": order.table_session_id,
    }


def emit_order_created(order: Order, pending_id: str | None = None) -> None:
    event_bus.emit(ORDER_CREATED_EVENT, build_order_payload(order, pending_id=pending_id))
