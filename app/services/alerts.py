from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

import httpx
from sqlalchemy.orm import Session

from app.core.config import PROVIDER_TIMEOUT_SECONDS, SUBSCRIPTION_ALERT_TOKEN, SUBSCRIPTION_ALERT_URL
from app.services.event_bus import event_bus
from app.services.integration_events import record_integration_event

logger = logging.getLogger(__name__)

SUBSCRIPTION_ALERT_EVENT = "subscription.alert"

PAYMENT_FAILED = "payment_failed"
PAYMENT_PENDING = "payment_pending"
GRACE_PERIOD = "grace_period"
EXPIRING_SOON = "expiring_soon"
GRACE_PERIOD_ENDING = "grace_period_ending"
EXPIRED = "expired"


def build_alert_payload(
    *,
    company_id: int,
    owner_id: Any,
    alert_type: str,
    plan_name: str | None,
    grace_end_date: datetime | None = None,
    amount: Any = None,
) -> dict[str, Any]:
    return {
        "companyId": company_id,
        "ownerId": owner_id,
        "type": alert_type,
        "planName": plan_name,
        "graceEndDate": grace_end_date.isoformat() if grace_end_date else None,
        "amount": float(amount) if amount is not None else None,
    }


def emit_subscription_alert(**kwargs: Any) -> dict[str, Any]:
    payload = build_alert_payload(**kwargs)
    event_bus.emit(SUBSCRIPTION_ALERT_EVENT, payload)
    return payload


def deliver_subscription_alert(
    db: Session,
    payload: dict[str, Any],
    *,
    url: str | None = None,
    transport: httpx.BaseTransport | None = None,
) -> bool:
    """Envia o alerta para o serviço de e-mail. Falhas ficam só no log."""
    target = SUBSCRIPTION_ALERT_URL if url is None else url
    if not target:
        logger.info("subscription alert delivery disabled type=%s", payload.get("type"))
        return False

    headers = {"Content-Type": "application/json"}
    if SUBSCRIPTION_ALERT_TOKEN:
        headers["Authorization"] = f"Bearer {SUBSCRIPTION_ALERT_TOKEN}"

    error: str | None = None
    try:
        with httpx.Client(timeout=PROVIDER_TIMEOUT_SECONDS, transport=transport) as client:
            response = client.post(target, json=payload, headers=headers)
        if response.status_code >= 400:
            error = f"status={response.status_code} body={response.text[:300]}"
    except httpx.HTTPError as exc:
        error = f"{type(exc).__name__}: {exc}"

    if error:
        logger.warning(
            "subscription alert delivery failed type=%s error=%s",
            payload.get("type"),
            error,
            extra={"company_id": payload.get("companyId"), "step": "alert"},
        )
    else:
        logger.info(
            "subscription alert sent type=%s",
            payload.get("type"),
            extra={"company_id": payload.get("companyId"), "step": "alert"},
        )

    record_integration_event(
        db,
        integration="subscription_alert",
        event_type=str(payload.get("type") or "unknown"),
        status="error" if error else "ok",
        company_id=payload.get("companyId"),
        payload=payload,
        error=error,
    )
    db.commit()
    return error is None
