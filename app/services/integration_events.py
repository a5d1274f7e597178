from __future__ import annotations

from typing import Any, Mapping, Optional

from sqlalchemy.orm import Session

from app.models.integration_event import IntegrationEvent
from app.payments.base import safe_json, sanitize_payload


def record_integration_event(
    db: Session,
    *,
    integration: str,
    event_type: str,
    status: str = "ok",
    company_id: Optional[int] = None,
    pending_payment_id: Optional[str] = None,
    payload: Optional[Mapping[str, Any]] = None,
    error: Optional[str] = None,
) -> IntegrationEvent:
    entry = IntegrationEvent(
        company_id=company_id,
        integration=integration,
        event_type=event_type,
        status=status,
        pending_payment_id=pending_payment_id,
        payload_json=safe_json(sanitize_payload(dict(payload))) if payload else None,
        error=error[:2000] if error else None,
    )
    db.add(entry)
    return entry
