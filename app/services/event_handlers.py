from __future__ import annotations

from functools import wraps

from sqlalchemy.orm import Session

from app.core.database import SessionLocal
from app.services.alerts import SUBSCRIPTION_ALERT_EVENT, deliver_subscription_alert
from app.services.event_bus import event_bus


def _with_session(handler):
    @wraps(handler)
    def wrapper(payload: dict) -> None:
        db: Session = SessionLocal()
        try:
            handler(db, payload)
        finally:
            db.close()

    return wrapper


@_with_session
def handle_subscription_alert(db: Session, payload: dict) -> None:
    deliver_subscription_alert(db, payload)


event_bus.subscribe(SUBSCRIPTION_ALERT_EVENT, handle_subscription_alert)
