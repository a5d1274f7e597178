from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.deps import require_internal_token
from app.services.subscriptions import check_subscription_expirations

router = APIRouter(prefix="/api/internal/subscriptions", tags=["subscriptions"])


@router.post("/check-expirations")
def run_expiration_check(
    db: Session = Depends(get_db),
    _auth: None = Depends(require_internal_token),
):
    return {"success": True, "results": check_subscription_expirations(db)}
