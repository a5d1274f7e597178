import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core.database import get_db
from app.core.request_context import set_request_context
from app.errors import MaterializationError, PaymentError, PendingPaymentNotFound
from app.models.pending_payment import PENDING
from app.payments.base import ReconcileSignal
from app.schemas.payments import PaymentCheckRequest, PaymentCheckResponse, PendingPaymentRead
from app.services.pending_payments import get_pending_payment
from app.services.reconciliation import ReconciliationEngine, get_reconciliation_engine

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/check", response_model=PaymentCheckResponse)
def check_payment(
    payload: PaymentCheckRequest,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    if not payload.pending_id or payload.company_id is None:
        raise HTTPException(status_code=400, detail="Dados obrigatórios não fornecidos")

    set_request_context(company_id=payload.company_id, pending_id=payload.pending_id)
    try:
        pending = get_pending_payment(db, payload.pending_id, company_id=payload.company_id)
    except PendingPaymentNotFound:
        raise HTTPException(status_code=404, detail="Pedido não encontrado")

    signal = ReconcileSignal(
        provider=pending.provider,
        pending_id=pending.id,
        company_id=payload.company_id,
        link_id=payload.provider_link_id or payload.payment_link_id,
        reference_id=payload.reference_id,
        source="poll",
    )
    try:
        result = engine.reconcile(db, signal)
    except PendingPaymentNotFound:
        raise HTTPException(status_code=404, detail="Pedido não encontrado")
    except MaterializationError:
        # Claim liberado; o próximo polling tenta de novo.
        return PaymentCheckResponse(approved=False, status=PENDING)
    except (PaymentError, SQLAlchemyError):
        db.rollback()
        logger.exception("payment check failed", extra={"step": "poll"})
        return PaymentCheckResponse(approved=False, status=PENDING)

    return PaymentCheckResponse(approved=result.approved, status=result.status, order_id=result.order_id)


@router.get("/pending/{pending_id}", response_model=PendingPaymentRead)
def read_pending_payment(
    pending_id: str,
    company_id: Optional[int] = None,
    db: Session = Depends(get_db),
):
    try:
        pending = get_pending_payment(db, pending_id, company_id=company_id)
    except PendingPaymentNotFound:
        raise HTTPException(status_code=404, detail="Pedido não encontrado")
    return PendingPaymentRead(
        id=pending.id,
        company_id=pending.company_id,
        provider=pending.provider,
        status=pending.status,
        order_id=pending.order_id,
        completed_at=pending.completed_at,
        created_at=pending.created_at,
    )
