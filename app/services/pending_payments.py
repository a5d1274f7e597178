from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import or_
from sqlalchemy.orm import Session

from app.core.config import MAX_CLAIM_ATTEMPTS, PENDING_SCAN_LIMIT, PROCESSING_STALE_SECONDS
from app.errors import PendingPaymentNotFound
from app.models.pending_payment import CANCELLED, COMPLETED, PENDING, PROCESSING, PendingPayment

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # SQLite devolve datetimes sem tzinfo.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_pending_payment(
    db: Session,
    *,
    company_id: int,
    provider: str,
    order_data: dict[str, Any],
    provider_payment_ref: str | None = None,
    provider_preference_ref: str | None = None,
) -> PendingPayment:
    pending = PendingPayment(
        company_id=company_id,
        provider=provider,
        status=PENDING,
        order_data=dict(order_data),
        provider_payment_ref=provider_payment_ref,
        provider_preference_ref=provider_preference_ref,
    )
    db.add(pending)
    db.commit()
    db.refresh(pending)
    logger.info(
        "pending payment created",
        extra={"company_id": company_id, "pending_id": pending.id, "provider": provider},
    )
    return pending


def get_pending_payment(db: Session, pending_id: str, *, company_id: int | None = None) -> PendingPayment:
    query = db.query(PendingPayment).filter(PendingPayment.id == str(pending_id))
    if company_id is not None:
        query = query.filter(PendingPayment.company_id == company_id)
    pending = query.first()
    if not pending:
        raise PendingPaymentNotFound(f"Pagamento pendente {pending_id} não encontrado")
    return pending


def find_by_provider_ref(db: Session, provider: str, ref: str) -> PendingPayment | None:
    return (
        db.query(PendingPayment)
        .filter(
            PendingPayment.provider == provider,
            or_(
                PendingPayment.provider_payment_ref == str(ref),
                PendingPayment.provider_preference_ref == str(ref),
            ),
        )
        .order_by(PendingPayment.created_at.desc())
        .first()
    )


def list_recent_pending(db: Session, provider: str, *, limit: int | None = None) -> list[PendingPayment]:
    return (
        db.query(PendingPayment)
        .filter(PendingPayment.provider == provider, PendingPayment.status == PENDING)
        .order_by(PendingPayment.created_at.desc())
        .limit(limit or PENDING_SCAN_LIMIT)
        .all()
    )


def attach_provider_refs(
    db: Session,
    pending: PendingPayment,
    *,
    payment_ref: str | None = None,
    preference_ref: str | None = None,
) -> bool:
    """Preenche referências ainda desconhecidas. Nunca sobrescreve uma existente."""
    values: dict[str, Any] = {}
    if payment_ref and not pending.provider_payment_ref:
        values["provider_payment_ref"] = str(payment_ref)
    if preference_ref and not pending.provider_preference_ref:
        values["provider_preference_ref"] = str(preference_ref)
    if not values:
        return False

    filters = [PendingPayment.id == pending.id]
    if "provider_payment_ref" in values:
        filters.append(PendingPayment.provider_payment_ref.is_(None))
    if "provider_preference_ref" in values:
        filters.append(PendingPayment.provider_preference_ref.is_(None))
    updated = db.query(PendingPayment).filter(*filters).update(values, synchronize_session=False)
    db.commit()
    db.refresh(pending)
    return bool(updated)


def claim(db: Session, pending_id: str, *, now: datetime | None = None) -> bool:
    """pending -> processing. Só um chamador concorrente vê rowcount == 1."""
    updated = (
        db.query(PendingPayment)
        .filter(PendingPayment.id == pending_id, PendingPayment.status == PENDING)
        .update(
            {"status": PROCESSING, "claimed_at": now or utcnow()},
            synchronize_session=False,
        )
    )
    db.commit()
    won = updated == 1
    logger.info("claim attempt won=%s", won, extra={"pending_id": pending_id, "step": "claim"})
    return won


def mark_completed(db: Session, pending_id: str, order_id: str, *, now: datetime | None = None) -> bool:
    # Não faz commit: participa da transação que cria o pedido.
    updated = (
        db.query(PendingPayment)
        .filter(PendingPayment.id == pending_id, PendingPayment.status == PROCESSING)
        .update(
            {
                "status": COMPLETED,
                "order_id": order_id,
                "completed_at": now or utcnow(),
                "last_error": None,
            },
            synchronize_session=False,
        )
    )
    return updated == 1


def cancel(db: Session, pending_id: str) -> bool:
    updated = (
        db.query(PendingPayment)
        .filter(PendingPayment.id == pending_id, PendingPayment.status == PENDING)
        .update({"status": CANCELLED}, synchronize_session=False)
    )
    db.commit()
    return updated == 1


def release_claim(db: Session, pending_id: str, error: str) -> bool:
    """processing -> pending após falha de materialização.

    Returns False when the record already used every attempt; it then stays in
    ``processing`` for manual intervention.
    """
    pending = db.query(PendingPayment).filter(PendingPayment.id == pending_id).first()
    if not pending or pending.status != PROCESSING:
        return False
    attempts = int(pending.claim_attempts or 0) + 1
    values: dict[str, Any] = {"claim_attempts": attempts, "last_error": error[:2000]}
    exhausted = attempts >= MAX_CLAIM_ATTEMPTS
    if not exhausted:
        values.update({"status": PENDING, "claimed_at": None})
    db.query(PendingPayment).filter(
        PendingPayment.id == pending_id,
        PendingPayment.status == PROCESSING,
    ).update(values, synchronize_session=False)
    db.commit()
    return not exhausted


def release_stale_claim(db: Session, pending: PendingPayment, *, now: datetime | None = None) -> bool:
    if pending.status != PROCESSING:
        return False
    if int(pending.claim_attempts or 0) >= MAX_CLAIM_ATTEMPTS:
        return False
    claimed_at = as_utc(pending.claimed_at)
    cutoff = (now or utcnow()) - timedelta(seconds=PROCESSING_STALE_SECONDS)
    if claimed_at is not None and claimed_at > cutoff:
        return False

    filters = [PendingPayment.id == pending.id, PendingPayment.status == PROCESSING]
    if pending.claimed_at is None:
        filters.append(PendingPayment.claimed_at.is_(None))
    else:
        filters.append(PendingPayment.claimed_at == pending.claimed_at)
    updated = (
        db.query(PendingPayment)
        .filter(*filters)
        .update(
            {
                "status": PENDING,
                "claimed_at": None,
                "claim_attempts": int(pending.claim_attempts or 0) + 1,
                "last_error": "claim abandonado",
            },
            synchronize_session=False,
        )
    )
    db.commit()
    if updated:
        logger.warning("stale processing claim released", extra={"pending_id": pending.id, "step": "claim"})
    return updated == 1
