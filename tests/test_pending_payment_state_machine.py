from datetime import timedelta

import pytest

from app.core.config import MAX_CLAIM_ATTEMPTS, PROCESSING_STALE_SECONDS
from app.errors import PendingPaymentNotFound
from app.models.pending_payment import CANCELLED, PENDING, PROCESSING, PendingPayment
from app.services import pending_payments
from app.services.pending_payments import utcnow
from tests.fixtures_data import CHECKOUT_SNAPSHOT, build_session, seed_company


def _pending(db, **kwargs):
    seed_company(db)
    return pending_payments.create_pending_payment(
        db,
        company_id=1,
        provider="mercadopago",
        order_data=CHECKOUT_SNAPSHOT,
        **kwargs,
    )


def test_create_pending_payment_keeps_snapshot():
    db = build_session()

    pending = _pending(db)

    assert pending.status == PENDING
    assert pending.order_id is None
    assert pending.claim_attempts == 0
    assert pending.order_data["items"][0]["product_name"] == "Burger Classic"


def test_get_pending_payment_is_scoped_by_company():
    db = build_session()
    pending = _pending(db)

    assert pending_payments.get_pending_payment(db, pending.id, company_id=1).id == pending.id
    with pytest.raises(PendingPaymentNotFound):
        pending_payments.get_pending_payment(db, pending.id, company_id=2)
    with pytest.raises(PendingPaymentNotFound):
        pending_payments.get_pending_payment(db, "missing")


def test_claim_succeeds_exactly_once():
    db = build_session()
    pending = _pending(db)

    first = pending_payments.claim(db, pending.id)
    second = pending_payments.claim(db, pending.id)

    db.refresh(pending)
    assert first is True
    assert second is False
    assert pending.status == PROCESSING
    assert pending.claimed_at is not None


def test_cancel_only_applies_to_pending_records():
    db = build_session()
    pending = _pending(db)
    pending_payments.claim(db, pending.id)

    assert pending_payments.cancel(db, pending.id) is False
    db.refresh(pending)
    assert pending.status == PROCESSING


def test_cancel_from_pending():
    db = build_session()
    pending = _pending(db)

    assert pending_payments.cancel(db, pending.id) is True
    assert pending_payments.claim(db, pending.id) is False
    db.refresh(pending)
    assert pending.status == CANCELLED


def test_attach_provider_refs_never_overwrites():
    db = build_session()
    pending = _pending(db, provider_preference_ref="pref-1")

    assert pending_payments.attach_provider_refs(db, pending, payment_ref="555", preference_ref="pref-2") is True
    assert pending.provider_payment_ref == "555"
    assert pending.provider_preference_ref == "pref-1"

    assert pending_payments.attach_provider_refs(db, pending, payment_ref="777") is False
    assert pending.provider_payment_ref == "555"


def test_find_by_provider_ref_matches_payment_or_preference():
    db = build_session()
    pending = _pending(db, provider_payment_ref="555", provider_preference_ref="pref-1")

    assert pending_payments.find_by_provider_ref(db, "mercadopago", "555").id == pending.id
    assert pending_payments.find_by_provider_ref(db, "mercadopago", "pref-1").id == pending.id
    assert pending_payments.find_by_provider_ref(db, "picpay", "555") is None


def test_list_recent_pending_skips_non_pending():
    db = build_session()
    kept = _pending(db)
    claimed = pending_payments.create_pending_payment(
        db, company_id=1, provider="mercadopago", order_data=CHECKOUT_SNAPSHOT
    )
    pending_payments.claim(db, claimed.id)

    ids = [row.id for row in pending_payments.list_recent_pending(db, "mercadopago")]

    assert ids == [kept.id]


def test_release_claim_returns_to_pending_until_attempts_exhausted():
    db = build_session()
    pending = _pending(db)

    for attempt in range(1, MAX_CLAIM_ATTEMPTS):
        assert pending_payments.claim(db, pending.id) is True
        assert pending_payments.release_claim(db, pending.id, "boom") is True
        db.refresh(pending)
        assert pending.status == PENDING
        assert pending.claim_attempts == attempt
        assert pending.claimed_at is None

    assert pending_payments.claim(db, pending.id) is True
    assert pending_payments.release_claim(db, pending.id, "boom final") is False
    db.refresh(pending)
    assert pending.status == PROCESSING
    assert pending.claim_attempts == MAX_CLAIM_ATTEMPTS
    assert pending.last_error == "boom final"


def test_stale_claim_is_released():
    db = build_session()
    pending = _pending(db)
    claimed_at = utcnow() - timedelta(seconds=PROCESSING_STALE_SECONDS + 60)
    pending_payments.claim(db, pending.id, now=claimed_at)
    db.refresh(pending)

    assert pending_payments.release_stale_claim(db, pending) is True
    db.refresh(pending)
    assert pending.status == PENDING
    assert pending.claim_attempts == 1
    assert pending.last_error == "claim abandonado"


def test_fresh_claim_is_not_released():
    db = build_session()
    pending = _pending(db)
    pending_payments.claim(db, pending.id)
    db.refresh(pending)

    assert pending_payments.release_stale_claim(db, pending) is False
    db.refresh(pending)
    assert pending.status == PROCESSING


def test_mark_completed_requires_processing():
    db = build_session()
    pending = _pending(db)

    assert pending_payments.mark_completed(db, pending.id, "order-1") is False
    db.rollback()
    row = db.query(PendingPayment).filter(PendingPayment.id == pending.id).one()
    assert row.status == PENDING
