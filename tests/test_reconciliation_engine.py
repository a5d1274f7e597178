import threading
from datetime import timedelta

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import MAX_CLAIM_ATTEMPTS, PROCESSING_STALE_SECONDS
from app.core.database import Base
from app.core.metrics import InMemoryRequestMetrics
from app.errors import MaterializationError, PendingPaymentNotFound, TransientProviderError
from app.models.customer import Customer
from app.models.integration_event import IntegrationEvent
from app.models.order import Order
from app.models.order_item import OrderItem
from app.models.pending_payment import CANCELLED, COMPLETED, PENDING, PROCESSING
from app.payments.backoff import InMemoryProviderBackoffService
from app.payments.base import ProviderStatus, ReconcileSignal
from app.payments.http import ProviderHttpClient
from app.payments.mercadopago import MercadoPagoProvider
from app.services import pending_payments
from app.services import reconciliation as reconciliation_module
from app.services.orders import materialize_order
from app.services.reconciliation import ReconciliationEngine
from app.services.status_normalizer import NormalizedStatus
from tests.fixtures_data import CHECKOUT_SNAPSHOT, MP_TOKEN, build_session, mp_payment, seed_company


class FakeProvider:
    name = "mercadopago"
    supports_reference_scan = False

    def __init__(self, status="approved", on_fetch=None, error=None):
        self.status = status
        self.on_fetch = on_fetch
        self.error = error
        self.calls = 0

    def fetch_status(self, settings, pending, signal, prefetched=None):
        self.calls += 1
        if self.on_fetch:
            self.on_fetch(pending)
        if self.error:
            raise self.error
        return ProviderStatus(
            normalized=NormalizedStatus(status=self.status, raw=self.status),
            payment_ref=signal.payment_id or pending.provider_payment_ref,
        )

    def fetch_payment(self, settings, payment_id):
        raise AssertionError("scan not expected")

    def payment_matches(self, pending, payment):
        return False


def _http(handler):
    return ProviderHttpClient(
        integration="mercadopago",
        max_retries=1,
        backoff=InMemoryProviderBackoffService(),
        transport=httpx.MockTransport(handler),
        sleep=lambda _seconds: None,
    )


def _engine(provider):
    return ReconciliationEngine([provider], metrics=InMemoryRequestMetrics())


def _pending(db, **kwargs):
    return pending_payments.create_pending_payment(
        db,
        company_id=kwargs.pop("company_id", 1),
        provider="mercadopago",
        order_data=kwargs.pop("order_data", CHECKOUT_SNAPSHOT),
        **kwargs,
    )


@pytest.fixture
def emitted(monkeypatch):
    events = []
    monkeypatch.setattr(
        reconciliation_module,
        "emit_order_created",
        lambda order, pending_id=None: events.append((order.id, pending_id)),
    )
    return events


def test_webhook_before_reference_is_saved_creates_exactly_one_order(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db)
    pending_id = pending.id
    calls = []

    def handler(request):
        calls.append(request.url.path)
        assert request.headers["Authorization"] == f"Bearer {MP_TOKEN}"
        return httpx.Response(200, json=mp_payment(555, "approved", pending_id=pending_id))

    engine = _engine(MercadoPagoProvider(http=_http(handler)))
    first = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))
    second = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert first.approved is True
    assert first.status == COMPLETED
    assert first.order_id
    assert second.approved is True
    assert second.order_id == first.order_id
    assert calls == ["/v1/payments/555"]

    db.refresh(pending)
    assert pending.status == COMPLETED
    assert pending.order_id == first.order_id
    assert pending.provider_payment_ref == "555"
    assert pending.completed_at is not None

    order = db.query(Order).one()
    assert order.provider_payment_ref == "mercadopago_555"
    assert order.payment_status == "paid"
    assert order.source == "online"
    assert order.estimated_delivery_time is not None
    assert order.customer_email == "joao@example.com"
    assert db.query(OrderItem).filter(OrderItem.order_id == order.id).count() == 1
    assert db.query(Customer).count() == 1
    assert db.query(IntegrationEvent).filter(IntegrationEvent.event_type == "order.materialized").count() == 1
    assert emitted == [(order.id, pending_id)]
    assert engine.metrics.snapshot_outcomes() == {"mercadopago": {"approved": 1, "duplicate": 1}}


def test_scan_skips_payments_from_other_accounts(emitted):
    db = build_session()
    seed_company(db, 1)
    seed_company(db, 2, mercadopago_access_token="other-account-token")
    target = _pending(db, company_id=1)
    target_id = target.id
    _pending(db, company_id=2)

    def handler(request):
        if request.headers["Authorization"] == "Bearer other-account-token":
            return httpx.Response(404, json={"message": "Payment not found"})
        return httpx.Response(200, json=mp_payment(777, "approved", pending_id=target_id))

    engine = _engine(MercadoPagoProvider(http=_http(handler)))
    result = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="777"))

    assert result.approved is True
    assert result.pending_id == target_id
    assert db.query(Order).one().company_id == 1


def test_scan_matches_by_preference_id(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_preference_ref="pref-42")

    def handler(request):
        return httpx.Response(200, json=mp_payment(888, "pending", preference_id="pref-42", reference={}))

    engine = _engine(MercadoPagoProvider(http=_http(handler)))
    result = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="888"))

    assert result.approved is False
    assert result.status == PENDING
    db.refresh(pending)
    assert pending.provider_payment_ref == "888"
    assert pending.status == PENDING


def test_unknown_payment_raises_not_found():
    db = build_session()
    seed_company(db)
    _pending(db)

    def handler(request):
        return httpx.Response(200, json=mp_payment(999, "approved", reference={"pending_id": "someone-else"}))

    engine = _engine(MercadoPagoProvider(http=_http(handler)))
    with pytest.raises(PendingPaymentNotFound):
        engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="999"))

    assert db.query(Order).count() == 0
    assert engine.metrics.snapshot_outcomes() == {"mercadopago": {"not_found": 1}}


def test_rejected_payment_cancels_and_later_approval_is_ignored(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")

    rejected = _engine(FakeProvider(status="rejected"))
    result = rejected.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))
    assert result.approved is False
    assert result.status == CANCELLED

    approving = FakeProvider(status="approved")
    late = _engine(approving).reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert late.approved is False
    assert late.status == CANCELLED
    assert approving.calls == 0
    db.refresh(pending)
    assert pending.status == CANCELLED
    assert db.query(Order).count() == 0
    assert emitted == []


def test_pending_provider_status_keeps_waiting():
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")

    result = _engine(FakeProvider(status="pending")).reconcile(
        db, ReconcileSignal(provider="mercadopago", pending_id=pending.id, company_id=1, source="poll")
    )

    assert result.as_response() == {"approved": False, "status": PENDING}
    db.refresh(pending)
    assert pending.status == PENDING


def test_losing_the_claim_reports_pending_without_creating_an_order(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")

    def competitor_claims(row):
        assert pending_payments.claim(db, row.id) is True

    engine = _engine(FakeProvider(status="approved", on_fetch=competitor_claims))
    result = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert result.approved is False
    assert result.status == PENDING
    assert db.query(Order).count() == 0
    assert emitted == []
    db.refresh(pending)
    assert pending.status == PROCESSING
    assert engine.metrics.snapshot_outcomes() == {"mercadopago": {"claim_lost": 1}}


def test_losing_the_claim_to_a_finished_competitor_returns_its_order(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")
    winner = {}

    def competitor_finishes(row):
        pending_payments.claim(db, row.id)
        order = materialize_order(db, row, payment_ref="555")
        pending_payments.mark_completed(db, row.id, order.id)
        db.commit()
        winner["order_id"] = order.id

    engine = _engine(FakeProvider(status="approved", on_fetch=competitor_finishes))
    result = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert result.approved is True
    assert result.order_id == winner["order_id"]
    assert db.query(Order).count() == 1
    assert emitted == []


def test_fresh_processing_record_is_left_alone():
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")
    pending_payments.claim(db, pending.id)

    provider = FakeProvider(status="approved")
    result = _engine(provider).reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert result.status == PENDING
    assert provider.calls == 0


def test_stale_processing_record_is_recovered(emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")
    stale = pending_payments.utcnow() - timedelta(seconds=PROCESSING_STALE_SECONDS + 1)
    pending_payments.claim(db, pending.id, now=stale)

    result = _engine(FakeProvider(status="approved")).reconcile(
        db, ReconcileSignal(provider="mercadopago", payment_id="555")
    )

    assert result.approved is True
    db.refresh(pending)
    assert pending.status == COMPLETED
    assert pending.claim_attempts == 1


def test_provider_failure_reports_pending_without_state_change():
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")

    engine = _engine(FakeProvider(error=TransientProviderError("timeout")))
    result = engine.reconcile(db, ReconcileSignal(provider="mercadopago", payment_id="555"))

    assert result.status == PENDING
    db.refresh(pending)
    assert pending.status == PENDING
    assert engine.metrics.snapshot_outcomes() == {"mercadopago": {"provider_error": 1}}


def test_materialization_failure_releases_claim_then_parks_record(monkeypatch, emitted):
    db = build_session()
    seed_company(db)
    pending = _pending(db, provider_payment_ref="555")

    def broken(*_args, **_kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(reconciliation_module, "materialize_order", broken)
    engine = _engine(FakeProvider(status="approved"))
    signal = ReconcileSignal(provider="mercadopago", payment_id="555")

    for attempt in range(1, MAX_CLAIM_ATTEMPTS):
        with pytest.raises(MaterializationError):
            engine.reconcile(db, signal)
        db.refresh(pending)
        assert pending.status == PENDING
        assert pending.claim_attempts == attempt
        assert "disk full" in pending.last_error

    with pytest.raises(MaterializationError):
        engine.reconcile(db, signal)

    db.refresh(pending)
    assert pending.status == PROCESSING
    assert pending.order_id is None
    assert db.query(Order).count() == 0
    stuck = db.query(IntegrationEvent).filter(IntegrationEvent.event_type == "order.materialization_stuck").one()
    assert stuck.status == "error"
    assert stuck.pending_payment_id == pending.id
    assert emitted == []


def test_poll_for_another_company_is_not_found():
    db = build_session()
    seed_company(db)
    pending = _pending(db)

    with pytest.raises(PendingPaymentNotFound):
        _engine(FakeProvider()).reconcile(
            db, ReconcileSignal(provider="mercadopago", pending_id=pending.id, company_id=2, source="poll")
        )


def test_concurrent_reconcile_calls_create_one_order(tmp_path, emitted):
    db_engine = create_engine(
        f"sqlite+pysqlite:///{tmp_path / 'concurrent.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=db_engine)
    Session = sessionmaker(bind=db_engine, autocommit=False, autoflush=False)

    setup_db = Session()
    seed_company(setup_db)
    pending_id = _pending(setup_db).id
    setup_db.close()

    callers = 8
    engine = _engine(FakeProvider())
    start = threading.Barrier(callers)
    results = []
    errors = []

    def poll():
        db = Session()
        try:
            start.wait()
            results.append(
                engine.reconcile(
                    db,
                    ReconcileSignal(provider="mercadopago", pending_id=pending_id, company_id=1, source="poll"),
                )
            )
        except Exception as exc:
            errors.append(exc)
        finally:
            db.close()

    threads = [threading.Thread(target=poll) for _ in range(callers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(results) == callers

    check_db = Session()
    order = check_db.query(Order).one()
    assert {result.order_id for result in results if result.order_id} == {order.id}
    assert emitted == [(order.id, pending_id)]

    # Quem perdeu a corrida recebe o mesmo pedido na consulta seguinte.
    again = engine.reconcile(
        check_db, ReconcileSignal(provider="mercadopago", pending_id=pending_id, company_id=1, source="poll")
    )
    assert again.order_id == order.id
    assert check_db.query(Order).count() == 1
    check_db.close()
    db_engine.dispose()
