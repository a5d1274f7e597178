from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.core import config
from app.core.database import get_db
from app.errors import MaterializationError, PendingPaymentNotFound, TransientProviderError
from app.routers import payment_webhooks
from app.routers.internal_metrics import router as internal_metrics_router
from app.routers.payment_webhooks import router as payment_webhooks_router
from app.routers.payments import router as payments_router
from app.routers.subscriptions import router as subscriptions_router
from app.services import pending_payments
from app.services.reconciliation import ReconcileResult, get_reconciliation_engine
from app.services.webhook_signature import build_manifest, compute_signature
from tests.fixtures_data import CHECKOUT_SNAPSHOT, build_session, seed_company

SECRET = "webhook-secret"


class StubEngine:
    def __init__(self, result=None, error=None):
        self.result = result or ReconcileResult(True, "completed", order_id="order-1", pending_id="p-1")
        self.error = error
        self.signals = []

    def reconcile(self, db, signal):
        self.signals.append(signal)
        if self.error:
            raise self.error
        return self.result


def _build_client(monkeypatch, engine=None, *, secret=SECRET, required=True):
    monkeypatch.setattr(config, "MERCADO_PAGO_WEBHOOK_SECRET", secret)
    monkeypatch.setattr(config, "WEBHOOK_SIGNATURE_REQUIRED", required)
    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", "")
    monkeypatch.setattr(config, "IS_PROD", False)

    db = build_session()
    seed_company(db)

    app = FastAPI()
    app.include_router(payment_webhooks_router)
    app.include_router(payments_router)
    app.include_router(subscriptions_router)
    app.include_router(internal_metrics_router)
    app.dependency_overrides[get_db] = lambda: db
    engine = engine or StubEngine()
    app.dependency_overrides[get_reconciliation_engine] = lambda: engine
    return TestClient(app), db, engine


def _signed_headers(data_id, request_id="req-1", ts="1700000000"):
    v1 = compute_signature(build_manifest(data_id, request_id, ts), SECRET)
    return {"x-signature": f"ts={ts},v1={v1}", "x-request-id": request_id}


def _mp_order_webhook(client, data_id="123", headers=None, topic="payment"):
    return client.post(
        f"/api/webhooks/mercadopago/orders?data.id={data_id}&type={topic}",
        json={"type": topic, "data": {"id": data_id}},
        headers=headers if headers is not None else _signed_headers(data_id),
    )


def test_mercadopago_webhook_with_valid_signature_reconciles(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    response = _mp_order_webhook(client)

    assert response.status_code == 200
    assert response.json() == {"received": True, "approved": True, "status": "completed", "orderId": "order-1"}
    assert engine.signals[0].provider == "mercadopago"
    assert engine.signals[0].payment_id == "123"


def test_mercadopago_webhook_with_bad_signature_is_rejected(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    response = _mp_order_webhook(client, headers=_signed_headers("999"))
    missing = _mp_order_webhook(client, headers={})

    assert response.status_code == 401
    assert response.json()["detail"] == "Assinatura inválida"
    assert missing.status_code == 401
    assert engine.signals == []


def test_missing_secret_rejects_when_signatures_required(monkeypatch):
    client, _db, engine = _build_client(monkeypatch, secret="", required=True)

    response = _mp_order_webhook(client, headers={})

    assert response.status_code == 401
    assert engine.signals == []


def test_missing_secret_skips_verification_outside_production(monkeypatch):
    client, _db, engine = _build_client(monkeypatch, secret="", required=False)

    response = _mp_order_webhook(client, headers={})

    assert response.status_code == 200
    assert len(engine.signals) == 1


def test_mercadopago_webhook_without_payment_id_is_acknowledged(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    response = client.post("/api/webhooks/mercadopago/orders", json={"type": "payment"})

    assert response.status_code == 200
    assert response.json() == {"received": True}
    assert engine.signals == []


def test_mercadopago_non_payment_topic_is_acknowledged(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    response = _mp_order_webhook(client, topic="merchant_order")

    assert response.json() == {"received": True}
    assert engine.signals == []


def test_mercadopago_webhook_rejects_malformed_json(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)

    response = client.post(
        "/api/webhooks/mercadopago/orders?data.id=123",
        content=b"{not json",
        headers={"Content-Type": "application/json", **_signed_headers("123")},
    )

    assert response.status_code == 400


def test_webhook_acknowledges_unknown_payment_and_provider_failures(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch, StubEngine(error=PendingPaymentNotFound("nope")))
    assert _mp_order_webhook(client).json() == {"received": True}

    client, _db, _engine = _build_client(monkeypatch, StubEngine(error=TransientProviderError("timeout")))
    response = _mp_order_webhook(client)
    assert response.status_code == 200
    assert response.json() == {"received": True}


def test_picpay_webhook_requires_body(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)

    empty = client.post("/api/webhooks/picpay", content=b"")
    invalid = client.post("/api/webhooks/picpay", content=b"[1, 2]", headers={"Content-Type": "application/json"})

    assert empty.status_code == 400
    assert empty.json()["detail"] == "Payload vazio"
    assert invalid.status_code == 400


def test_picpay_webhook_triggers_status_query(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    ignored = client.post("/api/webhooks/picpay", json={"type": "REFUND", "data": {"merchantChargeId": "p-1"}})
    response = client.post(
        "/api/webhooks/picpay",
        json={"id": "evt-1", "type": "PAYMENT", "data": {"merchantChargeId": "p-1", "status": "PAID"}},
    )

    assert ignored.json() == {"received": True}
    assert response.status_code == 200
    assert response.json()["received"] is True
    assert len(engine.signals) == 1
    assert engine.signals[0].provider == "picpay"
    assert engine.signals[0].pending_id == "p-1"


def test_subscription_webhook_dispatches_payment_events(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)
    handled = []

    def fake_handler(db, payment_id):
        handled.append(payment_id)
        return {"received": True, "processed": True, "action": "subscription_activated", "companyId": 1}

    monkeypatch.setattr(payment_webhooks, "handle_subscription_payment", fake_handler)

    ignored = client.post(
        "/api/webhooks/mercadopago/subscriptions",
        json={"type": "plan", "data": {"id": "55"}},
        headers=_signed_headers("55"),
    )
    response = client.post(
        "/api/webhooks/mercadopago/subscriptions",
        json={"action": "payment.updated", "data": {"id": "55"}},
        headers=_signed_headers("55"),
    )

    assert ignored.json() == {"received": True}
    assert response.json()["action"] == "subscription_activated"
    assert handled == ["55"]


def test_subscription_webhook_failure_is_acknowledged(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)

    def failing_handler(db, payment_id):
        raise TransientProviderError("timeout")

    monkeypatch.setattr(payment_webhooks, "handle_subscription_payment", failing_handler)

    response = client.post(
        "/api/webhooks/mercadopago/subscriptions",
        json={"type": "payment", "data": {"id": "55"}},
        headers=_signed_headers("55"),
    )

    assert response.status_code == 200
    assert response.json() == {"received": True, "error": "Falha ao processar pagamento"}


def test_payment_check_requires_identifiers(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)

    response = client.post("/api/payments/check", json={"pendingId": "p-1"})

    assert response.status_code == 400
    assert response.json()["detail"] == "Dados obrigatórios não fornecidos"


def test_payment_check_unknown_pending_is_not_found(monkeypatch):
    client, _db, engine = _build_client(monkeypatch)

    response = client.post("/api/payments/check", json={"pendingId": "missing", "companyId": 1})

    assert response.status_code == 404
    assert response.json()["detail"] == "Pedido não encontrado"
    assert engine.signals == []


def test_payment_check_returns_reconcile_result(monkeypatch):
    client, db, engine = _build_client(monkeypatch)
    pending = pending_payments.create_pending_payment(
        db, company_id=1, provider="picpay", order_data=CHECKOUT_SNAPSHOT
    )

    response = client.post(
        "/api/payments/check",
        json={"pendingId": pending.id, "companyId": 1, "providerLinkId": "link-9"},
    )

    assert response.status_code == 200
    assert response.json() == {"approved": True, "status": "completed", "orderId": "order-1"}
    signal = engine.signals[0]
    assert signal.provider == "picpay"
    assert signal.link_id == "link-9"
    assert signal.source == "poll"


def test_payment_check_reports_pending_when_materialization_fails(monkeypatch):
    client, db, _engine = _build_client(monkeypatch, StubEngine(error=MaterializationError("boom")))
    pending = pending_payments.create_pending_payment(
        db, company_id=1, provider="mercadopago", order_data=CHECKOUT_SNAPSHOT
    )

    response = client.post("/api/payments/check", json={"pendingId": pending.id, "companyId": 1})

    assert response.status_code == 200
    assert response.json()["approved"] is False
    assert response.json()["status"] == "pending"


def test_read_pending_payment(monkeypatch):
    client, db, _engine = _build_client(monkeypatch)
    pending = pending_payments.create_pending_payment(
        db, company_id=1, provider="mercadopago", order_data=CHECKOUT_SNAPSHOT
    )

    found = client.get(f"/api/payments/pending/{pending.id}", params={"company_id": 1})
    other_company = client.get(f"/api/payments/pending/{pending.id}", params={"company_id": 2})

    assert found.status_code == 200
    assert found.json()["status"] == "pending"
    assert found.json()["order_id"] is None
    assert other_company.status_code == 404


def test_internal_routes_require_token_when_configured(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)
    monkeypatch.setattr(config, "INTERNAL_API_TOKEN", "cron-secret")

    denied = client.post("/api/internal/subscriptions/check-expirations")
    allowed = client.post(
        "/api/internal/subscriptions/check-expirations",
        headers={"X-Internal-Token": "cron-secret"},
    )
    metrics = client.get("/internal/metrics/reconciliation", headers={"X-Internal-Token": "cron-secret"})

    assert denied.status_code == 401
    assert allowed.status_code == 200
    assert allowed.json()["success"] is True
    assert allowed.json()["results"]["checked"] == 0
    assert metrics.status_code == 200
    assert set(metrics.json()) == {"outcomes", "endpoints"}


def test_internal_routes_fail_closed_in_production_without_token(monkeypatch):
    client, _db, _engine = _build_client(monkeypatch)
    monkeypatch.setattr(config, "IS_PROD", True)

    response = client.get("/internal/metrics/reconciliation")

    assert response.status_code == 503
