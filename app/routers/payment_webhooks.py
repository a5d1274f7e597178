import json
import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from starlette.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.core import config
from app.core.database import get_db
from app.errors import PaymentError, PendingPaymentNotFound, WebhookAuthenticationError
from app.payments.base import ReconcileSignal
from app.payments.mercadopago import MERCADOPAGO
from app.payments.picpay import PICPAY
from app.services.reconciliation import ReconciliationEngine, get_reconciliation_engine
from app.services.subscriptions import handle_subscription_payment
from app.services.webhook_signature import authenticate_webhook

router = APIRouter(prefix="/api/webhooks", tags=["payment-webhooks"])
logger = logging.getLogger(__name__)

SUBSCRIPTION_ACTIONS = {"payment.created", "payment.updated"}


async def _read_json(request: Request, *, required: bool) -> dict:
    raw = await request.body()
    if not raw.strip():
        if required:
            raise HTTPException(status_code=400, detail="Payload vazio")
        return {}
    try:
        payload = json.loads(raw)
    except ValueError:
        raise HTTPException(status_code=400, detail="Payload inválido")
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail="Payload inválido")
    return payload


def _nested_id(payload: dict) -> Any:
    data = payload.get("data")
    if isinstance(data, dict) and data.get("id") is not None:
        return data.get("id")
    return None


def _ensure_signature(request: Request, data_id: str) -> None:
    try:
        authenticate_webhook(
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            data_id,
            secret=config.MERCADO_PAGO_WEBHOOK_SECRET,
            required=config.WEBHOOK_SIGNATURE_REQUIRED,
        )
    except WebhookAuthenticationError:
        raise HTTPException(status_code=401, detail="Assinatura inválida")


def _reconcile_and_ack(db: Session, engine: ReconciliationEngine, signal: ReconcileSignal) -> dict:
    try:
        result = engine.reconcile(db, signal)
    except PendingPaymentNotFound as exc:
        logger.info("webhook without pending payment: %s", exc, extra={"provider": signal.provider})
        return {"received": True}
    except (PaymentError, SQLAlchemyError) as exc:
        db.rollback()
        # O provedor reenviaria; o polling do cliente cobre a recuperação.
        logger.error(
            "webhook reconcile failed: %s",
            exc,
            exc_info=True,
            extra={"provider": signal.provider},
        )
        return {"received": True}
    return {"received": True, **result.as_response()}


@router.post("/mercadopago/orders")
async def mercadopago_order_webhook(
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    qp = request.query_params
    body = await _read_json(request, required=False)

    payment_id = qp.get("data.id") or qp.get("id") or _nested_id(body) or body.get("id")
    topic = qp.get("topic") or qp.get("type") or body.get("topic") or body.get("type") or body.get("action")
    if not payment_id:
        logger.info("mercadopago webhook without payment id topic=%s", topic, extra={"provider": MERCADOPAGO})
        return {"received": True}

    _ensure_signature(request, str(payment_id))

    if topic and not str(topic).startswith("payment"):
        logger.info("ignoring mercadopago topic=%s", topic, extra={"provider": MERCADOPAGO})
        return {"received": True}

    signal = ReconcileSignal(provider=MERCADOPAGO, payment_id=str(payment_id), source="webhook")
    return await run_in_threadpool(_reconcile_and_ack, db, engine, signal)


@router.post("/picpay")
async def picpay_webhook(
    request: Request,
    db: Session = Depends(get_db),
    engine: ReconciliationEngine = Depends(get_reconciliation_engine),
):
    body = await _read_json(request, required=True)
    if body.get("type") != "PAYMENT":
        logger.info("ignoring picpay event type=%s", body.get("type"), extra={"provider": PICPAY})
        return {"received": True}

    data = body.get("data") if isinstance(body.get("data"), dict) else {}
    pending_id = data.get("merchantChargeId")
    if not pending_id:
        logger.info("picpay webhook without merchantChargeId", extra={"provider": PICPAY})
        return {"received": True}

    # O status do push não é confiável: só dispara a consulta ao PicPay.
    signal = ReconcileSignal(
        provider=PICPAY,
        pending_id=str(pending_id),
        payment_id=str(body["id"]) if body.get("id") else None,
        source="webhook",
    )
    return await run_in_threadpool(_reconcile_and_ack, db, engine, signal)


@router.post("/mercadopago/subscriptions")
async def mercadopago_subscription_webhook(request: Request, db: Session = Depends(get_db)):
    body = await _read_json(request, required=True)
    data_id = _nested_id(body)
    _ensure_signature(request, str(data_id or ""))

    is_payment = body.get("type") == "payment" or body.get("action") in SUBSCRIPTION_ACTIONS
    if not is_payment:
        logger.info("non-payment subscription notification acknowledged", extra={"provider": MERCADOPAGO})
        return {"received": True}
    if not data_id:
        logger.info("subscription webhook without payment id", extra={"provider": MERCADOPAGO})
        return {"received": True}

    try:
        return await run_in_threadpool(handle_subscription_payment, db, str(data_id))
    except (PaymentError, SQLAlchemyError) as exc:
        db.rollback()
        logger.error(
            "subscription webhook failed: %s",
            exc,
            exc_info=True,
            extra={"provider": MERCADOPAGO},
        )
        return {"received": True, "error": "Falha ao processar pagamento"}
