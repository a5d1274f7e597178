"""Ciclo de vida da assinatura da loja (free / active / grace_period).

Recurring billing events are reconciled here instead of through the pending
payment state machine: a tenant receives many billing events over time and
each one simply moves the company to the computed next state.
"""
from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.orm import Session

from app.core.config import MERCADO_PAGO_ACCESS_TOKEN, SUBSCRIPTION_GRACE_DAYS, SUBSCRIPTION_PERIOD_DAYS
from app.errors import SubscriptionPlanNotFound
from app.models.company import Company
from app.models.notification import Notification
from app.models.subscription_plan import SubscriptionPlan
from app.payments.mercadopago import MERCADOPAGO_VOCABULARY, MercadoPagoClient, parse_external_reference
from app.services import alerts
from app.services.pending_payments import as_utc
from app.services.status_normalizer import APPROVED, CANCELLED, REJECTED, normalize_status

logger = logging.getLogger(__name__)

FREE = "free"
ACTIVE = "active"
GRACE_PERIOD = "grace_period"

SUBSCRIPTION_REFERENCE_TYPES = {"subscription", "pix_subscription", "preapproval"}
PENDING_RAW_STATUSES = {"pending", "in_process"}

EXPIRING_SOON_DAYS = 3
GRACE_ENDING_DAYS = 2


@dataclass(frozen=True)
class SubscriptionState:
    status: str = FREE
    plan_key: str | None = None
    end_date: datetime | None = None
    grace_end_date: datetime | None = None

    @classmethod
    def from_company(cls, company: Company) -> "SubscriptionState":
        return cls(
            status=company.subscription_status or FREE,
            plan_key=company.subscription_plan,
            end_date=as_utc(company.subscription_end_date),
            grace_end_date=as_utc(company.subscription_grace_end_date),
        )

    def apply_to(self, company: Company) -> None:
        company.subscription_status = self.status
        company.subscription_plan = self.plan_key
        company.subscription_end_date = self.end_date
        company.subscription_grace_end_date = self.grace_end_date


@dataclass(frozen=True)
class SubscriptionTransition:
    state: SubscriptionState
    action: str
    alert: str | None = None
    notification: str | None = None

    @property
    def changed(self) -> bool:
        return self.action not in {"ignored", "pending"}


def next_subscription_state(
    current: SubscriptionState,
    billing_status: str,
    *,
    plan_key: str | None,
    now: datetime,
    remind_pending: bool = False,
) -> SubscriptionTransition:
    if billing_status == APPROVED:
        state = SubscriptionState(
            status=ACTIVE,
            plan_key=plan_key or current.plan_key,
            end_date=now + timedelta(days=SUBSCRIPTION_PERIOD_DAYS),
            grace_end_date=None,
        )
        return SubscriptionTransition(state, "subscription_activated", notification="subscription_activated")

    if billing_status == REJECTED:
        if current.status != ACTIVE:
            # Já em carência ou free: a carência não é renovada.
            return SubscriptionTransition(current, "ignored")
        state = replace(current, status=GRACE_PERIOD, grace_end_date=now + timedelta(days=SUBSCRIPTION_GRACE_DAYS))
        return SubscriptionTransition(state, "grace_period_activated", alert=alerts.PAYMENT_FAILED)

    if billing_status == CANCELLED:
        return SubscriptionTransition(
            SubscriptionState(status=FREE),
            "subscription_cancelled",
            notification="subscription_cancelled",
        )

    return SubscriptionTransition(current, "pending", alert=alerts.PAYMENT_PENDING if remind_pending else None)


def _notification_for(
    kind: str,
    *,
    user_id: int,
    company_id: int,
    plan_key: str | None,
    plan_name: str | None,
    raw_status: str | None,
    is_pix: bool,
) -> Notification:
    if kind == "subscription_activated":
        if is_pix:
            message = (
                f"Seu plano {plan_name} foi ativado com sucesso via PIX. "
                "Lembre-se: o pagamento precisa ser renovado manualmente a cada mês."
            )
        else:
            message = f"Seu plano {plan_name} foi ativado com sucesso. Aproveite todos os benefícios!"
        return Notification(
            user_id=user_id,
            company_id=company_id,
            title="Assinatura ativada!",
            message=message,
            type="success",
            data_json=json.dumps(
                {
                    "type": kind,
                    "planKey": plan_key,
                    "companyId": company_id,
                    "paymentMethod": "pix" if is_pix else "recurring",
                }
            ),
        )
    return Notification(
        user_id=user_id,
        company_id=company_id,
        title="Assinatura cancelada",
        message="Sua assinatura foi cancelada devido a um estorno. Você voltou para o plano gratuito.",
        type="warning",
        data_json=json.dumps({"type": kind, "reason": raw_status, "companyId": company_id}),
    )


def _int_or_none(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def handle_subscription_payment(
    db: Session,
    payment_id: str,
    *,
    client: MercadoPagoClient | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    now = now or datetime.now(timezone.utc)
    client = client or MercadoPagoClient(MERCADO_PAGO_ACCESS_TOKEN)
    payment = client.get_payment(str(payment_id))

    reference = parse_external_reference(payment.get("external_reference"))
    if not reference:
        logger.info("subscription payment without valid reference payment_id=%s", payment_id)
        return {"received": True, "error": "Referência inválida"}
    if reference.get("type") not in SUBSCRIPTION_REFERENCE_TYPES:
        logger.info("not a subscription payment type=%s", reference.get("type"))
        return {"received": True}

    company_id = _int_or_none(reference.get("companyId"))
    company = db.query(Company).filter(Company.id == company_id).first() if company_id else None
    if not company:
        logger.warning("subscription payment for unknown company company_id=%s", reference.get("companyId"))
        return {"received": True, "error": "Empresa não encontrada"}

    plan_key = reference.get("planKey")
    plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.key == plan_key).first() if plan_key else None
    plan_name = plan.name if plan else plan_key
    amount = plan.price if plan else payment.get("transaction_amount")
    is_pix = reference.get("type") == "pix_subscription"
    user_id = _int_or_none(reference.get("userId")) or company.owner_user_id

    normalized = normalize_status(payment, MERCADOPAGO_VOCABULARY)
    raw_status = str(payment.get("status") or "").lower()
    if normalized.status == APPROVED and not plan:
        raise SubscriptionPlanNotFound(f"Plano não encontrado: {plan_key}")

    current = SubscriptionState.from_company(company)
    transition = next_subscription_state(
        current,
        normalized.status,
        plan_key=plan_key,
        now=now,
        remind_pending=is_pix and raw_status in PENDING_RAW_STATUSES,
    )
    logger.info(
        "subscription billing event status=%s action=%s previous=%s",
        raw_status,
        transition.action,
        current.status,
        extra={"company_id": company.id, "provider": "mercadopago", "normalized_status": normalized.status},
    )

    if transition.changed:
        transition.state.apply_to(company)
        if transition.notification and user_id:
            db.add(
                _notification_for(
                    transition.notification,
                    user_id=user_id,
                    company_id=company.id,
                    plan_key=plan_key,
                    plan_name=plan_name,
                    raw_status=raw_status,
                    is_pix=is_pix,
                )
            )
        db.commit()

    if transition.alert and user_id:
        alerts.emit_subscription_alert(
            company_id=company.id,
            owner_id=user_id,
            alert_type=transition.alert,
            plan_name=plan_name,
            grace_end_date=transition.state.grace_end_date if transition.alert == alerts.PAYMENT_FAILED else None,
            amount=amount,
        )

    response: dict[str, Any] = {
        "received": True,
        "processed": transition.changed,
        "action": transition.action,
        "companyId": company.id,
    }
    if transition.state.grace_end_date and transition.action == "grace_period_activated":
        response["graceEnd"] = transition.state.grace_end_date.isoformat()
    return response


def _days_until(moment: datetime, now: datetime) -> int:
    return math.ceil((moment - now).total_seconds() / 86400)


def check_subscription_expirations(db: Session, now: datetime | None = None) -> dict[str, Any]:
    """Varredura diária das assinaturas ativas e em carência."""
    now = now or datetime.now(timezone.utc)
    results: dict[str, Any] = {
        "checked": 0,
        "grace_period_activated": 0,
        "grace_period_warnings": 0,
        "expired": 0,
        "expiring_soon": 0,
        "errors": [],
    }

    companies = (
        db.query(Company)
        .filter(
            Company.subscription_status.in_([ACTIVE, GRACE_PERIOD]),
            Company.subscription_plan.isnot(None),
        )
        .order_by(Company.id)
        .all()
    )
    plan_names = {plan.key: plan.name for plan in db.query(SubscriptionPlan).all()}

    for company in companies:
        company_id = company.id
        results["checked"] += 1
        try:
            pending_alert = _sweep_company(db, company, now, plan_names, results)
            db.commit()
        except Exception as exc:
            db.rollback()
            results["errors"].append(f"Company {company_id}: {exc}")
            logger.exception("subscription sweep failed", extra={"company_id": company_id, "step": "sweep"})
            continue
        if pending_alert:
            alerts.emit_subscription_alert(**pending_alert)

    logger.info(
        "subscription sweep finished checked=%s grace=%s expired=%s errors=%s",
        results["checked"],
        results["grace_period_activated"],
        results["expired"],
        len(results["errors"]),
    )
    return results


def _sweep_company(
    db: Session,
    company: Company,
    now: datetime,
    plan_names: dict[str, str],
    results: dict[str, Any],
) -> dict[str, Any] | None:
    state = SubscriptionState.from_company(company)
    plan_name = plan_names.get(state.plan_key or "", state.plan_key)
    alert = {"company_id": company.id, "owner_id": company.owner_user_id, "plan_name": plan_name}

    if state.status == ACTIVE and state.end_date:
        days_left = _days_until(state.end_date, now)
        if days_left <= 0:
            grace_end = now + timedelta(days=SUBSCRIPTION_GRACE_DAYS)
            replace(state, status=GRACE_PERIOD, grace_end_date=grace_end).apply_to(company)
            results["grace_period_activated"] += 1
            return {**alert, "alert_type": alerts.GRACE_PERIOD, "grace_end_date": grace_end}
        if days_left <= EXPIRING_SOON_DAYS:
            results["expiring_soon"] += 1
            return {**alert, "alert_type": alerts.EXPIRING_SOON}

    if state.status == GRACE_PERIOD and state.grace_end_date:
        days_left = _days_until(state.grace_end_date, now)
        if days_left <= 0:
            SubscriptionState(status=FREE).apply_to(company)
            results["expired"] += 1
            return {**alert, "alert_type": alerts.EXPIRED}
        if days_left <= GRACE_ENDING_DAYS:
            results["grace_period_warnings"] += 1
            return {**alert, "alert_type": alerts.GRACE_PERIOD_ENDING, "grace_end_date": state.grace_end_date}
    return None
