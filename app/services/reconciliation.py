"""Reconciliação de pagamentos pendentes.

Every inbound signal (provider webhook or client poll) goes through
``ReconciliationEngine.reconcile``:

1. locate the ``PendingPayment`` (pending id, stored provider reference, or a
   bounded scan of recent pending records matched against the provider's echo);
2. short-circuit terminal records without writing;
3. query the provider and normalize its answer;
4. cancel on ``rejected``/``cancelled``; on ``approved`` claim the record with
   a conditional update and materialize the order in one transaction.

The conditional update on ``pending_payments.status`` is the only
synchronization primitive. Losing the claim never creates work: the loser
re-reads the record and reports either the winner's order or ``pending``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy.orm import Session

from app.core.metrics import InMemoryRequestMetrics, request_metrics
from app.core.request_context import set_request_context
from app.errors import (
    AlreadyFinalized,
    MaterializationError,
    PendingPaymentNotFound,
    ProviderNotConfiguredError,
    ProviderRequestError,
    TransientProviderError,
)
from app.models.company_payment_settings import CompanyPaymentSettings
from app.models.pending_payment import CANCELLED, COMPLETED, PENDING, PROCESSING, PendingPayment
from app.payments.base import PaymentStatusProvider, ProviderStatus, ReconcileSignal
from app.services import pending_payments
from app.services.integration_events import record_integration_event
from app.services.order_events import emit_order_created
from app.services.orders import materialize_order

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    approved: bool
    status: str
    order_id: str | None = None
    pending_id: str | None = None

    def as_response(self) -> dict[str, Any]:
        body: dict[str, Any] = {"approved": self.approved, "status": self.status}
        if self.order_id:
            body["orderId"] = self.order_id
        return body


class ReconciliationEngine:
    def __init__(
        self,
        providers: Iterable[PaymentStatusProvider],
        *,
        metrics: InMemoryRequestMetrics | None = None,
    ) -> None:
        self.providers = {provider.name: provider for provider in providers}
        self.metrics = metrics or request_metrics

    def provider_for(self, name: str | None) -> PaymentStatusProvider:
        provider = self.providers.get(name or "")
        if provider is None:
            raise ProviderNotConfiguredError(f"Provedor desconhecido: {name}")
        return provider

    def reconcile(self, db: Session, signal: ReconcileSignal) -> ReconcileResult:
        try:
            pending, prefetched = self._locate(db, signal)
        except PendingPaymentNotFound:
            self.metrics.record_outcome(signal.provider or "unknown", "not_found")
            raise

        set_request_context(company_id=pending.company_id, pending_id=pending.id)
        provider = self.provider_for(pending.provider)
        result, outcome = self._reconcile_pending(db, provider, pending, signal, prefetched)
        self.metrics.record_outcome(provider.name, outcome)
        logger.info(
            "reconcile finished outcome=%s approved=%s",
            outcome,
            result.approved,
            extra={"provider": provider.name, "step": "result", "normalized_status": result.status},
        )
        return result

    # -- locate -----------------------------------------------------------

    def _locate(self, db: Session, signal: ReconcileSignal) -> tuple[PendingPayment, dict[str, Any] | None]:
        if signal.pending_id:
            pending = pending_payments.get_pending_payment(db, signal.pending_id, company_id=signal.company_id)
            return pending, None

        if not signal.payment_id:
            raise PendingPaymentNotFound("Nenhum identificador de pagamento recebido")

        provider = self.provider_for(signal.provider)
        pending = pending_payments.find_by_provider_ref(db, provider.name, signal.payment_id)
        if pending:
            return pending, None

        if not provider.supports_reference_scan:
            raise PendingPaymentNotFound(f"Pagamento {signal.payment_id} sem pedido pendente")
        return self._scan_recent(db, provider, signal.payment_id)

    def _scan_recent(
        self, db: Session, provider: PaymentStatusProvider, payment_id: str
    ) -> tuple[PendingPayment, dict[str, Any]]:
        # O webhook pode chegar antes da referência ser gravada.
        candidates = pending_payments.list_recent_pending(db, provider.name)
        payloads: dict[int, dict[str, Any] | None] = {}
        for candidate in candidates:
            if candidate.company_id not in payloads:
                payloads[candidate.company_id] = self._fetch_for_company(db, provider, candidate.company_id, payment_id)
            payment = payloads[candidate.company_id]
            if payment is not None and provider.payment_matches(candidate, payment):
                logger.info(
                    "pending payment matched by provider echo",
                    extra={"provider": provider.name, "pending_id": candidate.id, "step": "locate"},
                )
                return candidate, payment

        logger.info(
            "no pending payment matched scanned=%s",
            len(candidates),
            extra={"provider": provider.name, "step": "locate"},
        )
        raise PendingPaymentNotFound(f"Pagamento {payment_id} sem pedido pendente")

    def _fetch_for_company(
        self, db: Session, provider: PaymentStatusProvider, company_id: int, payment_id: str
    ) -> dict[str, Any] | None:
        settings = self._settings(db, company_id)
        try:
            return provider.fetch_payment(settings, payment_id)
        except (ProviderNotConfiguredError, ProviderRequestError, TransientProviderError) as exc:
            # Pagamento de outra conta responde 404 para este token.
            logger.info(
                "payment not visible for company: %s",
                exc,
                extra={"provider": provider.name, "company_id": company_id, "step": "locate"},
            )
            return None

    def _settings(self, db: Session, company_id: int) -> CompanyPaymentSettings | None:
        return db.query(CompanyPaymentSettings).filter(CompanyPaymentSettings.company_id == company_id).first()

    # -- state machine ----------------------------------------------------

    def _reconcile_pending(
        self,
        db: Session,
        provider: PaymentStatusProvider,
        pending: PendingPayment,
        signal: ReconcileSignal,
        prefetched: dict[str, Any] | None,
    ) -> tuple[ReconcileResult, str]:
        try:
            self._ensure_open(pending)
        except AlreadyFinalized as done:
            return done.result, "duplicate"
        if pending.status == PROCESSING:
            if not pending_payments.release_stale_claim(db, pending):
                return self._pending(pending), "claim_lost"
            db.refresh(pending)

        settings = self._settings(db, pending.company_id)
        try:
            status = provider.fetch_status(settings, pending, signal, prefetched)
        except ProviderNotConfiguredError as exc:
            logger.warning("provider not configured: %s", exc, extra={"provider": provider.name, "step": "query"})
            return self._pending(pending), "provider_error"
        except (TransientProviderError, ProviderRequestError) as exc:
            logger.warning("provider query failed: %s", exc, extra={"provider": provider.name, "step": "query"})
            return self._pending(pending), "provider_error"

        pending_payments.attach_provider_refs(
            db,
            pending,
            payment_ref=status.payment_ref,
            preference_ref=status.preference_ref,
        )

        normalized = status.normalized
        if normalized.is_final_failure:
            if pending_payments.cancel(db, pending.id):
                logger.info(
                    "pending payment cancelled raw=%s",
                    normalized.raw,
                    extra={"provider": provider.name, "step": "cancel", "normalized_status": normalized.status},
                )
                return ReconcileResult(False, CANCELLED, pending_id=pending.id), "cancelled"
            db.refresh(pending)
            return self._terminal(pending), "claim_lost"

        if not normalized.approved:
            return self._pending(pending), "pending"

        if not pending_payments.claim(db, pending.id):
            db.refresh(pending)
            return self._terminal(pending), "claim_lost"

        return self._materialize(db, provider, pending, status), "approved"

    def _materialize(
        self,
        db: Session,
        provider: PaymentStatusProvider,
        pending: PendingPayment,
        status: ProviderStatus,
    ) -> ReconcileResult:
        pending_id = pending.id
        company_id = pending.company_id
        try:
            order = materialize_order(db, pending, payment_ref=status.payment_ref)
            if not pending_payments.mark_completed(db, pending_id, order.id):
                raise MaterializationError("Claim perdido antes da conclusão do pedido")
            record_integration_event(
                db,
                integration=provider.name,
                event_type="order.materialized",
                company_id=company_id,
                pending_payment_id=pending_id,
                payload={"order_id": order.id, "payment_ref": status.payment_ref},
            )
            db.commit()
        except Exception as exc:
            db.rollback()
            self._handle_materialization_failure(db, provider, pending_id, company_id, exc)
            raise MaterializationError("Erro ao criar pedido") from exc

        db.refresh(order)
        emit_order_created(order, pending_id=pending_id)
        return ReconcileResult(True, COMPLETED, order_id=order.id, pending_id=pending_id)

    def _handle_materialization_failure(
        self,
        db: Session,
        provider: PaymentStatusProvider,
        pending_id: str,
        company_id: int,
        exc: Exception,
    ) -> None:
        error = f"{type(exc).__name__}: {exc}"
        self.metrics.record_outcome(provider.name, "materialization_failed")
        if pending_payments.release_claim(db, pending_id, error):
            logger.error(
                "order materialization failed; claim released",
                exc_info=exc,
                extra={"provider": provider.name, "step": "materialize"},
            )
            return

        logger.critical(
            "order materialization failed repeatedly; manual intervention required",
            exc_info=exc,
            extra={"provider": provider.name, "step": "materialize"},
        )
        record_integration_event(
            db,
            integration=provider.name,
            event_type="order.materialization_stuck",
            status="error",
            company_id=company_id,
            pending_payment_id=pending_id,
            error=error,
        )
        db.commit()

    # -- results ----------------------------------------------------------

    def _ensure_open(self, pending: PendingPayment) -> None:
        if pending.status in (COMPLETED, CANCELLED):
            raise AlreadyFinalized(self._terminal(pending))

    @staticmethod
    def _terminal(pending: PendingPayment) -> ReconcileResult:
        if pending.status == COMPLETED:
            return ReconcileResult(True, COMPLETED, order_id=pending.order_id, pending_id=pending.id)
        if pending.status == CANCELLED:
            return ReconcileResult(False, CANCELLED, pending_id=pending.id)
        return ReconcileResult(False, PENDING, pending_id=pending.id)

    @staticmethod
    def _pending(pending: PendingPayment) -> ReconcileResult:
        return ReconcileResult(False, PENDING, pending_id=pending.id)


def build_default_engine() -> ReconciliationEngine:
    from app.payments.mercadopago import MercadoPagoProvider
    from app.payments.picpay import PicPayProvider

    return ReconciliationEngine([MercadoPagoProvider(), PicPayProvider()])


_engine: ReconciliationEngine | None = None


def get_reconciliation_engine() -> ReconciliationEngine:
    global _engine
    if _engine is None:
        _engine = build_default_engine()
    return _engine
