from __future__ import annotations

import logging
from typing import Any

from app.core.config import PICPAY_ECOMMERCE_BASE, PICPAY_OAUTH_BASE, PICPAY_PAYMENTLINK_BASE
from app.errors import ProviderNotConfiguredError, ProviderRequestError, TransientProviderError
from app.models.company_payment_settings import CompanyPaymentSettings
from app.models.pending_payment import PendingPayment
from app.payments.base import ProviderStatus, ReconcileSignal
from app.payments.http import ProviderHttpClient
from app.services.status_normalizer import (
    UNKNOWN,
    NormalizedStatus,
    StatusNormalizer,
    StatusVocabulary,
)

logger = logging.getLogger(__name__)

PICPAY = "picpay"

PICPAY_VOCABULARY = StatusVocabulary.build(
    approved={"paid", "approved", "completed", "settled", "authorized"},
    cancelled={"expired", "inactive", "cancelled", "canceled", "refunded"},
)


class PicPayClient:
    def __init__(
        self,
        *,
        client_id: str | None,
        client_secret: str | None,
        ecommerce_token: str | None = None,
        http: ProviderHttpClient | None = None,
        oauth_base: str = PICPAY_OAUTH_BASE,
        paymentlink_base: str = PICPAY_PAYMENTLINK_BASE,
        ecommerce_base: str = PICPAY_ECOMMERCE_BASE,
        company_id: int | None = None,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.ecommerce_token = ecommerce_token
        self.http = http or ProviderHttpClient(integration=PICPAY)
        self.oauth_base = oauth_base.rstrip("/")
        self.paymentlink_base = paymentlink_base.rstrip("/")
        self.ecommerce_base = ecommerce_base.rstrip("/")
        self.company_id = company_id

    def get_access_token(self) -> str:
        if not self.client_id or not self.client_secret:
            raise ProviderNotConfiguredError("Credenciais do PicPay não configuradas")
        data = self.http.request_json(
            "POST",
            f"{self.oauth_base}/oauth2/token",
            company_id=self.company_id,
            headers={"Content-Type": "application/json", "Accept": "application/json"},
            json={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
        )
        token = data.get("access_token") if isinstance(data, dict) else None
        if not token:
            raise ProviderRequestError("Erro ao obter token de acesso do PicPay", status_code=None)
        return str(token)

    def get_ecommerce_status(self, reference_id: str) -> Any:
        return self.http.request_json(
            "GET",
            f"{self.ecommerce_base}/payments/{reference_id}/status",
            company_id=self.company_id,
            headers={"Content-Type": "application/json", "x-picpay-token": self.ecommerce_token or ""},
        )

    def get_payment_link(self, link_id: str, access_token: str) -> Any:
        return self.http.request_json(
            "GET",
            f"{self.paymentlink_base}/{link_id}",
            company_id=self.company_id,
            headers={"Accept": "application/json", "Authorization": f"Bearer {access_token}"},
        )

    def get_link_transactions(self, link_id: str, access_token: str) -> Any:
        return self.http.request_json(
            "GET",
            f"{self.paymentlink_base}/{link_id}/transactions",
            company_id=self.company_id,
            headers={"Accept": "application/json", "Authorization": f"Bearer {access_token}"},
        )


class PicPayProvider:
    """Consulta o status de um link de pagamento PicPay.

    Three sources are consulted in order: the e-commerce status endpoint
    (only when the store has an ``x-picpay-token``), the payment link itself,
    and the link's transactions. The first approved read wins. A failing
    source is logged and skipped. The transactions endpoint is always
    consulted when the link is not approved, because an ``inactive`` link may
    already hold a paid transaction, so a cancelled-looking read is only
    reported once the transactions were read and show nothing approved or
    pending.
    """

    name = PICPAY
    supports_reference_scan = False

    def __init__(
        self,
        *,
        http: ProviderHttpClient | None = None,
        normalizer: StatusNormalizer | None = None,
    ) -> None:
        self.http = http or ProviderHttpClient(integration=PICPAY)
        self.normalizer = normalizer or StatusNormalizer()

    def _client(self, settings: CompanyPaymentSettings | None) -> PicPayClient:
        if settings is None or not settings.picpay_enabled:
            raise ProviderNotConfiguredError("PicPay desativado para esta loja")
        if not settings.picpay_client_id or not settings.picpay_client_secret:
            raise ProviderNotConfiguredError("PicPay não configurado para esta loja")
        return PicPayClient(
            client_id=settings.picpay_client_id,
            client_secret=settings.picpay_client_secret,
            ecommerce_token=settings.picpay_token,
            http=self.http,
            company_id=settings.company_id,
        )

    def fetch_payment(self, settings: CompanyPaymentSettings, payment_id: str) -> dict[str, Any]:
        client = self._client(settings)
        data = client.get_payment_link(payment_id, client.get_access_token())
        return data if isinstance(data, dict) else {"raw": data}

    def payment_matches(self, pending: PendingPayment, payment: dict[str, Any]) -> bool:
        reference = payment.get("referenceId") or payment.get("reference_id")
        return bool(reference) and str(reference) == str(pending.id)

    def _log_unavailable(self, step: str, exc: Exception) -> None:
        logger.warning(
            "picpay %s unavailable: %s",
            step,
            exc,
            extra={"provider": self.name, "step": step},
        )

    def _log_step(self, step: str, normalized: NormalizedStatus) -> None:
        logger.info(
            "picpay status read raw=%s path=%s",
            normalized.raw,
            normalized.path,
            extra={"provider": self.name, "step": step, "normalized_status": normalized.status},
        )

    def fetch_status(
        self,
        settings: CompanyPaymentSettings,
        pending: PendingPayment,
        signal: ReconcileSignal,
        prefetched: dict[str, Any] | None = None,
    ) -> ProviderStatus:
        client = self._client(settings)
        link_id = signal.link_id or signal.reference_id or pending.provider_payment_ref
        if not link_id:
            logger.warning("picpay link id missing", extra={"provider": self.name, "step": "query"})
            return ProviderStatus(normalized=UNKNOWN)

        cancelled_read: NormalizedStatus | None = None
        raw: dict[str, Any] = {}

        if client.ecommerce_token:
            try:
                payload = client.get_ecommerce_status(str(pending.id))
            except (ProviderRequestError, TransientProviderError) as exc:
                self._log_unavailable("ecommerce", exc)
            else:
                normalized = self.normalizer.normalize(payload, PICPAY_VOCABULARY)
                self._log_step("ecommerce", normalized)
                raw["ecommerce"] = payload
                if normalized.approved:
                    return ProviderStatus(normalized=normalized, payment_ref=str(link_id), raw=raw)
                if normalized.is_final_failure:
                    cancelled_read = normalized

        access_token = client.get_access_token()

        try:
            link_payload = client.get_payment_link(str(link_id), access_token)
        except (ProviderRequestError, TransientProviderError) as exc:
            self._log_unavailable("paymentlink", exc)
        else:
            normalized = self.normalizer.normalize(link_payload, PICPAY_VOCABULARY)
            self._log_step("paymentlink", normalized)
            raw["paymentlink"] = link_payload
            if normalized.approved:
                return ProviderStatus(normalized=normalized, payment_ref=str(link_id), raw=raw)
            if normalized.is_final_failure:
                cancelled_read = normalized

        try:
            transactions = client.get_link_transactions(str(link_id), access_token)
        except (ProviderRequestError, TransientProviderError) as exc:
            self._log_unavailable("transactions", exc)
            # Sem as transações, um link inativo não prova que nada foi pago.
            return ProviderStatus(normalized=UNKNOWN, payment_ref=str(link_id), raw=raw)

        normalized = self.normalizer.normalize(transactions, PICPAY_VOCABULARY)
        self._log_step("transactions", normalized)
        raw["transactions"] = transactions
        if normalized.approved:
            return ProviderStatus(normalized=normalized, payment_ref=str(link_id), raw=raw)
        if normalized.raw is not None and not normalized.is_final_failure:
            return ProviderStatus(normalized=normalized, payment_ref=str(link_id), raw=raw)
        return ProviderStatus(normalized=cancelled_read or UNKNOWN, payment_ref=str(link_id), raw=raw)
