from __future__ import annotations

import json
import logging
from typing import Any

from app.core.config import MERCADO_PAGO_API_BASE
from app.errors import ProviderNotConfiguredError
from app.models.company_payment_settings import CompanyPaymentSettings
from app.models.pending_payment import PendingPayment
from app.payments.base import ProviderStatus, ReconcileSignal
from app.payments.http import ProviderHttpClient
from app.services.status_normalizer import UNKNOWN, StatusNormalizer, StatusVocabulary

logger = logging.getLogger(__name__)

MERCADOPAGO = "mercadopago"

MERCADOPAGO_VOCABULARY = StatusVocabulary.build(
    approved={"approved"},
    rejected={"rejected"},
    cancelled={"cancelled", "canceled", "refunded", "charged_back"},
)


def parse_external_reference(value: Any) -> dict[str, Any]:
    """``external_reference`` é uma string JSON com o payload de correlação."""
    if isinstance(value, dict):
        return value
    if not value:
        return {}
    try:
        data = json.loads(value)
    except (TypeError, ValueError):
        return {}
    return data if isinstance(data, dict) else {}


class MercadoPagoClient:
    def __init__(
        self,
        access_token: str,
        *,
        http: ProviderHttpClient | None = None,
        base_url: str = MERCADO_PAGO_API_BASE,
    ) -> None:
        if not access_token:
            raise ProviderNotConfiguredError("Token do Mercado Pago não configurado")
        self.access_token = access_token
        self.http = http or ProviderHttpClient(integration=MERCADOPAGO)
        self.base_url = base_url.rstrip("/")

    def get_payment(self, payment_id: str, *, company_id: int | None = None) -> dict[str, Any]:
        data = self.http.request_json(
            "GET",
            f"{self.base_url}/v1/payments/{payment_id}",
            company_id=company_id,
            headers={"Authorization": f"Bearer {self.access_token}"},
        )
        return data if isinstance(data, dict) else {"raw": data}


class MercadoPagoProvider:
    name = MERCADOPAGO
    supports_reference_scan = True

    def __init__(
        self,
        *,
        http: ProviderHttpClient | None = None,
        normalizer: StatusNormalizer | None = None,
        base_url: str = MERCADO_PAGO_API_BASE,
    ) -> None:
        self.http = http or ProviderHttpClient(integration=MERCADOPAGO)
        self.normalizer = normalizer or StatusNormalizer()
        self.base_url = base_url

    def _client(self, settings: CompanyPaymentSettings | None) -> MercadoPagoClient:
        token = getattr(settings, "mercadopago_access_token", None)
        if not token:
            raise ProviderNotConfiguredError("Mercado Pago não configurado para esta loja")
        return MercadoPagoClient(token, http=self.http, base_url=self.base_url)

    def fetch_payment(self, settings: CompanyPaymentSettings, payment_id: str) -> dict[str, Any]:
        return self._client(settings).get_payment(payment_id, company_id=settings.company_id)

    def payment_matches(self, pending: PendingPayment, payment: dict[str, Any]) -> bool:
        reference = parse_external_reference(payment.get("external_reference"))
        if reference.get("pending_id") and str(reference["pending_id"]) == str(pending.id):
            return True
        preference_id = payment.get("preference_id")
        return bool(
            preference_id
            and pending.provider_preference_ref
            and str(preference_id) == str(pending.provider_preference_ref)
        )

    def fetch_status(
        self,
        settings: CompanyPaymentSettings,
        pending: PendingPayment,
        signal: ReconcileSignal,
        prefetched: dict[str, Any] | None = None,
    ) -> ProviderStatus:
        payment_id = signal.payment_id or pending.provider_payment_ref
        if not payment_id:
            logger.info("no payment id known yet", extra={"provider": self.name, "step": "query"})
            return ProviderStatus(normalized=UNKNOWN)

        payment = prefetched if prefetched is not None else self.fetch_payment(settings, str(payment_id))
        normalized = self.normalizer.normalize(payment, MERCADOPAGO_VOCABULARY)
        preference_id = payment.get("preference_id")
        logger.info(
            "mercadopago payment status raw=%s detail=%s",
            normalized.raw,
            payment.get("status_detail"),
            extra={"provider": self.name, "step": "query", "normalized_status": normalized.status},
        )
        return ProviderStatus(
            normalized=normalized,
            payment_ref=str(payment.get("id") or payment_id),
            preference_ref=str(preference_id) if preference_id else None,
            raw=payment,
        )
