from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Protocol

from app.models.company_payment_settings import CompanyPaymentSettings
from app.models.pending_payment import PendingPayment
from app.services.status_normalizer import NormalizedStatus


@dataclass
class ReconcileSignal:
    """Identificadores recebidos por um ponto de entrada (webhook ou polling)."""

    provider: str
    payment_id: str | None = None
    pending_id: str | None = None
    company_id: int | None = None
    link_id: str | None = None
    reference_id: str | None = None
    source: str = "webhook"


@dataclass
class ProviderStatus:
    normalized: NormalizedStatus
    payment_ref: str | None = None
    preference_ref: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentStatusProvider(Protocol):
    name: str
    # Provedores que ecoam uma referência nossa permitem o scan de fallback.
    supports_reference_scan: bool

    def fetch_status(
        self,
        settings: CompanyPaymentSettings,
        pending: PendingPayment,
        signal: ReconcileSignal,
        prefetched: dict[str, Any] | None = None,
    ) -> ProviderStatus:
        ...

    def fetch_payment(self, settings: CompanyPaymentSettings, payment_id: str) -> dict[str, Any]:
        ...

    def payment_matches(self, pending: PendingPayment, payment: dict[str, Any]) -> bool:
        ...


SENSITIVE_KEYS = {"access_token", "client_secret", "authorization", "token", "picpay_token", "x-picpay-token"}


def _mask_value(value: Any) -> Any:
    if value is None:
        return None
    text = str(value)
    if len(text) <= 4:
        return "****"
    return f"****{text[-4:]}"


def sanitize_payload(payload: Any) -> Any:
    def _sanitize(value: Any) -> Any:
        if isinstance(value, dict):
            return {key: _sanitize_value(key, inner) for key, inner in value.items()}
        if isinstance(value, list):
            return [_sanitize(item) for item in value]
        return value

    def _sanitize_value(key: str, value: Any) -> Any:
        if str(key).lower() in SENSITIVE_KEYS:
            return _mask_value(value)
        return _sanitize(value)

    return _sanitize(payload)


def safe_json(payload: Any) -> str:
    try:
        return json.dumps(payload, ensure_ascii=False, default=str)
    except Exception:
        return "{}"
