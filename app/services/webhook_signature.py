from __future__ import annotations

import hashlib
import hmac
import logging

from app.errors import WebhookAuthenticationError

logger = logging.getLogger(__name__)


def parse_signature_header(header: str | None) -> dict[str, str]:
    parts: dict[str, str] = {}
    for chunk in (header or "").split(","):
        key, sep, value = chunk.partition("=")
        if not sep:
            continue
        key = key.strip()
        value = value.strip()
        if key and value:
            parts[key] = value
    return parts


def build_manifest(data_id: str, request_id: str, ts: str) -> str:
    # Ordem e separadores fazem parte do contrato do Mercado Pago.
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def compute_signature(manifest: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), manifest.encode("utf-8"), hashlib.sha256).hexdigest()


def verify_signature(
    signature_header: str | None,
    request_id_header: str | None,
    data_id: str | None,
    secret: str,
) -> bool:
    """Valida o header ``x-signature`` (``ts=...,v1=...``) de um webhook."""
    if not signature_header or not request_id_header:
        logger.warning("webhook signature headers missing", extra={"step": "signature"})
        return False

    parts = parse_signature_header(signature_header)
    ts = parts.get("ts")
    v1 = parts.get("v1")
    if not ts or not v1:
        logger.warning("webhook signature malformed", extra={"step": "signature"})
        return False

    manifest = build_manifest(str(data_id or ""), request_id_header, ts)
    expected = compute_signature(manifest, secret)
    return hmac.compare_digest(expected.encode("ascii"), v1.lower().encode("utf-8"))


def authenticate_webhook(
    signature_header: str | None,
    request_id_header: str | None,
    data_id: str | None,
    *,
    secret: str,
    required: bool,
) -> bool:
    """Returns False when verification was skipped because no secret is configured."""
    if not secret:
        if required:
            logger.critical(
                "webhook signature required but MERCADO_PAGO_WEBHOOK_SECRET is not set",
                extra={"step": "signature"},
            )
            raise WebhookAuthenticationError("Segredo do webhook não configurado")
        logger.warning("webhook secret not configured; skipping signature verification", extra={"step": "signature"})
        return False

    if not verify_signature(signature_header, request_id_header, data_id, secret):
        logger.warning("invalid webhook signature; rejecting request", extra={"step": "signature"})
        raise WebhookAuthenticationError("Assinatura inválida")
    return True
