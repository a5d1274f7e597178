# app/deps.py
from __future__ import annotations

import hmac
import logging

from fastapi import Header, HTTPException, status

from app.core import config

logger = logging.getLogger(__name__)


def require_internal_token(x_internal_token: str | None = Header(default=None)) -> None:
    """Protege rotas internas (cron, métricas) pelo header ``X-Internal-Token``.

    Outside production an unset ``INTERNAL_API_TOKEN`` leaves the routes open.
    """
    configured = (config.INTERNAL_API_TOKEN or "").strip()
    incoming = (x_internal_token or "").strip()
    if not configured:
        if config.IS_PROD:
            raise HTTPException(
                status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
                detail="Rotas internas em produção requerem INTERNAL_API_TOKEN configurado",
            )
        return
    if not hmac.compare_digest(incoming.encode("utf-8"), configured.encode("utf-8")):
        logger.warning("internal token rejected")
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token inválido")
