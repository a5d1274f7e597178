from __future__ import annotations

import logging
import time
from typing import Any, Callable

import httpx

from app.core.config import PROVIDER_MAX_RETRIES, PROVIDER_TIMEOUT_SECONDS
from app.errors import ProviderRequestError, TransientProviderError
from app.payments.backoff import InMemoryProviderBackoffService, ProviderBackoffService

logger = logging.getLogger(__name__)
_backoff_service = InMemoryProviderBackoffService()


class ProviderHttpClient:
    """Cliente HTTP dos provedores: timeout curto, retry só em falha transitória."""

    def __init__(
        self,
        *,
        integration: str,
        timeout: float | None = None,
        max_retries: int | None = None,
        backoff: ProviderBackoffService | None = None,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.integration = integration
        self.timeout = PROVIDER_TIMEOUT_SECONDS if timeout is None else timeout
        self.max_retries = max(1, PROVIDER_MAX_RETRIES if max_retries is None else max_retries)
        self.backoff = backoff or _backoff_service
        self.transport = transport
        self._sleep = sleep

    def request_json(
        self,
        method: str,
        url: str,
        *,
        company_id: int | None = None,
        headers: dict[str, str] | None = None,
        json: Any = None,
        params: dict[str, Any] | None = None,
    ) -> Any:
        last_error: str | None = None
        last_status: int | None = None

        for attempt in range(1, self.max_retries + 1):
            decision = self.backoff.before_request(company_id=company_id, integration=self.integration)
            if decision.delay_seconds > 0:
                logger.warning(
                    "provider backoff activated",
                    extra={
                        "provider": self.integration,
                        "company_id": company_id,
                        "delay_seconds": decision.delay_seconds,
                        "consecutive_failures": decision.consecutive_failures,
                    },
                )
                self._sleep(decision.delay_seconds)

            try:
                with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                    response = client.request(method, url, headers=headers, json=json, params=params)
            except httpx.TransportError as exc:
                last_error = f"{type(exc).__name__}: {exc}"
                last_status = None
                self.backoff.register_failure(company_id=company_id, integration=self.integration)
                logger.warning(
                    "provider call failed attempt=%s/%s url=%s error=%s",
                    attempt,
                    self.max_retries,
                    url,
                    last_error,
                    extra={"provider": self.integration},
                )
                continue

            if 200 <= response.status_code < 300:
                self.backoff.register_success(company_id=company_id, integration=self.integration)
                try:
                    return response.json()
                except ValueError:
                    return {"raw": response.text}

            if 400 <= response.status_code < 500:
                logger.warning(
                    "provider rejected request status=%s url=%s",
                    response.status_code,
                    url,
                    extra={"provider": self.integration},
                )
                raise ProviderRequestError(
                    f"{self.integration} respondeu {response.status_code}",
                    status_code=response.status_code,
                )

            last_error = f"{self.integration} respondeu {response.status_code}"
            last_status = response.status_code
            self.backoff.register_failure(company_id=company_id, integration=self.integration)
            logger.warning(
                "provider server error attempt=%s/%s status=%s url=%s",
                attempt,
                self.max_retries,
                response.status_code,
                url,
                extra={"provider": self.integration},
            )

        raise TransientProviderError(last_error or "provider unavailable", status_code=last_status)
