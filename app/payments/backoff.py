from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from threading import Lock


@dataclass
class BackoffDecision:
    delay_seconds: float
    consecutive_failures: int


class ProviderBackoffService(ABC):
    @abstractmethod
    def before_request(self, *, company_id: int | None, integration: str) -> BackoffDecision:
        """Retorna delay aplicável antes da chamada ao provedor."""

    @abstractmethod
    def register_success(self, *, company_id: int | None, integration: str) -> None:
        """Reseta estado de falhas consecutivas."""

    @abstractmethod
    def register_failure(self, *, company_id: int | None, integration: str) -> int:
        """Incrementa falhas consecutivas e retorna total atual."""


class InMemoryProviderBackoffService(ProviderBackoffService):
    def __init__(self, *, threshold: int = 1, max_backoff_seconds: float = 4.0, base_seconds: float = 0.5) -> None:
        self.threshold = threshold
        self.max_backoff_seconds = max_backoff_seconds
        self.base_seconds = base_seconds
        self._failures: dict[tuple[int | None, str], int] = {}
        self._lock = Lock()

    def before_request(self, *, company_id: int | None, integration: str) -> BackoffDecision:
        key = (company_id, integration)
        with self._lock:
            failures = self._failures.get(key, 0)
            if failures < self.threshold:
                return BackoffDecision(delay_seconds=0.0, consecutive_failures=failures)

            power = failures - self.threshold
            delay = min(self.base_seconds * (2 ** power), self.max_backoff_seconds)
            return BackoffDecision(delay_seconds=float(delay), consecutive_failures=failures)

    def register_success(self, *, company_id: int | None, integration: str) -> None:
        key = (company_id, integration)
        with self._lock:
            self._failures.pop(key, None)

    def register_failure(self, *, company_id: int | None, integration: str) -> int:
        key = (company_id, integration)
        with self._lock:
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            return failures
