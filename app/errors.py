from __future__ import annotations


class PaymentError(Exception):
    pass


class TransientProviderError(PaymentError):
    """Timeout, transport failure or 5xx that survived every retry."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderRequestError(PaymentError):
    """4xx from the provider. Retrying will not help."""

    def __init__(self, message: str, *, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderNotConfiguredError(PaymentError):
    pass


class WebhookAuthenticationError(PaymentError):
    pass


class PendingPaymentNotFound(PaymentError):
    pass


class AlreadyFinalized(PaymentError):
    def __init__(self, result) -> None:
        super().__init__(f"pending payment already {result.status}")
        self.result = result


class MaterializationError(PaymentError):
    pass


class SubscriptionPlanNotFound(PaymentError):
    pass
