from __future__ import annotations

from contextvars import ContextVar


_REQUEST_ID_CTX: ContextVar[str | None] = ContextVar("request_id", default=None)
_COMPANY_ID_CTX: ContextVar[str | None] = ContextVar("company_id", default=None)
_PENDING_ID_CTX: ContextVar[str | None] = ContextVar("pending_id", default=None)


def set_request_context(
    *, request_id: str | None = None, company_id: str | int | None = None, pending_id: str | None = None
) -> None:
    if request_id is not None:
        _REQUEST_ID_CTX.set(request_id)
    if company_id is not None:
        _COMPANY_ID_CTX.set(str(company_id))
    if pending_id is not None:
        _PENDING_ID_CTX.set(str(pending_id))


def get_request_id() -> str | None:
    return _REQUEST_ID_CTX.get()


def get_company_id() -> str | None:
    return _COMPANY_ID_CTX.get()


def get_pending_id() -> str | None:
    return _PENDING_ID_CTX.get()


def clear_request_context() -> None:
    _REQUEST_ID_CTX.set(None)
    _COMPANY_ID_CTX.set(None)
    _PENDING_ID_CTX.set(None)
