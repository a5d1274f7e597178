from __future__ import annotations

import logging
from collections import defaultdict
from typing import Any, Callable

logger = logging.getLogger(__name__)

EventHandler = Callable[[dict[str, Any]], None]

ORDER_CREATED_EVENT = "order.created"


class EventBus:
    """Barramento síncrono em processo para efeitos colaterais pós-commit.

    A failing handler is logged and does not stop the others; the payment flow
    that emitted the event has already committed.
    """

    def __init__(self) -> None:
        self._handlers: defaultdict[str, list[EventHandler]] = defaultdict(list)

    def subscribe(self, event_name: str, handler: EventHandler) -> None:
        if handler not in self._handlers[event_name]:
            self._handlers[event_name].append(handler)

    def emit(self, event_name: str, payload: dict[str, Any]) -> int:
        handlers = list(self._handlers.get(event_name, ()))
        if not handlers:
            logger.debug("no handlers for event=%s", event_name)
            return 0

        delivered = 0
        for handler in handlers:
            try:
                handler(payload)
            except Exception:
                logger.exception(
                    "event handler %s failed for event=%s",
                    getattr(handler, "__name__", repr(handler)),
                    event_name,
                    extra={"company_id": payload.get("company_id"), "step": "event"},
                )
                continue
            delivered += 1
        return delivered


event_bus = EventBus()
