"""Normalização de status de pagamento.

Providers answer with very different payload shapes: a flat ``{"status": ...}``,
a status nested under ``data``/``payment``/``charge``, or a list of
transactions where only one of them says the money arrived. This module maps
any of those to the canonical set ``approved``/``rejected``/``cancelled``/
``pending``.

Normalization is a chain of strategies tried in order:

1. ``StructuredStatusStrategy`` walks the payload as a generic tree
   (dict/list/scalar), depth-bounded, looking at known status fields first,
   then known object containers, then known list containers.
2. ``HeuristicSubstringStrategy`` scans the serialized payload for a small set
   of positive literals. It only runs when no structured status exists at all
   and can be switched off through ``STATUS_HEURISTIC_ENABLED``.

Providers only supply a ``StatusVocabulary``; nothing here is provider specific.
"""
from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

APPROVED = "approved"
REJECTED = "rejected"
CANCELLED = "cancelled"
PENDING = "pending"

STATUS_FIELDS = ("status", "payment_status", "transaction_status", "state", "situation")
CONTAINER_FIELDS = ("data", "payment", "transaction", "charge", "result", "response")
LIST_FIELDS = ("transactions", "items", "charges", "payments", "data", "results")
MAX_DEPTH = 5

POSITIVE_LITERALS = (
    '"paid"',
    '"approved"',
    '"completed"',
    '"settled"',
    '"is_paid":true',
    '"paid":true',
)


@dataclass(frozen=True)
class StatusVocabulary:
    approved: frozenset[str]
    cancelled: frozenset[str]
    rejected: frozenset[str] = field(default_factory=frozenset)

    @classmethod
    def build(
        cls,
        *,
        approved: Iterable[str],
        cancelled: Iterable[str],
        rejected: Iterable[str] = (),
    ) -> "StatusVocabulary":
        return cls(
            approved=frozenset(s.lower() for s in approved),
            cancelled=frozenset(s.lower() for s in cancelled),
            rejected=frozenset(s.lower() for s in rejected),
        )

    def classify(self, raw: Any) -> str:
        value = str(raw or "").strip().lower()
        if value in self.approved:
            return APPROVED
        if value in self.rejected:
            return REJECTED
        if value in self.cancelled:
            return CANCELLED
        return PENDING


@dataclass(frozen=True)
class NormalizedStatus:
    status: str
    raw: str | None = None
    path: str | None = None
    strategy: str | None = None

    @property
    def approved(self) -> bool:
        return self.status == APPROVED

    @property
    def is_final_failure(self) -> bool:
        return self.status in {REJECTED, CANCELLED}


UNKNOWN = NormalizedStatus(status=PENDING)


class StatusStrategy(Protocol):
    name: str

    def resolve(self, payload: Any, vocabulary: StatusVocabulary) -> NormalizedStatus | None:
        ...


def _scalar_status(value: Any) -> str | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (str, int, float)):
        text = str(value).strip()
        return text or None
    return None


class StructuredStatusStrategy:
    name = "structured"

    def __init__(self, *, max_depth: int = MAX_DEPTH) -> None:
        self.max_depth = max_depth

    def resolve(self, payload: Any, vocabulary: StatusVocabulary) -> NormalizedStatus | None:
        return self._visit(payload, "$", 0, vocabulary)

    def _visit(self, node: Any, path: str, depth: int, vocabulary: StatusVocabulary) -> NormalizedStatus | None:
        if depth > self.max_depth:
            return None
        if isinstance(node, dict):
            return self._visit_object(node, path, depth, vocabulary)
        if isinstance(node, list):
            return self._visit_list(node, path, depth, vocabulary)
        return None

    def _visit_object(
        self, node: dict, path: str, depth: int, vocabulary: StatusVocabulary
    ) -> NormalizedStatus | None:
        for name in STATUS_FIELDS:
            raw = _scalar_status(node.get(name))
            if raw is not None:
                return NormalizedStatus(
                    status=vocabulary.classify(raw),
                    raw=raw,
                    path=f"{path}.{name}",
                    strategy=self.name,
                )

        for name in CONTAINER_FIELDS:
            child = node.get(name)
            if isinstance(child, dict):
                found = self._visit(child, f"{path}.{name}", depth + 1, vocabulary)
                if found is not None:
                    return found

        for name in LIST_FIELDS:
            child = node.get(name)
            if isinstance(child, list):
                found = self._visit(child, f"{path}.{name}", depth + 1, vocabulary)
                if found is not None:
                    return found
        return None

    def _visit_list(
        self, node: list, path: str, depth: int, vocabulary: StatusVocabulary
    ) -> NormalizedStatus | None:
        first: NormalizedStatus | None = None
        for index, element in enumerate(node):
            found = self._visit(element, f"{path}[{index}]", depth + 1, vocabulary)
            if found is None:
                continue
            # Uma transação aprovada em qualquer posição vence as anteriores.
            if found.approved:
                return found
            if first is None:
                first = found
        return first


class HeuristicSubstringStrategy:
    name = "heuristic"

    def __init__(self, literals: Iterable[str] = POSITIVE_LITERALS) -> None:
        self.literals = tuple(literal.lower() for literal in literals)

    def resolve(self, payload: Any, vocabulary: StatusVocabulary) -> NormalizedStatus | None:
        try:
            serialized = json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str).lower()
        except (TypeError, ValueError):
            return None
        for literal in self.literals:
            if literal in serialized:
                return NormalizedStatus(status=APPROVED, raw=literal, path="$heuristic", strategy=self.name)
        return None


class StatusNormalizer:
    def __init__(self, strategies: Iterable[StatusStrategy] | None = None) -> None:
        self.strategies = list(strategies) if strategies is not None else default_strategies()

    def normalize(self, payload: Any, vocabulary: StatusVocabulary) -> NormalizedStatus:
        for strategy in self.strategies:
            found = strategy.resolve(payload, vocabulary)
            if found is not None:
                return found
        return UNKNOWN


def default_strategies(*, heuristic_enabled: bool | None = None) -> list[StatusStrategy]:
    if heuristic_enabled is None:
        from app.core.config import STATUS_HEURISTIC_ENABLED

        heuristic_enabled = STATUS_HEURISTIC_ENABLED
    strategies: list[StatusStrategy] = [StructuredStatusStrategy()]
    if heuristic_enabled:
        strategies.append(HeuristicSubstringStrategy())
    return strategies


def normalize_status(payload: Any, vocabulary: StatusVocabulary) -> NormalizedStatus:
    return StatusNormalizer().normalize(payload, vocabulary)
