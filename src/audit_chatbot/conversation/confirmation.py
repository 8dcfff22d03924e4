from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol, Tuple

from audit_chatbot.core.models import Operator
from audit_chatbot.core.patterns import QueryIntent
from audit_chatbot.core.query_executor import CancellationToken
from audit_chatbot.core.query_planner import AtomicQuerySpec, SortSpec

# (field, operator, value) as shown to the user
Restatement = Tuple[Tuple[str, str, str], ...]

FIELD_LABELS = {
    "department": "Department",
    "year": "Year",
    "priority_level": "Priority",
    "process_area": "Process area",
    "tags": "Tag",
}

OPERATOR_LABELS = {
    Operator.EQ: "is",
    Operator.IN: "is one of",
    Operator.CONTAINS: "includes",
}


def restate(intent: QueryIntent) -> Restatement:
    """Structured restatement of an intent for the confirmation prompt."""
    triples = []
    for clause in intent.filters:
        value = ", ".join(clause.value) if isinstance(clause.value, tuple) else str(clause.value)
        triples.append((FIELD_LABELS.get(clause.field, clause.field), OPERATOR_LABELS[clause.operator], value))
    if intent.limit:
        triples.append(("Results", "limited to", f"top {intent.limit}"))
    return tuple(triples)


def format_restatement(restatement: Restatement) -> str:
    return "; ".join(f"{f} {op} {v}" for f, op, v in restatement)


class ResponseKind(str, Enum):
    CONFIRM = "confirm"
    REJECT = "reject"
    CORRECT = "correct"


@dataclass(frozen=True)
class ConfirmationResponse:
    kind: ResponseKind
    corrected_text: str = ""

    @classmethod
    def confirm(cls) -> "ConfirmationResponse":
        return cls(ResponseKind.CONFIRM)

    @classmethod
    def reject(cls) -> "ConfirmationResponse":
        return cls(ResponseKind.REJECT)

    @classmethod
    def correct(cls, text: str) -> "ConfirmationResponse":
        return cls(ResponseKind.CORRECT, corrected_text=text)


@dataclass(frozen=True)
class PendingPlan:
    """
    A plan frozen while the user confirms it. Pure data: no store handles
    are held, so dropping it on rejection has no side effects.
    """
    request_id: str
    intent: QueryIntent
    specs: Tuple[AtomicQuerySpec, ...]
    restatement: Restatement
    sort: SortSpec
    hybrid: bool = False
    history: Tuple[str, ...] = ()


@dataclass(frozen=True)
class ConfirmationRequest:
    pending: PendingPlan
    token: CancellationToken = field(compare=False)

    @property
    def request_id(self) -> str:
        return self.pending.request_id

    @property
    def intent(self) -> QueryIntent:
        return self.pending.intent

    @property
    def plan(self) -> Tuple[AtomicQuerySpec, ...]:
        return self.pending.specs

    @property
    def restatement(self) -> Restatement:
        return self.pending.restatement


class ConfirmationGate(Protocol):
    """External party (usually a human) that confirms, rejects or corrects a plan."""

    def request(self, request: ConfirmationRequest) -> ConfirmationResponse:
        ...


class AutoConfirmGate:
    """Confirms every request; for scripted and batch use."""

    def request(self, request: ConfirmationRequest) -> ConfirmationResponse:
        return ConfirmationResponse.confirm()
