from __future__ import annotations

from typing import Iterable, Optional, Tuple


class AuditQueryError(Exception):
    """Base class for every failure raised by the query core."""


class PatternNotRecognized(AuditQueryError):
    """No rule matched the question with enough confidence."""

    def __init__(self, text: str, confidence: float = 0.0):
        super().__init__(f"Could not interpret {text!r} (confidence={confidence:.2f})")
        self.text = text
        self.confidence = confidence


class UnknownCategory(AuditQueryError):
    """A category token is not present in the alias table."""

    def __init__(self, token: str, known: Iterable[str] = ()):
        known = tuple(known)
        hint = f" Known categories: {', '.join(known)}." if known else ""
        super().__init__(f"Unknown category {token!r}.{hint}")
        self.token = token
        self.known = known


class MalformedYear(AuditQueryError):
    """A year token is not exactly four digits."""

    def __init__(self, text: str):
        super().__init__(f"Year must be exactly four digits, got {text!r}")
        self.text = text


class PlanningError(AuditQueryError):
    """An intent references a field the planner has no strategy for."""


class StoreError(AuditQueryError):
    """Raised by record store adapters when a single call fails."""


class PartialQueryFailure(AuditQueryError):
    """One or more atomic queries failed after retries."""

    def __init__(self, failed_spec_ids: Iterable[str]):
        self.failed_spec_ids: Tuple[str, ...] = tuple(failed_spec_ids)
        super().__init__(
            f"{len(self.failed_spec_ids)} atomic quer{'y' if len(self.failed_spec_ids) == 1 else 'ies'} "
            f"failed: {', '.join(self.failed_spec_ids)}"
        )


class StoreUnavailable(AuditQueryError):
    """Every atomic query failed; nothing can be presented for this turn."""

    def __init__(self, message: str, last_error: Optional[BaseException] = None):
        super().__init__(message)
        self.last_error = last_error


class RetrievalError(AuditQueryError):
    """Semantic fallback failed: embedder, vector index or id hydration."""


class RetrievalTimeout(RetrievalError):
    """Semantic fallback exceeded its time budget."""


class QueryCancelled(AuditQueryError):
    """The turn was superseded before execution finished."""
