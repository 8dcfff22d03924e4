from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Sequence, Tuple

from audit_chatbot.core.errors import PlanningError
from audit_chatbot.core.field_normalizer import FieldNormalizer
from audit_chatbot.core.models import (
    DEPARTMENT_RAW_FIELD,
    PRIORITY_FIELD,
    PROCESS_AREA_FIELD,
    TAGS_FIELD,
    YEAR_FIELD,
    FieldFilter,
    Operator,
)
from audit_chatbot.core.patterns import (
    DEPARTMENT,
    PRIORITY,
    PROCESS_AREA,
    TAGS,
    YEAR,
    FilterClause,
    PatternId,
    QueryIntent,
)

logger = logging.getLogger(__name__)

ALL_RECORDS_SPEC_ID = "all records"


@dataclass(frozen=True)
class AtomicQuerySpec:
    """
    One executable filter combination.

    spec_id is derived from the filters, so the same intent always yields
    the same ids.
    """
    spec_id: str
    filters: Tuple[FieldFilter, ...]
    variants: Tuple[str, ...] = ()


@dataclass(frozen=True)
class SortSpec:
    """Primary sort field, then tie-breakers, all in one direction."""
    field: str
    descending: bool = True
    then_by: Tuple[str, ...] = ("id",)

    @property
    def fields(self) -> Tuple[str, ...]:
        return (self.field,) + tuple(f for f in self.then_by if f != self.field)


# Default presentation order per pattern. Every PatternId must be listed.
DEFAULT_SORT: Dict[PatternId, SortSpec] = {
    PatternId.DEPARTMENT_YEAR_SHOW_ALL: SortSpec("id"),
    PatternId.DEPARTMENT_PRIORITY_YEAR: SortSpec("id"),
    PatternId.DEPARTMENT_PRIORITY: SortSpec("id"),
    PatternId.PRIORITY_YEAR: SortSpec("id"),
    PatternId.YEAR_RANGE: SortSpec("year"),
    PatternId.DEPARTMENT_YEAR: SortSpec("id"),
    PatternId.PRIORITY: SortSpec("id"),
    PatternId.DEPARTMENT: SortSpec("year"),
    PatternId.YEAR: SortSpec("id"),
    PatternId.DEPARTMENT_EXPLICIT: SortSpec("year"),
    PatternId.TAG: SortSpec("year"),
    PatternId.TOP_N: SortSpec("priority_level"),
    PatternId.CORRECTION: SortSpec("id"),
}

_unsorted = set(PatternId) - set(DEFAULT_SORT)
if _unsorted:
    raise RuntimeError(f"Pattern ids without a default sort: {sorted(p.value for p in _unsorted)}")


# A strategy turns one intent clause into (stored field, operator, candidate values)
Strategy = Callable[[FilterClause, FieldNormalizer], Tuple[str, Operator, Tuple[str, ...]]]


def _values(clause: FilterClause) -> Tuple[str, ...]:
    if isinstance(clause.value, tuple):
        return clause.value
    return (clause.value,)


def _categorical_department(clause: FilterClause, normalizer: FieldNormalizer) -> Tuple[str, Operator, Tuple[str, ...]]:
    raw: List[str] = []
    for token in _values(clause):
        for value in normalizer.expand(token):
            if value not in raw:
                raw.append(value)
    return DEPARTMENT_RAW_FIELD, Operator.IN, tuple(raw)


def _scalar(stored_field: str) -> Strategy:
    def strategy(clause: FilterClause, normalizer: FieldNormalizer) -> Tuple[str, Operator, Tuple[str, ...]]:
        return stored_field, Operator.IN, _values(clause)
    return strategy


def _year(clause: FilterClause, normalizer: FieldNormalizer) -> Tuple[str, Operator, Tuple[str, ...]]:
    return YEAR_FIELD, Operator.IN, tuple(normalizer.canonicalize_year(v) for v in _values(clause))


def _contains(clause: FilterClause, normalizer: FieldNormalizer) -> Tuple[str, Operator, Tuple[str, ...]]:
    return TAGS_FIELD, Operator.CONTAINS, _values(clause)


FIELD_STRATEGIES: Dict[str, Strategy] = {
    DEPARTMENT: _categorical_department,
    YEAR: _year,
    PRIORITY: _scalar(PRIORITY_FIELD),
    PROCESS_AREA: _scalar(PROCESS_AREA_FIELD),
    TAGS: _contains,
}


def _batches(values: Sequence[str], size: int) -> List[Tuple[str, ...]]:
    return [tuple(values[i:i + size]) for i in range(0, len(values), size)]


class QueryPlanner:
    """
    Expands an intent into atomic store queries.

    Categorical clauses are expanded to their raw spellings. Every
    multi-valued clause is cut into batches of at most batch_limit values
    and one spec is emitted per combination of batches.
    """

    def __init__(self, normalizer: FieldNormalizer, batch_limit: int = 10):
        if batch_limit <= 0:
            raise ValueError("batch_limit must be greater than 0")
        self._normalizer = normalizer
        self._batch_limit = batch_limit

    def plan(self, intent: QueryIntent) -> List[AtomicQuerySpec]:
        if not intent.filters:
            # Only "top N findings" may scan every record
            if intent.pattern_id is PatternId.TOP_N and intent.limit:
                logger.info("Planned one unfiltered query for top %d findings", intent.limit)
                return [AtomicQuerySpec(spec_id=ALL_RECORDS_SPEC_ID, filters=())]
            raise PlanningError(f"Intent {intent.pattern_id.value} carries no filters")

        # Per clause: list of alternative FieldFilters (one per batch)
        dimensions: List[List[FieldFilter]] = []
        for clause in intent.filters:
            strategy = FIELD_STRATEGIES.get(clause.field)
            if strategy is None:
                raise PlanningError(f"No filter strategy registered for field {clause.field!r}")

            stored_field, operator, values = strategy(clause, self._normalizer)
            if not values:
                raise PlanningError(f"Clause on {clause.field!r} expanded to no values")
            dimensions.append(self._split(stored_field, operator, values))

        specs: List[AtomicQuerySpec] = []
        for combo in itertools.product(*dimensions):
            variants = tuple(v for f in combo if f.field == DEPARTMENT_RAW_FIELD for v in f.values())
            specs.append(
                AtomicQuerySpec(
                    spec_id=" & ".join(f.describe() for f in combo),
                    filters=tuple(combo),
                    variants=variants,
                )
            )

        logger.info(
            "Planned %d atomic quer%s for %s (batch limit %d)",
            len(specs), "y" if len(specs) == 1 else "ies", intent.pattern_id.value, self._batch_limit,
        )
        return specs

    def _split(self, stored_field: str, operator: Operator, values: Tuple[str, ...]) -> List[FieldFilter]:
        if operator is Operator.CONTAINS:
            # array-contains takes one value per query
            return [FieldFilter(stored_field, Operator.CONTAINS, v) for v in values]

        out: List[FieldFilter] = []
        for batch in _batches(values, self._batch_limit):
            if len(batch) == 1:
                out.append(FieldFilter(stored_field, Operator.EQ, batch[0]))
            else:
                out.append(FieldFilter(stored_field, Operator.IN, batch))
        return out

    @property
    def normalizer(self) -> FieldNormalizer:
        return self._normalizer

    @staticmethod
    def default_sort(intent: QueryIntent) -> SortSpec:
        # "top N" ranks by priority whatever filters came with it
        if intent.limit:
            return DEFAULT_SORT[PatternId.TOP_N]
        return DEFAULT_SORT[intent.pattern_id]
