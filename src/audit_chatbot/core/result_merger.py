from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Sequence, Tuple, Union

from audit_chatbot.core.field_normalizer import PRIORITY_LEVELS
from audit_chatbot.core.models import Record
from audit_chatbot.core.query_executor import ResultSet

logger = logging.getLogger(__name__)

# Fields that can order a result page. All but priority compare as strings:
# ids are fixed-width and years are assumed to be exactly four digits, so
# lexical order is also numeric / chronological order. Priority sorts by
# severity.
SORTABLE_FIELDS = ("id", "year", "department_raw", "process_area", "priority_level", "title", "executor")
PRIORITY_RANK: Dict[str, int] = {level: rank for rank, level in enumerate(reversed(PRIORITY_LEVELS))}

SOURCE_STRUCTURED = "structured"
SOURCE_SEMANTIC = "semantic"
SOURCE_HYBRID = "hybrid"


@dataclass
class ResultPage:
    """
    What a turn presents: the capped UI slice plus the full export set.
    """
    rows: List[Record]
    total_count: int
    exportable_set: List[Record]
    degraded: bool = False
    skipped: FrozenSet[str] = frozenset()
    skipped_variants: Tuple[str, ...] = ()
    semantic_only: bool = False
    source: str = SOURCE_STRUCTURED
    scores: Dict[str, float] = field(default_factory=dict)

    @property
    def has_more(self) -> bool:
        return self.total_count > len(self.rows)


def dedupe(records: Sequence[Record]) -> List[Record]:
    """First occurrence of each id wins; order is otherwise untouched."""
    seen = set()
    out: List[Record] = []
    for rec in records:
        if rec.id in seen:
            continue
        seen.add(rec.id)
        out.append(rec)
    return out


def _sort_value(rec: Record, sort_field: str) -> Union[int, str]:
    if sort_field == "priority_level":
        level = rec.priority_level or ""
        # Low < Medium < High < Critical; unknown levels sort below Low
        return PRIORITY_RANK.get(level, -1)
    return str(rec.get(sort_field) or "")


def sort_records(
    records: Sequence[Record],
    sort_field: Union[str, Sequence[str]] = "id",
    descending: bool = True,
) -> List[Record]:
    """Sort on one field or on several, the later ones breaking ties."""
    fields = (sort_field,) if isinstance(sort_field, str) else tuple(sort_field)
    for name in fields:
        if name not in SORTABLE_FIELDS:
            raise ValueError(f"Cannot sort by {name!r}; choose one of {', '.join(SORTABLE_FIELDS)}")
    # sorted() is stable, so records equal on every field keep their first-seen order
    return sorted(records, key=lambda r: tuple(_sort_value(r, f) for f in fields), reverse=descending)


def paginate(records: Sequence[Record], page_size: int, page: int = 0) -> List[Record]:
    if page_size <= 0:
        raise ValueError("page_size must be greater than 0")
    start = page * page_size
    return list(records[start:start + page_size])


def merge(
    result_set: ResultSet,
    page_size: int,
    sort_field: Union[str, Sequence[str]] = "id",
    descending: bool = True,
) -> ResultPage:
    """
    Deduplicate, sort and page a ResultSet.

    Only successful specs contribute rows; failed specs are reported through
    `skipped` and `degraded` and never hidden.
    """
    raw = [rec for _, rec in result_set.entries()]
    unique = dedupe(raw)
    if len(unique) != len(raw):
        logger.info("Dropped %d duplicate records across overlapping queries", len(raw) - len(unique))

    ordered = sort_records(unique, sort_field, descending)
    return ResultPage(
        rows=paginate(ordered, page_size),
        total_count=len(ordered),
        exportable_set=ordered,
        degraded=result_set.degraded,
        skipped=frozenset(result_set.failed_spec_ids),
        skipped_variants=result_set.skipped_variants,
    )
