from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Tuple, Union

import pandas as pd

# Record ids look like 24SH0042: 2-digit year, fixed segment, 4-digit sequence
RECORD_ID_SEGMENT = "SH"
RECORD_ID_RE = re.compile(r"^\d{2}[A-Z]{2}\d{4}$")

# Stored field names
ID_FIELD = "id"
YEAR_FIELD = "year"
DEPARTMENT_RAW_FIELD = "department_raw"
PROCESS_AREA_FIELD = "process_area"
PRIORITY_FIELD = "priority_level"
TAGS_FIELD = "tags"

RECORD_FIELDS = [
    "id",
    "year",
    "department_raw",
    "process_area",
    "title",
    "description",
    "executor",
    "priority_level",
    "tags",
]

# Accepted spellings in exports and API payloads -> stored field name
_FIELD_ALIASES: Dict[str, str] = {
    "id": "id",
    "auditresultid": "id",
    "year": "year",
    "departmentraw": "department_raw",
    "department": "department_raw",
    "processarea": "process_area",
    "riskarea": "process_area",
    "title": "title",
    "description": "description",
    "descriptions": "description",
    "executor": "executor",
    "prioritylevel": "priority_level",
    "priority": "priority_level",
    "tags": "tags",
}


class Operator(str, Enum):
    EQ = "=="
    IN = "in"
    CONTAINS = "array-contains"


FilterValue = Union[str, Tuple[str, ...]]


@dataclass(frozen=True)
class FieldFilter:
    """One (field, operator, value) triple understood by the record store."""
    field: str
    operator: Operator
    value: FilterValue

    def values(self) -> Tuple[str, ...]:
        if isinstance(self.value, tuple):
            return self.value
        return (self.value,)

    def describe(self) -> str:
        if self.operator is Operator.IN:
            return f"{self.field} in ({', '.join(self.values())})"
        return f"{self.field} {self.operator.value} {self.value}"

    def matches(self, record: "Record") -> bool:
        actual = record.get(self.field)
        if self.operator is Operator.CONTAINS:
            return self.value in (actual or ())
        return actual in self.values()


def is_valid_record_id(value: Any) -> bool:
    return isinstance(value, str) and bool(RECORD_ID_RE.match(value))


def _canonical_key(key: str) -> str:
    return re.sub(r"[^a-z]", "", str(key).lower())


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    try:
        if pd.isna(value):
            return ""
    except (TypeError, ValueError):
        pass
    text = str(value).replace("\u00A0", " ").strip()
    if text.lower() in {"nan", "none", "null"}:
        return ""
    return text


def _clean_year(value: Any) -> str:
    # Excel exports hand years back as floats (2024.0); keep the string form
    text = _clean_text(value)
    if text.endswith(".0") and text[:-2].isdigit():
        text = text[:-2]
    return text


def _clean_tags(value: Any) -> FrozenSet[str]:
    if value is None:
        return frozenset()
    if isinstance(value, str):
        parts: Iterable[Any] = value.split(",")
    elif isinstance(value, (list, tuple, set, frozenset)):
        parts = value
    else:
        text = _clean_text(value)
        parts = [text] if text else []
    # Tags are stored lower-case
    return frozenset(t for t in (_clean_text(p).lower() for p in parts) if t)


@dataclass(frozen=True)
class Record:
    """An audit finding as it is stored."""
    id: str
    year: str
    department_raw: str
    process_area: str = ""
    title: str = ""
    description: str = ""
    executor: str = ""
    priority_level: str = ""
    tags: FrozenSet[str] = field(default_factory=frozenset)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "Record":
        """
        Build a Record from an API payload or spreadsheet row.

        Keys may be camelCase, snake_case or the legacy column names. The
        year is kept as a string and never converted to a number.
        """
        values: Dict[str, Any] = {}
        for key, value in data.items():
            name = _FIELD_ALIASES.get(_canonical_key(key))
            if name and name not in values:
                values[name] = value

        return cls(
            id=_clean_text(values.get("id")),
            year=_clean_year(values.get("year")),
            department_raw=_clean_text(values.get("department_raw")),
            process_area=_clean_text(values.get("process_area")),
            title=_clean_text(values.get("title")),
            description=_clean_text(values.get("description")),
            executor=_clean_text(values.get("executor")),
            priority_level=_clean_text(values.get("priority_level")),
            tags=_clean_tags(values.get("tags")),
        )

    def get(self, name: str) -> Any:
        return getattr(self, name, None)

    def to_dict(self) -> Dict[str, Any]:
        out = {name: getattr(self, name) for name in RECORD_FIELDS}
        out["tags"] = sorted(self.tags)
        return out


def records_to_frame(records: Iterable[Record]) -> pd.DataFrame:
    rows: List[Dict[str, Any]] = [r.to_dict() for r in records]
    if not rows:
        return pd.DataFrame(columns=RECORD_FIELDS)
    return pd.DataFrame.from_records(rows, columns=RECORD_FIELDS)
