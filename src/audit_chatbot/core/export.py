from __future__ import annotations

import io
import logging
from typing import Iterable, List, Optional, Tuple

import pandas as pd

from audit_chatbot.core.field_normalizer import VariantMap
from audit_chatbot.core.models import Record, records_to_frame

logger = logging.getLogger(__name__)

# (record field, column header) in download order
EXPORT_COLUMNS: List[Tuple[str, str]] = [
    ("id", "Finding ID"),
    ("year", "Year"),
    ("department_raw", "Department"),
    ("department_category", "Department Category"),
    ("process_area", "Process Area"),
    ("title", "Title"),
    ("description", "Description"),
    ("executor", "Executor"),
    ("priority_level", "Priority"),
    ("tags", "Tags"),
]

EXPORT_SHEET = "Findings"


def build_export_frame(records: Iterable[Record], variants: Optional[VariantMap] = None) -> pd.DataFrame:
    """
    Tabular view of an exportable set, one row per record, in the given order.
    The department category is derived from the alias table, never stored.
    """
    df = records_to_frame(records)
    if variants is not None:
        df["department_category"] = df["department_raw"].map(lambda raw: variants.category_of(raw) or "")
    else:
        df["department_category"] = ""
    df["tags"] = df["tags"].map(lambda tags: ", ".join(tags) if isinstance(tags, list) else "")

    out = df[[name for name, _ in EXPORT_COLUMNS]].rename(columns=dict(EXPORT_COLUMNS))
    return out.reset_index(drop=True)


def export_records(records: Iterable[Record], fmt: str = "xlsx", variants: Optional[VariantMap] = None) -> bytes:
    """Serialise the full exportable set as an Excel workbook or CSV file."""
    df = build_export_frame(records, variants)
    fmt = fmt.lower()

    if fmt == "csv":
        data = df.to_csv(index=False).encode("utf-8-sig")
    elif fmt == "xlsx":
        buf = io.BytesIO()
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            df.to_excel(writer, sheet_name=EXPORT_SHEET, index=False)
        data = buf.getvalue()
    else:
        raise ValueError(f"Unsupported export format {fmt!r}; use 'xlsx' or 'csv'")

    logger.info("Exported %d findings as %s (%d bytes)", len(df), fmt, len(data))
    return data
