import io

import pandas as pd
import pytest

from audit_chatbot.core.export import EXPORT_COLUMNS, build_export_frame, export_records


def test_export_frame_columns_and_category(records, variants):
    df = build_export_frame(records, variants)
    assert list(df.columns) == [header for _, header in EXPORT_COLUMNS]
    assert len(df) == len(records)
    assert df.loc[0, "Department Category"] == "IT"
    assert df.loc[0, "Tags"] == "access"


def test_export_keeps_given_order(records):
    df = build_export_frame(list(reversed(records)))
    assert df["Finding ID"].tolist() == [r.id for r in reversed(records)]


def test_export_csv(records, variants):
    data = export_records(records, "csv", variants)
    df = pd.read_csv(io.BytesIO(data), encoding="utf-8-sig", dtype=str)
    assert df["Finding ID"].tolist() == [r.id for r in records]
    assert df["Year"].tolist()[0] == "2024"


def test_export_xlsx(records):
    data = export_records(records, "xlsx")
    df = pd.read_excel(io.BytesIO(data), sheet_name="Findings", dtype=str)
    assert len(df) == len(records)


def test_export_empty_set():
    df = build_export_frame([])
    assert df.empty
    assert list(df.columns) == [header for _, header in EXPORT_COLUMNS]


def test_export_rejects_unknown_format(records):
    with pytest.raises(ValueError):
        export_records(records, "pdf")
