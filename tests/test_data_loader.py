import json

import pandas as pd
import pytest
import requests

from audit_chatbot.core.data_loader import CountingRecordStore, DataFrameRecordStore, HttpRecordStore
from audit_chatbot.core.errors import StoreError
from audit_chatbot.core.models import FieldFilter, Operator, Record


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self._payload = payload
        self.status_code = status_code
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    def json(self):
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload


class FakeSession:
    """Serves pages from a fixed list of rows and records every call"""

    def __init__(self, rows=None, responses=None):
        self.rows = rows or []
        self.responses = list(responses or [])
        self.calls = []

    def get(self, url, params=None, headers=None, timeout=None):
        self.calls.append({"url": url, "params": params, "headers": headers})
        if self.responses:
            item = self.responses.pop(0)
            if isinstance(item, Exception):
                raise item
            return item
        offset, limit = params["offset"], params["limit"]
        result = {"records": self.rows[offset:offset + limit]}
        if params.get("include_total"):
            result["total"] = len(self.rows)
        return FakeResponse({"success": True, "result": result})


def _rows(n):
    return [{"id": f"24SH{i:04d}", "year": "2024", "departmentRaw": "IT"} for i in range(1, n + 1)]


def test_dataframe_store_filters(store):
    it_2024 = store.query_by_filters([
        FieldFilter("department_raw", Operator.IN, ("IT", "ICT")),
        FieldFilter("year", Operator.EQ, "2024"),
    ])
    assert {r.id for r in it_2024} == {"24SH0001", "24SH0006"}


def test_dataframe_store_array_contains(store):
    hits = store.query_by_filters([FieldFilter("tags", Operator.CONTAINS, "fraud")])
    assert [r.id for r in hits] == ["23SH0002"]


def test_dataframe_store_drops_bad_and_duplicate_ids():
    store = DataFrameRecordStore([
        Record(id="24SH0001", year="2024", department_raw="IT"),
        Record(id="24SH0001", year="2024", department_raw="ICT"),
        Record(id="not-an-id", year="2024", department_raw="IT"),
    ])
    assert [r.department_raw for r in store.records] == ["IT"]


def test_dataframe_store_is_a_counting_store(store):
    assert isinstance(store, CountingRecordStore)
    assert store.count_matching([FieldFilter("year", Operator.EQ, "2023")]) == 2


def test_dataframe_store_from_csv(tmp_path):
    path = tmp_path / "findings.csv"
    pd.DataFrame([
        {"AuditResultId": "24SH0001", "Year": "2024", "Department": "Departemen IT", "Tags": "Access, Backup"},
    ]).to_csv(path, index=False)

    store = DataFrameRecordStore.from_file(path)
    rec = store.records[0]
    assert rec.department_raw == "Departemen IT"
    assert rec.tags == frozenset({"access", "backup"})


def test_from_file_missing(tmp_path):
    with pytest.raises(FileNotFoundError):
        DataFrameRecordStore.from_file(tmp_path / "missing.xlsx")


def test_http_store_pages_until_short_page():
    session = FakeSession(rows=_rows(5))
    store = HttpRecordStore("http://store.test/", token="secret", page_size=2, session=session)

    records = store.query_by_filters([FieldFilter("year", Operator.EQ, "2024")])
    assert [r.id for r in records] == [f"24SH{i:04d}" for i in range(1, 6)]
    assert len(session.calls) == 3
    assert session.calls[0]["url"] == "http://store.test/records/search"
    assert session.calls[0]["headers"] == {"Authorization": "Bearer secret"}
    assert json.loads(session.calls[0]["params"]["filters"]) == [{"field": "year", "op": "==", "value": "2024"}]


def test_http_store_respects_max_rows():
    session = FakeSession(rows=_rows(10))
    store = HttpRecordStore("http://store.test", token="", page_size=3, max_rows=4, session=session)
    assert len(store.query_by_filters([])) == 4


def test_http_store_count():
    store = HttpRecordStore("http://store.test", token="", session=FakeSession(rows=_rows(7)))
    assert store.count_matching([]) == 7


def test_http_store_empty_in_clause_short_circuits():
    session = FakeSession(rows=_rows(3))
    store = HttpRecordStore("http://store.test", token="", session=session)
    assert store.query_by_filters([FieldFilter("department_raw", Operator.IN, ())]) == []
    assert session.calls == []


@pytest.mark.parametrize(
    "response",
    [
        FakeResponse({"success": False, "error": "boom"}),
        FakeResponse("<html>bad gateway</html>", status_code=502),
        FakeResponse(["not", "a", "dict"]),
        FakeResponse({"success": True, "result": {"records": "nope"}}),
        requests.ConnectionError("refused"),
    ],
)
def test_http_store_errors(response):
    store = HttpRecordStore("http://store.test", token="", session=FakeSession(responses=[response]))
    with pytest.raises(StoreError):
        store.query_by_filters([])


def test_http_store_requires_url():
    with pytest.raises(StoreError):
        HttpRecordStore("", token="")


def test_dataframe_store_distinct_values(store):
    """Store order, each spelling once, blanks skipped"""
    raw = store.distinct_values("department_raw")
    assert raw[:2] == ["IT", "Departemen IT"]
    assert len(raw) == len(set(raw))
    assert "Keuangan" in raw and "HRD" in raw
