from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence, Union, runtime_checkable

import pandas as pd
import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from audit_chatbot.config import RECORD_STORE_TOKEN, RECORD_STORE_URL
from audit_chatbot.core.errors import StoreError
from audit_chatbot.core.models import FieldFilter, Operator, Record, is_valid_record_id

logger = logging.getLogger(__name__)


@runtime_checkable
class RecordStore(Protocol):
    """Read-only view of the audit findings store."""

    def query_by_filters(self, filters: Sequence[FieldFilter]) -> List[Record]:
        ...


@runtime_checkable
class CountingRecordStore(RecordStore, Protocol):
    def count_matching(self, filters: Sequence[FieldFilter]) -> int:
        ...


def _unique_valid(records: Iterable[Record], source: str) -> List[Record]:
    """Drop rows whose id is malformed or already seen, logging each drop."""
    out: List[Record] = []
    seen: set = set()
    for rec in records:
        if not is_valid_record_id(rec.id):
            logger.warning("Dropping record with malformed id %r from %s", rec.id, source)
            continue
        if rec.id in seen:
            logger.warning("Dropping duplicate id %s from %s", rec.id, source)
            continue
        seen.add(rec.id)
        out.append(rec)
    return out


# ---------------------------------------------------------------------------
# In-memory store (local CSV / Excel export)
# ---------------------------------------------------------------------------

class DataFrameRecordStore:
    """
    Record store backed by a pandas DataFrame.

    Used for local exports of the findings table and in tests. Filtering
    follows the same equality / one-of / array-contains semantics as the
    remote store.
    """

    def __init__(self, records: Iterable[Record], name: str = "memory"):
        self._name = name
        self._records = _unique_valid(records, name)
        logger.info("Loaded %d records into %s store", len(self._records), name)

    @classmethod
    def from_frame(cls, df: pd.DataFrame, name: str = "dataframe") -> "DataFrameRecordStore":
        return cls((Record.from_mapping(row) for row in df.to_dict(orient="records")), name=name)

    @classmethod
    def from_file(cls, path: Union[str, Path]) -> "DataFrameRecordStore":
        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Records file not found: {path}")
        if path.suffix.lower() == ".csv":
            df = pd.read_csv(path, dtype=str, keep_default_na=False)
        else:
            df = pd.read_excel(path, dtype=str).fillna("")
        return cls.from_frame(df, name=path.name)

    @property
    def records(self) -> List[Record]:
        return list(self._records)

    def distinct_values(self, field: str) -> List[str]:
        values: List[str] = []
        for rec in self._records:
            v = rec.get(field)
            if v and v not in values:
                values.append(v)
        return values

    def query_by_filters(self, filters: Sequence[FieldFilter]) -> List[Record]:
        return [r for r in self._records if all(f.matches(r) for f in filters)]

    def count_matching(self, filters: Sequence[FieldFilter]) -> int:
        return len(self.query_by_filters(filters))


# ---------------------------------------------------------------------------
# Remote store (JSON search endpoint)
# ---------------------------------------------------------------------------

@dataclass
class SearchPage:
    records: List[Dict[str, Any]]
    total: Optional[int] = None


def _build_retry_session() -> requests.Session:
    """
    Build a requests Session with conservative transport-level retries.
    Query-level retries with backoff happen in the executor.
    """
    session = requests.Session()

    retry = Retry(
        total=3,
        connect=3,
        read=3,
        status=3,
        backoff_factor=0.3,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET"}),
        raise_on_status=False,
    )

    adapter = HTTPAdapter(max_retries=retry, pool_connections=10, pool_maxsize=10)
    session.mount("https://", adapter)
    session.mount("http://", adapter)

    return session


def _encode_filters(filters: Sequence[FieldFilter]) -> str:
    payload = [
        {
            "field": f.field,
            "op": f.operator.value,
            "value": list(f.value) if isinstance(f.value, tuple) else f.value,
        }
        for f in filters
    ]
    return json.dumps(payload, ensure_ascii=False)


class HttpRecordStore:
    """
    Record store reached over HTTP.

    Calls GET {base_url}/records/search with the filters as a JSON string
    and pages with offset/limit. The endpoint answers with
      {"success": true, "result": {"records": [...], "total": n}}
    and sometimes returns 200 with success=false, which is treated as a
    failure.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        token: Optional[str] = None,
        page_size: int = 500,
        max_rows: int = 50_000,
        timeout_seconds: int = 30,
        session: Optional[requests.Session] = None,
    ):
        url = (base_url if base_url is not None else RECORD_STORE_URL or "").strip().rstrip("/")
        if not url:
            raise StoreError("Missing record store URL. Set AUDIT_RECORD_STORE_URL or pass base_url.")
        self._search_url = f"{url}/records/search"
        self._token = token if token is not None else RECORD_STORE_TOKEN
        self._page_size = max(1, int(page_size))
        self._max_rows = int(max_rows)
        self._timeout = timeout_seconds
        self._session = session or _build_retry_session()

    def _search(self, filters: Sequence[FieldFilter], offset: int, limit: int, include_total: bool) -> SearchPage:
        params: Dict[str, Any] = {
            "filters": _encode_filters(filters),
            "offset": int(offset),
            "limit": int(limit),
        }
        if include_total:
            params["include_total"] = "true"

        headers = {"Authorization": f"Bearer {self._token}"} if self._token else None

        try:
            resp = self._session.get(self._search_url, params=params, headers=headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise StoreError(f"HTTP error while calling records/search: {exc}") from exc

        try:
            data = resp.json()
        except ValueError as exc:
            preview = (resp.text or "")[:200]
            raise StoreError(f"Non-JSON response from store (status={resp.status_code}). Preview: {preview}") from exc

        if not isinstance(data, dict):
            raise StoreError(f"Unexpected store response type: {type(data)}")

        if not data.get("success", False):
            msg = data.get("error") or data
            raise StoreError(f"records/search returned success=false. Status={resp.status_code}. Detail={msg}")

        result = data.get("result") or {}
        records = result.get("records") or []
        if not isinstance(records, list):
            raise StoreError("result.records is not a list")

        return SearchPage(records=records, total=result.get("total") if include_total else None)

    def query_by_filters(self, filters: Sequence[FieldFilter]) -> List[Record]:
        for f in filters:
            if f.operator is Operator.IN and not f.values():
                return []

        rows: List[Dict[str, Any]] = []
        offset = 0
        # Hard cap to avoid runaway loops if the endpoint misbehaves
        hard_page_cap = max(1, (self._max_rows // self._page_size) + 5)

        for _ in range(hard_page_cap):
            limit = min(self._page_size, self._max_rows - len(rows))
            if limit <= 0:
                logger.warning("Stopped paging at max_rows=%d for %s", self._max_rows, _encode_filters(filters))
                break

            page = self._search(filters, offset=offset, limit=limit, include_total=False)
            if not page.records:
                break
            rows.extend(page.records)
            offset += len(page.records)

            # Fewer than requested means we reached the end
            if len(page.records) < limit:
                break

        return _unique_valid((Record.from_mapping(r) for r in rows), self._search_url)

    def count_matching(self, filters: Sequence[FieldFilter]) -> int:
        page = self._search(filters, offset=0, limit=0, include_total=True)
        if page.total is None:
            raise StoreError("records/search did not return a total")
        return int(page.total)
