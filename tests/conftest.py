import threading
from typing import Dict, List, Sequence, Set, Tuple

import pytest

from audit_chatbot.config import EngineSettings
from audit_chatbot.core.data_loader import DataFrameRecordStore
from audit_chatbot.core.errors import StoreError
from audit_chatbot.core.field_normalizer import DEFAULT_VARIANTS, FieldNormalizer, VariantMap
from audit_chatbot.core.models import FieldFilter, Record

IT_VARIANTS = DEFAULT_VARIANTS["IT"]


def make_record(rid: str, year: str, department: str, **kwargs) -> Record:
    return Record(id=rid, year=year, department_raw=department, **kwargs)


# Store double that fails every query touching one of the given raw values
class FlakyStore:
    def __init__(self, inner: DataFrameRecordStore, failing: Sequence[str] = (), fail_times: int = 10**6):
        self._inner = inner
        self._failing: Set[str] = set(failing)
        self._fail_times = fail_times
        self._lock = threading.Lock()
        self.calls: Dict[Tuple[FieldFilter, ...], int] = {}

    def query_by_filters(self, filters: Sequence[FieldFilter]) -> List[Record]:
        key = tuple(filters)
        with self._lock:
            self.calls[key] = self.calls.get(key, 0) + 1
            attempt = self.calls[key]
        touched = {v for f in filters for v in f.values()}
        if touched & self._failing and attempt <= self._fail_times:
            raise StoreError(f"simulated outage for {sorted(touched & self._failing)}")
        return self._inner.query_by_filters(filters)


# Store double that blocks until released, for cancellation tests
class BlockingStore:
    def __init__(self, inner: DataFrameRecordStore):
        self._inner = inner
        self.started = threading.Event()
        self.release = threading.Event()

    def query_by_filters(self, filters: Sequence[FieldFilter]) -> List[Record]:
        self.started.set()
        self.release.wait(5)
        return self._inner.query_by_filters(filters)


class FakeIndex:
    def __init__(self, hits: Sequence[Tuple[str, float]], delay: float = 0.0):
        self._hits = list(hits)
        self._delay = delay
        self.queries: List[Sequence[float]] = []

    def nearest_neighbors(self, vector, k):
        self.queries.append(vector)
        if self._delay:
            threading.Event().wait(self._delay)
        return self._hits[:k]


# Index that is down, as a vector database outage looks from the client
class BrokenIndex:
    def __init__(self):
        self.calls = 0

    def nearest_neighbors(self, vector, k):
        self.calls += 1
        raise ConnectionError("qdrant down")


def fake_embed(text: str) -> List[float]:
    return [float(len(text)), 1.0]


@pytest.fixture
def variants() -> VariantMap:
    return VariantMap(DEFAULT_VARIANTS)


@pytest.fixture
def normalizer(variants) -> FieldNormalizer:
    return FieldNormalizer(variants)


@pytest.fixture
def records() -> List[Record]:
    # One 2024 IT finding per raw IT spelling
    it_2024 = [
        make_record(f"24SH000{i + 1}", "2024", raw, priority_level="High" if i % 2 else "Medium", tags=frozenset({"access"}))
        for i, raw in enumerate(IT_VARIANTS)
    ]
    return it_2024 + [
        make_record("23SH0001", "2023", "Departemen IT", priority_level="Critical"),
        make_record("23SH0002", "2023", "Finance", priority_level="High", tags=frozenset({"payment", "fraud"})),
        make_record("24SH0101", "2024", "Keuangan", priority_level="Critical"),
        make_record("22SH0003", "2022", "Human Resources", priority_level="Low"),
        make_record("24SH0200", "2024", "HRD", priority_level="High", tags=frozenset({"payroll"})),
        make_record("21SH0050", "2021", "Legal", priority_level="Medium"),
    ]


@pytest.fixture
def store(records) -> DataFrameRecordStore:
    return DataFrameRecordStore(records)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        retry_backoff_seconds=0.0,
        retry_max_backoff_seconds=0.0,
        default_page_size=5,
        fallback_timeout_seconds=1.0,
    )
