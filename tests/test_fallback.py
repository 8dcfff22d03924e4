import pytest

from audit_chatbot.core.errors import RetrievalError, RetrievalTimeout
from audit_chatbot.core.fallback import FallbackRetriever, ScoredRecord, combine_hybrid, hybrid_page
from audit_chatbot.core.result_merger import SOURCE_HYBRID, SOURCE_SEMANTIC, SOURCE_STRUCTURED, ResultPage

from conftest import BrokenIndex, FakeIndex, FlakyStore, fake_embed, make_record


@pytest.fixture
def retriever(store):
    index = FakeIndex([("23SH0002", 0.91), ("24SH0101", 0.80), ("23SH0002", 0.50), ("99SH9999", 0.40)])
    r = FallbackRetriever(index, fake_embed, store, top_k=10, timeout_seconds=1.0, batch_limit=1)
    yield r
    r.close()


def test_retrieve_hydrates_in_rank_order(retriever):
    """Duplicate hits collapse and ids missing from the store are dropped"""
    hits = retriever.retrieve("payment fraud in finance")
    assert [h.record.id for h in hits] == ["23SH0002", "24SH0101"]
    assert hits[0].score == pytest.approx(0.91)
    assert all(h.source == SOURCE_SEMANTIC for h in hits)


def test_retrieve_times_out(store):
    slow = FallbackRetriever(FakeIndex([("23SH0002", 0.9)], delay=0.5), fake_embed, store, timeout_seconds=0.05)
    try:
        with pytest.raises(RetrievalTimeout):
            slow.retrieve("anything")
    finally:
        slow.close()


def test_structured_hits_rank_above_semantic_only_hits():
    a = make_record("24SH0001", "2024", "IT")
    b = make_record("24SH0002", "2024", "IT")
    c = make_record("23SH0009", "2023", "HR")
    semantic = [
        ScoredRecord(c, 0.99, SOURCE_SEMANTIC),
        ScoredRecord(b, 0.70, SOURCE_SEMANTIC),
    ]
    combined = combine_hybrid([a, b], semantic)
    assert [x.record.id for x in combined] == ["24SH0002", "24SH0001", "23SH0009"]
    assert [x.source for x in combined] == [SOURCE_STRUCTURED, SOURCE_STRUCTURED, SOURCE_SEMANTIC]


def test_empty_structured_page_becomes_semantic_only():
    hit = ScoredRecord(make_record("23SH0009", "2023", "HR"), 0.8, SOURCE_SEMANTIC)
    empty = ResultPage(rows=[], total_count=0, exportable_set=[], degraded=True, skipped=frozenset({"x"}))
    page = hybrid_page(empty, [hit], page_size=5)
    assert page.semantic_only
    assert page.source == SOURCE_SEMANTIC
    assert page.degraded
    assert page.skipped == frozenset({"x"})


def test_hybrid_page_keeps_structured_rows():
    a = make_record("24SH0001", "2024", "IT")
    structured = ResultPage(rows=[a], total_count=1, exportable_set=[a])
    hit = ScoredRecord(make_record("23SH0009", "2023", "HR"), 0.8, SOURCE_SEMANTIC)
    page = hybrid_page(structured, [hit], page_size=5)
    assert not page.semantic_only
    assert page.source == SOURCE_HYBRID
    assert [r.id for r in page.exportable_set] == ["24SH0001", "23SH0009"]


def test_index_outage_is_a_retrieval_error(store):
    broken = FallbackRetriever(BrokenIndex(), fake_embed, store, timeout_seconds=1.0)
    try:
        with pytest.raises(RetrievalError) as exc:
            broken.retrieve("anything")
        assert isinstance(exc.value.__cause__, ConnectionError)
    finally:
        broken.close()


def test_embedder_failure_is_a_retrieval_error(store):
    def failing_embed(text):
        raise RuntimeError("model not loaded")

    r = FallbackRetriever(FakeIndex([("23SH0002", 0.9)]), failing_embed, store, timeout_seconds=1.0)
    try:
        with pytest.raises(RetrievalError):
            r.retrieve("anything")
    finally:
        r.close()


def test_hydration_failure_is_a_retrieval_error(store):
    """The store failing to load the hit ids must not escape as a StoreError"""
    flaky = FlakyStore(store, failing=["23SH0002"])
    r = FallbackRetriever(FakeIndex([("23SH0002", 0.9)]), fake_embed, flaky, timeout_seconds=1.0)
    try:
        with pytest.raises(RetrievalError):
            r.retrieve("payment fraud")
    finally:
        r.close()


def test_timeout_is_also_a_retrieval_error():
    assert issubclass(RetrievalTimeout, RetrievalError)
