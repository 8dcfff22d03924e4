import pytest

from audit_chatbot.core.models import FieldFilter, Operator
from audit_chatbot.core.query_executor import ResultSet, SpecOutcome
from audit_chatbot.core.query_planner import AtomicQuerySpec
from audit_chatbot.core.result_merger import dedupe, merge, paginate, sort_records

from conftest import make_record


def _spec(name, variants=()):
    return AtomicQuerySpec(spec_id=name, filters=(FieldFilter("department_raw", Operator.EQ, name),), variants=variants)


def _result_set(*groups, failed=()):
    specs = [_spec(name) for name, _ in groups] + list(failed)
    rs = ResultSet(specs=specs)
    for name, recs in groups:
        rs.outcomes.append(SpecOutcome(spec=_spec(name), records=list(recs), attempts=1, elapsed_ms=1.0))
    rs.failed_specs.extend(failed)
    return rs


@pytest.fixture
def overlapping():
    a = make_record("24SH0001", "2024", "IT")
    b = make_record("24SH0002", "2024", "ICT")
    c = make_record("23SH0001", "2023", "IT")
    return _result_set(("IT", [a, c]), ("ICT", [b, a]))


def test_merge_has_no_duplicate_ids(overlapping):
    page = merge(overlapping, page_size=10)
    ids = [r.id for r in page.exportable_set]
    assert len(ids) == len(set(ids)) == 3


def test_merge_sorts_descending_by_id(overlapping):
    page = merge(overlapping, page_size=10)
    assert [r.id for r in page.exportable_set] == ["24SH0002", "24SH0001", "23SH0001"]


def test_page_is_capped_but_export_is_not(overlapping):
    page = merge(overlapping, page_size=2)
    assert len(page.rows) == 2
    assert page.total_count == 3
    assert len(page.exportable_set) == 3
    assert page.has_more


def test_merge_is_idempotent(overlapping):
    """Merging the same result set twice gives the same page"""
    assert merge(overlapping, 2) == merge(overlapping, 2)


def test_degraded_result_reports_skipped_specs():
    failed = _spec("ICT", variants=("ICT",))
    rs = _result_set(("IT", [make_record("24SH0001", "2024", "IT")]), failed=[failed])
    page = merge(rs, page_size=5)
    assert page.degraded
    assert page.skipped == frozenset({"ICT"})
    assert page.skipped_variants == ("ICT",)


def test_sort_by_year_is_stable():
    recs = [
        make_record("24SH0001", "2024", "IT"),
        make_record("23SH0001", "2023", "IT"),
        make_record("24SH0002", "2024", "IT"),
    ]
    assert [r.id for r in sort_records(recs, "year")] == ["24SH0001", "24SH0002", "23SH0001"]
    assert [r.id for r in sort_records(recs, "year", descending=False)][0] == "23SH0001"


def test_sort_rejects_unknown_field():
    with pytest.raises(ValueError):
        sort_records([], "colour")


def test_dedupe_keeps_first_occurrence():
    first = make_record("24SH0001", "2024", "IT", title="first")
    second = make_record("24SH0001", "2024", "IT", title="second")
    assert dedupe([first, second]) == [first]


def test_paginate():
    recs = [make_record(f"24SH000{i}", "2024", "IT") for i in range(1, 6)]
    assert paginate(recs, 2, page=2) == recs[4:]
    with pytest.raises(ValueError):
        paginate(recs, 0)


def test_year_ties_are_broken_by_id():
    """Same-year findings come out in id order, not store order"""
    rs = _result_set(
        ("ICT", [make_record("24SH0002", "2024", "ICT")]),
        ("IT", [make_record("24SH0001", "2024", "IT"), make_record("24SH0003", "2024", "IT")]),
        ("HR", [make_record("23SH0009", "2023", "HR")]),
    )
    page = merge(rs, page_size=10, sort_field=("year", "id"))
    assert [r.id for r in page.rows] == ["24SH0003", "24SH0002", "24SH0001", "23SH0009"]


def test_sort_by_priority_uses_severity():
    recs = [
        make_record("24SH0001", "2024", "IT", priority_level="Low"),
        make_record("24SH0002", "2024", "IT", priority_level="Critical"),
        make_record("24SH0003", "2024", "IT", priority_level="Medium"),
        make_record("24SH0004", "2024", "IT", priority_level="High"),
        make_record("24SH0005", "2024", "IT"),
    ]
    ordered = sort_records(recs, ("priority_level", "id"))
    assert [r.id for r in ordered] == ["24SH0002", "24SH0004", "24SH0003", "24SH0001", "24SH0005"]


def test_sort_rejects_unknown_tie_breaker():
    with pytest.raises(ValueError):
        sort_records([], ("year", "colour"))
