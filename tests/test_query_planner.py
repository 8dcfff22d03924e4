import pytest

from audit_chatbot.core.errors import PlanningError, UnknownCategory
from audit_chatbot.core.models import Operator
from audit_chatbot.core.patterns import DEPARTMENT, TAGS, YEAR, FilterClause, PatternId, PatternMatcher, QueryIntent
from audit_chatbot.core.query_planner import QueryPlanner, SortSpec

from conftest import IT_VARIANTS


def _intent(*filters, pattern_id=PatternId.DEPARTMENT_YEAR):
    return QueryIntent(pattern_id=pattern_id, filters=tuple(filters), confidence=1.0)


def test_it_2024_fits_in_one_batch(normalizer):
    """Six raw IT spellings fit one 'in' clause at the default limit"""
    planner = QueryPlanner(normalizer, batch_limit=10)
    intent = PatternMatcher(normalizer).match("show all IT findings 2024")
    specs = planner.plan(intent)

    assert len(specs) == 1
    dept, year = specs[0].filters
    assert dept.operator is Operator.IN
    assert dept.value == IT_VARIANTS
    assert year.operator is Operator.EQ and year.value == "2024"
    assert specs[0].variants == IT_VARIANTS


def test_batch_limit_one_gives_one_spec_per_variant(normalizer):
    planner = QueryPlanner(normalizer, batch_limit=1)
    specs = planner.plan(_intent(FilterClause(DEPARTMENT, Operator.EQ, "IT"), FilterClause(YEAR, Operator.EQ, "2024")))

    assert len(specs) == 6
    assert [s.variants for s in specs] == [(v,) for v in IT_VARIANTS]
    assert all(s.filters[0].operator is Operator.EQ for s in specs)


def test_batches_never_exceed_limit(normalizer):
    planner = QueryPlanner(normalizer, batch_limit=4)
    specs = planner.plan(_intent(FilterClause(DEPARTMENT, Operator.EQ, "IT")))
    assert [len(s.variants) for s in specs] == [4, 2]


def test_batches_cover_every_variant_once(normalizer):
    planner = QueryPlanner(normalizer, batch_limit=4)
    specs = planner.plan(_intent(FilterClause(DEPARTMENT, Operator.EQ, "IT")))
    covered = [v for s in specs for v in s.variants]
    assert sorted(covered) == sorted(IT_VARIANTS)


def test_cartesian_product_of_multi_valued_clauses(normalizer):
    """Department batches times year batches"""
    planner = QueryPlanner(normalizer, batch_limit=3)
    years = FilterClause(YEAR, Operator.IN, ("2020", "2021", "2022", "2023"))
    specs = planner.plan(_intent(FilterClause(DEPARTMENT, Operator.EQ, "IT"), years, pattern_id=PatternId.YEAR_RANGE))
    assert len(specs) == 2 * 2
    assert len({s.spec_id for s in specs}) == 4


def test_spec_ids_are_stable(normalizer):
    planner = QueryPlanner(normalizer)
    intent = _intent(FilterClause(DEPARTMENT, Operator.EQ, "HR"))
    assert [s.spec_id for s in planner.plan(intent)] == [s.spec_id for s in planner.plan(intent)]


def test_tags_plan_one_contains_per_value(normalizer):
    planner = QueryPlanner(normalizer)
    specs = planner.plan(_intent(FilterClause(TAGS, Operator.CONTAINS, ("fraud", "payroll")), pattern_id=PatternId.TAG))
    assert [s.filters[0].operator for s in specs] == [Operator.CONTAINS, Operator.CONTAINS]


def test_empty_intent_is_a_planning_error(normalizer):
    with pytest.raises(PlanningError):
        QueryPlanner(normalizer).plan(_intent())


def test_unknown_field_is_a_planning_error(normalizer):
    with pytest.raises(PlanningError):
        QueryPlanner(normalizer).plan(_intent(FilterClause("colour", Operator.EQ, "red")))


def test_unknown_category_surfaces(normalizer):
    with pytest.raises(UnknownCategory):
        QueryPlanner(normalizer).plan(_intent(FilterClause(DEPARTMENT, Operator.EQ, "Astrology")))


def test_invalid_batch_limit(normalizer):
    with pytest.raises(ValueError):
        QueryPlanner(normalizer, batch_limit=0)


def test_default_sort_per_pattern():
    intent = _intent(FilterClause(YEAR, Operator.IN, ("2021", "2022")), pattern_id=PatternId.YEAR_RANGE)
    assert QueryPlanner.default_sort(intent) == SortSpec("year", descending=True)


def test_default_sort_breaks_ties_by_id():
    intent = _intent(FilterClause(DEPARTMENT, Operator.EQ, "IT"), pattern_id=PatternId.DEPARTMENT)
    assert QueryPlanner.default_sort(intent).fields == ("year", "id")


def test_top_n_plans_one_unfiltered_query(normalizer):
    intent = QueryIntent(pattern_id=PatternId.TOP_N, filters=(), confidence=1.0, limit=5)
    specs = QueryPlanner(normalizer).plan(intent)
    assert len(specs) == 1
    assert specs[0].filters == ()


def test_top_n_sorts_by_priority_whatever_the_pattern():
    intent = QueryIntent(
        pattern_id=PatternId.DEPARTMENT_YEAR,
        filters=(FilterClause(DEPARTMENT, Operator.EQ, "IT"), FilterClause(YEAR, Operator.EQ, "2024")),
        confidence=1.0,
        limit=3,
    )
    assert QueryPlanner.default_sort(intent).fields == ("priority_level", "id")


def test_filterless_intent_without_limit_is_rejected(normalizer):
    with pytest.raises(PlanningError):
        QueryPlanner(normalizer).plan(_intent(pattern_id=PatternId.TOP_N))
