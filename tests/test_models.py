import pytest

from audit_chatbot.core.models import FieldFilter, Operator, Record, is_valid_record_id


def test_from_mapping_accepts_api_and_export_spellings():
    rec = Record.from_mapping(
        {
            "AuditResultId": "24SH0042",
            "Year": 2024.0,
            "departmentRaw": "Departemen IT",
            "priorityLevel": "High",
            "tags": ["Access", " backup "],
        }
    )
    assert rec.id == "24SH0042"
    assert rec.year == "2024"
    assert rec.department_raw == "Departemen IT"
    assert rec.priority_level == "High"
    assert rec.tags == frozenset({"access", "backup"})


def test_missing_values_become_empty_strings():
    rec = Record.from_mapping({"id": "24SH0001", "year": "2024", "department": None, "title": float("nan")})
    assert rec.department_raw == ""
    assert rec.title == ""


@pytest.mark.parametrize("value, ok", [("24SH0042", True), ("24sh0042", False), ("2024SH42", False), (None, False)])
def test_record_id_format(value, ok):
    assert is_valid_record_id(value) is ok


def test_filter_describe_and_match():
    rec = Record(id="24SH0001", year="2024", department_raw="ICT", tags=frozenset({"access"}))
    in_filter = FieldFilter("department_raw", Operator.IN, ("IT", "ICT"))
    assert in_filter.describe() == "department_raw in (IT, ICT)"
    assert in_filter.matches(rec)
    assert FieldFilter("tags", Operator.CONTAINS, "access").matches(rec)
    assert not FieldFilter("year", Operator.EQ, "2023").matches(rec)
