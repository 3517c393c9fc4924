from __future__ import annotations

import sqlite3

from query_engine import LocalResolver, QueryFilters, ResourceType, SortSpec, apply_filters
from query_engine.vocabulary import code_bucket_by_name
from fhir_samples import condition, encounter, medication, observation, seed


def _ids(records):
    return [record["id"] for record in records]


def test_out_of_range_record_index_returns_empty(store):
    seed(store, "p1", encounter("e1", "2024-01-01"), encounter("e2", "2024-02-01"))
    resolver = LocalResolver(store)

    assert resolver.resolve("p1", ResourceType.ENCOUNTER, QueryFilters(), record_index=2) == []
    assert resolver.resolve("p1", ResourceType.ENCOUNTER, QueryFilters(), record_index=50) == []
    assert resolver.resolve("p1", ResourceType.ENCOUNTER, QueryFilters(), record_index=-1) == []
    assert _ids(resolver.resolve("p1", ResourceType.ENCOUNTER, QueryFilters(), record_index=1)) == ["e2"]


def test_missing_sort_field_records_go_last_in_original_order():
    records = [
        encounter("m1", None),
        encounter("a", "2023-05-01"),
        encounter("m2", None),
        encounter("b", "2024-07-15T10:00:00Z"),
        encounter("m3", None),
        encounter("c", "2022-01-09"),
    ]

    descending = apply_filters(records, QueryFilters(sort=SortSpec("period.start", descending=True)))
    ascending = apply_filters(records, QueryFilters(sort=SortSpec("period.start", descending=False)))

    assert _ids(descending) == ["b", "a", "c", "m1", "m2", "m3"]
    assert _ids(ascending) == ["c", "a", "b", "m1", "m2", "m3"]


def test_sort_compares_dates_chronologically_across_formats():
    records = [
        encounter("late", "2024-03-01T08:00:00-05:00"),
        encounter("early", "2024-03-01T12:00:00Z"),
        encounter("year-only", "2023"),
    ]
    ordered = apply_filters(records, QueryFilters(sort=SortSpec("period.start")))
    assert _ids(ordered) == ["late", "early", "year-only"]


def test_sort_orders_fractional_seconds_within_the_same_second():
    records = [
        encounter("whole-second", "2024-03-01T12:00:00Z"),
        encounter("half-second", "2024-03-01T12:00:00.500Z"),
        encounter("offset-later", "2024-03-01T07:00:00.750-05:00"),
    ]

    descending = apply_filters(records, QueryFilters(sort=SortSpec("period.start")))
    ascending = apply_filters(records, QueryFilters(sort=SortSpec("period.start", descending=False)))

    assert _ids(descending) == ["offset-later", "half-second", "whole-second"]
    assert _ids(ascending) == ["whole-second", "half-second", "offset-later"]


def test_sort_falls_back_to_other_date_fields():
    records = [
        {"resourceType": "DocumentReference", "id": "d1", "date": "2021-01-01"},
        {"resourceType": "DocumentReference", "id": "d2", "meta": {"lastUpdated": "2023-01-01T00:00:00Z"}},
        {"resourceType": "DocumentReference", "id": "d3"},
    ]
    ordered = apply_filters(records, QueryFilters(sort=SortSpec("period.start")))
    assert _ids(ordered) == ["d2", "d1", "d3"]


def test_code_search_matches_code_display_or_text():
    cholesterol = code_bucket_by_name("cholesterol")
    records = [
        observation("by-code", "2093-3", "Lipid thing", 190, "mg/dL", "2024-01-01"),
        observation("glucose", "2339-0", "Glucose", 95, "mg/dL", "2024-01-02"),
        {
            "resourceType": "Observation",
            "id": "by-display",
            "code": {"coding": [{"system": "urn:local", "code": "X1", "display": "HDL Cholesterol"}]},
        },
        {"resourceType": "Observation", "id": "by-text", "code": {"text": "Total cholesterol panel"}},
        {
            "resourceType": "Observation",
            "id": "by-narrative",
            "code": {"coding": [{"system": "urn:local", "code": "Z9"}]},
            "text": {"div": "<div>Fasting cholesterol drawn</div>"},
        },
        {
            "resourceType": "Observation",
            "id": "wrong-system",
            "code": {"coding": [{"system": "http://snomed.info/sct", "code": "2093-3"}]},
        },
    ]

    matched = apply_filters(records, QueryFilters(code_search=cholesterol))
    assert _ids(matched) == ["by-code", "by-display", "by-text", "by-narrative"]


def test_code_search_checks_panel_components():
    bp = code_bucket_by_name("blood pressure")
    panel = {
        "resourceType": "Observation",
        "id": "bp",
        "code": {"coding": [{"system": "http://loinc.org", "code": "0000-0"}]},
        "component": [{"code": {"coding": [{"system": "http://loinc.org", "code": "8480-6"}]}, "valueQuantity": {"value": 120}}],
    }
    assert _ids(apply_filters([panel], QueryFilters(code_search=bp))) == ["bp"]


def test_status_filter_is_case_insensitive_and_reads_clinical_status():
    records = [
        medication("m1", "Lisinopril", status="Active"),
        medication("m2", "Metformin", status="stopped"),
        condition("c1", "Asthma", clinical_status="active"),
    ]
    assert _ids(apply_filters(records, QueryFilters(status="ACTIVE"))) == ["m1", "c1"]


def test_filters_apply_in_order_sort_then_limit_then_index():
    records = [encounter(f"e{day}", f"2024-01-{day:02d}") for day in range(1, 16)]
    filters = QueryFilters(sort=SortSpec("period.start"), limit=10)

    limited = apply_filters(records, filters)
    assert _ids(limited)[:2] == ["e15", "e14"]
    assert len(limited) == 10
    assert _ids(apply_filters(records, filters, record_index=2)) == ["e13"]
    assert apply_filters(records, filters, record_index=10) == []


def test_store_failures_resolve_to_empty(caplog):
    class BrokenStore:
        def get_records(self, subject_id, resource_type):
            raise sqlite3.OperationalError("database is locked")

    resolver = LocalResolver(BrokenStore())
    with caplog.at_level("WARNING"):
        assert resolver.resolve("p1", ResourceType.OBSERVATION, QueryFilters()) == []
    assert "database is locked" in caplog.text


def test_code_search_by_raw_loinc_code():
    bucket = code_bucket_by_name("8310-5")
    records = [
        observation("temp", "8310-5", "Body temperature", 37.1, "Cel", "2024-01-01"),
        observation("chol", "2093-3", "Cholesterol", 180, "mg/dL", "2024-01-01"),
    ]

    assert bucket is not None
    assert _ids(apply_filters(records, QueryFilters(code_search=bucket))) == ["temp"]
