from __future__ import annotations

import asyncio

import pytest

from query_engine import LocalResolver, QueryEngine, QueryPlanner, ResourceType
from query_engine.formatter import LAB_NOTE, compose_answer, format_records
from gateway_fakes import FakeGateway, gateway_for
from fhir_samples import encounter, immunization, medication, observation, report, seed


@pytest.fixture
def fake() -> FakeGateway:
    return FakeGateway(
        resources={
            "Encounter": [encounter("remote-e1", "2024-06-01"), encounter("remote-e2", "2024-08-01")],
            "Immunization": [immunization("remote-i1", "Tdap", "2022-04-04")],
        }
    )


def _engine(store, fake, **planner_kwargs) -> QueryEngine:
    return QueryEngine(QueryPlanner(**planner_kwargs), LocalResolver(store), gateway_for(fake))


def test_local_hit_does_not_touch_the_gateway(store, fake):
    seed(store, "p1", encounter("e1", "2024-01-01"), encounter("e2", "2024-03-01"))
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("show me my recent visits", "p1"))

    assert answer.source == "local"
    assert [r["id"] for r in answer.records] == ["e2", "e1"]
    assert answer.markdown.startswith("I found 2 records.")
    assert fake.requests == []


def test_empty_local_result_falls_back_to_gateway(store, fake):
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("show me my recent visits", "p1"))

    assert answer.source == "remote"
    assert [r["id"] for r in answer.records] == ["remote-e2", "remote-e1"]
    paths = fake.tool_paths()
    assert paths == ["/Encounter?subject=Patient/p1&_sort=-date&_count=10"]


def test_remote_fallback_uses_patient_parameter_where_required(store, fake):
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("list my vaccination history please", "p1"))

    assert answer.source == "remote"
    assert fake.tool_paths()[0].startswith("/Immunization?patient=Patient/p1")


def test_local_only_query_never_calls_gateway(store, fake):
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("show my medications offline only", "p1"))

    assert answer.source == "local"
    assert answer.records == []
    assert "No MedicationStatement records found" in answer.markdown
    assert fake.requests == []


def test_remote_failure_becomes_plain_language_answer(store):
    failing = FakeGateway(failing_types={"Encounter": "network"})
    engine = _engine(store, failing)

    answer = asyncio.run(engine.ask("show me my recent visits", "p1"))

    assert answer.source == "remote"
    assert answer.records == []
    assert answer.error
    assert "health records server" in answer.markdown


def test_clarification_is_returned_and_recorded(store, fake):
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("show me", "p1"))

    assert answer.needs_clarification
    assert answer.source == "none"
    assert "- Medications" in answer.markdown
    assert [turn.role for turn in engine.history] == ["user", "assistant"]


def test_follow_up_question_uses_previous_resource_type(store, fake):
    seed(
        store,
        "p1",
        medication("m1", "Lisinopril", start="2023-01-01"),
        medication("m2", "Metformin", start="2022-01-01"),
    )
    engine = _engine(store, fake)

    async def scenario():
        await engine.ask("show me my medications", "p1")
        return await engine.ask("show me record 2", "p1")

    answer = asyncio.run(scenario())

    assert answer.plan is not None
    assert answer.plan.resource_type is ResourceType.MEDICATION_STATEMENT
    assert [r["id"] for r in answer.records] == ["m2"]
    assert answer.markdown.startswith("Here's the information you requested:")


def test_observation_answers_carry_lab_note(store, fake):
    seed(store, "p1", observation("o1", "2093-3", "Cholesterol", 182, "mg/dL", "2024-02-02"))
    engine = _engine(store, fake)

    answer = asyncio.run(engine.ask("what is my latest cholesterol", "p1"))

    assert answer.source == "local"
    assert LAB_NOTE in answer.markdown
    assert "**Value**: 182 mg/dL" in answer.markdown
    assert answer.suggestions


def test_format_records_per_type_fields():
    text = format_records([report("r1", "Lipid panel", "2024-02-03T09:30:00Z", conclusion="Normal")], ResourceType.DIAGNOSTIC_REPORT)
    assert "# DiagnosticReport Records" in text
    assert "Found 1 record." in text
    assert "**Report Type**: Lipid panel" in text
    assert "**Date**: 2024-02-03" in text
    assert "**Conclusion**: Normal" in text

    visit = format_records([encounter("e1", "2024-01-05T10:00:00Z")], ResourceType.ENCOUNTER)
    assert "**Type**: Office visit" in visit
    assert "**Status**: finished" in visit

    generic = format_records([{"resourceType": "DocumentReference", "id": "d1", "date": "2020-02-02"}], ResourceType.DOCUMENT_REFERENCE)
    assert "**ID**: d1" in generic


def test_compose_answer_for_no_matches():
    assert compose_answer([], ResourceType.CONDITION) == "No Condition records found in your local records."


def _newer_vitals(count: int) -> list[dict]:
    return [
        observation(f"hr{day}", "8867-4", "Heart rate", 60 + day, "/min", f"2024-02-{day:02d}")
        for day in range(count, 0, -1)
    ]


def test_lab_fallback_sends_codes_and_filters_before_limiting(store):
    older_cholesterol = observation("chol", "2093-3", "Cholesterol", 201, "mg/dL", "2022-11-20")
    server = FakeGateway(
        resources={"Observation": [*_newer_vitals(10), older_cholesterol]},
        honor_code_filter=False,
    )
    engine = _engine(store, server)

    answer = asyncio.run(engine.ask("what is my latest cholesterol", "p1"))

    assert answer.source == "remote"
    assert [r["id"] for r in answer.records] == ["chol"]
    path = server.tool_paths()[0]
    assert "code=http://loinc.org|2085-9,http://loinc.org|2089-1,http://loinc.org|2093-3,http://loinc.org|2571-8" in path
    assert path.endswith("&_sort=-date&_count=50")


def test_lab_fallback_applies_limit_after_code_filter(store):
    readings = [
        observation(f"chol{month}", "2093-3", "Cholesterol", 180 + month, "mg/dL", f"2023-{month:02d}-01")
        for month in range(1, 13)
    ]
    server = FakeGateway(resources={"Observation": [*_newer_vitals(5), *readings]})
    engine = _engine(store, server)

    answer = asyncio.run(engine.ask("what is my latest cholesterol", "p1"))

    assert len(answer.records) == 10
    assert answer.records[0]["id"] == "chol12"


def test_plan_keeps_the_question_text(store, fake):
    answer = asyncio.run(_engine(store, fake).ask("Show me my recent visits", "p1"))
    assert answer.to_dict()["plan"]["text"] == "Show me my recent visits"
