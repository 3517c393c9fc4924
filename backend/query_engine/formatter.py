from __future__ import annotations

from typing import Any, Callable

from record_store.time_utils import parse_iso

from .resolver import get_path, status_of
from .vocabulary import ResourceType

LAB_NOTE = "*Note: Lab values should be interpreted by your healthcare provider. Normal ranges may vary.*"

Field = tuple[str, str]


def format_date(value: Any) -> str:
    if not isinstance(value, str):
        return str(value)
    parsed = parse_iso(value)
    return parsed.strftime("%Y-%m-%d") if parsed else value


def concept_name(concept: Any) -> str | None:
    if isinstance(concept, list):
        concept = concept[0] if concept else None
    if not isinstance(concept, dict):
        return None
    for coding in concept.get("coding") or []:
        if isinstance(coding, dict) and coding.get("display"):
            return str(coding["display"])
    text = concept.get("text")
    return str(text) if text else None


def _quantity(value: Any) -> str | None:
    if isinstance(value, dict):
        number = value.get("value")
        if number is None:
            return None
        unit = value.get("unit") or value.get("code") or ""
        return f"{number} {unit}".strip()
    if value is None or value == "":
        return None
    return str(value)


def _with_status(resource: dict[str, Any], fields: list[Field]) -> list[Field]:
    return [("Status", status_of(resource) or "Unknown"), *fields]


def _encounter_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    kind = concept_name(resource.get("type"))
    if kind:
        fields.append(("Type", kind))
    start = get_path(resource, "period.start")
    end = get_path(resource, "period.end")
    if start:
        fields.append(("Date", format_date(start)))
    if end:
        fields.append(("End Date", format_date(end)))
    return _with_status(resource, fields)


def _observation_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    name = concept_name(resource.get("code"))
    if name:
        fields.append(("Test", name))
    value = _quantity(resource.get("valueQuantity")) or _quantity(resource.get("valueString"))
    if value is None and isinstance(resource.get("valueCodeableConcept"), dict):
        value = concept_name(resource["valueCodeableConcept"])
    if value:
        fields.append(("Value", value))
    for component in resource.get("component") or []:
        if not isinstance(component, dict):
            continue
        label = concept_name(component.get("code"))
        reading = _quantity(component.get("valueQuantity"))
        if label and reading:
            fields.append((label, reading))
    if resource.get("effectiveDateTime"):
        fields.append(("Date", format_date(resource["effectiveDateTime"])))
    return _with_status(resource, fields)


def _medication_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    name = concept_name(resource.get("medicationCodeableConcept"))
    if name is None:
        name = get_path(resource, "medicationReference.display")
    if name:
        fields.append(("Medication", str(name)))
    dosage = get_path(resource, "dosage.0.text")
    if dosage:
        fields.append(("Dosage", str(dosage)))
    started = get_path(resource, "effectivePeriod.start") or resource.get("effectiveDateTime")
    if started:
        fields.append(("Start Date", format_date(started)))
    return _with_status(resource, fields)


def _condition_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    name = concept_name(resource.get("code"))
    if name:
        fields.append(("Condition", name))
    if resource.get("onsetDateTime"):
        fields.append(("Onset Date", format_date(resource["onsetDateTime"])))
    return _with_status(resource, fields)


def _report_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    name = concept_name(resource.get("code"))
    if name:
        fields.append(("Report Type", name))
    if resource.get("effectiveDateTime"):
        fields.append(("Date", format_date(resource["effectiveDateTime"])))
    if resource.get("conclusion"):
        fields.append(("Conclusion", str(resource["conclusion"])))
    return _with_status(resource, fields)


def _immunization_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = []
    name = concept_name(resource.get("vaccineCode"))
    if name:
        fields.append(("Vaccine", name))
    if resource.get("occurrenceDateTime"):
        fields.append(("Date", format_date(resource["occurrenceDateTime"])))
    return _with_status(resource, fields)


def _generic_fields(resource: dict[str, Any]) -> list[Field]:
    fields: list[Field] = [
        ("Resource Type", str(resource.get("resourceType"))),
        ("ID", str(resource.get("id"))),
    ]
    status = status_of(resource)
    if status:
        fields.append(("Status", status))
    name = concept_name(resource.get("code"))
    if name:
        fields.append(("Name", name))
    date = resource.get("date") or resource.get("effectiveDateTime")
    if date:
        fields.append(("Date", format_date(date)))
    return fields


_FIELD_BUILDERS: dict[str, Callable[[dict[str, Any]], list[Field]]] = {
    ResourceType.ENCOUNTER.value: _encounter_fields,
    ResourceType.OBSERVATION.value: _observation_fields,
    ResourceType.MEDICATION_STATEMENT.value: _medication_fields,
    ResourceType.CONDITION.value: _condition_fields,
    ResourceType.DIAGNOSTIC_REPORT.value: _report_fields,
    ResourceType.IMMUNIZATION.value: _immunization_fields,
}


def format_records(resources: list[dict[str, Any]], resource_type: ResourceType, *, source: str = "local") -> str:
    if not resources:
        where = "your local records" if source == "local" else "your health records"
        return f"No {resource_type.value} records found in {where}."

    builder = _FIELD_BUILDERS.get(resource_type.value, _generic_fields)
    plural = "s" if len(resources) > 1 else ""
    lines = [f"# {resource_type.value} Records", "", f"Found {len(resources)} record{plural}.", ""]
    for position, resource in enumerate(resources, start=1):
        lines.append(f"## Record {position}")
        lines.append("")
        lines.extend(f"**{label}**: {value}" for label, value in builder(resource))
        lines.extend(["", "---", ""])
    return "\n".join(lines).rstrip() + "\n"


def compose_answer(resources: list[dict[str, Any]], resource_type: ResourceType, *, source: str = "local") -> str:
    body = format_records(resources, resource_type, source=source)
    if not resources:
        return body
    if len(resources) == 1:
        intro = "Here's the information you requested:"
    else:
        intro = f"I found {len(resources)} records. Here's what I found:"
    parts = [intro, "", body]
    if resource_type is ResourceType.OBSERVATION:
        parts.extend(["", LAB_NOTE])
    return "\n".join(parts).rstrip() + "\n"
