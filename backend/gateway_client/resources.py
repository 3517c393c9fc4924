from __future__ import annotations

import json
import logging
from typing import Any
from urllib.parse import quote

from .invoker import RpcInvoker

logger = logging.getLogger(__name__)

GENERIC_TOOL = "request_generic_resource"

TOOL_NAMES: dict[str, str] = {
    "Patient": "request_patient_resource",
    "Encounter": "request_encounter_resource",
    "Observation": "request_observation_resource",
    "MedicationStatement": "request_medication_resource",
    "Condition": "request_condition_resource",
    "AllergyIntolerance": "request_allergy_intolerance_resource",
    "Immunization": "request_immunization_resource",
    "DiagnosticReport": "request_diagnostic_report_resource",
    "DocumentReference": "request_document_reference_resource",
    "FamilyMemberHistory": "request_family_member_history_resource",
}

# These types reference their owner through ``patient`` rather than ``subject``.
PATIENT_PARAM_TYPES = frozenset({"AllergyIntolerance", "Immunization", "FamilyMemberHistory"})


def tool_for(resource_type: str) -> str:
    return TOOL_NAMES.get(resource_type, GENERIC_TOOL)


def subject_param_for(resource_type: str) -> str:
    return "patient" if resource_type in PATIENT_PARAM_TYPES else "subject"


def _encode(value: str) -> str:
    return quote(value, safe="/:,|-.")


def build_resource_path(
    resource_type: str,
    subject_id: str | None = None,
    *,
    sort: str | None = None,
    count: int | None = None,
    status: str | None = None,
    extra: dict[str, str] | None = None,
) -> str:
    params: list[tuple[str, str]] = []
    if subject_id:
        params.append((subject_param_for(resource_type), f"Patient/{subject_id}"))
    if status:
        params.append(("status", status))
    for key, value in (extra or {}).items():
        if value:
            params.append((key, value))
    if sort:
        params.append(("_sort", sort))
    if count is not None:
        params.append(("_count", str(count)))
    path = f"/{resource_type}"
    if params:
        path += "?" + "&".join(f"{key}={_encode(value)}" for key, value in params)
    return path


def request_descriptor(path: str) -> dict[str, Any]:
    return {"request": {"method": "GET", "path": path, "body": None}}


def unwrap_tool_result(result: Any) -> Any:
    """Strip the tool-call wrappers a gateway may put around the FHIR payload."""
    data = result
    if isinstance(data, dict) and isinstance(data.get("structuredContent"), dict):
        structured = data["structuredContent"]
        if "result" in structured:
            data = structured["result"]
    if isinstance(data, dict) and isinstance(data.get("content"), list) and data["content"]:
        first = data["content"][0]
        if isinstance(first, dict) and "text" in first:
            text = first["text"]
            if isinstance(text, str):
                try:
                    data = json.loads(text)
                except json.JSONDecodeError:
                    logger.debug("Tool text content is not JSON; keeping raw text")
                    data = text
            elif isinstance(text, dict):
                data = text
    return data


def extract_resources(payload: Any) -> list[dict[str, Any]]:
    data = payload
    if isinstance(data, dict) and isinstance(data.get("response"), dict):
        data = data["response"]
    if isinstance(data, list):
        return [item for item in data if isinstance(item, dict) and item.get("resourceType")]
    if not isinstance(data, dict):
        return []
    if "entry" in data or data.get("resourceType") == "Bundle":
        entries = data.get("entry") or []
        resources: list[dict[str, Any]] = []
        for entry in entries:
            if isinstance(entry, dict) and isinstance(entry.get("resource"), dict):
                resources.append(entry["resource"])
        return resources
    if data.get("resourceType"):
        return [data]
    return []


class ResourceGateway:
    """Remote FHIR reads expressed as named tool calls."""

    def __init__(self, invoker: RpcInvoker) -> None:
        self._invoker = invoker

    @property
    def invoker(self) -> RpcInvoker:
        return self._invoker

    async def fetch(self, resource_type: str, path: str) -> list[dict[str, Any]]:
        result = await self._invoker.call_tool(tool_for(resource_type), request_descriptor(path))
        return extract_resources(unwrap_tool_result(result))

    async def search(
        self,
        resource_type: str,
        subject_id: str,
        *,
        sort: str | None = "-date",
        count: int | None = 10,
        status: str | None = None,
        extra: dict[str, str] | None = None,
    ) -> list[dict[str, Any]]:
        path = build_resource_path(
            resource_type,
            subject_id,
            sort=sort,
            count=count,
            status=status,
            extra=extra,
        )
        return await self.fetch(resource_type, path)

    async def read_patient(self, subject_id: str) -> dict[str, Any] | None:
        resources = await self.fetch("Patient", f"/Patient/{_encode(subject_id)}")
        for resource in resources:
            if resource.get("resourceType") == "Patient":
                return resource
        return None

    async def search_patients(
        self,
        *,
        name: str | None = None,
        birthdate: str | None = None,
    ) -> list[dict[str, Any]]:
        extra: dict[str, str] = {}
        if name:
            extra["name"] = name.strip()
        if birthdate:
            extra["birthdate"] = birthdate.strip()
        path = build_resource_path("Patient", extra=extra)
        return [
            resource
            for resource in await self.fetch("Patient", path)
            if resource.get("resourceType") == "Patient"
        ]
