from __future__ import annotations

import json
import logging
import sqlite3
from typing import Any, Iterable

from record_store import ResourceStore
from record_store.time_utils import parse_iso

from .models import QueryFilters, SortSpec
from .vocabulary import CodeBucket, ResourceType

logger = logging.getLogger(__name__)

SORT_CANDIDATES = (
    "date",
    "effectiveDateTime",
    "effectivePeriod.start",
    "period.start",
    "occurrenceDateTime",
    "onsetDateTime",
    "performedDateTime",
    "authoredOn",
    "recordedDate",
    "issued",
    "meta.lastUpdated",
)

CODEABLE_FIELDS = ("code", "medicationCodeableConcept", "vaccineCode", "type")


class LocalResolutionError(Exception):
    pass


def get_path(resource: dict[str, Any], path: str) -> Any:
    current: Any = resource
    for segment in path.split("."):
        if isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, list) and segment.isdigit():
            index = int(segment)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def _codeable_concepts(resource: dict[str, Any]) -> Iterable[dict[str, Any]]:
    for field_name in CODEABLE_FIELDS:
        concept = resource.get(field_name)
        if isinstance(concept, dict):
            yield concept
    for component in resource.get("component") or []:
        if isinstance(component, dict) and isinstance(component.get("code"), dict):
            yield component["code"]


def matches_code(resource: dict[str, Any], bucket: CodeBucket) -> bool:
    for concept in _codeable_concepts(resource):
        for coding in concept.get("coding") or []:
            if not isinstance(coding, dict):
                continue
            code = str(coding.get("code") or "").strip()
            system = str(coding.get("system") or "").lower()
            if code in bucket.codes and (not system or "loinc" in system):
                return True
            display = coding.get("display")
            if isinstance(display, str) and bucket.matches_text(display):
                return True
        text = concept.get("text")
        if isinstance(text, str) and bucket.matches_text(text):
            return True
    narrative = resource.get("text")
    if isinstance(narrative, dict) and isinstance(narrative.get("div"), str):
        return bucket.matches_text(narrative["div"])
    return False


def status_of(resource: dict[str, Any]) -> str | None:
    status = resource.get("status")
    if isinstance(status, str) and status.strip():
        return status.strip()
    clinical = resource.get("clinicalStatus")
    if isinstance(clinical, dict):
        code = get_path(clinical, "coding.0.code") or clinical.get("text")
        if isinstance(code, str) and code.strip():
            return code.strip()
    return None


SortKey = tuple[int, float | str]


def _sort_key(resource: dict[str, Any], paths: Iterable[str]) -> SortKey | None:
    """Dates compare by instant; other values compare as text and rank below any date."""
    for path in paths:
        value = get_path(resource, path)
        if value is None or value == "":
            continue
        if isinstance(value, (dict, list)):
            continue
        parsed = parse_iso(value) if isinstance(value, str) else None
        if parsed is not None:
            return (1, parsed.timestamp())
        return (0, str(value))
    return None


def sort_records(records: list[dict[str, Any]], sort: SortSpec) -> list[dict[str, Any]]:
    paths = [sort.path, *(candidate for candidate in SORT_CANDIDATES if candidate != sort.path)]
    keyed: list[tuple[SortKey, dict[str, Any]]] = []
    missing: list[dict[str, Any]] = []
    for record in records:
        key = _sort_key(record, paths)
        if key is None:
            missing.append(record)
        else:
            keyed.append((key, record))
    keyed.sort(key=lambda item: item[0], reverse=sort.descending)
    return [record for _, record in keyed] + missing


def apply_filters(
    records: list[dict[str, Any]],
    filters: QueryFilters,
    record_index: int | None = None,
) -> list[dict[str, Any]]:
    results = [record for record in records if isinstance(record, dict)]
    if filters.code_search is not None:
        results = [record for record in results if matches_code(record, filters.code_search)]
    if filters.status:
        wanted = filters.status.strip().lower()
        results = [record for record in results if (status_of(record) or "").lower() == wanted]
    if filters.sort is not None:
        results = sort_records(results, filters.sort)
    if filters.limit is not None:
        results = results[: max(filters.limit, 0)]
    if record_index is not None:
        if 0 <= record_index < len(results):
            return [results[record_index]]
        return []
    return results


class LocalResolver:
    def __init__(self, store: ResourceStore) -> None:
        self._store = store

    def _fetch(self, subject_id: str, resource_type: ResourceType) -> list[dict[str, Any]]:
        try:
            return self._store.get_records(subject_id, resource_type.value)
        except (sqlite3.Error, json.JSONDecodeError) as exc:
            raise LocalResolutionError(f"Could not read {resource_type.value} records: {exc}") from exc

    def resolve(
        self,
        subject_id: str,
        resource_type: ResourceType,
        filters: QueryFilters | None = None,
        record_index: int | None = None,
    ) -> list[dict[str, Any]]:
        try:
            records = self._fetch(subject_id, resource_type)
            return apply_filters(records, filters or QueryFilters(), record_index)
        except LocalResolutionError as exc:
            logger.warning("Local resolution failed: %s", exc)
        except Exception:
            logger.exception("Unexpected local resolution failure for %s", resource_type.value)
        return []
