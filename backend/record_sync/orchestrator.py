from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Callable

from gateway_client import RemoteError, ResourceGateway
from gateway_client.resources import build_resource_path
from query_engine.vocabulary import ResourceType
from record_store import InvalidRecordError, ResourceStore
from record_store.time_utils import to_iso, utc_now

logger = logging.getLogger(__name__)

SYNC_RESOURCE_TYPES: tuple[ResourceType, ...] = (
    ResourceType.PATIENT,
    ResourceType.ENCOUNTER,
    ResourceType.OBSERVATION,
    ResourceType.MEDICATION_STATEMENT,
    ResourceType.CONDITION,
    ResourceType.ALLERGY_INTOLERANCE,
    ResourceType.IMMUNIZATION,
    ResourceType.DIAGNOSTIC_REPORT,
    ResourceType.DOCUMENT_REFERENCE,
    ResourceType.FAMILY_MEMBER_HISTORY,
)
SYNC_PAGE_SIZE = 1000


class FetchState(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass(frozen=True)
class FetchProgress:
    resource_type: str
    status: FetchState = FetchState.PENDING
    count: int | None = None
    error: str | None = None
    progress: float | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload


@dataclass
class FetchSummary:
    resource_counts: dict[str, int] = field(default_factory=dict)
    total_resources: int = 0
    completed_at: str = ""
    errors: list[str] = field(default_factory=list)
    stored_in_database: bool = True

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


ProgressCallback = Callable[[FetchProgress], None]


class ProgressTransitionError(Exception):
    pass


class ProgressTracker:
    _TRANSITIONS = {
        FetchState.PENDING: {FetchState.IN_PROGRESS, FetchState.ERROR},
        FetchState.IN_PROGRESS: {FetchState.IN_PROGRESS, FetchState.COMPLETED, FetchState.ERROR},
        FetchState.COMPLETED: set(),
        FetchState.ERROR: set(),
    }

    def __init__(self, resource_types: tuple[ResourceType, ...], on_progress: ProgressCallback | None = None) -> None:
        self._statuses = {rt.value: FetchProgress(resource_type=rt.value) for rt in resource_types}
        self._on_progress = on_progress

    def get(self, resource_type: str) -> FetchProgress:
        return self._statuses[resource_type]

    def transition(
        self,
        resource_type: str,
        status: FetchState,
        *,
        count: int | None = None,
        error: str | None = None,
        progress: float | None = None,
    ) -> FetchProgress:
        current = self._statuses[resource_type]
        allowed = self._TRANSITIONS[current.status]
        if status not in allowed:
            raise ProgressTransitionError(
                f"{resource_type}: cannot move from {current.status.value} to {status.value}"
            )
        updated = replace(
            current,
            status=status,
            count=count if count is not None else current.count,
            error=error if error is not None else current.error,
            progress=progress if progress is not None else current.progress,
        )
        self._statuses[resource_type] = updated
        if self._on_progress is not None:
            try:
                self._on_progress(updated)
            except Exception:
                logger.exception("Progress callback failed for %s", resource_type)
        return updated


def step_progress(step: int, total: int) -> float:
    return round(0.3 + (step / total) * 0.7, 4)


class SyncOrchestrator:
    """Replaces a subject's local records with a fresh copy from the gateway.

    Patient is fetched first by id and always counts as exactly one record;
    the remaining types are fetched one after another. A failing type is
    recorded in the summary and the run moves on to the next type.
    """

    def __init__(
        self,
        gateway: ResourceGateway,
        store: ResourceStore,
        *,
        resource_types: tuple[ResourceType, ...] = SYNC_RESOURCE_TYPES,
        page_size: int = SYNC_PAGE_SIZE,
    ) -> None:
        self._gateway = gateway
        self._store = store
        self._resource_types = resource_types
        self._page_size = page_size

    async def fetch_all(self, subject_id: str, on_progress: ProgressCallback | None = None) -> FetchSummary:
        tracker = ProgressTracker(self._resource_types, on_progress)
        summary = FetchSummary()

        patient = ResourceType.PATIENT.value
        tracker.transition(patient, FetchState.IN_PROGRESS, progress=0.1)
        removed = await asyncio.to_thread(self._store.delete_all_for_subject, subject_id)
        logger.info("Cleared %s local records for subject %s", removed, subject_id)

        tracker.transition(patient, FetchState.IN_PROGRESS, progress=0.2)
        try:
            resource = await self._gateway.read_patient(subject_id)
            if resource is None:
                raise RemoteError(f"Patient/{subject_id} was not returned by the gateway")
            _, clean = await self._save_all(subject_id, [resource])
            if not clean:
                summary.stored_in_database = False
        except Exception as exc:
            self._record_failure(tracker, summary, patient, exc)
        else:
            summary.resource_counts[patient] = 1
            tracker.transition(patient, FetchState.COMPLETED, count=1)

        remaining = [rt for rt in self._resource_types if rt is not ResourceType.PATIENT]
        for step, resource_type in enumerate(remaining, start=1):
            name = resource_type.value
            tracker.transition(
                name,
                FetchState.IN_PROGRESS,
                progress=step_progress(step, len(self._resource_types)),
            )
            try:
                resources = await self._gateway.fetch(name, self._search_path(resource_type, subject_id))
                saved, clean = await self._save_all(subject_id, resources)
            except Exception as exc:
                self._record_failure(tracker, summary, name, exc)
                continue
            if not clean:
                summary.stored_in_database = False
            summary.resource_counts[name] = len(saved)
            tracker.transition(name, FetchState.COMPLETED, count=len(saved))

        summary.total_resources = sum(summary.resource_counts.values())
        summary.completed_at = to_iso(utc_now())
        await self._persist_summary(subject_id, summary)
        logger.info(
            "Sync for %s finished: %s resources, %s errors",
            subject_id,
            summary.total_resources,
            len(summary.errors),
        )
        return summary

    def _search_path(self, resource_type: ResourceType, subject_id: str) -> str:
        return build_resource_path(resource_type.value, subject_id, count=self._page_size)

    @staticmethod
    def _record_failure(tracker: ProgressTracker, summary: FetchSummary, name: str, exc: Exception) -> None:
        logger.warning("Sync of %s failed: %s", name, exc)
        summary.errors.append(f"{name}: {exc}")
        tracker.transition(name, FetchState.ERROR, error=str(exc))

    async def _save_all(
        self, subject_id: str, resources: list[dict[str, Any]]
    ) -> tuple[set[tuple[str, str]], bool]:
        """Upsert every resource; returns the distinct keys saved and whether every write succeeded."""
        return await asyncio.to_thread(self._save_all_sync, subject_id, resources)

    def _save_all_sync(
        self, subject_id: str, resources: list[dict[str, Any]]
    ) -> tuple[set[tuple[str, str]], bool]:
        saved: set[tuple[str, str]] = set()
        clean = True
        for resource in resources:
            try:
                saved.add(self._store.upsert_record(subject_id, resource))
            except InvalidRecordError as exc:
                logger.warning("Skipping resource without identity: %s", exc)
                clean = False
            except sqlite3.Error as exc:
                logger.error("Could not store resource for %s: %s", subject_id, exc)
                clean = False
        return saved, clean

    async def _persist_summary(self, subject_id: str, summary: FetchSummary) -> None:
        try:
            await asyncio.to_thread(
                self._store.save_fetch_summary,
                subject_id,
                resource_counts=summary.resource_counts,
                total_resources=summary.total_resources,
                errors=summary.errors,
                stored_in_database=summary.stored_in_database,
                completed_at=summary.completed_at,
            )
        except sqlite3.Error as exc:
            logger.error("Could not persist fetch summary for %s: %s", subject_id, exc)
            summary.stored_in_database = False
