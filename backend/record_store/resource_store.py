from __future__ import annotations

import json
from typing import Any

from .database import SQLiteRecordDB
from .time_utils import to_iso, utc_now


def _json_dumps(value: Any) -> str:
    return json.dumps(value, sort_keys=True, separators=(",", ":"))


class InvalidRecordError(ValueError):
    pass


def record_key(resource: dict[str, Any]) -> tuple[str, str]:
    resource_type = resource.get("resourceType")
    resource_id = resource.get("id")
    if not isinstance(resource_type, str) or not resource_type.strip():
        raise InvalidRecordError("Resource is missing resourceType")
    if resource_id is None or str(resource_id).strip() == "":
        raise InvalidRecordError(f"{resource_type} resource is missing id")
    return resource_type.strip(), str(resource_id).strip()


class ResourceStore:
    """Per-subject store of raw clinical resources keyed by (subject, type, id)."""

    def __init__(self, db: SQLiteRecordDB) -> None:
        self._db = db

    def get_records(self, subject_id: str, resource_type: str) -> list[dict[str, Any]]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT resource_json
                FROM fhir_resources
                WHERE patient_id = ? AND resource_type = ?
                ORDER BY id ASC
                """,
                (subject_id, resource_type),
            ).fetchall()
        return [json.loads(row["resource_json"]) for row in rows]

    def upsert_record(self, subject_id: str, resource: dict[str, Any]) -> tuple[str, str]:
        resource_type, resource_id = record_key(resource)
        now = to_iso(utc_now())
        with self._db.writer() as conn:
            conn.execute(
                """
                INSERT INTO fhir_resources (
                  patient_id, resource_type, resource_id, resource_json, created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(patient_id, resource_type, resource_id) DO UPDATE SET
                  resource_json = excluded.resource_json,
                  updated_at = excluded.updated_at
                """,
                (subject_id, resource_type, resource_id, _json_dumps(resource), now, now),
            )
        return resource_type, resource_id

    def delete_all_for_subject(self, subject_id: str) -> int:
        with self._db.writer() as conn:
            cursor = conn.execute("DELETE FROM fhir_resources WHERE patient_id = ?", (subject_id,))
            return int(cursor.rowcount or 0)

    def get_counts(self, subject_id: str) -> dict[str, int]:
        with self._db.connection() as conn:
            rows = conn.execute(
                """
                SELECT resource_type, COUNT(*) AS total
                FROM fhir_resources
                WHERE patient_id = ?
                GROUP BY resource_type
                ORDER BY resource_type
                """,
                (subject_id,),
            ).fetchall()
        return {row["resource_type"]: int(row["total"]) for row in rows}

    def has_local_data(self, subject_id: str) -> bool:
        with self._db.connection() as conn:
            row = conn.execute(
                "SELECT 1 FROM fhir_resources WHERE patient_id = ? LIMIT 1",
                (subject_id,),
            ).fetchone()
        return row is not None

    def save_fetch_summary(
        self,
        subject_id: str,
        *,
        resource_counts: dict[str, int],
        total_resources: int,
        errors: list[str],
        stored_in_database: bool,
        completed_at: str,
    ) -> None:
        with self._db.writer() as conn:
            conn.execute(
                """
                INSERT INTO fetch_summaries (
                  patient_id, total_resources, resource_counts_json, errors_json,
                  stored_in_database, completed_at
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    subject_id,
                    total_resources,
                    _json_dumps(resource_counts),
                    json.dumps(errors),
                    1 if stored_in_database else 0,
                    completed_at,
                ),
            )

    def latest_fetch_summary(self, subject_id: str) -> dict[str, Any] | None:
        with self._db.connection() as conn:
            row = conn.execute(
                """
                SELECT total_resources, resource_counts_json, errors_json, stored_in_database, completed_at
                FROM fetch_summaries
                WHERE patient_id = ?
                ORDER BY id DESC
                LIMIT 1
                """,
                (subject_id,),
            ).fetchone()
        if row is None:
            return None
        return {
            "resource_counts": json.loads(row["resource_counts_json"]),
            "total_resources": int(row["total_resources"]),
            "errors": json.loads(row["errors_json"]),
            "stored_in_database": bool(row["stored_in_database"]),
            "completed_at": row["completed_at"],
        }
