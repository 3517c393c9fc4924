from __future__ import annotations

import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator


class SQLiteRecordDB:
    def __init__(self, db_path: str) -> None:
        self._path = Path(db_path).expanduser().resolve()
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._init_schema()

    @property
    def path(self) -> str:
        return str(self._path)

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(str(self._path), timeout=30.0, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def connection(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    @contextmanager
    def writer(self) -> Iterator[sqlite3.Connection]:
        # Store calls arrive from worker threads; one writer at a time.
        with self._lock, self.connection() as conn:
            yield conn

    def _init_schema(self) -> None:
        with self.writer() as conn:
            conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS fhir_resources (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  patient_id TEXT NOT NULL,
                  resource_type TEXT NOT NULL,
                  resource_id TEXT NOT NULL,
                  resource_json TEXT NOT NULL,
                  created_at TEXT NOT NULL,
                  updated_at TEXT NOT NULL,
                  UNIQUE(patient_id, resource_type, resource_id)
                );

                CREATE TABLE IF NOT EXISTS fetch_summaries (
                  id INTEGER PRIMARY KEY AUTOINCREMENT,
                  patient_id TEXT NOT NULL,
                  total_resources INTEGER NOT NULL,
                  resource_counts_json TEXT NOT NULL,
                  errors_json TEXT NOT NULL,
                  stored_in_database INTEGER NOT NULL,
                  completed_at TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_fhir_resources_patient_type
                  ON fhir_resources(patient_id, resource_type);
                CREATE INDEX IF NOT EXISTS idx_fetch_summaries_patient
                  ON fetch_summaries(patient_id, completed_at);
                """
            )
