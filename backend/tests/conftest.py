from __future__ import annotations

import importlib
import sys
from pathlib import Path
from typing import Callable

import pytest
from fastapi.testclient import TestClient

BACKEND_DIR = Path(__file__).resolve().parents[1]
TESTS_DIR = Path(__file__).resolve().parent
for path in (BACKEND_DIR, TESTS_DIR):
    if str(path) not in sys.path:
        sys.path.insert(0, str(path))

from gateway_fakes import FakeGateway, http_client_for  # noqa: E402
from record_store import ResourceStore, SQLiteRecordDB  # noqa: E402


@pytest.fixture
def store(tmp_path) -> ResourceStore:
    return ResourceStore(SQLiteRecordDB(str(tmp_path / "records.sqlite")))


@pytest.fixture
def backend_module(tmp_path, monkeypatch):
    db_path = tmp_path / "wellwallet-test.sqlite"
    monkeypatch.setenv("WELLWALLET_DB_PATH", str(db_path))
    monkeypatch.setenv("WELLWALLET_GATEWAY_URL", "http://gateway.test")
    monkeypatch.setenv("WELLWALLET_TOOL_WARMUP", "true")
    monkeypatch.delenv("WELLWALLET_DEFAULT_PATIENT_ID", raising=False)
    monkeypatch.delenv("WELLWALLET_API_KEY", raising=False)

    if "main" in sys.modules:
        module = importlib.reload(sys.modules["main"])
    else:
        module = importlib.import_module("main")
    return module


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def client(backend_module, fake_gateway):
    backend_module.container.use_http_client(http_client_for(fake_gateway))
    with TestClient(backend_module.app) as test_client:
        yield test_client


@pytest.fixture
def patient_headers() -> Callable[[str], dict[str, str]]:
    def _make(patient_id: str) -> dict[str, str]:
        return {"X-Patient-Id": patient_id}

    return _make

