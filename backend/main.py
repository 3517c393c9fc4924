from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator

import httpx
from fastapi import FastAPI, Header, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field

from gateway_client import GatewayError, GatewaySettings, ResourceGateway, build_gateway
from query_engine import (
    ConversationHistory,
    LocalResolver,
    QueryEngine,
    QueryFilters,
    QueryPlanner,
    ResourceType,
    SortSpec,
)
from query_engine.vocabulary import code_bucket_by_name
from record_store import ResourceStore, SQLiteRecordDB
from record_sync import FetchProgress, FetchSummary, SyncOrchestrator

_ENV_KEY_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _load_local_env_file(path: Path) -> None:
    try:
        lines = path.read_text(encoding="utf-8").splitlines()
    except OSError:
        return
    for raw in lines:
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not _ENV_KEY_RE.fullmatch(key):
            continue
        value = value.strip()
        if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
            value = value[1:-1]
        os.environ.setdefault(key, value)


def _bootstrap_local_env() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    for candidate in (repo_root / ".env", repo_root / "backend/.env"):
        if candidate.exists():
            _load_local_env_file(candidate)


_bootstrap_local_env()

logging.basicConfig(
    level=os.getenv("WELLWALLET_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("wellwallet")


class QueryRequest(BaseModel):
    message: str = Field(min_length=1, max_length=2000)
    subject_id: str | None = None


class SyncRequest(BaseModel):
    subject_id: str | None = None


class WalletApp:
    def __init__(self, http_client: httpx.AsyncClient | None = None) -> None:
        db_path = os.getenv(
            "WELLWALLET_DB_PATH",
            str((Path(__file__).resolve().parent / "wellwallet.sqlite")),
        )
        self.db = SQLiteRecordDB(db_path)
        self.store = ResourceStore(self.db)
        self.resolver = LocalResolver(self.store)
        self.settings = GatewaySettings.from_env()
        self.remote_enabled = os.getenv("WELLWALLET_REMOTE_FALLBACK", "true").lower() in {"1", "true", "yes"}
        self.planner = QueryPlanner(remote_enabled=self.remote_enabled)
        self._histories: dict[str, ConversationHistory] = {}
        self.use_http_client(http_client)

    def use_http_client(self, http_client: httpx.AsyncClient | None) -> None:
        self.gateway: ResourceGateway = build_gateway(self.settings, http_client=http_client)
        self.sync = SyncOrchestrator(self.gateway, self.store)

    def engine_for(self, subject_id: str) -> QueryEngine:
        history = self._histories.setdefault(subject_id, ConversationHistory())
        return QueryEngine(self.planner, self.resolver, self.gateway, history)

    def forget_history(self, subject_id: str) -> None:
        self._histories.pop(subject_id, None)

    async def aclose(self) -> None:
        await self.gateway.invoker.transport.aclose()


container = WalletApp()


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    await container.aclose()


app = FastAPI(title="Well Wallet Backend", lifespan=_lifespan)

allowed_origins = os.getenv("ALLOWED_ORIGINS", "http://localhost:3000").split(",")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[origin.strip() for origin in allowed_origins],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


_SUBJECT_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9.\-]{0,63}$")


def _validated_subject_id(value: str) -> str:
    candidate = value.strip()
    if not _SUBJECT_ID_RE.fullmatch(candidate):
        raise HTTPException(status_code=400, detail="Invalid patient id")
    return candidate


def resolve_subject_id(x_patient_id: str | None, body_subject_id: str | None = None) -> str:
    if x_patient_id is not None:
        return _validated_subject_id(x_patient_id)
    if body_subject_id:
        return _validated_subject_id(body_subject_id)
    default = os.getenv("WELLWALLET_DEFAULT_PATIENT_ID", "").strip()
    if default:
        return _validated_subject_id(default)
    raise HTTPException(status_code=400, detail="Missing patient id")


def _resource_type_or_404(value: str) -> ResourceType:
    resource_type = ResourceType.parse(value)
    if resource_type is None:
        raise HTTPException(status_code=404, detail=f"Unknown resource type: {value}")
    return resource_type


def _emit_sse(event: str, data: dict[str, Any]) -> str:
    return f"event: {event}\ndata: {json.dumps(data)}\n\n"


@app.get("/health")
def health() -> dict[str, Any]:
    transport = container.gateway.invoker.transport
    return {
        "status": "ok",
        "session_state": transport.state.value,
        "gateway": container.settings.endpoint,
        "tool_warmup": container.gateway.invoker.warmup.enabled,
        "db_path": container.db.path,
    }


@app.post("/query")
async def query(payload: QueryRequest, x_patient_id: str | None = Header(default=None)) -> dict[str, Any]:
    subject_id = resolve_subject_id(x_patient_id, payload.subject_id)
    answer = await container.engine_for(subject_id).ask(payload.message, subject_id)
    return answer.to_dict()


@app.delete("/query/history")
def clear_history(x_patient_id: str | None = Header(default=None)) -> dict[str, Any]:
    subject_id = resolve_subject_id(x_patient_id)
    container.forget_history(subject_id)
    return {"status": "cleared"}


@app.get("/records/counts")
async def record_counts(x_patient_id: str | None = Header(default=None)) -> dict[str, Any]:
    subject_id = resolve_subject_id(x_patient_id)
    counts = await asyncio.to_thread(container.store.get_counts, subject_id)
    return {"subject_id": subject_id, "counts": counts, "total": sum(counts.values())}


@app.get("/records/{resource_type}")
async def list_records(
    resource_type: str,
    sort: str | None = Query(default=None, pattern="^(asc|desc)$"),
    limit: int | None = Query(default=None, ge=1, le=1000),
    index: int | None = Query(default=None, ge=0),
    status: str | None = None,
    code: str | None = None,
    x_patient_id: str | None = Header(default=None),
) -> dict[str, Any]:
    subject_id = resolve_subject_id(x_patient_id)
    target = _resource_type_or_404(resource_type)
    bucket = None
    if code:
        bucket = code_bucket_by_name(code)
        if bucket is None:
            raise HTTPException(status_code=400, detail=f"Unknown code search: {code}")
    filters = QueryFilters(
        code_search=bucket,
        status=status,
        sort=SortSpec(target.date_path, descending=sort == "desc") if sort else None,
        limit=limit,
    )
    records = await asyncio.to_thread(container.resolver.resolve, subject_id, target, filters, index)
    return {"resource_type": target.value, "count": len(records), "records": records}


@app.get("/patients/search")
async def search_patients(name: str | None = None, birthdate: str | None = None) -> dict[str, Any]:
    if not (name or birthdate):
        raise HTTPException(status_code=400, detail="Provide name or birthdate")
    try:
        patients = await container.gateway.search_patients(name=name, birthdate=birthdate)
    except GatewayError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return {"patients": patients}


@app.get("/sync/summary")
async def sync_summary(x_patient_id: str | None = Header(default=None)) -> dict[str, Any]:
    subject_id = resolve_subject_id(x_patient_id)
    summary = await asyncio.to_thread(container.store.latest_fetch_summary, subject_id)
    if summary is None:
        raise HTTPException(status_code=404, detail="No sync has completed for this patient")
    return summary


@app.post("/sync/stream")
async def sync_stream(payload: SyncRequest, x_patient_id: str | None = Header(default=None)):
    subject_id = resolve_subject_id(x_patient_id, payload.subject_id)

    async def event_stream() -> AsyncIterator[str]:
        events: asyncio.Queue[tuple[str, dict[str, Any]] | None] = asyncio.Queue()

        def on_progress(update: FetchProgress) -> None:
            events.put_nowait(("progress", update.to_dict()))

        task = asyncio.create_task(container.sync.fetch_all(subject_id, on_progress))
        task.add_done_callback(lambda _: events.put_nowait(None))
        while True:
            item = await events.get()
            if item is None:
                break
            event, data = item
            yield _emit_sse(event, data)
        try:
            summary: FetchSummary = task.result()
        except Exception as exc:
            logger.exception("Sync for %s aborted", subject_id)
            yield _emit_sse("error", {"message": f"Sync failed: {exc}"})
            return
        container.forget_history(subject_id)
        yield _emit_sse("summary", summary.to_dict())

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/session/reset")
def reset_session() -> dict[str, Any]:
    transport = container.gateway.invoker.transport
    transport.reset()
    return {"session_state": transport.state.value}
