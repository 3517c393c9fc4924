from __future__ import annotations

import asyncio
import itertools
import json
import logging
import uuid
from enum import Enum
from typing import Any, Callable, Iterable

import httpx

from .config import CLIENT_NAME, CLIENT_VERSION, GatewaySettings
from .envelope import RpcRequest, decode_body, iter_event_payloads
from .errors import MissingTokenError, RemoteError, RpcTimeoutError, SessionError, SessionExpiredError

logger = logging.getLogger(__name__)

SESSION_HEADER_ALIASES = ("mcp-session-id", "x-session-id")

TokenExtractor = Callable[[httpx.Response], "str | None"]


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    FAILED = "failed"


def _token_from_message(message: dict[str, Any]) -> str | None:
    result = message.get("result")
    if isinstance(result, dict):
        candidate = result.get("sessionId")
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    candidate = message.get("sessionId")
    if isinstance(candidate, str) and candidate.strip():
        return candidate.strip()
    return None


def header_token_extractor(header_names: Iterable[str]) -> TokenExtractor:
    wanted = {name.lower() for name in header_names}

    def token_from_header(response: httpx.Response) -> str | None:
        for key, value in response.headers.items():
            if key.lower() in wanted and value.strip():
                return value.strip()
        return None

    return token_from_header


def token_from_json_body(response: httpx.Response) -> str | None:
    try:
        decoded = json.loads(response.text)
    except json.JSONDecodeError:
        return None
    if not isinstance(decoded, dict):
        return None
    return _token_from_message(decoded)


def token_from_event_frames(response: httpx.Response) -> str | None:
    for payload in iter_event_payloads(response.text):
        token = _token_from_message(payload)
        if token:
            return token
    return None


def default_token_extractors(session_header: str) -> list[TokenExtractor]:
    return [
        header_token_extractor((session_header, *SESSION_HEADER_ALIASES)),
        token_from_json_body,
        token_from_event_frames,
    ]


def resolve_session_token(response: httpx.Response, extractors: Iterable[TokenExtractor]) -> str | None:
    for extractor in extractors:
        token = extractor(response)
        if token:
            return token
    return None


def _http_error_message(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        for key in ("detail", "message", "error"):
            value = payload.get(key)
            if isinstance(value, str) and value.strip():
                return value.strip()
    text = response.text.strip()
    if text:
        return f"HTTP {response.status_code}: {text[:200]}"
    return f"HTTP {response.status_code}"


class SessionTransport:
    """Owns the session token and the single POST endpoint of the gateway."""

    def __init__(
        self,
        settings: GatewaySettings,
        *,
        http_client: httpx.AsyncClient | None = None,
        token_extractors: list[TokenExtractor] | None = None,
    ) -> None:
        self._settings = settings
        self._client = http_client
        self._owns_client = http_client is None
        self._extractors = token_extractors or default_token_extractors(settings.session_header)
        self._state = SessionState.UNINITIALIZED
        self._token: str | None = None
        self._lock = asyncio.Lock()
        self._id_prefix = uuid.uuid4().hex[:8]
        self._counter = itertools.count(1)

    @property
    def settings(self) -> GatewaySettings:
        return self._settings

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def token(self) -> str | None:
        return self._token

    @property
    def is_ready(self) -> bool:
        return self._state is SessionState.READY and bool(self._token)

    def next_id(self) -> str:
        return f"{self._id_prefix}-{next(self._counter)}"

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self._settings.timeout_seconds,
                    connect=self._settings.connect_timeout_seconds,
                )
            )
        return self._client

    def _headers(self, *, with_token: bool) -> dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        }
        if self._settings.api_key:
            headers["X-API-Key"] = self._settings.api_key
        if with_token and self._token:
            headers[self._settings.session_header] = self._token
        return headers

    async def _send(self, request: RpcRequest, *, with_token: bool) -> httpx.Response:
        return await self._http().post(
            self._settings.endpoint,
            json=request.wire(),
            headers=self._headers(with_token=with_token),
        )

    async def initialize(self) -> None:
        if self.is_ready:
            return
        async with self._lock:
            if self.is_ready:
                return
            self._state = SessionState.INITIALIZING
            try:
                token = await self._handshake()
            except Exception:
                self._token = None
                self._state = SessionState.FAILED
                raise
            self._token = token
            self._state = SessionState.READY
            logger.info("Gateway session established at %s", self._settings.endpoint)
        await self._notify_initialized()

    async def _handshake(self) -> str:
        request = RpcRequest(
            id=self.next_id(),
            method="initialize",
            params={
                "protocolVersion": self._settings.protocol_version,
                "capabilities": {},
                "clientInfo": {"name": CLIENT_NAME, "version": CLIENT_VERSION},
            },
        )
        try:
            response = await self._send(request, with_token=False)
        except httpx.HTTPError as exc:
            raise SessionError(f"Initialize request failed: {exc}") from exc
        if response.status_code >= 400:
            raise SessionError(f"Initialize failed: {_http_error_message(response)}")

        for message in decode_body(response.text):
            error = message.get("error")
            if isinstance(error, dict) and str(message.get("id")) == request.id:
                raise SessionError(f"Initialize rejected: {error.get('message') or error}")

        token = resolve_session_token(response, self._extractors)
        if not token:
            raise MissingTokenError()
        return token

    async def _notify_initialized(self) -> None:
        notification = RpcRequest(method="notifications/initialized")
        try:
            response = await self._send(notification, with_token=True)
        except httpx.HTTPError as exc:
            logger.warning("initialized notification failed: %s", exc)
            return
        if response.status_code >= 400:
            logger.warning("initialized notification rejected: HTTP %s", response.status_code)

    async def post(self, request: RpcRequest) -> httpx.Response:
        if not self._token:
            self.reset()
            raise MissingTokenError("No session token; the session must be initialized again")
        try:
            response = await self._send(request, with_token=True)
        except httpx.TimeoutException as exc:
            raise RpcTimeoutError(request.method, self._settings.timeout_seconds) from exc
        except httpx.HTTPError as exc:
            self.reset()
            raise RemoteError(f"Gateway request failed: {exc}") from exc

        if response.status_code == 404:
            self.reset()
            raise SessionExpiredError("Gateway no longer recognizes the session")
        if response.status_code >= 400:
            raise RemoteError(_http_error_message(response), status_code=response.status_code)
        return response

    def reset(self) -> None:
        if self._token is not None:
            logger.info("Dropping gateway session")
        self._token = None
        self._state = SessionState.UNINITIALIZED

    async def aclose(self) -> None:
        self.reset()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
