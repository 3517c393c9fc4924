from __future__ import annotations

import json
import logging
from typing import Any, Iterator

from pydantic import BaseModel, ConfigDict, Field

from .errors import NoMatchingResponseError, RemoteError

logger = logging.getLogger(__name__)


class RpcRequest(BaseModel):
    jsonrpc: str = "2.0"
    id: str | None = None
    method: str
    params: dict[str, Any] = Field(default_factory=dict)

    def wire(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class RpcResponse(BaseModel):
    model_config = ConfigDict(extra="ignore")

    jsonrpc: str = "2.0"
    id: str | int | None = None
    result: Any = None
    error: dict[str, Any] | None = None

    def raise_for_error(self) -> None:
        if self.error is None:
            return
        message = str(self.error.get("message") or "Remote call failed")
        code = self.error.get("code")
        raise RemoteError(
            message,
            code=code if isinstance(code, int) else None,
            data=self.error.get("data"),
        )


def iter_event_payloads(body: str) -> Iterator[dict[str, Any]]:
    """Yield every JSON object carried by a ``data:`` line of a streamed body."""
    for raw_line in body.splitlines():
        line = raw_line.strip()
        if not line.startswith("data:"):
            continue
        chunk = line[5:].strip()
        if not chunk:
            continue
        try:
            decoded = json.loads(chunk)
        except json.JSONDecodeError:
            continue
        if isinstance(decoded, dict):
            yield decoded
        elif isinstance(decoded, list):
            for item in decoded:
                if isinstance(item, dict):
                    yield item


def decode_body(body: str) -> list[dict[str, Any]]:
    text = body.strip()
    if not text:
        return []
    try:
        decoded = json.loads(text)
    except json.JSONDecodeError:
        return list(iter_event_payloads(body))
    if isinstance(decoded, dict):
        return [decoded]
    if isinstance(decoded, list):
        return [item for item in decoded if isinstance(item, dict)]
    return []


def select_response(messages: list[dict[str, Any]], request_id: str) -> RpcResponse:
    fallback: dict[str, Any] | None = None
    for message in messages:
        message_id = message.get("id")
        if message_id is None:
            continue
        if str(message_id) == request_id:
            return RpcResponse.model_validate(message)
        if fallback is None:
            fallback = message
    if fallback is None:
        raise NoMatchingResponseError(request_id)
    logger.warning(
        "No frame matched request id %s; using first frame with id %s",
        request_id,
        fallback.get("id"),
    )
    return RpcResponse.model_validate(fallback)
