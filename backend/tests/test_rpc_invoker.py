from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from gateway_client import (
    NoMatchingResponseError,
    RemoteError,
    RpcInvoker,
    RpcTimeoutError,
    SessionTransport,
    WarmupBeforeCall,
)
from gateway_client.envelope import decode_body, select_response
from gateway_fakes import TOKEN, FakeGateway, http_client_for, settings, sse_body


def _scripted(reply):
    """Gateway that handles the handshake and answers everything else via ``reply``."""

    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        if body.get("method") == "initialize":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {}}, headers={"Mcp-Session-Id": TOKEN})
        if "id" not in body:
            return httpx.Response(202)
        return reply(body)

    return handler


def _invoker(handler, *, timeout: float = 5.0, warmup: bool = True) -> RpcInvoker:
    transport = SessionTransport(settings(), http_client=http_client_for(handler))
    return RpcInvoker(transport, timeout_seconds=timeout, warmup=WarmupBeforeCall(enabled=warmup))


def test_call_initializes_session_first():
    fake = FakeGateway()
    invoker = _invoker(fake)

    tools = asyncio.run(invoker.list_tools())

    assert fake.methods()[:3] == ["initialize", "notifications/initialized", "tools/list"]
    assert any(tool["name"] == "request_generic_resource" for tool in tools)


def test_streamed_response_is_matched_by_request_id():
    def reply(body):
        text = sse_body(
            {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}},
            {"jsonrpc": "2.0", "id": "someone-else", "result": {"value": "wrong"}},
            {"jsonrpc": "2.0", "id": body["id"], "result": {"value": "right"}},
        )
        return httpx.Response(200, text=text, headers={"content-type": "text/event-stream"})

    invoker = _invoker(_scripted(reply))
    assert asyncio.run(invoker.call("resources/read")) == {"value": "right"}


def test_falls_back_to_first_frame_with_any_id(caplog):
    def reply(body):
        text = sse_body(
            {"jsonrpc": "2.0", "method": "notifications/message", "params": {}},
            {"jsonrpc": "2.0", "id": 999, "result": {"value": "first-with-id"}},
            {"jsonrpc": "2.0", "id": 1000, "result": {"value": "second-with-id"}},
        )
        return httpx.Response(200, text=text)

    invoker = _invoker(_scripted(reply))
    with caplog.at_level("WARNING"):
        result = asyncio.run(invoker.call("resources/read"))

    assert result == {"value": "first-with-id"}
    assert "No frame matched request id" in caplog.text


def test_no_frame_with_id_is_no_matching_response():
    def reply(body):
        return httpx.Response(200, text=sse_body({"jsonrpc": "2.0", "method": "notifications/message"}))

    invoker = _invoker(_scripted(reply))
    with pytest.raises(NoMatchingResponseError):
        asyncio.run(invoker.call("resources/read"))
    assert invoker.pending_count == 0


def test_error_member_surfaces_remote_error():
    def reply(body):
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32602, "message": "Invalid params"}},
        )

    invoker = _invoker(_scripted(reply))
    with pytest.raises(RemoteError) as excinfo:
        asyncio.run(invoker.call("tools/call", {"name": "x"}))
    assert excinfo.value.code == -32602
    assert "Invalid params" in str(excinfo.value)


def test_http_error_status_is_remote_error():
    def reply(body):
        return httpx.Response(502, json={"error": {"message": "bad upstream"}})

    invoker = _invoker(_scripted(reply))
    with pytest.raises(RemoteError) as excinfo:
        asyncio.run(invoker.call("tools/list"))
    assert excinfo.value.status_code == 502


def test_timeout_discards_pending_entry_and_does_not_retry():
    calls: list[str] = []

    async def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode("utf-8"))
        if body.get("method") == "initialize":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {}}, headers={"Mcp-Session-Id": TOKEN})
        if "id" not in body:
            return httpx.Response(202)
        calls.append(body["method"])
        await asyncio.sleep(1.0)
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {}})

    invoker = _invoker(handler, timeout=0.05)
    with pytest.raises(RpcTimeoutError) as excinfo:
        asyncio.run(invoker.call("tools/list"))

    assert isinstance(excinfo.value, TimeoutError)
    assert invoker.pending_count == 0
    assert calls == ["tools/list"]


def test_warmup_lists_tools_before_each_tool_call():
    fake = FakeGateway(resources={"Observation": []})
    invoker = _invoker(fake, warmup=True)
    descriptor = {"request": {"method": "GET", "path": "/Observation?subject=Patient/p1", "body": None}}

    async def scenario():
        await invoker.call_tool("request_observation_resource", descriptor)
        await invoker.call_tool("request_observation_resource", descriptor)

    asyncio.run(scenario())

    rpc_methods = [method for method in fake.methods() if method not in {"initialize", "notifications/initialized"}]
    assert rpc_methods == ["tools/list", "tools/call", "tools/list", "tools/call"]


def test_warmup_can_be_disabled():
    fake = FakeGateway(resources={"Observation": []})
    invoker = _invoker(fake, warmup=False)
    descriptor = {"request": {"method": "GET", "path": "/Observation", "body": None}}

    asyncio.run(invoker.call_tool("request_observation_resource", descriptor))

    assert "tools/list" not in fake.methods()


def test_warmup_failure_does_not_block_the_call():
    def reply(body):
        if body["method"] == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": -32000, "message": "busy"}})
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"content": [{"type": "text", "text": "{}"}]}})

    invoker = _invoker(_scripted(reply))
    result = asyncio.run(invoker.call_tool("request_generic_resource", {}))
    assert result["content"][0]["text"] == "{}"


def test_tool_result_flagged_as_error_raises():
    def reply(body):
        if body["method"] == "tools/list":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": {"tools": []}})
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": body["id"],
                "result": {"isError": True, "content": [{"type": "text", "text": "Unknown tool"}]},
            },
        )

    invoker = _invoker(_scripted(reply))
    with pytest.raises(RemoteError) as excinfo:
        asyncio.run(invoker.call_tool("request_condition_resource", {}))
    assert "Unknown tool" in str(excinfo.value)


def test_correlation_ids_are_unique_per_client():
    fake = FakeGateway()
    invoker = _invoker(fake)

    async def scenario():
        for _ in range(3):
            await invoker.list_tools()

    asyncio.run(scenario())

    ids = [entry["body"]["id"] for entry in fake.requests if "id" in entry["body"]]
    assert len(ids) == len(set(ids))


def test_plain_json_batch_body_is_accepted():
    messages = decode_body(json.dumps([{"jsonrpc": "2.0", "id": "a-1", "result": 1}, {"jsonrpc": "2.0", "id": "a-2", "result": 2}]))
    assert select_response(messages, "a-2").result == 2
