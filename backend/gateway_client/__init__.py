from .config import GatewaySettings
from .errors import (
    GatewayError,
    MissingTokenError,
    NoMatchingResponseError,
    RemoteError,
    RpcTimeoutError,
    SessionError,
    SessionExpiredError,
)
from .invoker import RpcInvoker, WarmupBeforeCall
from .resources import ResourceGateway, build_resource_path, extract_resources, unwrap_tool_result
from .session import SessionState, SessionTransport


def build_gateway(settings: GatewaySettings, **transport_kwargs) -> ResourceGateway:
    transport = SessionTransport(settings, **transport_kwargs)
    invoker = RpcInvoker(
        transport,
        timeout_seconds=settings.timeout_seconds,
        warmup=WarmupBeforeCall(enabled=settings.warmup_before_call),
    )
    return ResourceGateway(invoker)


__all__ = [
    "GatewaySettings",
    "GatewayError",
    "SessionError",
    "MissingTokenError",
    "SessionExpiredError",
    "RemoteError",
    "NoMatchingResponseError",
    "RpcTimeoutError",
    "SessionState",
    "SessionTransport",
    "RpcInvoker",
    "WarmupBeforeCall",
    "ResourceGateway",
    "build_gateway",
    "build_resource_path",
    "extract_resources",
    "unwrap_tool_result",
]
