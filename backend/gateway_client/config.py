from __future__ import annotations

import os
from dataclasses import dataclass

DEFAULT_GATEWAY_URL = "http://localhost:8000"
DEFAULT_SESSION_HEADER = "Mcp-Session-Id"
PROTOCOL_VERSION = "2025-06-18"
CLIENT_NAME = "mywellwallet"
CLIENT_VERSION = "1.0.0"


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class GatewaySettings:
    base_url: str = DEFAULT_GATEWAY_URL
    api_key: str | None = None
    timeout_seconds: float = 30.0
    connect_timeout_seconds: float = 8.0
    warmup_before_call: bool = True
    session_header: str = DEFAULT_SESSION_HEADER
    protocol_version: str = PROTOCOL_VERSION

    @property
    def endpoint(self) -> str:
        return f"{self.base_url.rstrip('/')}/mcp"

    @classmethod
    def from_env(cls) -> "GatewaySettings":
        api_key = (os.getenv("WELLWALLET_API_KEY") or "").strip() or None
        return cls(
            base_url=(os.getenv("WELLWALLET_GATEWAY_URL") or DEFAULT_GATEWAY_URL).strip(),
            api_key=api_key,
            timeout_seconds=_env_float("WELLWALLET_RPC_TIMEOUT_SECONDS", 30.0),
            warmup_before_call=_env_flag("WELLWALLET_TOOL_WARMUP", True),
            session_header=(os.getenv("WELLWALLET_SESSION_HEADER") or DEFAULT_SESSION_HEADER).strip(),
        )
