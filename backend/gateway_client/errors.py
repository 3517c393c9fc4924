from __future__ import annotations

from typing import Any


class GatewayError(Exception):
    pass


class SessionError(GatewayError):
    pass


class MissingTokenError(SessionError):
    def __init__(self, message: str = "Server did not issue a session token") -> None:
        super().__init__(message)


class SessionExpiredError(SessionError):
    pass


class RemoteError(GatewayError):
    def __init__(
        self,
        message: str,
        *,
        code: int | None = None,
        status_code: int | None = None,
        data: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status_code = status_code
        self.data = data


class NoMatchingResponseError(RemoteError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"No response matched request id {request_id}")
        self.request_id = request_id


class RpcTimeoutError(GatewayError, TimeoutError):
    def __init__(self, method: str, timeout: float) -> None:
        super().__init__(f"{method} timed out after {timeout:g}s")
        self.method = method
        self.timeout = timeout
