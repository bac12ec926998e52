from __future__ import annotations

from enum import Enum

from fastapi import HTTPException


class GatewayError(HTTPException):
    def __init__(
        self, status_code: int, err_type: str, message: str, hint: str | None = None
    ):
        payload = {"error": {"type": err_type, "code": status_code, "message": message}}
        if hint:
            payload["error"]["hint"] = hint
        super().__init__(status_code=status_code, detail=payload)


def err_invalid_json() -> GatewayError:
    return GatewayError(400, "invalid_json", "Request body is not valid JSON")


def err_invalid_request(reason: str) -> GatewayError:
    return GatewayError(
        422,
        "invalid_request",
        reason,
        'Expected {"model": str, "prompt": str, "stream": bool}',
    )


def err_metrics_disabled() -> GatewayError:
    return GatewayError(404, "disabled", "Metrics disabled")


class ErrorKind(str, Enum):
    """Coarse classes of backend failure; never shown to clients verbatim."""

    UNAVAILABLE = "unavailable"  # connection refused, DNS, timeouts
    REJECTED = "rejected"  # backend answered with an HTTP error status
    INTERRUPTED = "interrupted"  # failure after the chunk sequence started
    MALFORMED = "malformed"  # undecodable backend payload
    INTERNAL = "internal"  # anything raised by the relay itself


class BackendError(RuntimeError):
    """Raised by backend adapters when a chat call cannot be completed."""

    def __init__(self, kind: ErrorKind, message: str):
        self.kind = kind
        super().__init__(message)
