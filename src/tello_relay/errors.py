"""Failure taxonomy shared by the relay components."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    TRANSPORT_SEND = "transport_send"
    SUBPROCESS_FATAL = "subprocess_fatal"
    PROTOCOL_MISALIGNMENT = "protocol_misalignment"
    RESOURCE_UNAVAILABLE = "resource_unavailable"
    CONFLICT = "conflict"
    INVALID_REQUEST = "invalid_request"


# HTTP status reported by the web layer for each failure kind.
HTTP_STATUS_CODES: dict[ErrorKind, int] = {
    ErrorKind.TRANSPORT_SEND: 503,
    ErrorKind.SUBPROCESS_FATAL: 500,
    ErrorKind.PROTOCOL_MISALIGNMENT: 500,
    ErrorKind.RESOURCE_UNAVAILABLE: 503,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_REQUEST: 400,
}


@dataclass(frozen=True, slots=True)
class OperationResult:
    """Outcome of a public relay operation.

    Operations report failures through this value instead of raising so
    that each component boundary decides how a failure is surfaced.
    """

    ok: bool
    error: ErrorKind | None = None
    message: str = ""
    detail: dict[str, object] | None = None

    @classmethod
    def success(
        cls, message: str = "", detail: dict[str, object] | None = None
    ) -> "OperationResult":
        return cls(True, None, message, detail)

    @classmethod
    def failure(
        cls,
        error: ErrorKind,
        message: str,
        detail: dict[str, object] | None = None,
    ) -> "OperationResult":
        return cls(False, error, message, detail)

    def __bool__(self) -> bool:
        return self.ok

    @property
    def status_code(self) -> int:
        if self.ok or self.error is None:
            return 200
        return HTTP_STATUS_CODES.get(self.error, 500)

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {"ok": self.ok, "message": self.message}
        if self.error is not None:
            payload["error"] = self.error.value
        if self.detail:
            payload.update(self.detail)
        return payload


__all__ = ["ErrorKind", "HTTP_STATUS_CODES", "OperationResult"]
