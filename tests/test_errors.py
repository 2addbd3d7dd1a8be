"""Tests for operation results and their HTTP mapping."""

from __future__ import annotations

import pytest

from tello_relay.errors import ErrorKind, OperationResult


@pytest.mark.parametrize(
    "kind, status",
    [
        (ErrorKind.TRANSPORT_SEND, 503),
        (ErrorKind.SUBPROCESS_FATAL, 500),
        (ErrorKind.PROTOCOL_MISALIGNMENT, 500),
        (ErrorKind.RESOURCE_UNAVAILABLE, 503),
        (ErrorKind.CONFLICT, 409),
        (ErrorKind.INVALID_REQUEST, 400),
    ],
)
def test_failure_status_codes(kind: ErrorKind, status: int) -> None:
    result = OperationResult.failure(kind, "nope")

    assert not result
    assert result.status_code == status


def test_success_serialises_detail() -> None:
    result = OperationResult.success("Recording started", {"file_name": "video_1.mp4"})

    assert result
    assert result.status_code == 200
    assert result.to_dict() == {
        "ok": True,
        "message": "Recording started",
        "file_name": "video_1.mp4",
    }


def test_failure_serialises_error_kind() -> None:
    result = OperationResult.failure(ErrorKind.CONFLICT, "Recording already in progress")

    assert result.to_dict() == {
        "ok": False,
        "message": "Recording already in progress",
        "error": "conflict",
    }
