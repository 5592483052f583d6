from __future__ import annotations

from typing import Any


class RunflowError(Exception):
    """Base error; carries the HTTP status it maps to at the API boundary."""

    status_code = 500
    code = "internal"

    def __init__(self, message: str = "", *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details


class NotFound(RunflowError):
    status_code = 404
    code = "not_found"


class Conflict(RunflowError):
    status_code = 409
    code = "conflict"


class BadRequest(RunflowError):
    status_code = 400
    code = "invalid_argument"


class Cancelled(RunflowError):
    """A wait was ended by its cancellation token."""

    status_code = 499
    code = "cancelled"


class UserInterrupt(Cancelled):
    code = "interrupt"

    def __init__(self, message: str = "Run was interrupted") -> None:
        super().__init__(message)


class UserRollback(Cancelled):
    code = "rollback"

    def __init__(self, message: str = "Run was rolled back") -> None:
        super().__init__(message)


def cancellation_error(reason: str | None) -> Cancelled:
    if reason == "rollback":
        return UserRollback()
    if reason == "interrupt":
        return UserInterrupt()
    return Cancelled(f"Cancelled ({reason})" if reason else "Cancelled")
