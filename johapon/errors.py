"""Service errors and the JSON failure envelope.

Services raise JohaponError subclasses; main.py turns them into
{"success": false, "error": {"code", "message"}} responses.
"""

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    INVALID_STATE = "INVALID_STATE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class JohaponError(Exception):
    """Base error carrying an API error code and HTTP status."""

    status_code = 500
    default_code = ErrorCode.INTERNAL_ERROR

    def __init__(self, message: str, code: ErrorCode | None = None, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}


class ValidationFailed(JohaponError):
    status_code = 400
    default_code = ErrorCode.VALIDATION_ERROR


class NotFound(JohaponError):
    status_code = 404
    default_code = ErrorCode.NOT_FOUND


class ConflictError(JohaponError):
    """Duplicate or overlapping record. The message names what it collides with."""

    status_code = 409
    default_code = ErrorCode.CONFLICT


class InvalidState(JohaponError):
    """Action not allowed from the record's current status."""

    status_code = 400
    default_code = ErrorCode.INVALID_STATE


class ExternalServiceError(JohaponError):
    status_code = 502
    default_code = ErrorCode.EXTERNAL_SERVICE_ERROR


def ok(data: Any = None) -> dict[str, Any]:
    """Success envelope."""
    return {"success": True, "data": data}


def fail(code: ErrorCode, message: str, details: dict[str, Any] | None = None) -> dict[str, Any]:
    """Failure envelope."""
    error = {"code": code.value, "message": message}
    if details:
        error["details"] = details
    return {"success": False, "error": error}
