"""Structured engine errors.

Every failure that leaves the engine is an EngineError carrying a
machine-readable code, a message, and a list of per-field details. The
HTTP adapter maps the code to a status; in-process callers can inspect
``code`` and ``details`` directly.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    """Error taxonomy shared by every engine component."""

    INVALID_PAYLOAD = "INVALID_PAYLOAD"
    UNKNOWN_FIELD = "UNKNOWN_FIELD"
    UNKNOWN_ENTITY = "UNKNOWN_ENTITY"
    VALIDATION_FAILED = "VALIDATION_FAILED"
    FORBIDDEN = "FORBIDDEN"
    CONFLICT = "CONFLICT"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL = "INTERNAL"


HTTP_STATUS: dict[ErrorCode, int] = {
    ErrorCode.INVALID_PAYLOAD: 400,
    ErrorCode.UNKNOWN_FIELD: 400,
    ErrorCode.UNKNOWN_ENTITY: 404,
    ErrorCode.VALIDATION_FAILED: 422,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.CONFLICT: 409,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INTERNAL: 500,
}


@dataclass(frozen=True)
class ErrorDetail:
    """A single violation attributed to a field and the rule that produced it.

    Attributes:
        field: Field name (or dotted path for nested items), None for record-level
        rule: Rule id, operator, or transition error kind (e.g. "GUARD_FAILED")
        message: Human-readable message
    """

    field: str | None
    rule: str | None
    message: str

    def to_dict(self) -> dict[str, Any]:
        return {"field": self.field, "rule": self.rule, "message": self.message}


class EngineError(Exception):
    """Error raised by any engine component."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        details: list[ErrorDetail] | None = None,
    ):
        self.code = code
        self.message = message
        self.details = list(details or [])
        super().__init__(message)

    @property
    def status(self) -> int:
        return HTTP_STATUS[self.code]

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"code": self.code.value, "message": self.message}
        if self.details:
            body["details"] = [d.to_dict() for d in self.details]
        return {"error": body}

    def __repr__(self) -> str:
        return f"EngineError({self.code.value}, {self.message!r}, details={len(self.details)})"


def not_found(entity: str, record_id: Any) -> EngineError:
    return EngineError(ErrorCode.NOT_FOUND, f"{entity} with id {record_id} not found")


def unknown_entity(entity: str) -> EngineError:
    return EngineError(ErrorCode.UNKNOWN_ENTITY, f"unknown entity: {entity}")


def unknown_fields(names: list[str], prefix: str = "") -> EngineError:
    details = [
        ErrorDetail(field=f"{prefix}{name}", rule="unknown", message=f"unknown field: {name}")
        for name in names
    ]
    return EngineError(
        ErrorCode.UNKNOWN_FIELD,
        f"unknown field(s): {', '.join(names)}",
        details,
    )


def invalid_payload(message: str, details: list[ErrorDetail] | None = None) -> EngineError:
    return EngineError(ErrorCode.INVALID_PAYLOAD, message, details)


def validation_failed(details: list[ErrorDetail], message: str = "validation failed") -> EngineError:
    return EngineError(ErrorCode.VALIDATION_FAILED, message, details)


def forbidden(message: str = "permission denied") -> EngineError:
    return EngineError(ErrorCode.FORBIDDEN, message)


def conflict(message: str) -> EngineError:
    return EngineError(ErrorCode.CONFLICT, message)


def internal(message: str) -> EngineError:
    return EngineError(ErrorCode.INTERNAL, message)
