"""Typed failures raised by the scheduling, lifecycle and safety services.

Every error carries enough context for the caller to tell which input was
rejected and why. ``AlreadyProcessed`` is not a user-facing failure: it wraps
the result of the earlier, identical operation so retries are safe.
"""

from __future__ import annotations

from typing import Any


class DoseEngineError(Exception):
    code = "DOSE_ENGINE_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        return {"error": self.code, "detail": self.message}


class ValidationError(DoseEngineError):
    code = "VALIDATION_ERROR"

    def __init__(self, field: str, message: str):
        super().__init__(f"{field}: {message}")
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload["field"] = self.field
        return payload


class InvalidState(DoseEngineError):
    code = "INVALID_STATE"

    def __init__(self, entity_id: Any, status: str, operation: str, reason: str | None = None):
        message = f"Cannot {operation} dose event {entity_id} in status '{status}'"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.entity_id = str(entity_id)
        self.status = status
        self.operation = operation

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {"entity_id": self.entity_id, "status": self.status, "operation": self.operation}
        )
        return payload


class UndoWindowExpired(DoseEngineError):
    code = "UNDO_WINDOW_EXPIRED"

    def __init__(self, entity_id: Any, elapsed_seconds: float, allowed_seconds: float):
        super().__init__(
            f"Undo window for dose event {entity_id} expired: "
            f"{elapsed_seconds:.1f}s elapsed, {allowed_seconds:.0f}s allowed"
        )
        self.entity_id = str(entity_id)
        self.elapsed_seconds = elapsed_seconds
        self.allowed_seconds = allowed_seconds

    def to_dict(self) -> dict[str, Any]:
        payload = super().to_dict()
        payload.update(
            {
                "entity_id": self.entity_id,
                "elapsed_seconds": round(self.elapsed_seconds, 1),
                "allowed_seconds": self.allowed_seconds,
            }
        )
        return payload


class AlreadyProcessed(DoseEngineError):
    code = "ALREADY_PROCESSED"

    def __init__(self, entity_id: Any, operation: str, result: Any = None):
        super().__init__(f"{operation} already applied to dose event {entity_id}")
        self.entity_id = str(entity_id)
        self.operation = operation
        self.result = result


class NotFound(DoseEngineError):
    code = "NOT_FOUND"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} not found: {entity_id}")
        self.entity = entity
        self.entity_id = str(entity_id)


class UpstreamUnavailable(DoseEngineError):
    code = "UPSTREAM_UNAVAILABLE"

    def __init__(self, provider: str, reason: str | None = None):
        message = f"{provider} is unavailable"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.provider = provider


def field_from_pydantic(exc, prefix: str = "") -> tuple[str, str]:
    """Return the first offending field and message of a pydantic error."""
    errors = exc.errors()
    if not errors:
        return prefix or "payload", str(exc)
    first = errors[0]
    loc = [str(part) for part in first.get("loc", ()) if part not in ("__root__",)]
    field = ".".join(loc)
    if prefix:
        field = f"{prefix}.{field}" if field else prefix
    return field or "payload", first.get("msg", "invalid value")
