"""Centralized error codes and exception types for the tenant store."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping

__all__ = [
    "NOT_FOUND",
    "DUPLICATE_KEY",
    "VALIDATION_ERROR",
    "LOCK_TIMEOUT",
    "LOCK_REENTRY",
    "STALE_WRITE",
    "TRANSIENT_STORE_ERROR",
    "CIRCUIT_OPEN",
    "FATAL_STORE_ERROR",
    "SCHEMA_MISMATCH",
    "INTERNAL_ERROR",
    "TenantStoreError",
    "TransientStoreError",
    "CircuitOpenError",
    "FatalStoreError",
    "SchemaMismatchError",
    "DuplicateKeyError",
    "ValidationError",
    "LockTimeoutError",
    "LockReentryError",
    "NotFoundError",
    "StaleWriteError",
    "error_payload",
]

NOT_FOUND = "NOT_FOUND"
DUPLICATE_KEY = "DUPLICATE_KEY"
VALIDATION_ERROR = "VALIDATION_ERROR"
LOCK_TIMEOUT = "LOCK_TIMEOUT"
LOCK_REENTRY = "LOCK_REENTRY"
STALE_WRITE = "STALE_WRITE"
TRANSIENT_STORE_ERROR = "TRANSIENT_STORE_ERROR"
CIRCUIT_OPEN = "CIRCUIT_OPEN"
FATAL_STORE_ERROR = "FATAL_STORE_ERROR"
SCHEMA_MISMATCH = "SCHEMA_MISMATCH"
INTERNAL_ERROR = "INTERNAL_ERROR"


@dataclass(slots=True)
class TenantStoreError(Exception):
    """Domain-specific exception carrying an error code and message."""

    code: str
    message: str
    details: Mapping[str, Any] | None = None

    def __str__(self) -> str:  # pragma: no cover - delegation to message
        return self.message

    def to_dict(self) -> dict[str, Any]:
        return error_payload(self.code, self.message, details=self.details)


class TransientStoreError(TenantStoreError):
    """Retry-safe backend failure (rate limit, network blip, timeout)."""

    default_code = TRANSIENT_STORE_ERROR

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(self.default_code, message, details)


class CircuitOpenError(TransientStoreError):
    """Backend calls are paused after repeated rate-limit errors."""

    default_code = CIRCUIT_OPEN


class FatalStoreError(TenantStoreError):
    """Permission, missing-table or schema problem; retrying will not help."""

    default_code = FATAL_STORE_ERROR

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(self.default_code, message, details)


class SchemaMismatchError(FatalStoreError):
    """The table header row does not match the expected column layout."""

    default_code = SCHEMA_MISMATCH


class _CodedError(TenantStoreError):
    default_code = INTERNAL_ERROR

    def __init__(self, message: str, *, details: Mapping[str, Any] | None = None) -> None:
        super().__init__(self.default_code, message, details)


class DuplicateKeyError(_CodedError):
    """A tenant with the same id or principal email is already registered."""

    default_code = DUPLICATE_KEY


class ValidationError(_CodedError):
    """Malformed config blob, bad email or missing required field."""

    default_code = VALIDATION_ERROR


class LockTimeoutError(_CodedError):
    """The write lock could not be acquired in time; retry shortly."""

    default_code = LOCK_TIMEOUT


class LockReentryError(_CodedError):
    """The same call stack attempted to acquire a lock it already holds."""

    default_code = LOCK_REENTRY


class NotFoundError(_CodedError):
    default_code = NOT_FOUND


class StaleWriteError(_CodedError):
    """The caller's etag no longer matches the stored configuration."""

    default_code = STALE_WRITE


def error_payload(code: str, message: str, *, details: Mapping[str, Any] | None = None) -> dict[str, Any]:
    """Build a structured error payload for callers that report errors as data."""

    payload: dict[str, Any] = {
        "code": code,
        "message": message,
    }
    if details:
        payload["details"] = dict(details)
    return payload
