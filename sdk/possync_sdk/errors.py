"""
Error types for the possync SDK.

This module defines the exception taxonomy shared by the device side and
the server:
- SyncError: Base exception
- ValidationError: Malformed envelope or body (permanent, never retried)
- DecodeError: Envelope could not be decoded from the wire
- TransientNetworkError: Connection/timeout/server-side transient failure
- PermanentApplicationError: Business-rule rejection at the server
- MissingDependencyError: Referenced entity not applied yet (retryable)
- StorageError: Local persistence failed

A detected replay is not an error. It is reported as a successful
ApplyResult with replay=True.

Invariants:
    - All errors inherit from SyncError
    - Every error carries a stable code for programmatic handling
    - retryable is a class-level classification, never inferred from text
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class SyncError(Exception):
    """Base exception for all possync errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        retryable: Whether the failed operation may succeed if retried unchanged
    """

    retryable = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "SYNC_ERROR"
        self.details = details or {}


class ValidationError(SyncError):
    """Envelope or body failed structural validation.

    Raised when:
    - A required envelope field is missing or blank
    - The (entityType, op) pair is unknown
    - A body field has the wrong type or an out-of-range value
    """

    def __init__(
        self,
        message: str,
        field_name: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class DecodeError(ValidationError):
    """Envelope bytes could not be turned into a valid Envelope."""

    pass


class TransientNetworkError(SyncError):
    """The transport call failed as a whole.

    Raised when:
    - The server is unreachable or the connection is refused
    - The request times out
    - The server answers with a 5xx status or an unreadable body
    """

    retryable = True

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        url: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="TRANSPORT",
            details={"status": status, "url": url},
        )
        self.status = status
        self.url = url


class PermanentApplicationError(SyncError):
    """The server rejected the operation on business rules.

    The client must not retry the same envelope without modification.
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message, code="REJECTED", details=details)


class MissingDependencyError(SyncError):
    """An entity the operation targets or references is not present yet.

    This happens when a sibling device's create has not reached the server
    yet. The operation is retried with backoff.
    """

    retryable = True

    def __init__(self, entity_type: str, entity_id: Optional[str]) -> None:
        super().__init__(
            f"Unknown {entity_type} id={entity_id} (not synced yet)",
            code="DEPENDENCY",
            details={"entity_type": entity_type, "entity_id": entity_id},
        )
        self.entity_type = entity_type
        self.entity_id = entity_id


class StorageError(SyncError):
    """Persistence itself failed (disk full, locked database, corruption)."""

    retryable = True

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="STORAGE", details={"path": path})
        self.path = path
