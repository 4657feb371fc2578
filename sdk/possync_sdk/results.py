"""
Per-operation outcome returned by the apply engine.

Invariants:
    - ok is True whenever replay is True
    - Every submitted envelope yields exactly one ApplyResult
    - retryable only has meaning when ok is False
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .errors import SyncError

# errorCode values
VALIDATION = "VALIDATION"
REJECTED = "REJECTED"
DEPENDENCY = "DEPENDENCY"
STORAGE = "STORAGE"
TRANSPORT = "TRANSPORT"
BLOCKED = "BLOCKED"


@dataclass
class ApplyResult:
    """Result of applying one envelope.

    Attributes:
        ok: Whether canonical state reflects the intended effect
        replay: Whether this opId had already been applied
        op_id: Echo of the request's opId
        message: Human-readable detail, present on failure
        retryable: Whether a failed op may succeed if resent unchanged
        error_code: Failure classification
        entity_id: Resolved entity id (derived for id-less creates)
        version: Entity version after application
    """

    ok: bool
    replay: bool = False
    op_id: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False
    error_code: Optional[str] = None
    entity_id: Optional[str] = None
    version: Optional[int] = None

    @classmethod
    def applied(cls, op_id: str, entity_id: Optional[str], version: int) -> ApplyResult:
        return cls(ok=True, op_id=op_id, entity_id=entity_id, version=version)

    @classmethod
    def replayed(
        cls, op_id: str, entity_id: Optional[str] = None, version: Optional[int] = None
    ) -> ApplyResult:
        return cls(
            ok=True,
            replay=True,
            op_id=op_id,
            message=f"Idempotent replay: already applied opId={op_id}",
            entity_id=entity_id,
            version=version,
        )

    @classmethod
    def from_error(cls, op_id: Optional[str], error: SyncError) -> ApplyResult:
        return cls(
            ok=False,
            op_id=op_id,
            message=error.message,
            retryable=error.retryable,
            error_code=error.code,
        )

    @classmethod
    def blocked(cls, op_id: str, blocked_by: Optional[str]) -> ApplyResult:
        """Not attempted: an earlier op on the same entity failed and will be retried."""
        return cls(
            ok=False,
            op_id=op_id,
            message=f"Blocked by earlier opId={blocked_by} on the same entity",
            retryable=True,
            error_code=BLOCKED,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to the wire mapping (None values omitted)."""
        data: dict[str, Any] = {"ok": self.ok, "replay": self.replay, "opId": self.op_id}
        if self.message is not None:
            data["message"] = self.message
        if not self.ok:
            data["retryable"] = self.retryable
            data["errorCode"] = self.error_code
        if self.entity_id is not None:
            data["entityId"] = self.entity_id
        if self.version is not None:
            data["version"] = self.version
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], default_retryable: bool = False) -> ApplyResult:
        """Create from the wire mapping.

        Args:
            data: Decoded result object
            default_retryable: Classification to use when a failed result
                does not carry one (older servers)
        """
        replay = bool(data.get("replay", False))
        ok = bool(data.get("ok", False)) or replay
        version = data.get("version")
        return cls(
            ok=ok,
            replay=replay,
            op_id=data.get("opId"),
            message=data.get("message"),
            retryable=bool(data.get("retryable", default_retryable)) if not ok else False,
            error_code=data.get("errorCode"),
            entity_id=data.get("entityId"),
            version=version if isinstance(version, int) else None,
        )
