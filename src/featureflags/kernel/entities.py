"""
Domain values shared by the engine, the store adapters and the HTTP layer.

These are plain dataclasses, decoupled from the ORM rows in
`featureflags.models`; adapters map rows to these before handing them out.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

# Reserved actor for engine-initiated changes (cascade, reconcile)
SYSTEM_ACTOR = "system"

# Candidate id used when checking the proposed dependencies of a flag that
# does not exist yet. Never a real id: ids start at 1.
NEW_FLAG_ID = 0


class FlagStatus(str, Enum):
    ENABLED = "enabled"
    DISABLED = "disabled"


class AuditAction(str, Enum):
    CREATE = "create"
    ENABLE = "enable"
    DISABLE = "disable"
    CASCADE_DISABLE = "cascade_disable"
    UPDATE = "update"


def _iso(ts: Optional[datetime]) -> Optional[str]:
    return ts.isoformat() if ts is not None else None


@dataclass
class Flag:
    id: int
    name: str
    status: FlagStatus = FlagStatus.DISABLED
    # ascending by id when loaded from a store; caller order on create
    dependencies: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_enabled(self) -> bool:
        return self.status is FlagStatus.ENABLED

    @property
    def is_disabled(self) -> bool:
        return self.status is FlagStatus.DISABLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "status": self.status.value,
            "dependencies": list(self.dependencies),
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
        }


@dataclass(frozen=True)
class AuditLogEntry:
    id: int
    flag_id: int
    action: AuditAction
    actor: str
    reason: str
    created_at: datetime

    @property
    def is_cascade(self) -> bool:
        return self.action is AuditAction.CASCADE_DISABLE

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "flag_id": self.flag_id,
            "action": self.action.value,
            "actor": self.actor,
            "reason": self.reason,
            "created_at": _iso(self.created_at),
        }


@dataclass
class TransitionResult:
    """
    Outcome of a state-changing engine call.

    `changed` is False for idempotent no-ops. `cascaded` lists the ids that a
    disable (or reconcile) switched off, in traversal order. `warnings` carries
    non-fatal problems: audit entries that could not be written and dependents
    the cascade could not reach. A non-empty list means operators should run
    a reconcile.
    """
    flag: Optional[Flag]
    changed: bool
    cascaded: List[int] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "flag": self.flag.to_dict() if self.flag is not None else None,
            "changed": self.changed,
            "cascaded": list(self.cascaded),
            "warnings": list(self.warnings),
        }
