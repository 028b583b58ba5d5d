"""
Persistence contract consumed by the transition engine.

Adapters: `featureflags.services.sql_store.SqlStorage` (durable, SQLAlchemy)
and `featureflags.services.memory_store.MemoryStorage` (tests / local).

All engine work runs inside one `Storage.transaction()`; leaving the block
normally commits, raising rolls back every write made inside it.
"""
from __future__ import annotations

from typing import AsyncContextManager, List, Literal, Optional, Protocol

from featureflags.kernel.entities import AuditAction, AuditLogEntry, Flag, FlagStatus

# Row lock taken by get_flag: "update" for the row about to change,
# "share" for rows whose state a decision depends on.
LockMode = Optional[Literal["update", "share"]]


class FlagStore(Protocol):
    async def create_flag(self, name: str, status: FlagStatus = FlagStatus.DISABLED) -> int:
        """Insert a flag; AlreadyExists if the name is taken."""
        ...

    async def get_flag(self, flag_id: int, *, lock: LockMode = None) -> Flag:
        """Flag with its direct dependency ids (ascending); NotFound if unknown."""
        ...

    async def get_flag_by_name(self, name: str) -> Flag:
        ...

    async def list_flags(self) -> List[Flag]:
        """All flags ordered by name, dependencies populated."""
        ...

    async def set_status(self, flag_id: int, status: FlagStatus) -> None:
        """NotFound if unknown; succeeds when the status is already `status`."""
        ...

    async def add_edge(self, dependent_id: int, prerequisite_id: int) -> None:
        """Idempotent."""
        ...

    async def direct_dependencies(self, flag_id: int) -> List[int]:
        ...

    async def direct_dependents(self, flag_id: int) -> List[int]:
        ...


class AuditRecorder(Protocol):
    async def record(self, flag_id: int, action: AuditAction, actor: str, reason: str) -> AuditLogEntry:
        ...

    async def list_for_flag(self, flag_id: int) -> List[AuditLogEntry]:
        """Newest first."""
        ...

    async def list_all(self, limit: int, offset: int = 0) -> List[AuditLogEntry]:
        """Newest first."""
        ...


class StoreTransaction(Protocol):
    flags: FlagStore
    audit: AuditRecorder

    def savepoint(self) -> AsyncContextManager[None]:
        """Nested atomic unit: an exception inside undoes only its own writes."""
        ...

    async def lock_graph(self) -> None:
        """Serialise structural edits (edge additions) until commit."""
        ...


class Storage(Protocol):
    def transaction(self) -> AsyncContextManager[StoreTransaction]:
        ...

    async def init_schema(self) -> None:
        ...

    async def close(self) -> None:
        ...
