"""
In-process Storage adapter.

One asyncio.Lock serialises whole transactions, so every operation sees and
leaves a consistent graph. Rollback (and savepoint rollback) restores a
snapshot taken when the block was entered. Nothing survives a restart: use
the SQL adapter for anything durable.
"""
from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List, Set, Tuple

from featureflags.kernel.entities import AuditAction, AuditLogEntry, Flag, FlagStatus
from featureflags.kernel.errors import AlreadyExists, NotFound
from featureflags.kernel.store import LockMode


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class _State:
    flags: Dict[int, Flag] = field(default_factory=dict)
    # dependent id -> prerequisite ids
    edges: Dict[int, Set[int]] = field(default_factory=dict)
    audit: List[AuditLogEntry] = field(default_factory=list)
    next_flag_id: int = 1
    next_audit_id: int = 1

    def snapshot(self) -> Tuple:
        # audit is append-only, its length is enough to roll it back
        return (
            dict(self.flags),  # Flag values are replaced, never mutated
            {k: set(v) for k, v in self.edges.items()},
            len(self.audit),
            self.next_flag_id,
            self.next_audit_id,
        )

    def restore(self, snap: Tuple) -> None:
        flags, edges, audit_len, next_flag_id, next_audit_id = snap
        self.flags = flags
        self.edges = edges
        del self.audit[audit_len:]
        self.next_flag_id = next_flag_id
        self.next_audit_id = next_audit_id


class MemoryFlagStore:
    def __init__(self, state: _State):
        self._state = state

    def _require(self, flag_id: int) -> Flag:
        flag = self._state.flags.get(flag_id)
        if flag is None:
            raise NotFound(detail=f"flag with ID {flag_id} not found", meta={"flag_id": flag_id})
        return flag

    def _with_deps(self, flag: Flag) -> Flag:
        return replace(flag, dependencies=sorted(self._state.edges.get(flag.id, ())))

    async def create_flag(self, name: str, status: FlagStatus = FlagStatus.DISABLED) -> int:
        if any(f.name == name for f in self._state.flags.values()):
            raise AlreadyExists(detail=f"flag '{name}' already exists", meta={"name": name})
        flag_id = self._state.next_flag_id
        self._state.next_flag_id += 1
        now = _now()
        self._state.flags[flag_id] = Flag(id=flag_id, name=name, status=status, created_at=now, updated_at=now)
        return flag_id

    async def get_flag(self, flag_id: int, *, lock: LockMode = None) -> Flag:
        # the transaction lock already serialises everything
        return self._with_deps(self._require(flag_id))

    async def get_flag_by_name(self, name: str) -> Flag:
        for flag in self._state.flags.values():
            if flag.name == name:
                return self._with_deps(flag)
        raise NotFound(detail=f"flag '{name}' not found", meta={"name": name})

    async def list_flags(self) -> List[Flag]:
        return [self._with_deps(f) for f in sorted(self._state.flags.values(), key=lambda f: f.name)]

    async def set_status(self, flag_id: int, status: FlagStatus) -> None:
        flag = self._require(flag_id)
        self._state.flags[flag_id] = replace(flag, status=status, updated_at=_now())

    async def add_edge(self, dependent_id: int, prerequisite_id: int) -> None:
        self._require(dependent_id)
        self._require(prerequisite_id)
        self._state.edges.setdefault(dependent_id, set()).add(prerequisite_id)

    async def direct_dependencies(self, flag_id: int) -> List[int]:
        return sorted(self._state.edges.get(flag_id, ()))

    async def direct_dependents(self, flag_id: int) -> List[int]:
        return sorted(dep for dep, prereqs in self._state.edges.items() if flag_id in prereqs)


class MemoryAuditRecorder:
    def __init__(self, state: _State):
        self._state = state

    async def record(self, flag_id: int, action: AuditAction, actor: str, reason: str) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=self._state.next_audit_id,
            flag_id=flag_id,
            action=action,
            actor=actor,
            reason=reason,
            created_at=_now(),
        )
        self._state.next_audit_id += 1
        self._state.audit.append(entry)
        return entry

    async def list_for_flag(self, flag_id: int) -> List[AuditLogEntry]:
        return [e for e in reversed(self._state.audit) if e.flag_id == flag_id]

    async def list_all(self, limit: int, offset: int = 0) -> List[AuditLogEntry]:
        newest_first = list(reversed(self._state.audit))
        return newest_first[offset:offset + limit]


class MemoryTransaction:
    def __init__(self, state: _State):
        self._state = state
        self.flags = MemoryFlagStore(state)
        self.audit = MemoryAuditRecorder(state)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        snap = self._state.snapshot()
        try:
            yield
        except BaseException:
            self._state.restore(snap)
            raise

    async def lock_graph(self) -> None:
        return None


class MemoryStorage:
    def __init__(self):
        self._state = _State()
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[MemoryTransaction]:
        async with self._lock:
            snap = self._state.snapshot()
            try:
                yield MemoryTransaction(self._state)
            except BaseException:
                # includes CancelledError from a deadline: leave no partial writes
                self._state.restore(snap)
                raise

    async def init_schema(self) -> None:
        return None

    async def close(self) -> None:
        return None
