"""
SQLAlchemy (asyncio) Storage adapter.

Supports PostgreSQL (asyncpg) and SQLite (aiosqlite). Reads go through Core
selects rather than ORM instances so nothing stale lingers in the identity
map between a status UPDATE and the next read in the same transaction.
"""
from __future__ import annotations

import functools
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, Dict, List

from sqlalchemy import func, insert, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import DBAPIError, IntegrityError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from featureflags.core.logging import get_logger
from featureflags.kernel.entities import AuditAction, AuditLogEntry, Flag, FlagStatus
from featureflags.kernel.errors import AlreadyExists, CircularDependency, NotFound, StoreUnavailable
from featureflags.kernel.store import LockMode
from featureflags.models.audit_log import AuditLog
from featureflags.models.base import Base
from featureflags.models.flag import Flag as FlagRow
from featureflags.models.flag import FlagDependency

log = get_logger(__name__)

_FLAG_COLUMNS = (FlagRow.id, FlagRow.name, FlagRow.status, FlagRow.created_at, FlagRow.updated_at)
_AUDIT_COLUMNS = (
    AuditLog.id, AuditLog.flag_id, AuditLog.action, AuditLog.actor, AuditLog.reason, AuditLog.created_at,
)


def _translate_errors(fn):
    """Driver/connectivity failures -> StoreUnavailable. Integrity errors pass through."""
    @functools.wraps(fn)
    async def wrapper(*args, **kwargs):
        try:
            return await fn(*args, **kwargs)
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            log.error("store call failed op=%s err=%r", fn.__name__, e)
            raise StoreUnavailable(detail=f"{fn.__name__} failed: {getattr(e, 'orig', None) or e}") from e
    return wrapper


def _to_flag(row, dependencies: List[int]) -> Flag:
    return Flag(
        id=int(row.id),
        name=row.name,
        status=FlagStatus(row.status),
        dependencies=list(dependencies),
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _to_entry(row) -> AuditLogEntry:
    return AuditLogEntry(
        id=int(row.id),
        flag_id=int(row.flag_id),
        action=AuditAction(row.action),
        actor=row.actor,
        reason=row.reason or "",
        created_at=row.created_at,
    )


class SqlFlagStore:
    def __init__(self, session: AsyncSession, dialect: str):
        self._session = session
        self._dialect = dialect

    @_translate_errors
    async def create_flag(self, name: str, status: FlagStatus = FlagStatus.DISABLED) -> int:
        stmt = insert(FlagRow).values(name=name, status=status.value).returning(FlagRow.id)
        try:
            # savepoint: a unique violation must not poison the caller's transaction
            async with self._session.begin_nested():
                flag_id = (await self._session.execute(stmt)).scalar_one()
        except IntegrityError as e:
            raise AlreadyExists(detail=f"flag '{name}' already exists", meta={"name": name}) from e
        return int(flag_id)

    @_translate_errors
    async def get_flag(self, flag_id: int, *, lock: LockMode = None) -> Flag:
        stmt = select(*_FLAG_COLUMNS).where(FlagRow.id == flag_id)
        if lock == "update":
            stmt = stmt.with_for_update()
        elif lock == "share":
            stmt = stmt.with_for_update(read=True)
        row = (await self._session.execute(stmt)).first()
        if row is None:
            raise NotFound(detail=f"flag with ID {flag_id} not found", meta={"flag_id": flag_id})
        return _to_flag(row, await self.direct_dependencies(flag_id))

    @_translate_errors
    async def get_flag_by_name(self, name: str) -> Flag:
        row = (await self._session.execute(select(*_FLAG_COLUMNS).where(FlagRow.name == name))).first()
        if row is None:
            raise NotFound(detail=f"flag '{name}' not found", meta={"name": name})
        return _to_flag(row, await self.direct_dependencies(int(row.id)))

    @_translate_errors
    async def list_flags(self) -> List[Flag]:
        rows = (await self._session.execute(select(*_FLAG_COLUMNS).order_by(FlagRow.name))).all()
        edges = (
            await self._session.execute(
                select(FlagDependency.flag_id, FlagDependency.depends_on_id)
                .order_by(FlagDependency.flag_id, FlagDependency.depends_on_id)
            )
        ).all()
        deps: Dict[int, List[int]] = {}
        for e in edges:
            deps.setdefault(int(e.flag_id), []).append(int(e.depends_on_id))
        return [_to_flag(r, deps.get(int(r.id), [])) for r in rows]

    @_translate_errors
    async def set_status(self, flag_id: int, status: FlagStatus) -> None:
        res = await self._session.execute(
            update(FlagRow)
            .where(FlagRow.id == flag_id)
            .values(status=status.value, updated_at=func.now())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount == 0:
            raise NotFound(detail=f"flag with ID {flag_id} not found", meta={"flag_id": flag_id})

    @_translate_errors
    async def add_edge(self, dependent_id: int, prerequisite_id: int) -> None:
        if dependent_id == prerequisite_id:
            raise CircularDependency(
                detail=f"flag {dependent_id} cannot depend on itself",
                meta={"path": [dependent_id, dependent_id]},
            )
        make_insert = pg_insert if self._dialect == "postgresql" else sqlite_insert
        stmt = (
            make_insert(FlagDependency.__table__)
            .values(flag_id=dependent_id, depends_on_id=prerequisite_id)
            .on_conflict_do_nothing()
        )
        try:
            async with self._session.begin_nested():
                await self._session.execute(stmt)
        except IntegrityError as e:
            # FK violation: one endpoint does not exist
            raise NotFound(
                detail=f"edge {dependent_id} -> {prerequisite_id} refers to an unknown flag",
                meta={"flag_id": dependent_id, "depends_on_id": prerequisite_id},
            ) from e

    @_translate_errors
    async def direct_dependencies(self, flag_id: int) -> List[int]:
        res = await self._session.execute(
            select(FlagDependency.depends_on_id)
            .where(FlagDependency.flag_id == flag_id)
            .order_by(FlagDependency.depends_on_id)
        )
        return [int(x) for x in res.scalars().all()]

    @_translate_errors
    async def direct_dependents(self, flag_id: int) -> List[int]:
        res = await self._session.execute(
            select(FlagDependency.flag_id)
            .where(FlagDependency.depends_on_id == flag_id)
            .order_by(FlagDependency.flag_id)
        )
        return [int(x) for x in res.scalars().all()]


class SqlAuditRecorder:
    def __init__(self, session: AsyncSession):
        self._session = session

    @_translate_errors
    async def record(self, flag_id: int, action: AuditAction, actor: str, reason: str) -> AuditLogEntry:
        created_at = datetime.now(timezone.utc)
        stmt = (
            insert(AuditLog)
            .values(flag_id=flag_id, action=action.value, actor=actor, reason=reason, created_at=created_at)
            .returning(AuditLog.id)
        )
        audit_id = (await self._session.execute(stmt)).scalar_one()
        return AuditLogEntry(
            id=int(audit_id), flag_id=flag_id, action=action, actor=actor, reason=reason, created_at=created_at,
        )

    @_translate_errors
    async def list_for_flag(self, flag_id: int) -> List[AuditLogEntry]:
        res = await self._session.execute(
            select(*_AUDIT_COLUMNS)
            .where(AuditLog.flag_id == flag_id)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
        )
        return [_to_entry(r) for r in res.all()]

    @_translate_errors
    async def list_all(self, limit: int, offset: int = 0) -> List[AuditLogEntry]:
        res = await self._session.execute(
            select(*_AUDIT_COLUMNS)
            .order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
            .limit(limit)
            .offset(offset)
        )
        return [_to_entry(r) for r in res.all()]


class SqlTransaction:
    def __init__(self, session: AsyncSession, dialect: str, graph_lock_key: int):
        self._session = session
        self._dialect = dialect
        self._graph_lock_key = graph_lock_key
        self.flags = SqlFlagStore(session, dialect)
        self.audit = SqlAuditRecorder(session)

    @asynccontextmanager
    async def savepoint(self) -> AsyncIterator[None]:
        async with self._session.begin_nested():
            yield

    @_translate_errors
    async def lock_graph(self) -> None:
        # SQLite already serialises writers; Postgres needs an explicit lock so
        # two concurrent edge additions cannot each pass the cycle check
        if self._dialect == "postgresql":
            await self._session.execute(
                text("SELECT pg_advisory_xact_lock(:k)"), {"k": self._graph_lock_key}
            )


class SqlStorage:
    def __init__(self, engine: AsyncEngine, *, graph_lock_key: int = 7270001):
        self._engine = engine
        self._graph_lock_key = graph_lock_key
        self._sessions = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SqlTransaction]:
        try:
            async with self._sessions() as session:
                async with session.begin():
                    yield SqlTransaction(session, self._engine.dialect.name, self._graph_lock_key)
        except IntegrityError:
            raise
        except (DBAPIError, PoolTimeoutError) as e:
            # connect / commit failures land here
            log.error("transaction failed err=%r", e)
            raise StoreUnavailable(detail=f"transaction failed: {getattr(e, 'orig', None) or e}") from e

    async def init_schema(self) -> None:
        """Create tables from ORM metadata. Dev only: alembic owns the schema."""
        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        await self._engine.dispose()
