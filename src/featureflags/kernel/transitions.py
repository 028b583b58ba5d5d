"""
Transition Engine: every state-changing flag operation goes through here.

Each public coroutine validates its input, then runs one store transaction
under a deadline (`timeout=` or settings.OPERATION_TIMEOUT_S). On expiry the
transaction is cancelled and rolled back and StoreUnavailable is raised.

Failures of secondary writes never fail the primary transition:
  - audit entries are written in their own savepoint; a failed write is
    logged, counted and reported in `TransitionResult.warnings`
  - each cascade step runs in its own savepoint; a dependent that cannot be
    disabled is reported the same way and its siblings are still processed
"""
from __future__ import annotations

import asyncio
import functools
from collections import deque
from typing import Any, Awaitable, Iterable, List, Optional, Sequence

from featureflags.core.config import settings
from featureflags.core.ctx import set_ctx
from featureflags.core.logging import get_logger
from featureflags.core.metrics import AUDIT_WRITE_FAILURES, CASCADE_FAILURES, FLAG_TRANSITIONS
from featureflags.kernel.enablement import missing_active_dependencies
from featureflags.kernel.entities import (
    NEW_FLAG_ID,
    SYSTEM_ACTOR,
    AuditAction,
    AuditLogEntry,
    Flag,
    FlagStatus,
    TransitionResult,
)
from featureflags.kernel.errors import (
    CircularDependency,
    MissingActiveDependencies,
    NotFound,
    StoreUnavailable,
)
from featureflags.kernel.graph import find_cycle
from featureflags.kernel.store import Storage, StoreTransaction
from featureflags.kernel.validation import (
    require_valid,
    validate_actor,
    validate_create_request,
    validate_dependencies_request,
    validate_flag_id,
    validate_page,
    validate_reason,
    validate_toggle_request,
)

log = get_logger(__name__)

CREATE_REASON = "Flag created"
CASCADE_REASON = "Automatically disabled due to dependency flag {flag_id} being disabled"


def _dedupe(ids: Iterable[int]) -> List[int]:
    seen = set()
    out = []
    for i in ids:
        if i not in seen:
            seen.add(i)
            out.append(i)
    return out


class TransitionEngine:
    def __init__(self, storage: Storage, *, timeout: Optional[float] = None):
        self.storage = storage
        self.timeout = settings.OPERATION_TIMEOUT_S if timeout is None else timeout

    # ---------- plumbing ----------

    async def _run(self, op: str, coro: Awaitable[Any], timeout: Optional[float]) -> Any:
        deadline = self.timeout if timeout is None else timeout
        if deadline is not None and deadline <= 0:
            deadline = None
        try:
            return await asyncio.wait_for(coro, deadline)
        except asyncio.TimeoutError as e:
            log.error("operation timed out op=%s timeout_s=%s", op, deadline)
            raise StoreUnavailable(
                detail=f"{op} did not complete within {deadline}s",
                meta={"operation": op},
            ) from e

    async def _audit(
        self,
        tx: StoreTransaction,
        flag_id: int,
        action: AuditAction,
        actor: str,
        reason: str,
        warnings: List[str],
    ) -> None:
        try:
            async with tx.savepoint():
                await tx.audit.record(flag_id, action, actor, reason)
        except StoreUnavailable as e:
            AUDIT_WRITE_FAILURES.inc()
            log.error("audit write failed flag_id=%s action=%s err=%s", flag_id, action.value, e)
            warnings.append(f"audit entry '{action.value}' for flag {flag_id} was not recorded: {e.detail}")

    async def _require_dependencies(self, tx: StoreTransaction, dependency_ids: Sequence[int]) -> None:
        for dep_id in dependency_ids:
            try:
                await tx.flags.get_flag(dep_id)
            except NotFound as e:
                raise NotFound(
                    detail=f"dependency flag with ID {dep_id} not found",
                    meta={"flag_id": dep_id},
                ) from e

    async def _cascade_disable(
        self,
        tx: StoreTransaction,
        roots: Sequence[int],
        warnings: List[str],
        actor: str = SYSTEM_ACTOR,
    ) -> List[int]:
        """
        Disable every enabled flag that transitively depends on one of `roots`.

        Breadth-first over direct dependents with a visited set; only flags
        this call actually disabled are expanded further. Returns the ids it
        disabled, in traversal order.
        """
        disabled: List[int] = []
        visited = set(roots)
        queue = deque(roots)
        while queue:
            parent_id = queue.popleft()
            try:
                dependents = await tx.flags.direct_dependents(parent_id)
            except StoreUnavailable as e:
                CASCADE_FAILURES.inc()
                log.error("cascade could not load dependents flag_id=%s err=%s", parent_id, e)
                warnings.append(f"dependents of flag {parent_id} were not checked: {e.detail}")
                continue

            for dep_id in dependents:
                if dep_id in visited:
                    continue
                visited.add(dep_id)
                try:
                    async with tx.savepoint():
                        dependent = await tx.flags.get_flag(dep_id, lock="update")
                        if dependent.is_disabled:
                            continue
                        await tx.flags.set_status(dep_id, FlagStatus.DISABLED)
                except StoreUnavailable as e:
                    CASCADE_FAILURES.inc()
                    log.error("cascade disable failed flag_id=%s trigger=%s err=%s", dep_id, parent_id, e)
                    warnings.append(f"flag {dep_id} could not be cascade-disabled: {e.detail}")
                    continue

                disabled.append(dep_id)
                await self._audit(
                    tx, dep_id, AuditAction.CASCADE_DISABLE, actor,
                    CASCADE_REASON.format(flag_id=parent_id), warnings,
                )
                queue.append(dep_id)
        return disabled

    # ---------- create ----------

    async def create_flag(
        self,
        name: str,
        dependency_ids: Optional[Sequence[int]] = None,
        actor: str = SYSTEM_ACTOR,
        *,
        timeout: Optional[float] = None,
    ) -> Flag:
        deps = list(dependency_ids or [])
        require_valid(validate_create_request({"name": name, "dependencies": deps}) + validate_actor(actor))
        return await self._run("create_flag", self._create_flag(name, _dedupe(deps), actor), timeout)

    async def _create_flag(self, name: str, deps: List[int], actor: str) -> Flag:
        warnings: List[str] = []
        async with self.storage.transaction() as tx:
            await self._require_dependencies(tx, deps)
            # a flag that does not exist yet has no incoming edges; the check
            # still runs so the rule lives in one place
            path = await find_cycle(NEW_FLAG_ID, deps, tx.flags.direct_dependencies)
            if path:
                raise CircularDependency(detail="proposed dependencies form a cycle", meta={"path": path})

            flag_id = await tx.flags.create_flag(name, FlagStatus.DISABLED)
            for dep_id in deps:
                await tx.flags.add_edge(flag_id, dep_id)
            await self._audit(tx, flag_id, AuditAction.CREATE, actor, CREATE_REASON, warnings)
            flag = await tx.flags.get_flag(flag_id)

        flag.dependencies = list(deps)
        set_ctx(flag_id=flag.id)
        FLAG_TRANSITIONS.labels(action=AuditAction.CREATE.value).inc()
        log.info("flag created flag_id=%s name=%s dependencies=%s", flag.id, flag.name, deps)
        return flag

    # ---------- enable / disable ----------

    async def enable_flag(
        self, flag_id: int, actor: str, reason: str, *, timeout: Optional[float] = None,
    ) -> TransitionResult:
        require_valid(validate_flag_id(flag_id) + validate_reason(reason) + validate_actor(actor))
        set_ctx(flag_id=flag_id)
        return await self._run("enable_flag", self._enable(flag_id, actor, reason), timeout)

    async def _enable(self, flag_id: int, actor: str, reason: str) -> TransitionResult:
        warnings: List[str] = []
        async with self.storage.transaction() as tx:
            flag = await tx.flags.get_flag(flag_id, lock="update")
            if flag.is_enabled:
                return TransitionResult(flag=flag, changed=False)

            # share locks keep the dependencies from being disabled under us
            load_locked = functools.partial(tx.flags.get_flag, lock="share")
            missing = await missing_active_dependencies(flag.dependencies, load_locked)
            if missing:
                log.warning("enable blocked flag_id=%s missing=%s", flag_id, missing)
                raise MissingActiveDependencies(
                    detail=f"Cannot enable flag. Missing active dependencies: {', '.join(missing)}",
                    meta={"flag_id": flag_id},
                    missing=missing,
                )

            await tx.flags.set_status(flag_id, FlagStatus.ENABLED)
            await self._audit(tx, flag_id, AuditAction.ENABLE, actor, reason, warnings)
            flag = await tx.flags.get_flag(flag_id)

        FLAG_TRANSITIONS.labels(action=AuditAction.ENABLE.value).inc()
        log.info("flag enabled flag_id=%s name=%s", flag_id, flag.name)
        return TransitionResult(flag=flag, changed=True, warnings=warnings)

    async def disable_flag(
        self, flag_id: int, actor: str, reason: str, *, timeout: Optional[float] = None,
    ) -> TransitionResult:
        require_valid(validate_flag_id(flag_id) + validate_reason(reason) + validate_actor(actor))
        set_ctx(flag_id=flag_id)
        return await self._run("disable_flag", self._disable(flag_id, actor, reason), timeout)

    async def _disable(self, flag_id: int, actor: str, reason: str) -> TransitionResult:
        warnings: List[str] = []
        async with self.storage.transaction() as tx:
            flag = await tx.flags.get_flag(flag_id, lock="update")
            if flag.is_disabled:
                return TransitionResult(flag=flag, changed=False)

            await tx.flags.set_status(flag_id, FlagStatus.DISABLED)
            await self._audit(tx, flag_id, AuditAction.DISABLE, actor, reason, warnings)
            cascaded = await self._cascade_disable(tx, [flag_id], warnings)
            flag = await tx.flags.get_flag(flag_id)

        FLAG_TRANSITIONS.labels(action=AuditAction.DISABLE.value).inc()
        if cascaded:
            FLAG_TRANSITIONS.labels(action=AuditAction.CASCADE_DISABLE.value).inc(len(cascaded))
        log.info("flag disabled flag_id=%s name=%s cascaded=%s", flag_id, flag.name, cascaded)
        if warnings:
            log.warning("disable finished with warnings flag_id=%s count=%d", flag_id, len(warnings))
        return TransitionResult(flag=flag, changed=True, cascaded=cascaded, warnings=warnings)

    async def toggle_flag(
        self, flag_id: int, enable: bool, actor: str, reason: str, *, timeout: Optional[float] = None,
    ) -> TransitionResult:
        require_valid(
            validate_flag_id(flag_id)
            + validate_toggle_request({"enable": enable, "reason": reason})
            + validate_actor(actor)
        )
        if enable:
            return await self.enable_flag(flag_id, actor, reason, timeout=timeout)
        return await self.disable_flag(flag_id, actor, reason, timeout=timeout)

    # ---------- structure ----------

    async def add_dependencies(
        self,
        flag_id: int,
        dependency_ids: Sequence[int],
        actor: str,
        *,
        timeout: Optional[float] = None,
    ) -> Flag:
        """
        Add prerequisites to an existing flag.

        Edges already present are ignored; if nothing new remains the call is
        a no-op. An enabled flag may only gain enabled prerequisites.
        """
        deps = list(dependency_ids) if dependency_ids is not None else None
        require_valid(
            validate_flag_id(flag_id)
            + validate_dependencies_request({"dependencies": deps})
            + validate_actor(actor)
        )
        set_ctx(flag_id=flag_id)
        return await self._run("add_dependencies", self._add_dependencies(flag_id, _dedupe(deps), actor), timeout)

    async def _add_dependencies(self, flag_id: int, deps: List[int], actor: str) -> Flag:
        warnings: List[str] = []
        async with self.storage.transaction() as tx:
            # one structural edit at a time, or two edges could each pass
            # the cycle check and close a cycle together
            await tx.lock_graph()
            flag = await tx.flags.get_flag(flag_id, lock="update")
            await self._require_dependencies(tx, deps)

            current = set(flag.dependencies)
            new_ids = [d for d in deps if d not in current]
            if not new_ids:
                return flag

            path = await find_cycle(flag_id, new_ids, tx.flags.direct_dependencies)
            if path:
                log.warning("circular dependency rejected flag_id=%s path=%s", flag_id, path)
                raise CircularDependency(
                    detail="adding these dependencies would create a cycle: "
                    + " -> ".join(str(p) for p in path),
                    meta={"flag_id": flag_id, "path": path},
                )

            if flag.is_enabled:
                load_locked = functools.partial(tx.flags.get_flag, lock="share")
                missing = await missing_active_dependencies(new_ids, load_locked)
                if missing:
                    log.warning("dependency add blocked flag_id=%s missing=%s", flag_id, missing)
                    raise MissingActiveDependencies(
                        detail=f"Enabled flag cannot depend on disabled flags: {', '.join(missing)}",
                        meta={"flag_id": flag_id},
                        missing=missing,
                    )

            for dep_id in new_ids:
                await tx.flags.add_edge(flag_id, dep_id)
            await self._audit(
                tx, flag_id, AuditAction.UPDATE, actor,
                "Dependencies added: " + ", ".join(str(d) for d in new_ids), warnings,
            )
            flag = await tx.flags.get_flag(flag_id)

        FLAG_TRANSITIONS.labels(action=AuditAction.UPDATE.value).inc()
        log.info("dependencies added flag_id=%s added=%s", flag_id, new_ids)
        return flag

    # ---------- reads ----------

    async def get_flag(self, flag_id: int, *, timeout: Optional[float] = None) -> Flag:
        require_valid(validate_flag_id(flag_id))
        return await self._run("get_flag", self._get_flag(flag_id), timeout)

    async def _get_flag(self, flag_id: int) -> Flag:
        async with self.storage.transaction() as tx:
            return await tx.flags.get_flag(flag_id)

    async def list_flags(self, *, timeout: Optional[float] = None) -> List[Flag]:
        return await self._run("list_flags", self._list_flags(), timeout)

    async def _list_flags(self) -> List[Flag]:
        async with self.storage.transaction() as tx:
            return await tx.flags.list_flags()

    async def get_audit_log(self, flag_id: int, *, timeout: Optional[float] = None) -> List[AuditLogEntry]:
        """Audit entries of one flag, newest first. NotFound for unknown ids."""
        require_valid(validate_flag_id(flag_id))
        return await self._run("get_audit_log", self._get_audit_log(flag_id), timeout)

    async def _get_audit_log(self, flag_id: int) -> List[AuditLogEntry]:
        async with self.storage.transaction() as tx:
            await tx.flags.get_flag(flag_id)
            return await tx.audit.list_for_flag(flag_id)

    async def list_audit_log(
        self, limit: Optional[int] = None, offset: int = 0, *, timeout: Optional[float] = None,
    ) -> List[AuditLogEntry]:
        page_limit = settings.AUDIT_PAGE_LIMIT
        if limit is None:
            limit = page_limit
        require_valid(validate_page(limit, offset))
        return await self._run("list_audit_log", self._list_audit_log(min(limit, page_limit), offset), timeout)

    async def _list_audit_log(self, limit: int, offset: int) -> List[AuditLogEntry]:
        async with self.storage.transaction() as tx:
            return await tx.audit.list_all(limit, offset)

    # ---------- repair ----------

    async def reconcile(self, actor: str = SYSTEM_ACTOR, *, timeout: Optional[float] = None) -> TransitionResult:
        """
        Re-establish "no enabled flag has a disabled direct dependency".

        Runs the cascade from every disabled flag. Meant for operators after
        a disable reported partial-cascade warnings.
        """
        require_valid(validate_actor(actor))
        return await self._run("reconcile", self._reconcile(actor), timeout)

    async def _reconcile(self, actor: str) -> TransitionResult:
        warnings: List[str] = []
        async with self.storage.transaction() as tx:
            roots = sorted(f.id for f in await tx.flags.list_flags() if f.is_disabled)
            cascaded = await self._cascade_disable(tx, roots, warnings, actor=actor)

        if cascaded:
            FLAG_TRANSITIONS.labels(action=AuditAction.CASCADE_DISABLE.value).inc(len(cascaded))
            log.warning("reconcile disabled flags=%s", cascaded)
        else:
            log.info("reconcile found nothing to repair")
        return TransitionResult(flag=None, changed=bool(cascaded), cascaded=cascaded, warnings=warnings)
