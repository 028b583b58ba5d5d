import asyncio

import pytest
from prometheus_client import REGISTRY

from featureflags.kernel.entities import AuditAction, FlagStatus
from featureflags.kernel.errors import (
    AlreadyExists,
    CircularDependency,
    MissingActiveDependencies,
    NotFound,
    StoreUnavailable,
    ValidationError,
)
from featureflags.kernel.graph import find_path
from featureflags.services.memory_store import MemoryAuditRecorder, MemoryFlagStore


def actions(entries):
    return [e.action for e in entries]


# ---------- create ----------

async def test_create_persists_disabled_flag_with_edges_and_audit(engine, make_flag):
    auth = await make_flag("auth")
    profile = await make_flag("profile")

    checkout = await engine.create_flag("checkout", [profile.id, auth.id], "alice")

    assert checkout.status is FlagStatus.DISABLED
    # response keeps the caller's order, reads come back ascending
    assert checkout.dependencies == [profile.id, auth.id]
    stored = await engine.get_flag(checkout.id)
    assert stored.dependencies == [auth.id, profile.id]

    log = await engine.get_audit_log(checkout.id)
    assert len(log) == 1
    assert log[0].action is AuditAction.CREATE
    assert log[0].actor == "alice"
    assert log[0].reason == "Flag created"


async def test_create_drops_duplicate_dependency_ids(engine, make_flag):
    auth = await make_flag("auth")
    flag = await engine.create_flag("checkout", [auth.id, auth.id], "alice")
    assert flag.dependencies == [auth.id]


async def test_duplicate_name_is_rejected(engine, make_flag):
    await make_flag("auth")
    with pytest.raises(AlreadyExists):
        await engine.create_flag("auth", [], "bob")
    assert [f.name for f in await engine.list_flags()] == ["auth"]


async def test_concurrent_creates_of_one_name_let_exactly_one_win(engine):
    results = await asyncio.gather(
        engine.create_flag("auth", [], "alice"),
        engine.create_flag("auth", [], "bob"),
        return_exceptions=True,
    )
    errors = [r for r in results if isinstance(r, Exception)]
    assert len(errors) == 1
    assert isinstance(errors[0], AlreadyExists)
    assert len(await engine.list_flags()) == 1


async def test_concurrent_enables_of_one_flag_change_it_once(engine, make_flag):
    auth = await make_flag("auth")
    results = await asyncio.gather(
        engine.enable_flag(auth.id, "alice", "launch"),
        engine.enable_flag(auth.id, "bob", "launch"),
    )
    assert sorted(r.changed for r in results) == [False, True]
    assert (await engine.get_flag(auth.id)).is_enabled
    assert actions(await engine.get_audit_log(auth.id)) == [AuditAction.ENABLE, AuditAction.CREATE]


async def test_concurrent_enable_and_dependency_disable_never_leave_flag_enabled(engine, make_flag):
    auth = await make_flag("auth")
    checkout = await make_flag("checkout", deps=[auth])
    await engine.enable_flag(auth.id, "alice", "launch")

    enabled, disabled = await asyncio.gather(
        engine.enable_flag(checkout.id, "alice", "launch"),
        engine.disable_flag(auth.id, "bob", "incident"),
        return_exceptions=True,
    )
    assert disabled.changed is True

    # either order ends with checkout disabled on top of a disabled dependency
    assert (await engine.get_flag(auth.id)).is_disabled
    assert (await engine.get_flag(checkout.id)).is_disabled
    latest = (await engine.get_audit_log(checkout.id))[0]
    if isinstance(enabled, Exception):
        assert isinstance(enabled, MissingActiveDependencies)
        assert latest.action is AuditAction.CREATE
    else:
        assert disabled.cascaded == [checkout.id]
        assert latest.action is AuditAction.CASCADE_DISABLE


async def test_unknown_dependency_creates_nothing(engine, make_flag):
    auth = await make_flag("auth")
    with pytest.raises(NotFound) as ei:
        await engine.create_flag("checkout", [auth.id, 999], "alice")
    assert "dependency flag with ID 999 not found" in ei.value.detail
    assert [f.name for f in await engine.list_flags()] == ["auth"]


async def test_invalid_input_is_a_validation_error(engine):
    with pytest.raises(ValidationError) as ei:
        await engine.create_flag("-bad", [0], "")
    fields = {e["field"] for e in ei.value.errors}
    assert fields == {"name", "dependencies[0]", "actor"}
    assert await engine.list_flags() == []


async def test_create_is_atomic_when_an_edge_write_fails(engine, make_flag, monkeypatch):
    auth = await make_flag("auth")
    profile = await make_flag("profile")
    original = MemoryFlagStore.add_edge

    async def flaky_add_edge(self, dependent_id, prerequisite_id):
        if prerequisite_id == profile.id:
            raise StoreUnavailable(detail="connection reset")
        return await original(self, dependent_id, prerequisite_id)

    monkeypatch.setattr(MemoryFlagStore, "add_edge", flaky_add_edge)
    with pytest.raises(StoreUnavailable):
        await engine.create_flag("checkout", [auth.id, profile.id], "alice")

    assert [f.name for f in await engine.list_flags()] == ["auth", "profile"]
    assert len(await engine.list_audit_log()) == 2


async def test_list_flags_is_sorted_by_name(engine, make_flag):
    await make_flag("zeta")
    await make_flag("alpha")
    await make_flag("mid")
    assert [f.name for f in await engine.list_flags()] == ["alpha", "mid", "zeta"]


# ---------- enable ----------

async def test_enable_requires_every_direct_dependency(engine, make_flag):
    auth = await make_flag("auth")
    profile = await make_flag("profile")
    checkout = await make_flag("checkout", deps=[auth, profile])

    with pytest.raises(MissingActiveDependencies) as ei:
        await engine.enable_flag(checkout.id, "alice", "launch")
    assert ei.value.missing == ["auth", "profile"]
    assert ei.value.to_dict()["missing_dependencies"] == ["auth", "profile"]
    assert ei.value.to_dict()["error"] == "Missing active dependencies"
    assert (await engine.get_flag(checkout.id)).is_disabled

    await engine.enable_flag(auth.id, "alice", "launch")
    with pytest.raises(MissingActiveDependencies) as ei:
        await engine.enable_flag(checkout.id, "alice", "launch")
    assert ei.value.missing == ["profile"]

    await engine.enable_flag(profile.id, "alice", "launch")
    result = await engine.enable_flag(checkout.id, "alice", "launch")
    assert result.changed is True
    assert result.flag.is_enabled


async def test_missing_list_follows_dependency_id_order(engine, make_flag):
    auth = await make_flag("auth")
    profile = await make_flag("profile")
    checkout = await engine.create_flag("checkout", [profile.id, auth.id], "alice")
    with pytest.raises(MissingActiveDependencies) as ei:
        await engine.enable_flag(checkout.id, "alice", "launch")
    assert ei.value.missing == ["auth", "profile"]


async def test_enable_twice_is_a_noop(engine, make_flag):
    auth = await make_flag("auth")
    first = await engine.enable_flag(auth.id, "alice", "launch")
    second = await engine.enable_flag(auth.id, "bob", "launch again")

    assert first.changed is True
    assert second.changed is False
    assert second.flag.is_enabled
    assert actions(await engine.get_audit_log(auth.id)) == [AuditAction.ENABLE, AuditAction.CREATE]


async def test_enable_unknown_flag(engine):
    with pytest.raises(NotFound):
        await engine.enable_flag(42, "alice", "launch")


async def test_enable_writes_audit_entry_with_actor_and_reason(engine, make_flag):
    auth = await make_flag("auth")
    await engine.enable_flag(auth.id, "carol", "go live")
    latest = (await engine.get_audit_log(auth.id))[0]
    assert latest.action is AuditAction.ENABLE
    assert latest.actor == "carol"
    assert latest.reason == "go live"


# ---------- disable / cascade ----------

async def test_disable_of_disabled_flag_is_a_noop(engine, make_flag):
    auth = await make_flag("auth")
    result = await engine.disable_flag(auth.id, "alice", "cleanup")
    assert result.changed is False
    assert result.cascaded == []
    assert actions(await engine.get_audit_log(auth.id)) == [AuditAction.CREATE]


async def test_disable_cascades_down_a_chain(engine, make_flag):
    auth = await make_flag("auth", enabled=True)
    checkout = await make_flag("checkout", deps=[auth], enabled=True)
    payment = await make_flag("payment", deps=[checkout], enabled=True)

    result = await engine.disable_flag(auth.id, "alice", "incident")

    assert result.changed is True
    assert result.cascaded == [checkout.id, payment.id]
    assert result.warnings == []
    for flag in (auth, checkout, payment):
        assert (await engine.get_flag(flag.id)).is_disabled

    checkout_entry = (await engine.get_audit_log(checkout.id))[0]
    assert checkout_entry.action is AuditAction.CASCADE_DISABLE
    assert checkout_entry.actor == "system"
    assert checkout_entry.reason == f"Automatically disabled due to dependency flag {auth.id} being disabled"

    payment_entry = (await engine.get_audit_log(payment.id))[0]
    assert payment_entry.action is AuditAction.CASCADE_DISABLE
    assert payment_entry.reason == f"Automatically disabled due to dependency flag {checkout.id} being disabled"

    root_entry = (await engine.get_audit_log(auth.id))[0]
    assert root_entry.action is AuditAction.DISABLE
    assert root_entry.actor == "alice"


async def test_cascade_disables_each_transitive_dependent_exactly_once(engine, make_flag):
    root = await make_flag("root", enabled=True)
    left = await make_flag("left", deps=[root], enabled=True)
    right = await make_flag("right", deps=[root], enabled=True)
    bottom = await make_flag("bottom", deps=[left, right], enabled=True)
    bystander = await make_flag("bystander", enabled=True)

    result = await engine.disable_flag(root.id, "alice", "incident")

    assert sorted(result.cascaded) == sorted([left.id, right.id, bottom.id])
    assert len(result.cascaded) == 3
    for flag in (left, right, bottom):
        entries = await engine.get_audit_log(flag.id)
        cascades = [e for e in entries if e.is_cascade]
        assert len(cascades) == 1
        assert cascades[0].actor == "system"
    assert (await engine.get_flag(bystander.id)).is_enabled


async def test_cascade_skips_dependents_that_are_already_disabled(engine, make_flag):
    root = await make_flag("root", enabled=True)
    idle = await make_flag("idle", deps=[root])

    result = await engine.disable_flag(root.id, "alice", "incident")

    assert result.cascaded == []
    assert actions(await engine.get_audit_log(idle.id)) == [AuditAction.CREATE]


async def test_cascade_failure_is_reported_and_siblings_still_disabled(engine, make_flag, monkeypatch):
    root = await make_flag("root", enabled=True)
    stuck = await make_flag("stuck", deps=[root], enabled=True)
    sibling = await make_flag("sibling", deps=[root], enabled=True)
    original = MemoryFlagStore.set_status

    async def flaky_set_status(self, flag_id, status):
        if flag_id == stuck.id:
            raise StoreUnavailable(detail="row lock timeout")
        return await original(self, flag_id, status)

    monkeypatch.setattr(MemoryFlagStore, "set_status", flaky_set_status)
    result = await engine.disable_flag(root.id, "alice", "incident")

    assert result.changed is True
    assert result.cascaded == [sibling.id]
    assert len(result.warnings) == 1
    assert f"flag {stuck.id}" in result.warnings[0]
    assert (await engine.get_flag(root.id)).is_disabled
    assert (await engine.get_flag(sibling.id)).is_disabled
    assert (await engine.get_flag(stuck.id)).is_enabled

    monkeypatch.undo()
    repair = await engine.reconcile()
    assert repair.cascaded == [stuck.id]
    assert repair.warnings == []
    assert (await engine.get_flag(stuck.id)).is_disabled
    entry = (await engine.get_audit_log(stuck.id))[0]
    assert entry.action is AuditAction.CASCADE_DISABLE
    assert entry.actor == "system"


async def test_reconcile_on_consistent_graph_changes_nothing(engine, make_flag):
    auth = await make_flag("auth", enabled=True)
    await make_flag("checkout", deps=[auth], enabled=True)
    result = await engine.reconcile("ops")
    assert result.changed is False
    assert result.cascaded == []


async def test_toggle_routes_to_enable_and_disable(engine, make_flag):
    auth = await make_flag("auth")
    on = await engine.toggle_flag(auth.id, True, "alice", "launch")
    assert on.flag.status is FlagStatus.ENABLED
    off = await engine.toggle_flag(auth.id, False, "alice", "rollback")
    assert off.flag.status is FlagStatus.DISABLED


async def test_toggle_validates_reason_and_enable(engine, make_flag):
    auth = await make_flag("auth")
    with pytest.raises(ValidationError) as ei:
        await engine.toggle_flag(auth.id, "yes", "alice", "no")
    assert {e["field"] for e in ei.value.errors} == {"enable", "reason"}


# ---------- dependencies / cycles ----------

async def test_diamond_is_allowed_but_closing_the_loop_is_not(engine, make_flag):
    a = await make_flag("flag-a")
    b = await make_flag("flag-b", deps=[a])
    c = await make_flag("flag-c", deps=[b, a])

    with pytest.raises(CircularDependency) as ei:
        await engine.add_dependencies(a.id, [c.id], "alice")
    path = ei.value.meta["path"]
    assert path[0] == a.id and path[-1] == a.id
    assert c.id in path

    assert (await engine.get_flag(a.id)).dependencies == []
    assert actions(await engine.get_audit_log(a.id)) == [AuditAction.CREATE]


async def test_flag_cannot_depend_on_itself(engine, make_flag):
    a = await make_flag("flag-a")
    with pytest.raises(CircularDependency):
        await engine.add_dependencies(a.id, [a.id], "alice")


async def test_add_dependencies_writes_update_audit(engine, make_flag):
    auth = await make_flag("auth")
    profile = await make_flag("profile")
    checkout = await make_flag("checkout", deps=[auth])

    flag = await engine.add_dependencies(checkout.id, [profile.id, auth.id], "alice")

    assert flag.dependencies == [auth.id, profile.id]
    entry = (await engine.get_audit_log(checkout.id))[0]
    assert entry.action is AuditAction.UPDATE
    assert entry.reason == f"Dependencies added: {profile.id}"


async def test_add_existing_dependencies_is_a_noop(engine, make_flag):
    auth = await make_flag("auth")
    checkout = await make_flag("checkout", deps=[auth])
    flag = await engine.add_dependencies(checkout.id, [auth.id], "alice")
    assert flag.dependencies == [auth.id]
    assert actions(await engine.get_audit_log(checkout.id)) == [AuditAction.CREATE]


async def test_enabled_flag_cannot_gain_disabled_dependency(engine, make_flag):
    auth = await make_flag("auth", enabled=True)
    beta = await make_flag("beta")
    with pytest.raises(MissingActiveDependencies) as ei:
        await engine.add_dependencies(auth.id, [beta.id], "alice")
    assert ei.value.missing == ["beta"]
    assert (await engine.get_flag(auth.id)).dependencies == []


async def test_add_dependencies_unknown_ids(engine, make_flag):
    auth = await make_flag("auth")
    with pytest.raises(NotFound):
        await engine.add_dependencies(auth.id, [77], "alice")
    with pytest.raises(NotFound):
        await engine.add_dependencies(77, [auth.id], "alice")


async def test_graph_stays_acyclic_under_arbitrary_edge_requests(engine, make_flag):
    flags = [await make_flag(f"flag-{i}") for i in range(6)]
    ids = [f.id for f in flags]
    for i in ids:
        for j in ids:
            try:
                await engine.add_dependencies(i, [j], "fuzz")
            except CircularDependency:
                pass

    edges = {f.id: f.dependencies for f in await engine.list_flags()}

    async def dependencies_of(node):
        return edges.get(node, [])

    for node in ids:
        for dep in edges[node]:
            assert await find_path(dep, node, dependencies_of) is None


# ---------- audit ----------

async def test_audit_log_is_newest_first(engine, make_flag):
    auth = await make_flag("auth")
    await engine.enable_flag(auth.id, "alice", "launch")
    await engine.disable_flag(auth.id, "alice", "rollback")
    assert actions(await engine.get_audit_log(auth.id)) == [
        AuditAction.DISABLE, AuditAction.ENABLE, AuditAction.CREATE,
    ]


async def test_audit_log_of_unknown_flag(engine):
    with pytest.raises(NotFound):
        await engine.get_audit_log(5)


async def test_global_audit_log_pages(engine, make_flag):
    for name in ("one", "two", "three"):
        await make_flag(name)
    everything = await engine.list_audit_log()
    assert [e.flag_id for e in everything] == [3, 2, 1]
    page = await engine.list_audit_log(limit=1, offset=1)
    assert [e.flag_id for e in page] == [2]
    with pytest.raises(ValidationError):
        await engine.list_audit_log(limit=0)


async def test_audit_failure_does_not_fail_the_transition(engine, make_flag, monkeypatch):
    auth = await make_flag("auth")
    before = REGISTRY.get_sample_value("flag_audit_write_failures_total") or 0.0

    async def broken_record(self, flag_id, action, actor, reason):
        raise StoreUnavailable(detail="audit table unavailable")

    monkeypatch.setattr(MemoryAuditRecorder, "record", broken_record)
    result = await engine.enable_flag(auth.id, "alice", "launch")

    assert result.changed is True
    assert result.flag.is_enabled
    assert len(result.warnings) == 1
    assert "enable" in result.warnings[0]
    after = REGISTRY.get_sample_value("flag_audit_write_failures_total")
    assert after == before + 1

    monkeypatch.undo()
    assert actions(await engine.get_audit_log(auth.id)) == [AuditAction.CREATE]


# ---------- deadlines ----------

async def test_deadline_rolls_back_and_reports_store_unavailable(engine, make_flag, monkeypatch):
    auth = await make_flag("auth")

    async def slow_record(self, flag_id, action, actor, reason):
        await asyncio.sleep(5)

    monkeypatch.setattr(MemoryAuditRecorder, "record", slow_record)
    with pytest.raises(StoreUnavailable) as ei:
        await engine.enable_flag(auth.id, "alice", "launch", timeout=0.05)
    assert ei.value.to_dict()["retryable"] is True

    monkeypatch.undo()
    # status write made before the deadline was undone
    assert (await engine.get_flag(auth.id)).is_disabled
    # and the store is usable again
    result = await engine.enable_flag(auth.id, "alice", "launch")
    assert result.changed is True
