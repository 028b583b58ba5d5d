from __future__ import annotations

from typing import Awaitable, Callable, Iterable, List

from featureflags.kernel.entities import Flag

FlagLoader = Callable[[int], Awaitable[Flag]]


async def missing_active_dependencies(dependency_ids: Iterable[int], load_flag: FlagLoader) -> List[str]:
    """
    Names of the direct dependencies that are currently disabled, in the order
    of `dependency_ids`. Enabling is permitted iff the result is empty.

    Only direct dependencies are checked. That is sound as long as no flag is
    ever enabled while one of its own direct dependencies is disabled, which
    cascade disable (and reconcile) maintain.
    """
    missing: List[str] = []
    for dep_id in dependency_ids:
        dep = await load_flag(dep_id)
        if dep.is_disabled:
            missing.append(dep.name)
    return missing
