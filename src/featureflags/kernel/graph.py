"""
Cycle detection over the "depends-on" relation.

The relation is read through a `DependenciesOf` callable so the detector works
against any store (and against plain dicts in tests). Traversal is
breadth-first with an explicit visited set and no depth bound: it terminates
because the stored graph is finite and every node is expanded at most once.
"""
from __future__ import annotations

from collections import deque
from typing import Awaitable, Callable, Dict, Iterable, List, Optional

from featureflags.kernel.entities import NEW_FLAG_ID

DependenciesOf = Callable[[int], Awaitable[Iterable[int]]]


async def find_path(start: int, target: int, dependencies_of: DependenciesOf) -> Optional[List[int]]:
    """
    Shortest depends-on path from `start` to `target` (both included), or None.
    """
    if start == target:
        return [start]
    parent: Dict[int, int] = {}
    visited = {start}
    queue = deque([start])
    while queue:
        node = queue.popleft()
        for nxt in await dependencies_of(node):
            if nxt in visited:
                continue
            visited.add(nxt)
            parent[nxt] = node
            if nxt == target:
                path = [nxt]
                while path[-1] != start:
                    path.append(parent[path[-1]])
                path.reverse()
                return path
            queue.append(nxt)
    return None


async def find_cycle(
    candidate_id: int,
    proposed_ids: Iterable[int],
    dependencies_of: DependenciesOf,
) -> Optional[List[int]]:
    """
    The cycle that adding edges candidate -> p (for each proposed p) would
    close, as [candidate, p, ..., candidate]; None when the edges are safe.

    A candidate of NEW_FLAG_ID (flag not created yet) can never be reached,
    since no stored edge mentions it.
    """
    if not candidate_id or candidate_id == NEW_FLAG_ID:
        return None
    for p in proposed_ids:
        path = await find_path(p, candidate_id, dependencies_of)
        if path is not None:
            # p == candidate is a self-dependency: [candidate, candidate]
            return [candidate_id] + path
    return None


async def would_create_cycle(
    candidate_id: int,
    proposed_ids: Iterable[int],
    dependencies_of: DependenciesOf,
) -> bool:
    return await find_cycle(candidate_id, proposed_ids, dependencies_of) is not None
