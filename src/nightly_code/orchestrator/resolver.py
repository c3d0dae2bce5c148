"""Dependency resolution for the session task queue."""

from __future__ import annotations

import heapq
from collections.abc import Iterable, Sequence

from nightly_code.orchestrator.errors import ResolutionError
from nightly_code.orchestrator.models import Checkpoint, Task


def resolve_execution_order(tasks: Sequence[Task]) -> list[Task]:
    """Return enabled tasks in a deterministic dependency-respecting order.

    Disabled tasks are dropped. Edges to ids outside the enabled set are
    ignored here (see ``find_missing_dependencies``). Among tasks whose
    dependencies are all placed, higher priority goes first, then earlier
    declaration. Raises ``ResolutionError`` on duplicate ids or cycles.
    """

    enabled = [task for task in tasks if task.enabled]
    if not enabled:
        return []

    index_by_id: dict[str, int] = {}
    for index, task in enumerate(enabled):
        if task.id in index_by_id:
            raise ResolutionError(f"Duplicate task id: {task.id}")
        index_by_id[task.id] = index

    graph = {
        task.id: _known_dependencies(task.dependencies, index_by_id) for task in enabled
    }
    cycle = _find_cycle(graph, order=[task.id for task in enabled])
    if cycle is not None:
        raise ResolutionError(
            f"Circular dependency detected: {' -> '.join(cycle)}",
            cycle_path=cycle,
        )

    remaining = {task_id: len(deps) for task_id, deps in graph.items()}
    dependents: dict[str, list[str]] = {task_id: [] for task_id in graph}
    for task_id, deps in graph.items():
        for dep_id in deps:
            dependents[dep_id].append(task_id)

    ready: list[tuple[int, int, str]] = []
    for task in enabled:
        if remaining[task.id] == 0:
            heapq.heappush(ready, _ready_key(task, index_by_id))

    ordered: list[Task] = []
    while ready:
        _, index, task_id = heapq.heappop(ready)
        ordered.append(enabled[index])
        for dependent_id in dependents[task_id]:
            remaining[dependent_id] -= 1
            if remaining[dependent_id] == 0:
                heapq.heappush(ready, _ready_key(enabled[index_by_id[dependent_id]], index_by_id))

    if len(ordered) != len(enabled):  # pragma: no cover - cycles are rejected above
        raise ResolutionError("Unable to resolve task dependencies.")
    return ordered


def find_missing_dependencies(tasks: Sequence[Task]) -> dict[str, tuple[str, ...]]:
    """Map enabled task id -> dependency ids not present among enabled tasks."""

    enabled_ids = {task.id for task in tasks if task.enabled}
    missing: dict[str, tuple[str, ...]] = {}
    for task in tasks:
        if not task.enabled:
            continue
        unknown = tuple(
            dep_id for dep_id in _unique(task.dependencies) if dep_id not in enabled_ids
        )
        if unknown:
            missing[task.id] = unknown
    return missing


def filter_remaining(order: Sequence[Task], checkpoint: Checkpoint) -> list[Task]:
    """Drop tasks a checkpoint already recorded as completed or failed."""

    done = set(checkpoint.completed_task_ids) | set(checkpoint.failed_task_ids)
    return [task for task in order if task.id not in done]


def _known_dependencies(dependencies: Iterable[str], index_by_id: dict[str, int]) -> list[str]:
    return [dep_id for dep_id in _unique(dependencies) if dep_id in index_by_id]


def _unique(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    unique: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        unique.append(value)
    return unique


def _ready_key(task: Task, index_by_id: dict[str, int]) -> tuple[int, int, str]:
    return (-task.priority, index_by_id[task.id], task.id)


def _find_cycle(graph: dict[str, list[str]], *, order: list[str]) -> list[str] | None:
    """Iterative DFS with an on-stack set; returns the closed cycle path."""

    visited: set[str] = set()
    for root in order:
        if root in visited:
            continue
        path: list[str] = [root]
        on_stack: set[str] = {root}
        iterators = [iter(graph[root])]
        visited.add(root)
        while iterators:
            next_id = next(iterators[-1], None)
            if next_id is None:
                iterators.pop()
                on_stack.discard(path.pop())
                continue
            if next_id in on_stack:
                start = path.index(next_id)
                return [*path[start:], next_id]
            if next_id in visited:
                continue
            visited.add(next_id)
            on_stack.add(next_id)
            path.append(next_id)
            iterators.append(iter(graph[next_id]))
    return None
