"""Workflow definition checks and step ordering.

:func:`validate_workflow` rejects a definition before any runtime record is
created; :func:`execution_order` gives the order the engine walks steps in.
Dependencies are indices into ``Workflow.steps``.
"""

from __future__ import annotations

import heapq
import re
from collections import defaultdict

from conductor.core.errors import WorkflowError
from conductor.execution.registry import TaskTypeRegistry
from conductor.orchestration.models import Workflow, WorkflowStep

STEP_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")


def validate_workflow(workflow: Workflow, registry: TaskTypeRegistry | None = None) -> None:
    """Raise :class:`WorkflowError` describing the first problem found.

    Checks, in order: at least one step, step names (pattern and
    uniqueness), task types known to *registry* (skipped when None),
    dependency indices (in range, not self) and dependency cycles.
    """
    steps = workflow.steps
    if not steps:
        raise WorkflowError(f"Workflow '{workflow.name}' has no steps")

    seen: set[str] = set()
    for index, step in enumerate(steps):
        if not STEP_NAME_PATTERN.match(step.name or ""):
            raise WorkflowError(
                f"Step {index} has an invalid name {step.name!r}; use letters, digits, '_' or '-'"
            ).with_context(step=step.name)
        if step.name in seen:
            raise WorkflowError(f"Duplicate step name: {step.name}").with_context(step=step.name)
        seen.add(step.name)

        if registry is not None and not registry.has(step.task_type):
            raise WorkflowError(
                f"Step '{step.name}' uses unknown task type '{step.task_type}'. "
                f"Available: {', '.join(registry.list_types()) or 'none'}"
            ).with_context(step=step.name, task_type=step.task_type)

        if step.max_attempts < 0:
            raise WorkflowError(f"Step '{step.name}' has negative max_attempts").with_context(step=step.name)

        for dep in step.depends_on:
            if not isinstance(dep, int) or isinstance(dep, bool) or not 0 <= dep < len(steps):
                raise WorkflowError(f"Step '{step.name}' depends on unknown step index {dep!r}").with_context(
                    step=step.name
                )
            if dep == index:
                raise WorkflowError(f"Step '{step.name}' depends on itself").with_context(step=step.name)

    cycle = _find_cycle(steps)
    if cycle:
        names = " -> ".join(steps[i].name for i in cycle)
        raise WorkflowError(f"Dependency cycle detected: {names}")


def _find_cycle(steps: list[WorkflowStep]) -> list[int] | None:
    """Return one cycle as a list of step indices, or None (iterative DFS)."""
    white, grey, black = 0, 1, 2
    color = [white] * len(steps)
    parent: dict[int, int] = {}

    for root in range(len(steps)):
        if color[root] != white:
            continue
        stack = [(root, iter(steps[root].depends_on))]
        color[root] = grey
        while stack:
            node, deps = stack[-1]
            for dep in deps:
                if color[dep] == white:
                    color[dep] = grey
                    parent[dep] = node
                    stack.append((dep, iter(steps[dep].depends_on)))
                    break
                if color[dep] == grey:
                    cycle = [dep]
                    current = node
                    while current != dep:
                        cycle.append(current)
                        current = parent[current]
                    cycle.append(dep)
                    return cycle[::-1]
            else:
                color[node] = black
                stack.pop()
    return None


def execution_order(steps: list[WorkflowStep]) -> list[int]:
    """Step indices in run order: declared order, constrained by dependencies.

    Kahn's algorithm with the lowest ready index first, so a workflow with
    no dependencies runs in list order.
    """
    dependents: dict[int, list[int]] = defaultdict(list)
    in_degree = [0] * len(steps)
    for index, step in enumerate(steps):
        for dep in set(step.depends_on):
            dependents[dep].append(index)
            in_degree[index] += 1

    ready = [i for i, degree in enumerate(in_degree) if degree == 0]
    heapq.heapify(ready)
    order: list[int] = []
    while ready:
        index = heapq.heappop(ready)
        order.append(index)
        for dependent in dependents[index]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                heapq.heappush(ready, dependent)

    if len(order) != len(steps):
        raise WorkflowError("Dependency cycle detected while ordering steps")
    return order
