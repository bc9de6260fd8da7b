"""
Provisioning planner — orders steps so dependencies always come first.

Kahn's algorithm over ``depends_on`` with ties broken by declaration
order, so the same input always yields the same plan. The ordering
helper is shared with job ``needs`` validation.
"""

from __future__ import annotations

import heapq
import logging
from collections.abc import Sequence

from pipewright.core.errors import ConfigError, CycleError
from pipewright.core.models.provisioning import ProvisioningStep

logger = logging.getLogger(__name__)


def _find_cycle(remaining: dict[str, list[str]]) -> list[str]:
    """Return one cycle (as a node path) among nodes that never got ready."""
    visiting: set[str] = set()
    done: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visiting.add(node)
        path.append(node)
        for dep in remaining.get(node, []):
            if dep not in remaining:
                continue
            if dep in visiting:
                return path[path.index(dep):] + [dep]
            if dep not in done:
                found = visit(dep)
                if found:
                    return found
        visiting.discard(node)
        done.add(node)
        path.pop()
        return None

    for node in remaining:
        if node not in done:
            found = visit(node)
            if found:
                return found
    return sorted(remaining)[:1]


def stable_topological_order(
    nodes: Sequence[tuple[str, Sequence[str]]],
    what: str = "step",
) -> list[str]:
    """Order ``(id, dependencies)`` pairs, dependencies first.

    Raises:
        ConfigError: On duplicate ids or a dependency on an unknown id.
        CycleError: If the dependencies form a cycle; ``detail`` is one
            cycle member.
    """
    index: dict[str, int] = {}
    for position, (node_id, _deps) in enumerate(nodes):
        if node_id in index:
            raise ConfigError(f"Duplicate {what} id: '{node_id}'", detail=node_id)
        index[node_id] = position

    deps_of: dict[str, list[str]] = {}
    dependents: dict[str, list[str]] = {n: [] for n in index}
    indeg: dict[str, int] = {n: 0 for n in index}

    for node_id, deps in nodes:
        unique = list(dict.fromkeys(deps))
        for dep in unique:
            if dep not in index:
                raise ConfigError(
                    f"{what.capitalize()} '{node_id}' depends on unknown {what} '{dep}'",
                    detail=dep,
                )
            dependents[dep].append(node_id)
            indeg[node_id] += 1
        deps_of[node_id] = unique

    ready = [(index[n], n) for n, d in indeg.items() if d == 0]
    heapq.heapify(ready)
    order: list[str] = []

    while ready:
        _pos, node = heapq.heappop(ready)
        order.append(node)
        for child in dependents[node]:
            indeg[child] -= 1
            if indeg[child] == 0:
                heapq.heappush(ready, (index[child], child))

    if len(order) != len(index):
        remaining = {n: deps_of[n] for n in index if n not in set(order)}
        cycle = _find_cycle(remaining)
        raise CycleError(
            f"Dependency cycle among {what}s: {' → '.join(cycle)}",
            detail=cycle[0],
        )

    return order


def plan(steps: Sequence[ProvisioningStep]) -> list[ProvisioningStep]:
    """Topologically sort provisioning steps (stable by declaration order)."""
    by_id = {s.id: s for s in steps}
    order = stable_topological_order([(s.id, s.depends_on) for s in steps], what="step")
    logger.debug("Planned %d steps: %s", len(order), order)
    return [by_id[i] for i in order]
