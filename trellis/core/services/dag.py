"""
DAG utilities (pure).

Kahn's algorithm over string node ids, used to order migration
statements and the models of one migration batch.
No I/O.
"""

from __future__ import annotations

import heapq
from collections.abc import Callable, Iterable
from typing import Any


class CycleError(ValueError):
    """Raised when the dependency graph contains a cycle."""

    def __init__(self, nodes: list[str]):
        super().__init__(f"Dependency cycle between: {', '.join(sorted(nodes))}")
        self.nodes = nodes


def validate_dag(nodes: Iterable[str], edges: Iterable[tuple[str, str]]) -> list[str]:
    """Validate a dependency graph.

    Checks for:
    - References to unknown nodes
    - Cycles (Kahn's algorithm)

    Args:
        nodes: Node ids.
        edges: ``(before, after)`` pairs.

    Returns:
        List of error strings (empty = valid).
    """
    node_list = list(nodes)
    ids = set(node_list)
    errors: list[str] = []
    edge_list = list(edges)

    for before, after in edge_list:
        for ref in (before, after):
            if ref not in ids:
                errors.append(f"Edge {before} -> {after} references unknown node '{ref}'")
    if errors:
        return errors

    try:
        topological_sort(node_list, edge_list)
    except CycleError as e:
        errors.append(str(e))
    return errors


def topological_sort(
    nodes: Iterable[str],
    edges: Iterable[tuple[str, str]],
    priority: Callable[[str], Any] | None = None,
) -> list[str]:
    """Order nodes so every edge ``(before, after)`` is respected.

    Among nodes that are ready at the same time, the one with the
    smallest ``priority`` key comes first (default: input order), so the
    result is deterministic.

    Raises:
        CycleError: If some nodes can never become ready.
    """
    node_list = list(dict.fromkeys(nodes))
    position = {n: i for i, n in enumerate(node_list)}
    key = priority or (lambda n: position[n])

    in_degree: dict[str, int] = {n: 0 for n in node_list}
    adj: dict[str, list[str]] = {n: [] for n in node_list}
    for before, after in dict.fromkeys(edges):
        if before == after:
            continue
        adj[before].append(after)
        in_degree[after] += 1

    ready = [(key(n), position[n], n) for n, deg in in_degree.items() if deg == 0]
    heapq.heapify(ready)

    order: list[str] = []
    while ready:
        _, _, node = heapq.heappop(ready)
        order.append(node)
        for successor in adj[node]:
            in_degree[successor] -= 1
            if in_degree[successor] == 0:
                heapq.heappush(ready, (key(successor), position[successor], successor))

    if len(order) < len(node_list):
        raise CycleError([n for n in node_list if in_degree[n] > 0])
    return order
