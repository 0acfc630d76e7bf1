"""Generic cycle detection over id-keyed graphs.

Shared by the hierarchy validator (edge: task -> parent) and the
dependency validator (edges: task -> each dependsOn target).
"""

from typing import Callable, Hashable, Iterable, TypeVar

N = TypeVar("N", bound=Hashable)


def find_cycles(nodes: Iterable[N], edges: Callable[[N], Iterable[N]]) -> list[list[N]]:
    """Find cycles with an iterative depth-first search.

    Uses an in-progress set (nodes on the current path) and a completed
    set (fully explored nodes). A back edge to an in-progress node closes
    a cycle, reported as the path slice from that node to the current one.

    Args:
        nodes: Nodes to start from, in the order they should be explored.
        edges: Returns the successors of a node. Successors outside
            ``nodes`` are ignored.

    Returns:
        One path per back edge found, e.g. ``[["A", "B"]]`` for A <-> B.
    """
    node_list = list(nodes)
    known = set(node_list)
    completed: set[N] = set()
    in_progress: set[N] = set()
    cycles: list[list[N]] = []

    for start in node_list:
        if start in completed:
            continue
        path: list[N] = [start]
        in_progress.add(start)
        stack = [iter(list(edges(start)))]
        while stack:
            advanced = False
            for succ in stack[-1]:
                if succ not in known or succ in completed:
                    continue
                if succ in in_progress:
                    cycles.append(path[path.index(succ):])
                    continue
                path.append(succ)
                in_progress.add(succ)
                stack.append(iter(list(edges(succ))))
                advanced = True
                break
            if not advanced:
                stack.pop()
                done = path.pop()
                in_progress.discard(done)
                completed.add(done)
    return cycles


def has_path(start: N, target: N, edges: Callable[[N], Iterable[N]]) -> bool:
    """True if ``target`` is reachable from ``start`` (start itself counts)."""
    seen: set[N] = set()
    frontier = [start]
    while frontier:
        node = frontier.pop()
        if node == target:
            return True
        if node in seen:
            continue
        seen.add(node)
        frontier.extend(edges(node))
    return False
