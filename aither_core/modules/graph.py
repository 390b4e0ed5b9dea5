"""Dependency graph of modules and its layering into depth levels."""

from dataclasses import dataclass, field
from typing import Iterable, Mapping

from aither_core.errors import CircularDependencyError


@dataclass
class DependencyResolution:
    """Depth assignment for a dependency graph.

    ``levels[d]`` holds the modules of depth ``d`` (sorted by name). Modules that
    could not be placed are listed in ``cycles`` (members of a cycle),
    ``blocked`` (depend on a cycle member) or ``missing`` (depend on a module
    that is not in the graph).
    """

    depths: dict[str, int] = field(default_factory=dict)
    levels: list[list[str]] = field(default_factory=list)
    cycles: list[CircularDependencyError] = field(default_factory=list)
    blocked: dict[str, list[str]] = field(default_factory=dict)
    missing: dict[str, list[str]] = field(default_factory=dict)

    @property
    def order(self) -> list[str]:
        return [name for level in self.levels for name in level]

    @property
    def unresolved(self) -> set[str]:
        cyclic = {n for c in self.cycles for n in c.cycle}
        return cyclic | set(self.blocked) | set(self.missing)


def build_dependency_graph(
    dependencies: Mapping[str, Iterable[str]], exclude: Iterable[str] = ()
) -> dict[str, list[str]]:
    """{module: [deps]} with excluded modules removed from nodes and edges."""
    skip = set(exclude)
    graph: dict[str, list[str]] = {}
    for name, deps in dependencies.items():
        if name in skip:
            continue
        seen: list[str] = []
        for d in deps:
            if d not in skip and d not in seen:
                seen.append(d)
        graph[name] = seen
    return graph


def resolve_depth_levels(graph: Mapping[str, list[str]]) -> DependencyResolution:
    """depth(m) = 0 without dependencies, else 1 + max(depth(dependency))."""
    result = DependencyResolution()
    for name, deps in graph.items():
        absent = [d for d in deps if d not in graph]
        if absent:
            result.missing[name] = absent

    pending = {n: list(deps) for n, deps in graph.items() if n not in result.missing}
    depth = 0
    while pending:
        ready = sorted(n for n, deps in pending.items() if all(d in result.depths for d in deps))
        if not ready:
            break
        for n in ready:
            result.depths[n] = depth
            del pending[n]
        result.levels.append(ready)
        depth += 1

    if pending:
        members: set[str] = set()
        for component in _strongly_connected(pending):
            if len(component) > 1 or component[0] in pending[component[0]]:
                result.cycles.append(CircularDependencyError(component))
                members.update(component)
        for n, deps in pending.items():
            if n not in members:
                result.blocked[n] = [d for d in deps if d not in result.depths]
    return result


def _strongly_connected(graph: Mapping[str, list[str]]) -> list[list[str]]:
    """Tarjan's algorithm restricted to nodes of graph. Components are sorted by name."""
    index: dict[str, int] = {}
    low: dict[str, int] = {}
    stack: list[str] = []
    on_stack: set[str] = set()
    components: list[list[str]] = []
    counter = 0

    def visit(v: str) -> None:
        nonlocal counter
        index[v] = low[v] = counter
        counter += 1
        stack.append(v)
        on_stack.add(v)
        for w in graph.get(v, []):
            if w not in graph:
                continue
            if w not in index:
                visit(w)
                low[v] = min(low[v], low[w])
            elif w in on_stack:
                low[v] = min(low[v], index[w])
        if low[v] == index[v]:
            component: list[str] = []
            while True:
                w = stack.pop()
                on_stack.discard(w)
                component.append(w)
                if w == v:
                    break
            components.append(sorted(component))

    for v in sorted(graph):
        if v not in index:
            visit(v)
    return components
