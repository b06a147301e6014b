"""
Dependency extraction and dependency-graph checks for calculated measures.

Graph nodes are metric names; an edge a -> b means "a's formula references b".
Temporal selectors are an evaluation-time concern, so {previous:weight} and
{weight} both contribute the single edge to "weight".
"""

import re
from collections.abc import Iterable, Mapping, Sequence
from typing import Any

from measures.domain.models import CycleResult
from measures.services.formula_parser import Expression, iter_variables

_REFERENCE_RE = re.compile(r"\{([^{}]*)\}")

DefinitionMap = Mapping[str, Any]


def _base_name(reference: str) -> str:
    _, _, name = reference.rpartition(":")
    return name.strip()


def extract_variable_references(formula: str | Expression) -> list[str]:
    """Distinct binding keys ("weight", "previous:weight") in order of appearance."""
    if isinstance(formula, Expression):
        return list(dict.fromkeys(v.key for v in iter_variables(formula)))
    if not isinstance(formula, str):
        return []

    references: dict[str, None] = {}
    for match in _REFERENCE_RE.finditer(formula):
        body = match.group(1).strip()
        if not body:
            continue
        if ":" in body:
            selector, _, name = body.partition(":")
            body = f"{selector.strip()}:{name.strip()}"
        references[body] = None
    return list(references)


def extract_dependencies(formula: str | Expression) -> list[str]:
    """
    Base metric names referenced by a formula.

    Works on raw text (even text that does not parse) or on a parsed tree.
    Qualified references collapse to their base name; duplicates collapse to
    the first appearance.
    """
    if isinstance(formula, Expression):
        return list(dict.fromkeys(v.name for v in iter_variables(formula)))

    names: dict[str, None] = {}
    for reference in extract_variable_references(formula):
        name = _base_name(reference)
        if name:
            names[name] = None
    return list(names)


def _dependencies_of(entry: Any) -> list[str]:
    if entry is None:
        return []
    if hasattr(entry, "dependencies"):
        return list(entry.dependencies or [])
    if isinstance(entry, Mapping):
        return list(entry.get("dependencies") or [])
    return list(entry)


def build_graph(definitions: DefinitionMap) -> dict[str, list[str]]:
    """Normalize a name -> (dependency list | definition | {"dependencies": ...}) map."""
    return {name: _dependencies_of(entry) for name, entry in definitions.items()}


def detect_circular_dependencies(
    name: str,
    dependencies: Sequence[str],
    definitions: DefinitionMap,
) -> CycleResult:
    """
    Check whether giving `name` the proposed `dependencies` creates a cycle.

    The candidate's existing entry (if any) is replaced by the proposed
    dependency set. Traversal is depth-first from the candidate; the reported
    cycle runs from the first occurrence of the repeated node through the
    current node and back, e.g. ["c", "a", "b", "c"]. Names missing from the
    map are treated as leaves.
    """
    graph = build_graph(definitions)
    graph[name] = list(dependencies)

    visited: set[str] = set()
    on_path: set[str] = set()
    path: list[str] = []

    def visit(node: str) -> list[str] | None:
        visited.add(node)
        on_path.add(node)
        path.append(node)

        for dep in graph.get(node, []):
            if dep in on_path:
                return path[path.index(dep) :] + [dep]
            if dep not in visited:
                cycle = visit(dep)
                if cycle:
                    return cycle

        on_path.discard(node)
        path.pop()
        return None

    cycle = visit(name)
    return CycleResult(has_circular=cycle is not None, cycle=cycle)


def dependents_of(name: str, definitions: DefinitionMap) -> list[str]:
    """
    Every definition that depends on `name`, directly or transitively.

    Direct dependents come first, then breadth-first by distance.
    """
    graph = build_graph(definitions)
    reverse: dict[str, list[str]] = {}
    for node, deps in graph.items():
        for dep in deps:
            reverse.setdefault(dep, []).append(node)

    found: dict[str, None] = {}
    queue = list(reverse.get(name, []))
    while queue:
        node = queue.pop(0)
        if node in found or node == name:
            continue
        found[node] = None
        queue.extend(reverse.get(node, []))
    return list(found)


def topological_order(definitions: DefinitionMap, names: Iterable[str] | None = None) -> list[str]:
    """
    Order definition names so every dependency precedes its dependents.

    Only names present in `definitions` are returned; when `names` is given,
    the result is restricted to those names (still ordered by the full graph).
    Raises ValueError if the graph contains a cycle.
    """
    graph = build_graph(definitions)
    wanted = set(graph) if names is None else set(names) & set(graph)

    ordered: list[str] = []
    done: set[str] = set()
    visiting: set[str] = set()

    def visit(node: str) -> None:
        if node in done:
            return
        if node in visiting:
            raise ValueError(f"Circular dependency detected involving: {node}")
        visiting.add(node)
        for dep in graph.get(node, []):
            if dep in graph:
                visit(dep)
        visiting.discard(node)
        done.add(node)
        ordered.append(node)

    for node in graph:
        visit(node)
    return [node for node in ordered if node in wanted]
