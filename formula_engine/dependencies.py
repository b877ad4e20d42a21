"""
Dependency graph analysis for calculated fields

Detects circular references before a formula is saved, and offers
ordering helpers for callers that cascade recalculations. Recalculation
itself stays with the caller: nothing here evaluates formulas.

Field graphs map a field ID to an entry exposing its dependencies, either
a mapping ({"dependencies": [...]}) or an object with a dependencies
attribute (e.g. FieldNode). Graphs are never mutated.
"""

from collections import deque
from typing import Any, Deque, Dict, Iterator, List, Mapping, Sequence, Set, Tuple
import logging

from formula_engine.exceptions import CircularDependencyError
from formula_engine.models import CircularDependencyResult, CycleFound, NoCycle

logger = logging.getLogger(__name__)


def _dependencies_of(entry: Any) -> Tuple[str, ...]:
    """Read the dependency list of a field graph entry"""
    if entry is None:
        return ()
    if isinstance(entry, Mapping):
        deps = entry.get("dependencies")
    else:
        deps = getattr(entry, "dependencies", None)
    return tuple(deps or ())


# ============================================================================
# Circular Dependency Detection
# ============================================================================


def detect_circular_dependencies(
    field_id: str,
    direct_dependencies: Sequence[str],
    all_fields: Mapping[str, Any],
) -> CircularDependencyResult:
    """
    Check whether a field's dependencies close a loop in the field graph

    Depth-first traversal from field_id with an explicit stack. The edges of
    field_id are direct_dependencies (overriding any entry it has in
    all_fields); every other field's edges come from all_fields, and fields
    absent from it are leaves. A cycle is reported only when an edge reaches
    a field on the current path; fields already fully explored through
    another branch (diamonds) are skipped.

    Args:
        field_id: Field whose formula is being saved
        direct_dependencies: Fields the new formula reads
        all_fields: Field graph of the schema

    Returns:
        CycleFound with the path segment from the repeated field through the
        current field (a -> b -> a gives ["a", "b"], a self-reference gives
        ["a"]), or NoCycle
    """
    root_dependencies = tuple(direct_dependencies or ())

    def edges(node: str) -> Tuple[str, ...]:
        if node == field_id:
            return root_dependencies
        return _dependencies_of(all_fields.get(node))

    path: List[str] = [field_id]
    on_path: Set[str] = {field_id}
    explored: Set[str] = set()
    stack: List[Tuple[str, Iterator[str]]] = [(field_id, iter(edges(field_id)))]

    while stack:
        node, pending = stack[-1]

        for dep in pending:
            if dep in on_path:
                cycle = path[path.index(dep):]
                logger.debug(
                    f"Circular dependency detected for field {field_id}: "
                    f"{' -> '.join(cycle + [dep])}"
                )
                return CycleFound(cycle=cycle)
            if dep in explored:
                continue
            if dep not in all_fields:
                # Leaf field with no formula of its own
                explored.add(dep)
                continue
            path.append(dep)
            on_path.add(dep)
            stack.append((dep, iter(edges(dep))))
            break
        else:
            stack.pop()
            path.pop()
            on_path.discard(node)
            explored.add(node)

    return NoCycle()


# ============================================================================
# Evaluation Order
# ============================================================================


def _build_graph(all_fields: Mapping[str, Any]) -> Dict[str, List[str]]:
    """Normalize a field graph; leaf dependencies get an empty entry"""
    graph: Dict[str, List[str]] = {}
    for field_id, entry in all_fields.items():
        deps: List[str] = []
        for dep in _dependencies_of(entry):
            if dep not in deps:
                deps.append(dep)
        graph[field_id] = deps

    for deps in list(graph.values()):
        for dep in deps:
            graph.setdefault(dep, [])
    return graph


def _topological_order(graph: Dict[str, List[str]]) -> Tuple[List[str], Set[str]]:
    """
    Order a normalized graph using Kahn's algorithm

    Returns:
        Tuple of (order with dependencies first, IDs left unordered by cycles)
    """
    in_degree: Dict[str, int] = {node: len(deps) for node, deps in graph.items()}

    # Reverse graph (who depends on each node)
    dependents: Dict[str, List[str]] = {node: [] for node in graph}
    for node, deps in graph.items():
        for dep in deps:
            dependents[dep].append(node)

    queue: Deque[str] = deque(node for node, degree in in_degree.items() if degree == 0)
    result: List[str] = []

    while queue:
        node = queue.popleft()
        result.append(node)
        for dependent in dependents[node]:
            in_degree[dependent] -= 1
            if in_degree[dependent] == 0:
                queue.append(dependent)

    return result, set(graph) - set(result)


def _raise_for_cycle(graph: Dict[str, List[str]], remaining: Set[str]) -> None:
    for node in graph:
        if node not in remaining:
            continue
        found = detect_circular_dependencies(node, graph[node], _graph_view(graph))
        if isinstance(found, CycleFound):
            cycle_str = " -> ".join(found.cycle + [found.cycle[0]])
            raise CircularDependencyError(
                f"Circular dependency detected. Cycle: {cycle_str}", cycle=found.cycle
            )

    raise CircularDependencyError(
        f"Circular dependency detected involving: {', '.join(sorted(remaining))}"
    )


def _graph_view(graph: Dict[str, List[str]]) -> Dict[str, Dict[str, List[str]]]:
    """Wrap a normalized graph in the field graph entry shape"""
    return {node: {"dependencies": deps} for node, deps in graph.items()}


def get_evaluation_order(all_fields: Mapping[str, Any]) -> List[str]:
    """
    Order fields so every field comes after the fields it reads

    Leaf dependencies without an entry of their own are included.

    Args:
        all_fields: Field graph of the schema

    Returns:
        List of field IDs, dependencies first

    Raises:
        CircularDependencyError: If the graph contains a cycle
    """
    graph = _build_graph(all_fields)
    order, remaining = _topological_order(graph)
    if remaining:
        _raise_for_cycle(graph, remaining)
    return order


def get_dependent_fields(changed_field: str, all_fields: Mapping[str, Any]) -> List[str]:
    """
    Fields that need recalculation after a field's value changes

    Args:
        changed_field: Field whose value changed
        all_fields: Field graph of the schema

    Returns:
        Transitive dependents of changed_field, in evaluation order; the
        changed field itself is not included

    Raises:
        CircularDependencyError: If the affected fields contain a cycle
    """
    graph = _build_graph(all_fields)

    dependents: Dict[str, List[str]] = {node: [] for node in graph}
    for node, deps in graph.items():
        for dep in deps:
            dependents[dep].append(node)

    affected: Set[str] = set()
    queue: Deque[str] = deque(dependents.get(changed_field, []))
    while queue:
        node = queue.popleft()
        if node in affected or node == changed_field:
            continue
        affected.add(node)
        queue.extend(dependents[node])

    subgraph = {
        node: [dep for dep in graph[node] if dep in affected]
        for node in graph
        if node in affected
    }
    order, remaining = _topological_order(subgraph)
    if remaining:
        _raise_for_cycle(subgraph, remaining)
    return order
