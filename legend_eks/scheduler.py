"""
Graph Scheduler
Hands declared nodes to the provisioning engine in dependency order
"""

from typing import Any, Callable, Dict, Mapping

import pulumi

from .errors import (BackendUnavailable, ConfigurationError, DependencyUnsatisfied,
                     GraphEvaluationError, LegendError)
from .graph import DependencyGraph, Node
from .models import OutputRef

# (node, payload with OutputRefs resolved, results of the node's dependencies) -> result
Materializer = Callable[[Node, Any, Dict[str, Any]], Any]


def resolve_refs(node_id: str, value: Any, deps: Mapping[str, Any]) -> Any:
    """
    Substitute OutputRefs with attributes of materialized dependencies

    Args:
        node_id: Node whose payload is being resolved
        value: Payload, possibly nested
        deps: Results of the node's declared dependencies

    Returns:
        Payload with every OutputRef replaced
    """
    if isinstance(value, OutputRef):
        if value.node_id not in deps:
            raise DependencyUnsatisfied(node_id, value.node_id)
        result = deps[value.node_id]
        if isinstance(result, Mapping):
            return result[value.attribute]
        return getattr(result, value.attribute)
    if isinstance(value, dict):
        return {k: resolve_refs(node_id, v, deps) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [resolve_refs(node_id, v, deps) for v in value]
    return value


def evaluate(graph: DependencyGraph, materializers: Mapping[str, Materializer]) -> Dict[str, Any]:
    """
    Materialize every node of the graph

    Nodes downstream of a failure are never attempted; nodes with no path
    from a failure are still materialized. No retries happen here.

    Args:
        graph: Declared dependency graph
        materializers: Materializer per node kind

    Returns:
        Dict of node id -> materializer result

    Raises:
        ConfigurationError: Unknown node kind
        DependencyUnsatisfied: Edge to an undeclared node
        GraphEvaluationError: First node that failed, with its dependency chain
            A node rejected as misconfigured stops evaluation at once
    """
    graph.validate()
    order = graph.topological_order()

    unknown = sorted({n.kind for n in graph if n.kind not in materializers})
    if unknown:
        raise ConfigurationError(f"No materializer registered for node kinds: {unknown}")

    results: Dict[str, Any] = {}
    failures: Dict[str, LegendError] = {}
    # skipped node -> failed ancestor that blocked it
    blocked: Dict[str, str] = {}

    for node_id in order:
        node = graph.node(node_id)

        failed_dep = next((d for d in node.depends_on if d in failures or d in blocked), None)
        if failed_dep is not None:
            root = failed_dep if failed_dep in failures else blocked[failed_dep]
            blocked[node_id] = root
            pulumi.log.warn(f"Skipping {node_id}: upstream node {root} failed")
            continue

        deps = {d: results[d] for d in node.depends_on}
        try:
            payload = resolve_refs(node_id, node.payload, deps)
            results[node_id] = materializers[node.kind](node, payload, deps)
        except ConfigurationError as e:
            pulumi.log.error(f"{node_id} is misconfigured: {e}")
            raise GraphEvaluationError(node_id, graph.dependency_chain(node_id), e) from e
        except LegendError as e:
            failures[node_id] = e
        except Exception as e:
            failures[node_id] = BackendUnavailable(node.kind, e)
        else:
            pulumi.log.info(f"Declared {node.kind} {node_id}")
            continue

        pulumi.log.error(f"{node_id} failed: {failures[node_id]}")

    if failures:
        first = next(n for n in order if n in failures)
        raise GraphEvaluationError(
            first,
            graph.dependency_chain(first),
            failures[first],
            skipped=[n for n, root in blocked.items() if root == first],
        ) from failures[first]
    return results
