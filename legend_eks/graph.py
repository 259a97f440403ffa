"""
Dependency Graph
Declared nodes and "must exist before" edges; ordering is data, not code sequence
"""

import heapq
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional, Set

import yaml

from .errors import ConfigurationError, DependencyUnsatisfied
from .models import OutputRef

MANIFEST_KIND = "manifest"


@dataclass(frozen=True)
class Node:
    node_id: str
    kind: str
    payload: Any
    depends_on: tuple
    component: str = ""


class DependencyGraph:
    """
    Directed acyclic graph handed to the provisioning engine

    Nodes may reference dependencies that are declared later; missing
    targets are reported by validate() as DependencyUnsatisfied.
    """

    def __init__(self):
        self._nodes: Dict[str, Node] = {}

    def add(self, node_id: str, kind: str, payload: Any = None,
            depends_on: Iterable[str] = (), component: str = "") -> Node:
        if not node_id:
            raise ConfigurationError("Node id must not be empty")
        if node_id in self._nodes:
            raise ConfigurationError(f"Duplicate node '{node_id}'")

        # dedupe, keep declaration order
        edges = tuple(dict.fromkeys(d for d in depends_on if d))
        if node_id in edges:
            raise ConfigurationError(f"Node '{node_id}' depends on itself")

        node = Node(node_id=node_id, kind=kind, payload=payload,
                    depends_on=edges, component=component)
        self._nodes[node_id] = node
        return node

    def __contains__(self, node_id: str) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def __iter__(self) -> Iterator[Node]:
        return iter(self._nodes.values())

    def node(self, node_id: str) -> Node:
        return self._nodes[node_id]

    def nodes(self, kind: Optional[str] = None, component: Optional[str] = None) -> List[Node]:
        return [n for n in self._nodes.values()
                if (kind is None or n.kind == kind)
                and (component is None or n.component == component)]

    def validate(self) -> None:
        """Check every edge target exists and the graph is acyclic"""
        for node in self._nodes.values():
            for dep in node.depends_on:
                if dep not in self._nodes:
                    raise DependencyUnsatisfied(node.node_id, dep)
        self.topological_order()

    def topological_order(self) -> List[str]:
        """
        Kahn's algorithm; among ready nodes the earliest declared goes first,
        so identical declarations always give the same order.
        """
        position = {node_id: i for i, node_id in enumerate(self._nodes)}
        pending = {}
        dependents: Dict[str, List[str]] = {node_id: [] for node_id in self._nodes}

        for node in self._nodes.values():
            known = [d for d in node.depends_on if d in self._nodes]
            if len(known) != len(node.depends_on):
                missing = next(d for d in node.depends_on if d not in self._nodes)
                raise DependencyUnsatisfied(node.node_id, missing)
            pending[node.node_id] = len(known)
            for dep in known:
                dependents[dep].append(node.node_id)

        ready = [(position[n], n) for n, count in pending.items() if count == 0]
        heapq.heapify(ready)

        order = []
        while ready:
            _, node_id = heapq.heappop(ready)
            order.append(node_id)
            for child in dependents[node_id]:
                pending[child] -= 1
                if pending[child] == 0:
                    heapq.heappush(ready, (position[child], child))

        if len(order) != len(self._nodes):
            cycle = [n for n in self._nodes if pending[n] > 0]
            raise ConfigurationError(f"Dependency cycle among nodes: {cycle}")
        return order

    def ancestors(self, node_id: str) -> Set[str]:
        seen: Set[str] = set()
        stack = list(self.node(node_id).depends_on)
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            if current in self._nodes:
                stack.extend(self._nodes[current].depends_on)
        return seen

    def descendants(self, node_id: str) -> Set[str]:
        return {n.node_id for n in self._nodes.values() if node_id in self.ancestors(n.node_id)}

    def dependency_chain(self, node_id: str) -> List[str]:
        """Ancestors of node_id in evaluation order"""
        ancestors = self.ancestors(node_id)
        return [n for n in self.topological_order() if n in ancestors]

    def manifests(self) -> List[Dict[str, Any]]:
        return [self._nodes[n].payload for n in self.topological_order()
                if self._nodes[n].kind == MANIFEST_KIND]

    def render_manifests(self) -> str:
        """Multi-document YAML of every declared manifest, in evaluation order"""
        return yaml.safe_dump_all([plain(m) for m in self.manifests()],
                                  default_flow_style=False, sort_keys=False)

    def render(self) -> str:
        """Whole graph, including non-manifest nodes and their edges"""
        documents = []
        for node_id in self.topological_order():
            node = self._nodes[node_id]
            documents.append({
                "node": node.node_id,
                "kind": node.kind,
                "component": node.component,
                "dependsOn": list(node.depends_on),
                "payload": plain(node.payload),
            })
        return yaml.safe_dump_all(documents, default_flow_style=False, sort_keys=False)


def plain(value: Any) -> Any:
    """Replace OutputRefs with their rendered placeholders"""
    if isinstance(value, OutputRef):
        return value.render()
    if isinstance(value, dict):
        return {k: plain(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [plain(v) for v in value]
    return value
