"""
Unit tests for the dependency graph
Declaration, validation, ordering and rendering
"""

import unittest
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from legend_eks.errors import ConfigurationError, DependencyUnsatisfied
from legend_eks.graph import DependencyGraph, plain
from legend_eks.models import OutputRef


class TestDependencyGraph(unittest.TestCase):
    """Test graph declaration and validation"""

    def test_duplicate_node_rejected(self):
        graph = DependencyGraph()
        graph.add("a", "barrier")
        with self.assertRaises(ConfigurationError):
            graph.add("a", "barrier")

    def test_self_dependency_rejected(self):
        graph = DependencyGraph()
        with self.assertRaises(ConfigurationError):
            graph.add("a", "barrier", depends_on=["a"])

    def test_forward_reference_allowed_until_validation(self):
        graph = DependencyGraph()
        graph.add("b", "barrier", depends_on=["a"])
        graph.add("a", "barrier")
        graph.validate()
        self.assertEqual(graph.topological_order(), ["a", "b"])

    def test_missing_edge_target(self):
        graph = DependencyGraph()
        graph.add("b", "barrier", depends_on=["ghost"])
        with self.assertRaises(DependencyUnsatisfied) as ctx:
            graph.validate()
        self.assertEqual(ctx.exception.node_id, "b")
        self.assertEqual(ctx.exception.missing, "ghost")

    def test_cycle_rejected(self):
        graph = DependencyGraph()
        graph.add("a", "barrier", depends_on=["c"])
        graph.add("b", "barrier", depends_on=["a"])
        graph.add("c", "barrier", depends_on=["b"])
        with self.assertRaises(ConfigurationError):
            graph.validate()

    def test_duplicate_edges_collapsed(self):
        graph = DependencyGraph()
        graph.add("a", "barrier")
        node = graph.add("b", "barrier", depends_on=["a", None, "a"])
        self.assertEqual(node.depends_on, ("a",))


class TestOrdering(unittest.TestCase):
    """Test deterministic topological order"""

    def test_ties_broken_by_declaration_order(self):
        graph = DependencyGraph()
        graph.add("root", "barrier")
        graph.add("z", "barrier", depends_on=["root"])
        graph.add("y", "barrier", depends_on=["root"])
        graph.add("x", "barrier")
        self.assertEqual(graph.topological_order(), ["root", "z", "y", "x"])

    def test_ancestors_and_chain(self):
        graph = DependencyGraph()
        graph.add("key", "kms-key")
        graph.add("secret", "secret", depends_on=["key"])
        graph.add("ready", "barrier", depends_on=["secret"])
        graph.add("other", "barrier")

        self.assertEqual(graph.ancestors("ready"), {"key", "secret"})
        self.assertEqual(graph.dependency_chain("ready"), ["key", "secret"])
        self.assertEqual(graph.descendants("key"), {"secret", "ready"})

    def test_filter_nodes(self):
        graph = DependencyGraph()
        graph.add("a", "manifest", {}, component="workloads")
        graph.add("b", "chart", {}, component="cluster")
        self.assertEqual([n.node_id for n in graph.nodes(kind="manifest")], ["a"])
        self.assertEqual([n.node_id for n in graph.nodes(component="cluster")], ["b"])


class TestRendering(unittest.TestCase):
    """Test manifest rendering"""

    def _graph(self):
        graph = DependencyGraph()
        graph.add("db", "database", {"identifier": "legend-docdb"})
        graph.add("ns", "manifest", {"apiVersion": "v1", "kind": "Namespace", "metadata": {"name": "legend"}})
        graph.add("deploy", "manifest", {
            "apiVersion": "apps/v1",
            "kind": "Deployment",
            "metadata": {"name": "legend-engine", "namespace": "legend"},
            "spec": {"env": [{"name": "DOCDB_HOST", "value": OutputRef("db", "endpoint")}]},
        }, depends_on=["ns", "db"])
        return graph

    def test_render_is_byte_identical(self):
        self.assertEqual(self._graph().render_manifests(), self._graph().render_manifests())
        self.assertEqual(self._graph().render(), self._graph().render())

    def test_render_only_manifests_in_order(self):
        rendered = self._graph().render_manifests()
        self.assertNotIn("legend-docdb", rendered)
        self.assertLess(rendered.index("Namespace"), rendered.index("Deployment"))
        self.assertIn("${db.endpoint}", rendered)

    def test_plain_replaces_output_refs(self):
        value = plain({"a": [OutputRef("n", "attr")], "b": 1})
        self.assertEqual(value, {"a": ["${n.attr}"], "b": 1})


if __name__ == '__main__':
    unittest.main()
