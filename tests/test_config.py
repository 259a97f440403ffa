"""
Unit tests for configuration and the assembled stack
Defaults, overrides and deterministic declarations
"""

import unittest
from unittest.mock import patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from legend_eks.cluster import CLUSTER_NODE
from legend_eks.config import get_config
from legend_eks.errors import ConfigurationError
from legend_eks.stack import declare_platform
from legend_eks.vault import READY_NODE

PATCHED = (
    'legend_eks.vault.functions.pulumi',
    'legend_eks.cluster.functions.pulumi',
    'legend_eks.workloads.functions.pulumi',
    'legend_eks.workloads.platform.pulumi',
)


class FakeConfig:
    """Stands in for pulumi.Config with plain values"""

    def __init__(self, values):
        self.values = values

    def get(self, key):
        return self.values.get(key)

    def get_int(self, key):
        return self.values.get(key)

    def get_object(self, key):
        return self.values.get(key)


def load_config(values=None, region=None):
    with patch('legend_eks.config.pulumi') as mock_pulumi:
        mock_pulumi.Config.side_effect = lambda name=None: FakeConfig(
            {"region": region} if name == "aws" else (values or {}))
        mock_pulumi.get_stack.return_value = "test"
        return get_config()


class TestConfig(unittest.TestCase):
    """Test configuration defaults and overrides"""

    def test_defaults(self):
        config = load_config()
        self.assertEqual(config.aws_region, "us-east-1")
        self.assertEqual(config.cluster_name, "legend")
        self.assertEqual(config.availability_zones, ["us-east-1a", "us-east-1b", "us-east-1c"])
        self.assertEqual(config.db_instances, 2)
        self.assertIsNone(config.certificate_arn)
        self.assertEqual(config.vault_key_alias, "legend-secrets-key")

    def test_overrides(self):
        config = load_config({"cluster_name": "prod", "domain_name": "legend.example.com",
                              "tags": {"Team": "data"}}, region="eu-west-1")
        self.assertEqual(config.availability_zones, ["eu-west-1a", "eu-west-1b", "eu-west-1c"])
        self.assertEqual(config.host, "legend.example.com")
        self.assertEqual(config.additional_tags, {"Team": "data"})

    def test_common_tags(self):
        with patch('legend_eks.config.pulumi') as mock_pulumi:
            mock_pulumi.Config.side_effect = lambda name=None: FakeConfig({"tags": {"Team": "data"}})
            mock_pulumi.get_stack.return_value = "prod"
            tags = get_config().common_tags
        self.assertEqual(tags["Environment"], "prod")
        self.assertEqual(tags["ManagedBy"], "pulumi")
        self.assertEqual(tags["Team"], "data")

    def test_host_fallback(self):
        self.assertEqual(load_config().host, "legend.us-east-1.example.internal")

    def test_policies(self):
        config = load_config({"node_min_size": 1, "node_desired_size": 2, "node_max_size": 4})
        capacity = config.capacity_policy()
        self.assertEqual((capacity.min_size, capacity.desired_size, capacity.max_size), (1, 2, 4))
        self.assertEqual(config.credential_policy(None).instance_class, "db.t3.medium")

    def test_invalid_sizing(self):
        config = load_config({"node_min_size": 5, "node_desired_size": 2, "node_max_size": 4})
        with self.assertRaises(ConfigurationError):
            config.capacity_policy()


class TestDeclarePlatform(unittest.TestCase):
    """Test the assembled Legend graph"""

    def setUp(self):
        for target in PATCHED:
            patcher = patch(target)
            patcher.start()
            self.addCleanup(patcher.stop)

    def _declare(self):
        with patch('legend_eks.config.pulumi') as mock_pulumi:
            mock_pulumi.Config.side_effect = lambda name=None: FakeConfig({})
            mock_pulumi.get_stack.return_value = "test"
            config = get_config()
            return declare_platform(config)

    def test_rebuild_is_identical(self):
        first = self._declare()["graph"]
        second = self._declare()["graph"]
        self.assertEqual(first.render_manifests(), second.render_manifests())
        self.assertEqual(first.render(), second.render())
        self.assertEqual(first.topological_order(), second.topological_order())

    def test_component_ordering(self):
        platform = self._declare()
        graph = platform["graph"]
        order = graph.topological_order()

        for node in graph.nodes(component="workloads"):
            self.assertLess(order.index(READY_NODE), order.index(node.node_id))
            self.assertLess(order.index(CLUSTER_NODE), order.index(node.node_id))
        for node in graph.nodes(component="vault"):
            self.assertLess(order.index(node.node_id), order.index(CLUSTER_NODE))

    def test_counts(self):
        platform = self._declare()
        self.assertEqual(len(platform["records"]), 6)
        self.assertEqual(len(platform["units"]), 7)
        self.assertEqual(len(platform["topology"].bindings), 5)
        self.assertEqual(len(platform["monitoring"].bindings), 1)
        self.assertEqual(len(platform["graph"].nodes(kind="chart")), 5)
        self.assertEqual(len(platform["graph"].nodes(kind="rotation")), 1)

    def test_every_record_bound_exactly_once(self):
        platform = self._declare()
        bound = [b.record.logical_name for t in (platform["topology"], platform["monitoring"])
                 for b in t.bindings]
        self.assertEqual(sorted(bound), sorted(platform["records"]))

    def test_workload_identities(self):
        graph = self._declare()["graph"]
        scopes = {(n.payload["namespace"], n.payload["service_account"]) for n in graph.nodes(kind="identity")}
        self.assertEqual(scopes, {
            ("kube-system", "aws-load-balancer-controller"),
            ("kube-system", "cluster-autoscaler"),
            ("monitoring", "monitoring-workloads"),
            ("legend", "legend-workloads"),
        })


if __name__ == '__main__':
    unittest.main()
