"""
Unit tests for the workload topology
Secret bindings, workload state, routing and network policy
"""

import json
import unittest
from unittest.mock import patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from legend_eks.cluster import CLUSTER_NODE, ClusterProvisioner, grant_secret_access, install_platform_controllers
from legend_eks.errors import ConfigurationError, DependencyUnsatisfied
from legend_eks.graph import DependencyGraph
from legend_eks.models import (CapacityPolicy, CredentialPolicy, EnvFromSecret, FieldMapping,
                               NamedField, PlainEnv, RoutingRule, WholeValue, WorkloadSpec, WorkloadState)
from legend_eks.vault import READY_NODE, SecretVault, declare_legend_secrets
from legend_eks.workloads import (LEGEND_COMPONENTS, WorkloadTopology, build_routing_table, deploy_legend,
                                  install_monitoring)

PATCHED = (
    'legend_eks.vault.functions.pulumi',
    'legend_eks.cluster.functions.pulumi',
    'legend_eks.workloads.functions.pulumi',
    'legend_eks.workloads.platform.pulumi',
)


def whole(key):
    return [FieldMapping(WholeValue(), key)]


class WorkloadTestCase(unittest.TestCase):
    """Vault, cluster and controllers declared; topology ready for bindings"""

    def setUp(self):
        for target in PATCHED:
            patcher = patch(target)
            patcher.start()
            self.addCleanup(patcher.stop)

        self.graph = DependencyGraph()
        self.vault = SecretVault(self.graph, "legend-secrets-key")
        self.records = declare_legend_secrets(self.vault)
        self.vault.seal()

        self.provisioner = ClusterProvisioner(self.graph, "legend", vault_ready=READY_NODE)
        self.cluster = self.provisioner.provision_cluster(CapacityPolicy(
            instance_types=("t3.xlarge",), desired_size=3, min_size=2, max_size=6,
            vpc_cidr="10.0.0.0/16", availability_zones=("us-east-1a", "us-east-1b", "us-east-1c")))
        self.database = self.provisioner.provision_database(
            self.cluster, CredentialPolicy(self.records["docdb_master"]))
        self.controllers = install_platform_controllers(self.provisioner, self.cluster, "us-east-1")
        self.topology = self.make_topology()

    def make_topology(self, namespace="legend", ingress=True, records=None):
        identity = grant_secret_access(self.provisioner, namespace,
                                       records or self.vault.records, "legend-secrets-key")
        return WorkloadTopology(
            self.graph,
            self.cluster,
            namespace,
            READY_NODE,
            secret_sync=[self.controllers["secret_sync_driver"], self.controllers["secret_sync_provider"]],
            ingress_controller=self.controllers["load_balancer"] if ingress else None,
            identity=identity,
        )


class TestSecretBindings(WorkloadTestCase):
    """Test per-record bindings"""

    def test_binding_node_dependencies(self):
        binding = self.topology.bind_secret(self.records["domain_name"], "legend-domain-secret",
                                            whole("LEGEND_DOMAIN"))
        node = self.graph.node(binding.node_id)
        self.assertIn(self.topology.namespace_node, node.depends_on)
        self.assertIn(READY_NODE, node.depends_on)
        self.assertIn(self.controllers["secret_sync_provider"].node_id, node.depends_on)

        spec = node.payload["spec"]
        self.assertEqual(spec["parameters"]["usePodIdentity"], "true")
        self.assertEqual(json.loads(spec["parameters"]["objects"]),
                         [{"objectName": "legend/domainName", "objectType": "secretsmanager",
                           "jmesPath": [{"path": "value", "objectAlias": "LEGEND_DOMAIN"}]}])
        self.assertEqual(spec["secretObjects"][0]["secretName"], "legend-domain-secret")

    def test_whole_value_of_plain_record_is_aliased(self):
        binding = self.topology.bind_secret(self.records["gitlab_app_id"], "legend-gitlab-id-secret",
                                            whole("GITLAB_APP_ID"))
        objects = json.loads(self.graph.node(binding.node_id).payload["spec"]["parameters"]["objects"])
        self.assertEqual(objects[0]["objectAlias"], "GITLAB_APP_ID")
        self.assertNotIn("jmesPath", objects[0])

    def test_binding_needs_identity_that_reads_the_record(self):
        topology = self.make_topology("legend-staging", records=[self.records["domain_name"]])
        topology.bind_secret(self.records["domain_name"], "a", whole("LEGEND_DOMAIN"))
        with self.assertRaises(ConfigurationError):
            topology.bind_secret(self.records["gitlab_app_id"], "b", whole("GITLAB_APP_ID"))

        anonymous = WorkloadTopology(self.graph, self.cluster, "anonymous", READY_NODE,
                                     secret_sync=[self.controllers["secret_sync_provider"]])
        with self.assertRaises(ConfigurationError):
            anonymous.bind_secret(self.records["domain_name"], "a", whole("LEGEND_DOMAIN"))

    def test_identity_must_match_namespace(self):
        identity = grant_secret_access(self.provisioner, "elsewhere", [self.records["domain_name"]],
                                       "legend-secrets-key")
        with self.assertRaises(ConfigurationError):
            WorkloadTopology(self.graph, self.cluster, "legend-staging", READY_NODE,
                             secret_sync=[], identity=identity)

    def test_empty_field_map(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["domain_name"], "legend-domain-secret", [])

    def test_duplicate_target_keys(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["docdb_master"], "db", [
                FieldMapping(NamedField("username"), "KEY"),
                FieldMapping(NamedField("password"), "KEY"),
            ])

    def test_invalid_target_key(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["domain_name"], "domain", whole("NOT A KEY"))

    def test_named_fields_only_for_credentials(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["gitlab_app_id"], "gitlab", [
                FieldMapping(NamedField("id"), "A"),
                FieldMapping(NamedField("other"), "B"),
            ])

    def test_credential_needs_two_distinct_fields(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["docdb_master"], "db", [
                FieldMapping(NamedField("username"), "USER"),
            ])
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["docdb_master"], "db", [
                FieldMapping(NamedField("username"), "USER"),
                FieldMapping(NamedField("username"), "ALSO_USER"),
            ])

    def test_whole_value_must_be_only_entry(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["domain_name"], "domain", [
                FieldMapping(WholeValue(), "A"),
                FieldMapping(WholeValue(), "B"),
            ])

    def test_two_records_never_share_a_target(self):
        self.topology.bind_secret(self.records["gitlab_app_id"], "legend-gitlab", whole("GITLAB_APP_ID"))
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["gitlab_app_secret"], "legend-gitlab", whole("GITLAB_APP_SECRET"))

    def test_record_bound_once_per_namespace(self):
        self.topology.bind_secret(self.records["domain_name"], "a", whole("LEGEND_DOMAIN"))
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["domain_name"], "b", whole("LEGEND_DOMAIN"))

        # another namespace may bind the same record
        other = self.make_topology("legend-staging")
        other.bind_secret(self.records["domain_name"], "a", whole("LEGEND_DOMAIN"))

    def test_namespace_must_match_topology(self):
        with self.assertRaises(ConfigurationError):
            self.topology.bind_secret(self.records["domain_name"], "a", whole("LEGEND_DOMAIN"),
                                      namespace="default")

    def test_database_credential_pair(self):
        binding = self.topology.bind_database_credential(self.database, "legend-docdb-secret")
        self.assertEqual(binding.keys, ["DOCDB_USERNAME", "DOCDB_PASSWORD"])
        objects = json.loads(self.graph.node(binding.node_id).payload["spec"]["parameters"]["objects"])
        self.assertEqual(objects[0]["jmesPath"], [
            {"path": "username", "objectAlias": "DOCDB_USERNAME"},
            {"path": "password", "objectAlias": "DOCDB_PASSWORD"},
        ])


class TestWorkloads(WorkloadTestCase):
    """Test deployments and the workload state machine"""

    def setUp(self):
        super().setUp()
        self.topology.bind_secret(self.records["domain_name"], "legend-domain-secret", whole("LEGEND_DOMAIN"))
        self.topology.bind_database_credential(self.database, "legend-docdb-secret")

    def spec(self, **overrides):
        values = dict(
            name="legend-engine",
            image="finos/legend-engine-server:latest",
            port=6300,
            mounts=("legend-domain-secret", "legend-docdb-secret"),
            env=(
                EnvFromSecret("LEGEND_DOMAIN", "legend-domain-secret", "LEGEND_DOMAIN"),
                EnvFromSecret("DOCDB_USER", "legend-docdb-secret", "DOCDB_USERNAME"),
                PlainEnv("DOCDB_HOST", self.database.endpoint),
            ),
            route_prefix="/engine",
        )
        values.update(overrides)
        return WorkloadSpec(**values)

    def test_deploy_workload(self):
        unit = self.topology.deploy_workload(self.spec())

        self.assertEqual(unit.state, WorkloadState.DEPLOYABLE)
        deployment = self.graph.node(unit.deployment_node)
        self.assertIn(self.database.node_id, deployment.depends_on)
        for binding in unit.bindings:
            self.assertIn(binding.node_id, deployment.depends_on)
        self.assertEqual(self.graph.node(unit.service_node).depends_on, (unit.deployment_node,))

        pod = deployment.payload["spec"]["template"]["spec"]
        self.assertEqual([v["name"] for v in pod["volumes"]], ["legend-domain-secret", "legend-docdb-secret"])
        self.assertEqual(pod["volumes"][1]["csi"]["volumeAttributes"]["secretProviderClass"],
                         "legend-docdb-secret-provider")
        self.assertEqual(deployment.payload["spec"]["replicas"], 2)

    def test_pods_read_secrets_as_workload_service_account(self):
        unit = self.topology.deploy_workload(self.spec())
        deployment = self.graph.node(unit.deployment_node)
        pod = deployment.payload["spec"]["template"]["spec"]
        self.assertEqual(pod["serviceAccountName"], "legend-workloads")

        account = self.graph.node(self.topology.service_account_node)
        self.assertIn(account.node_id, deployment.depends_on)
        self.assertEqual(account.payload["kind"], "ServiceAccount")
        self.assertEqual(account.payload["metadata"], {"name": "legend-workloads", "namespace": "legend",
                                                       "labels": {"managed-by": "pulumi"}})

        identity = self.graph.node(self.topology.identity.node_id)
        self.assertIn(identity.node_id, account.depends_on)
        self.assertEqual((identity.payload["namespace"], identity.payload["service_account"]),
                         ("legend", "legend-workloads"))
        self.assertIn("secretsmanager:GetSecretValue", identity.payload["policy"]["Statement"][0]["Action"])

        for binding in unit.bindings:
            parameters = self.graph.node(binding.node_id).payload["spec"]["parameters"]
            self.assertEqual(parameters["usePodIdentity"], "true")

    def test_env_referencing_unmounted_binding(self):
        spec = self.spec(mounts=("legend-domain-secret",))
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(spec)
        self.assertEqual(self.graph.nodes(kind="manifest", component="workloads")[-1].payload["kind"],
                         "SecretProviderClass")

    def test_env_referencing_missing_key(self):
        spec = self.spec(env=(EnvFromSecret("X", "legend-docdb-secret", "DOCDB_HOST"),))
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(spec)

    def test_mount_of_undeclared_binding(self):
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(self.spec(mounts=("legend-domain-secret", "nope"), env=()))

    def test_duplicate_env_and_mount(self):
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(self.spec(
                mounts=("legend-domain-secret", "legend-domain-secret"), env=()))
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(self.spec(env=(PlainEnv("A", "1"), PlainEnv("A", "2"))))

    def test_replicas_minimum(self):
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(self.spec(replicas=1))

    def test_duplicate_workload(self):
        self.topology.deploy_workload(self.spec())
        with self.assertRaises(ConfigurationError):
            self.topology.deploy_workload(self.spec())

    def test_state_machine(self):
        unit = self.topology.deploy_workload(self.spec())
        with self.assertRaises(ConfigurationError):
            unit.bind(())
        with self.assertRaises(DependencyUnsatisfied):
            unit.mark_deployed({})

        unit.mark_deployed({unit.deployment_node: {}, unit.service_node: {}})
        self.assertEqual(unit.state, WorkloadState.DEPLOYED)
        with self.assertRaises(ConfigurationError):
            unit.mark_deployed({unit.deployment_node: {}, unit.service_node: {}})


class TestRouting(WorkloadTestCase):
    """Test routing disjointness, ingress and network policy"""

    def workload(self, name, prefix, port=8080):
        return WorkloadSpec(name=name, image=f"{name}:latest", port=port, route_prefix=prefix)

    def test_nested_prefixes_overlap(self):
        with self.assertRaises(ConfigurationError):
            build_routing_table([self.workload("engine", "/engine/*"),
                                 self.workload("admin", "/engine/admin/*")])

    def test_sibling_prefixes_disjoint(self):
        rules = build_routing_table([self.workload("depot", "/depot/*"),
                                     self.workload("store", "/depot-store/*"),
                                     self.workload("internal", None)])
        self.assertEqual([r.path_prefix for r in rules], ["/depot", "/depot-store"])

    def test_prefix_must_be_absolute(self):
        with self.assertRaises(ConfigurationError):
            build_routing_table([self.workload("engine", "engine")])

    def test_ingress_requires_controller(self):
        topology = self.make_topology("other", ingress=False)
        spec = self.workload("engine", "/engine")
        topology.deploy_workload(spec)
        with self.assertRaises(ConfigurationError):
            topology.add_ingress(topology.build_routing_table(), "legend.example.com")

    def test_ingress_only_routes_deployed_workloads(self):
        rules = build_routing_table([self.workload("engine", "/engine")])
        with self.assertRaises(ConfigurationError):
            self.topology.add_ingress(rules, "legend.example.com")

    def test_network_policy_after_routing(self):
        with self.assertRaises(ConfigurationError):
            self.topology.apply_network_policy()

        self.topology.deploy_workload(self.workload("engine", "/engine"))
        ingress = self.topology.add_ingress(self.topology.build_routing_table(), "legend.example.com")
        policy = self.topology.apply_network_policy()

        node = self.graph.node(policy)
        self.assertIn(ingress, node.depends_on)
        self.assertEqual(node.payload["spec"]["ingress"][0]["from"][0]["ipBlock"]["cidr"], "10.0.0.0/16")

    def test_network_policy_rejects_bad_cidr(self):
        self.topology.deploy_workload(self.workload("engine", "/engine"))
        self.topology.add_ingress(self.topology.build_routing_table(), "legend.example.com")
        with self.assertRaises(ConfigurationError):
            self.topology.apply_network_policy("not-a-cidr")

    def test_hand_built_rules_must_be_disjoint(self):
        engine = self.workload("engine", "/engine")
        admin = self.workload("admin", "/admin")
        self.topology.deploy_workload(engine)
        self.topology.deploy_workload(admin)

        rules = [RoutingRule("/engine", engine, 8080), RoutingRule("/engine/admin", admin, 8080)]
        with self.assertRaises(ConfigurationError):
            self.topology.add_ingress(rules, "legend.example.com")
        self.assertEqual(self.graph.nodes(kind="manifest", component="workloads")[-1].payload["kind"], "Service")

    def test_hand_built_rules_route_each_workload_once(self):
        engine = self.workload("engine", "/engine")
        self.topology.deploy_workload(engine)

        rules = [RoutingRule("/engine", engine, 8080), RoutingRule("/legacy", engine, 8080)]
        with self.assertRaises(ConfigurationError):
            self.topology.add_ingress(rules, "legend.example.com")

    def test_ingress_with_certificate(self):
        self.topology.deploy_workload(self.workload("engine", "/engine"))
        node_id = self.topology.add_ingress(self.topology.build_routing_table(), "legend.example.com",
                                            "arn:aws:acm:us-east-1:123456789012:certificate/abc")
        annotations = self.graph.node(node_id).payload["metadata"]["annotations"]
        self.assertEqual(annotations["alb.ingress.kubernetes.io/ssl-redirect"], "443")
        self.assertEqual(annotations["alb.ingress.kubernetes.io/target-type"], "ip")


class TestLegendDeployment(WorkloadTestCase):
    """Test the full Legend wiring"""

    def setUp(self):
        super().setUp()
        self.units = deploy_legend(self.topology, self.records, self.database, "legend.example.com",
                                   "arn:aws:acm:us-east-1:123456789012:certificate/abc")

    def test_seven_services(self):
        self.assertEqual(list(self.units), [c.name for c in LEGEND_COMPONENTS])
        for unit in self.units.values():
            self.assertEqual(unit.state, WorkloadState.DEPLOYABLE)

    def test_five_isolated_bindings(self):
        bindings = self.topology.bindings
        self.assertEqual(len(bindings), 5)
        self.assertEqual(len({b.target_name for b in bindings}), 5)
        self.assertEqual(len({b.record.logical_name for b in bindings}), 5)
        self.assertNotIn("grafana_admin_password", {b.record.logical_name for b in bindings})

        for binding in bindings:
            objects = json.loads(self.graph.node(binding.node_id).payload["spec"]["parameters"]["objects"])
            self.assertEqual(len(objects), 1)
            self.assertEqual(objects[0]["objectName"], binding.record.storage_location)
            if len(binding.field_map) > 1:
                self.assertTrue(binding.record.is_credential)

    def test_env_references_are_mounted(self):
        for unit in self.units.values():
            for env in unit.spec.env:
                if isinstance(env, EnvFromSecret):
                    self.assertIn(env.target_name, unit.spec.mounts)

    def test_routing_is_disjoint(self):
        paths = self.graph.node("workloads:legend:ingress:legend-ingress").payload["spec"]["rules"][0]["http"]["paths"]
        prefixes = [p["path"] for p in paths]
        self.assertEqual(len(prefixes), 7)
        for a in prefixes:
            for b in prefixes:
                if a != b:
                    self.assertFalse(b.startswith(a + "/"))

    def test_topological_ordering(self):
        order = self.graph.topological_order()
        position = {n: i for i, n in enumerate(order)}

        for binding in self.topology.bindings:
            self.assertLess(position[binding.record.node_id], position[binding.node_id])
            self.assertLess(position[READY_NODE], position[binding.node_id])
        for node in self.graph.nodes(kind="manifest"):
            self.assertLess(position[CLUSTER_NODE], position[node.node_id])

    def test_mark_deployed(self):
        results = {n.node_id: {} for n in self.graph}
        self.topology.mark_deployed(results)
        self.assertTrue(all(u.state is WorkloadState.DEPLOYED for u in self.units.values()))


class TestMonitoring(WorkloadTestCase):
    """Test the monitoring release and its Grafana admin secret"""

    def setUp(self):
        super().setUp()
        self.monitoring = self.make_topology("monitoring", ingress=False,
                                             records=[self.records["grafana_admin_password"]])
        self.handle = install_monitoring(self.provisioner, self.monitoring, self.records)

    def test_grafana_reads_bound_password(self):
        chart = self.graph.node(self.handle.node_id)
        grafana = chart.payload["values"]["grafana"]
        self.assertEqual(grafana["admin"], {"existingSecret": "grafana-admin-secret", "passwordKey": "admin-password"})
        self.assertEqual(grafana["serviceAccount"], {"create": False, "name": "monitoring-workloads"})
        mount = grafana["extraSecretMounts"][0]
        self.assertEqual(mount["csi"]["volumeAttributes"]["secretProviderClass"], "grafana-admin-secret-provider")

    def test_binding_lives_in_monitoring(self):
        binding = self.monitoring.bindings[0]
        self.assertEqual(binding.record.logical_name, "grafana_admin_password")
        manifest = self.graph.node(binding.node_id).payload
        self.assertEqual(manifest["metadata"]["namespace"], "monitoring")
        self.assertEqual(manifest["spec"]["secretObjects"][0]["data"],
                         [{"objectName": "admin-password", "key": "admin-password"}])

    def test_release_waits_for_binding_and_namespace(self):
        chart = self.graph.node(self.handle.node_id)
        self.assertFalse(chart.payload["create_namespace"])
        self.assertEqual(chart.payload["namespace"], "monitoring")
        for node_id in (self.monitoring.namespace_node, self.monitoring.service_account_node,
                        self.monitoring.bindings[0].node_id):
            self.assertIn(node_id, chart.depends_on)

    def test_monitoring_needs_identity(self):
        topology = WorkloadTopology(self.graph, self.cluster, "metrics", READY_NODE, secret_sync=[])
        with self.assertRaises(ConfigurationError):
            install_monitoring(self.provisioner, topology, self.records)


if __name__ == '__main__':
    unittest.main()
