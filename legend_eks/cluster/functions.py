"""
Cluster Provisioner Functions
EKS cluster, worker capacity, DocumentDB and platform controllers
"""

import pulumi
from typing import Any, Dict, Iterable, Optional

from ..errors import ConfigurationError
from ..graph import DependencyGraph
from ..models import (CapacityPolicy, ChartRef, ClusterHandle, ControllerHandle,
                      CredentialPolicy, DatabaseHandle, NetworkLayout, OutputRef,
                      PermissionSet, WorkloadIdentity)

COMPONENT = "cluster"
NETWORK_NODE = "cluster:network"
CLUSTER_KEY_NODE = "cluster:key"
CLUSTER_NODE = "cluster:control-plane"
CAPACITY_NODE = "cluster:capacity"
DATABASE_RULE_NODE = "database:network-rule"
DATABASE_NODE = "database:cluster"
ROTATION_NODE = "database:rotation"

SYSTEM_NAMESPACES = ("kube-system", "default")


def autoscaler_tags(cluster_name: str) -> Dict[str, str]:
    """Tags the cluster autoscaler uses to discover node groups it may resize"""
    return {
        f"k8s.io/cluster-autoscaler/{cluster_name}": "owned",
        "k8s.io/cluster-autoscaler/enabled": "true",
    }


class ClusterProvisioner:
    """
    Declares compute capacity, the document database and platform controllers

    Secret identifiers from the vault are only passed through (as names in
    permission scopes and credential references); values are never read.
    """

    def __init__(self, graph: DependencyGraph, cluster_name: str, cluster_version: str = "1.29",
                 vault_ready: Optional[str] = None, tags: Dict[str, str] = None):
        self.graph = graph
        self.cluster_name = cluster_name
        self.cluster_version = cluster_version
        self.vault_ready = vault_ready
        self.tags = tags or {}
        self._cluster: Optional[ClusterHandle] = None
        self._controllers: Dict[str, ControllerHandle] = {}

    def _tags(self, name: str, **extra: str) -> Dict[str, str]:
        return {**self.tags, **extra, "Name": name, "Module": COMPONENT}

    def provision_cluster(self, capacity: CapacityPolicy) -> ClusterHandle:
        """
        Declare network, control plane and a tagged managed node group

        Args:
            capacity: Instance class, node counts and zones

        Returns:
            ClusterHandle with the node ids of each layer
        """
        if self._cluster is not None:
            raise ConfigurationError(f"Cluster '{self.cluster_name}' is already provisioned")

        layout = NetworkLayout.partition(capacity.vpc_cidr, capacity.availability_zones)
        upstream = [self.vault_ready] if self.vault_ready else []
        name = self.cluster_name

        self.graph.add(
            NETWORK_NODE,
            "network",
            {
                "name": name,
                "vpc_cidr": layout.vpc_cidr,
                "availability_zones": list(layout.availability_zones),
                "public_subnets": list(layout.public_subnets),
                "private_subnets": list(layout.private_subnets),
                "tags": self._tags(f"{name}-vpc", **{f"kubernetes.io/cluster/{name}": "shared"}),
            },
            depends_on=upstream,
            component=COMPONENT,
        )

        self.graph.add(
            CLUSTER_KEY_NODE,
            "kms-key",
            {
                "alias": f"{name}-eks-cluster-key",
                "description": f"EKS secret encryption key for {name}",
                "rotation": True,
                "tags": self._tags(f"{name}-eks-cluster-key"),
            },
            depends_on=upstream,
            component=COMPONENT,
        )

        self.graph.add(
            CLUSTER_NODE,
            "cluster",
            {
                "name": name,
                "version": self.cluster_version,
                "network_node": NETWORK_NODE,
                "key_node": CLUSTER_KEY_NODE,
                "log_types": ["api", "audit", "authenticator"],
                "tags": self._tags(f"{name}-cluster"),
            },
            depends_on=[NETWORK_NODE, CLUSTER_KEY_NODE],
            component=COMPONENT,
        )

        # autoscaler tags are part of the node group itself, so they exist
        # before any controller that depends on this node
        self.graph.add(
            CAPACITY_NODE,
            "capacity",
            {
                "cluster_name": name,
                "node_group_name": f"{name}-nodes",
                "cluster_node": CLUSTER_NODE,
                "network_node": NETWORK_NODE,
                "instance_types": list(capacity.instance_types),
                "desired_size": capacity.desired_size,
                "min_size": capacity.min_size,
                "max_size": capacity.max_size,
                "disk_size": capacity.disk_size,
                "tags": self._tags(f"{name}-node-group", **autoscaler_tags(name)),
            },
            depends_on=[CLUSTER_NODE, NETWORK_NODE],
            component=COMPONENT,
        )

        self._cluster = ClusterHandle(
            cluster_name=name,
            network=layout,
            network_node=NETWORK_NODE,
            cluster_node=CLUSTER_NODE,
            capacity_node=CAPACITY_NODE,
        )
        pulumi.log.info(
            f"Cluster {name}: {capacity.desired_size} x {','.join(capacity.instance_types)} "
            f"across {len(layout.availability_zones)} zones")
        return self._cluster

    def provision_database(self, cluster: ClusterHandle, credential_policy: CredentialPolicy) -> DatabaseHandle:
        """
        Declare a DocumentDB cluster reachable only from inside the VPC

        Args:
            cluster: Handle returned by provision_cluster
            credential_policy: Generated credential record and instance sizing

        Returns:
            DatabaseHandle carrying the credential reference

        Raises:
            ConfigurationError: No credential record, or not a generated credential
        """
        credential = credential_policy.credential
        if credential is None:
            raise ConfigurationError(
                "Database has no master credential; declare a generated credential in the vault")
        if not credential.is_credential:
            raise ConfigurationError(
                f"Database credential '{credential.logical_name}' must use the generated-credential policy")
        if credential_policy.instances < 1:
            raise ConfigurationError("Database needs at least one instance")
        if credential_policy.rotation_days is not None and credential_policy.rotation_days < 1:
            raise ConfigurationError(
                f"Credential rotation interval must be at least one day, got {credential_policy.rotation_days}")

        identifier = f"{cluster.cluster_name}-docdb"

        # network rule first; the database node depends on it
        self.graph.add(
            DATABASE_RULE_NODE,
            "db-network-rule",
            {
                "name": f"{identifier}-sg",
                "description": "Allow DocumentDB from inside the cluster VPC",
                "network_node": cluster.network_node,
                "port": credential_policy.port,
                "ingress_cidr": cluster.network.vpc_cidr,
                "tags": self._tags(f"{identifier}-sg"),
            },
            depends_on=[cluster.network_node],
            component=COMPONENT,
        )

        self.graph.add(
            DATABASE_NODE,
            "database",
            {
                "identifier": identifier,
                "network_node": cluster.network_node,
                "rule_node": DATABASE_RULE_NODE,
                "credential_node": credential.node_id,
                "instance_class": credential_policy.instance_class,
                "instances": credential_policy.instances,
                "port": credential_policy.port,
                "backup_retention_days": credential_policy.backup_retention_days,
                "tags": self._tags(identifier),
            },
            depends_on=[cluster.network_node, DATABASE_RULE_NODE, credential.node_id],
            component=COMPONENT,
        )

        if credential_policy.rotation_days is not None:
            # single-user rotation runs in the VPC, behind the database's own rule
            self.graph.add(
                ROTATION_NODE,
                "rotation",
                {
                    "name": f"{identifier}-rotation",
                    "secret_node": credential.node_id,
                    "database_node": DATABASE_NODE,
                    "network_node": cluster.network_node,
                    "rule_node": DATABASE_RULE_NODE,
                    "rotation_days": credential_policy.rotation_days,
                    "tags": self._tags(f"{identifier}-rotation"),
                },
                depends_on=[DATABASE_NODE, credential.node_id, cluster.network_node, DATABASE_RULE_NODE],
                component=COMPONENT,
            )

        return DatabaseHandle(
            endpoint=OutputRef(DATABASE_NODE, "endpoint"),
            port=credential_policy.port,
            credential=credential,
            node_id=DATABASE_NODE,
            database_name=credential_policy.database_name,
        )

    def install_controller(self, name: str, chart: ChartRef, namespace: str,
                           values: Dict[str, Any], permission_set: PermissionSet,
                           service_account: Optional[str] = None,
                           depends_on: Iterable[str] = (),
                           create_namespace: Optional[bool] = None) -> ControllerHandle:
        """
        Declare a Helm-installed controller with its own scoped identity

        Args:
            name: Controller name
            chart: Chart reference
            namespace: Namespace to install into
            values: Chart values
            permission_set: Cloud permissions the controller needs; empty for none
            service_account: Service account bound to the identity
            depends_on: Extra nodes that must exist first
            create_namespace: Let the release create its namespace; defaults to
                true outside the system namespaces

        Returns:
            ControllerHandle for downstream dependencies
        """
        if self._cluster is None:
            raise ConfigurationError(f"Controller '{name}' needs a provisioned cluster")
        if name in self._controllers:
            raise ConfigurationError(f"Controller '{name}' is already installed")

        permission_set.validate(name)
        if not permission_set.empty and not service_account:
            raise ConfigurationError(f"Controller '{name}' has permissions but no service account")

        capacity_node = self._cluster.capacity_node
        identity_node = None
        if not permission_set.empty:
            identity_node = f"controller:{name}:identity"
            self._declare_identity(identity_node, name, namespace, service_account, permission_set)
        if create_namespace is None:
            create_namespace = namespace not in SYSTEM_NAMESPACES

        node_id = f"controller:{name}"
        self.graph.add(
            node_id,
            "chart",
            {
                "release": chart.release,
                "chart": chart.chart,
                "repository": chart.repository,
                "version": chart.version,
                "namespace": namespace,
                "create_namespace": create_namespace,
                "values": values,
            },
            depends_on=[capacity_node, identity_node, *depends_on],
            component=COMPONENT,
        )

        handle = ControllerHandle(
            name=name,
            namespace=namespace,
            service_account=service_account or "",
            node_id=node_id,
            identity_node=identity_node,
        )
        self._controllers[name] = handle
        return handle

    def _declare_identity(self, node_id: str, name: str, namespace: str, service_account: str,
                          permission_set: PermissionSet) -> None:
        self.graph.add(
            node_id,
            "identity",
            {
                "name": f"{self.cluster_name}-{name}",
                "cluster_name": self.cluster_name,
                "namespace": namespace,
                "service_account": service_account,
                "policy": permission_set.to_policy_document(),
                "tags": self._tags(f"{self.cluster_name}-{name}"),
            },
            depends_on=[self._cluster.capacity_node],
            component=COMPONENT,
        )

    def grant_workload_identity(self, namespace: str, service_account: str,
                                permission_set: PermissionSet,
                                readable: Iterable[str] = ()) -> WorkloadIdentity:
        """
        Declare a pod identity for the workloads of one namespace

        Args:
            namespace: Workload namespace
            service_account: Service account the workloads run as
            permission_set: Cloud permissions of that service account
            readable: Secret storage locations the permission set covers

        Returns:
            WorkloadIdentity
        """
        if self._cluster is None:
            raise ConfigurationError(f"Identity for {namespace}/{service_account} needs a provisioned cluster")
        if permission_set.empty:
            raise ConfigurationError(f"Identity for {namespace}/{service_account} has no permissions")
        permission_set.validate(f"{namespace}/{service_account}")

        node_id = f"identity:{namespace}:{service_account}"
        if node_id in self.graph:
            raise ConfigurationError(f"Identity for {namespace}/{service_account} is already declared")
        self._declare_identity(node_id, f"{namespace}-{service_account}", namespace,
                               service_account, permission_set)
        return WorkloadIdentity(
            namespace=namespace,
            service_account=service_account,
            node_id=node_id,
            readable=tuple(readable),
        )

    @property
    def controllers(self) -> Dict[str, ControllerHandle]:
        return dict(self._controllers)
