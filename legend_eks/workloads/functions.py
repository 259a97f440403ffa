"""
Workload Topology Functions
Per-secret bindings, deployments, routing and network policy for one namespace
"""

import ipaddress
import re
import pulumi
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from ..errors import ConfigurationError, DependencyUnsatisfied
from ..graph import DependencyGraph
from ..models import (ClusterHandle, ControllerHandle, DatabaseHandle, EnvFromSecret,
                      FieldMapping, NamedField, OutputRef, PlainEnv, RoutingRule,
                      SecretBinding, SecretRecord, WholeValue, WorkloadSpec, WorkloadState,
                      WorkloadIdentity)
from .manifests import (deployment_manifest, ingress_manifest, namespace_manifest,
                        network_policy_manifest, secret_provider_class, service_account_manifest,
                        service_manifest)

COMPONENT = "workloads"
MIN_REPLICAS = 2
SECRET_KEY_PATTERN = re.compile(r"^[-._a-zA-Z0-9]+$")


def validate_field_map(record: SecretRecord, target_name: str, field_map: Sequence[FieldMapping]) -> None:
    """
    Check a binding's field map against its record

    A single-value record maps its entire value to one key. Only a generated
    credential may map two named fields, one per key.
    """
    if not field_map:
        raise ConfigurationError(f"Binding '{target_name}' has an empty field map")

    keys = [m.target_key for m in field_map]
    for key in keys:
        if not SECRET_KEY_PATTERN.match(key):
            raise ConfigurationError(f"Binding '{target_name}': invalid secret key '{key}'")
    duplicates = sorted({k for k in keys if keys.count(k) > 1})
    if duplicates:
        raise ConfigurationError(f"Binding '{target_name}' repeats target keys {duplicates}")

    whole = [m for m in field_map if isinstance(m.source, WholeValue)]
    named = [m for m in field_map if isinstance(m.source, NamedField)]
    if len(whole) + len(named) != len(field_map):
        raise ConfigurationError(f"Binding '{target_name}' has an unknown field selector")

    if whole:
        if len(field_map) != 1:
            raise ConfigurationError(
                f"Binding '{target_name}': an entire-value mapping must be the only entry")
        return

    if not record.is_credential:
        raise ConfigurationError(
            f"Binding '{target_name}': '{record.logical_name}' holds a single value; "
            f"named fields are only allowed for generated credentials")
    if len(named) != 2:
        raise ConfigurationError(
            f"Binding '{target_name}': a credential maps exactly two fields, got {len(named)}")
    if named[0].source.name == named[1].source.name:
        raise ConfigurationError(f"Binding '{target_name}' maps field '{named[0].source.name}' twice")


def _prefix_segments(prefix: str) -> Tuple[str, ...]:
    if not prefix or not prefix.startswith("/"):
        raise ConfigurationError(f"Routing prefix '{prefix}' must start with '/'")
    path = prefix[:-1] if prefix.endswith("*") else prefix
    return tuple(segment for segment in path.split("/") if segment)


def check_disjoint_prefixes(prefixes: Iterable[Tuple[str, str]]) -> List[str]:
    """
    Normalize path prefixes and check they are pairwise disjoint

    Prefixes are compared by path segment: /depot and /depot-store are
    disjoint, /engine and /engine/admin are not.

    Args:
        prefixes: (prefix, owner) pairs; owner only appears in errors

    Returns:
        Normalized prefixes, in input order

    Raises:
        ConfigurationError: Two prefixes overlap
    """
    claimed: List[Tuple[Tuple[str, ...], str, str]] = []
    for prefix, owner in prefixes:
        segments = _prefix_segments(prefix)
        for other_segments, other_prefix, other_owner in claimed:
            shared = min(len(segments), len(other_segments))
            if segments[:shared] == other_segments[:shared]:
                raise ConfigurationError(
                    f"Routing prefix '{prefix}' ({owner}) overlaps '{other_prefix}' ({other_owner})")
        claimed.append((segments, prefix, owner))
    return ["/" + "/".join(segments) for segments, _, _ in claimed]


def build_routing_table(workloads: Iterable[WorkloadSpec]) -> List[RoutingRule]:
    """
    Routing rules with pairwise disjoint path prefixes

    Args:
        workloads: Workloads in routing order; those without a prefix are skipped

    Returns:
        Ordered RoutingRules

    Raises:
        ConfigurationError: Two prefixes overlap
    """
    routed = [spec for spec in workloads if spec.route_prefix is not None]
    prefixes = check_disjoint_prefixes((spec.route_prefix, spec.name) for spec in routed)
    return [RoutingRule(path_prefix=prefix, workload=spec, port=spec.port)
            for prefix, spec in zip(prefixes, routed)]


class WorkloadUnit:
    """
    Deployment + service pair moving through
    DECLARED -> BOUND -> DEPLOYABLE -> DEPLOYED
    """

    def __init__(self, spec: WorkloadSpec):
        self.spec = spec
        self.state = WorkloadState.DECLARED
        self.bindings: Tuple[SecretBinding, ...] = ()
        self.deployment_node: Optional[str] = None
        self.service_node: Optional[str] = None

    def _advance(self, expected: WorkloadState, target: WorkloadState) -> None:
        if self.state is not expected:
            raise ConfigurationError(
                f"Workload '{self.spec.name}' cannot move to {target.value} from {self.state.value}")
        self.state = target

    def bind(self, bindings: Sequence[SecretBinding]) -> None:
        self._advance(WorkloadState.DECLARED, WorkloadState.BOUND)
        self.bindings = tuple(bindings)

    def make_deployable(self, graph: DependencyGraph, prerequisites: Iterable[str]) -> None:
        """Namespace, cluster capacity, controllers and every binding must be declared"""
        for node_id in prerequisites:
            if node_id not in graph:
                raise DependencyUnsatisfied(f"workload:{self.spec.name}", node_id)
        self._advance(WorkloadState.BOUND, WorkloadState.DEPLOYABLE)

    def mark_deployed(self, results: Dict[str, Any]) -> None:
        for node_id in (self.deployment_node, self.service_node):
            if node_id not in results:
                raise DependencyUnsatisfied(f"workload:{self.spec.name}", node_id)
        self._advance(WorkloadState.DEPLOYABLE, WorkloadState.DEPLOYED)


class WorkloadTopology:
    """Declares everything that lives inside one application namespace"""

    def __init__(self, graph: DependencyGraph, cluster: ClusterHandle, namespace: str,
                 vault_ready: str, secret_sync: Sequence[ControllerHandle],
                 ingress_controller: Optional[ControllerHandle] = None,
                 identity: Optional[WorkloadIdentity] = None):
        if identity is not None and identity.namespace != namespace:
            raise ConfigurationError(
                f"Identity {identity.namespace}/{identity.service_account} cannot serve namespace {namespace}")
        self.graph = graph
        self.cluster = cluster
        self.namespace = namespace
        self.vault_ready = vault_ready
        self.secret_sync = tuple(secret_sync)
        self.ingress_controller = ingress_controller
        self.identity = identity

        self._bindings: Dict[str, SecretBinding] = {}
        self._units: Dict[str, WorkloadUnit] = {}
        self._ingress_node: Optional[str] = None
        self._policy_node: Optional[str] = None

        self.namespace_node = self._node_id("namespace")
        graph.add(self.namespace_node, "manifest", namespace_manifest(namespace),
                  depends_on=[cluster.capacity_node], component=COMPONENT)

        self.service_account_node: Optional[str] = None
        if identity is not None:
            self.service_account_node = self._node_id("service-account", identity.service_account)
            graph.add(self.service_account_node, "manifest",
                      service_account_manifest(identity.service_account, namespace),
                      depends_on=[self.namespace_node, identity.node_id], component=COMPONENT)

    @property
    def service_account(self) -> Optional[str]:
        return self.identity.service_account if self.identity else None

    def _node_id(self, *parts: str) -> str:
        return ":".join((COMPONENT, self.namespace) + parts)

    def _check_namespace(self, namespace: Optional[str]) -> None:
        if namespace is not None and namespace != self.namespace:
            raise ConfigurationError(
                f"Topology for {self.namespace} cannot declare objects in {namespace}")

    def bind_secret(self, record: SecretRecord, target_name: str,
                    field_map: Sequence[FieldMapping], namespace: Optional[str] = None) -> SecretBinding:
        """
        Sync one record into one namespace-local Kubernetes Secret

        Args:
            record: Vault record to bind
            target_name: Name of the synced Kubernetes Secret
            field_map: Source selector -> key mapping
            namespace: Consuming namespace; must be this topology's namespace

        Returns:
            SecretBinding

        Raises:
            ConfigurationError: Invalid field map, record bound twice, target name
                reused, or record unreadable by the namespace's identity
        """
        self._check_namespace(namespace)
        if self.identity is None:
            raise ConfigurationError(
                f"Namespace {self.namespace} has no secret read identity; cannot bind '{record.logical_name}'")
        if record.storage_location not in self.identity.readable:
            raise ConfigurationError(
                f"'{record.logical_name}' is not readable by {self.namespace}/{self.identity.service_account}")
        field_map = tuple(field_map)
        validate_field_map(record, target_name, field_map)

        existing = self._bindings.get(target_name)
        if existing is not None:
            raise ConfigurationError(
                f"Secret '{target_name}' in {self.namespace} already holds "
                f"'{existing.record.logical_name}'; cannot merge '{record.logical_name}'")
        for binding in self._bindings.values():
            if binding.record.logical_name == record.logical_name:
                raise ConfigurationError(
                    f"'{record.logical_name}' is already bound into {self.namespace} "
                    f"as '{binding.target_name}'")

        node_id = self._node_id("binding", target_name)
        provider_class = f"{target_name}-provider"
        self.graph.add(
            node_id,
            "manifest",
            secret_provider_class(provider_class, self.namespace, record, target_name, field_map),
            depends_on=[self.namespace_node, self.vault_ready, record.node_id,
                        *(c.node_id for c in self.secret_sync)],
            component=COMPONENT,
        )

        binding = SecretBinding(
            record=record,
            namespace=self.namespace,
            target_name=target_name,
            field_map=field_map,
            provider_class=provider_class,
            node_id=node_id,
        )
        self._bindings[target_name] = binding
        return binding

    def bind_database_credential(self, database: DatabaseHandle, target_name: str,
                                 username_key: str = "DOCDB_USERNAME",
                                 password_key: str = "DOCDB_PASSWORD") -> SecretBinding:
        """The sanctioned two-key binding: username and password of one credential"""
        if database.credential is None:
            raise ConfigurationError("Database handle carries no credential")
        return self.bind_secret(database.credential, target_name, [
            FieldMapping(NamedField("username"), username_key),
            FieldMapping(NamedField("password"), password_key),
        ])

    def deploy_workload(self, spec: WorkloadSpec) -> WorkloadUnit:
        """
        Declare the deployment + service pair of one workload

        Every secret-backed env var must name a mounted binding and one of its
        keys; every mount must be a declared binding.

        Args:
            spec: Workload to deploy

        Returns:
            WorkloadUnit in the DEPLOYABLE state
        """
        if spec.name in self._units:
            raise ConfigurationError(f"Workload '{spec.name}' is already declared")
        if spec.replicas < MIN_REPLICAS:
            raise ConfigurationError(
                f"Workload '{spec.name}' needs at least {MIN_REPLICAS} replicas, got {spec.replicas}")

        unit = WorkloadUnit(spec)
        unit.bind(self._resolve_mounts(spec))

        env_refs = [e.value.node_id for e in spec.env
                    if isinstance(e, PlainEnv) and isinstance(e.value, OutputRef)]
        binding_nodes = [b.node_id for b in unit.bindings]
        identity_nodes = [self.service_account_node] if self.service_account_node else []
        prerequisites = [self.cluster.capacity_node, self.namespace_node, *binding_nodes,
                         *identity_nodes, *(c.node_id for c in self.secret_sync), *env_refs]
        unit.make_deployable(self.graph, prerequisites)

        unit.deployment_node = self._node_id("deployment", spec.name)
        self.graph.add(
            unit.deployment_node,
            "manifest",
            deployment_manifest(spec, self.namespace, unit.bindings, self.service_account),
            depends_on=[self.namespace_node, *identity_nodes, *binding_nodes, *env_refs],
            component=COMPONENT,
        )
        unit.service_node = self._node_id("service", spec.name)
        self.graph.add(
            unit.service_node,
            "manifest",
            service_manifest(spec, self.namespace),
            depends_on=[unit.deployment_node],
            component=COMPONENT,
        )

        self._units[spec.name] = unit
        return unit

    def _resolve_mounts(self, spec: WorkloadSpec) -> List[SecretBinding]:
        if len(set(spec.mounts)) != len(spec.mounts):
            raise ConfigurationError(f"Workload '{spec.name}' mounts a binding twice")

        bindings = []
        for target_name in spec.mounts:
            binding = self._bindings.get(target_name)
            if binding is None:
                raise ConfigurationError(
                    f"Workload '{spec.name}' mounts undeclared binding '{target_name}'")
            bindings.append(binding)

        names = [e.name for e in spec.env]
        if len(set(names)) != len(names):
            raise ConfigurationError(f"Workload '{spec.name}' declares an environment variable twice")

        for env in spec.env:
            if not isinstance(env, EnvFromSecret):
                continue
            if env.target_name not in spec.mounts:
                raise ConfigurationError(
                    f"Workload '{spec.name}': {env.name} references '{env.target_name}', "
                    f"which the workload does not mount")
            if env.key not in self._bindings[env.target_name].keys:
                raise ConfigurationError(
                    f"Workload '{spec.name}': {env.name} references key '{env.key}' "
                    f"missing from '{env.target_name}'")
        return bindings

    def build_routing_table(self, workloads: Optional[Iterable[WorkloadSpec]] = None) -> List[RoutingRule]:
        if workloads is None:
            workloads = [u.spec for u in self._units.values()]
        return build_routing_table(workloads)

    def add_ingress(self, rules: Sequence[RoutingRule], host: str,
                    certificate_arn: Optional[str] = None, name: Optional[str] = None) -> str:
        """
        Declare the ingress for a routing table

        Args:
            rules: Output of build_routing_table
            host: Public host name
            certificate_arn: ACM certificate for HTTPS, if any
            name: Ingress name

        Returns:
            Ingress node id
        """
        if self._ingress_node is not None:
            raise ConfigurationError(f"Namespace {self.namespace} already has an ingress")
        if self.ingress_controller is None:
            raise ConfigurationError("Ingress needs a load balancer controller")
        if not host:
            raise ConfigurationError("Ingress host must be set")
        if not rules:
            raise ConfigurationError("Ingress needs at least one routing rule")

        check_disjoint_prefixes((r.path_prefix, r.workload.name) for r in rules)
        targets = [r.workload.name for r in rules]
        repeated = sorted({t for t in targets if targets.count(t) > 1})
        if repeated:
            raise ConfigurationError(f"Ingress routes {repeated} more than once")

        service_nodes = []
        for rule in rules:
            unit = self._units.get(rule.workload.name)
            if unit is None:
                raise ConfigurationError(f"Route {rule.path_prefix} targets undeployed workload '{rule.workload.name}'")
            service_nodes.append(unit.service_node)

        name = name or f"{self.namespace}-ingress"
        self._ingress_node = self._node_id("ingress", name)
        self.graph.add(
            self._ingress_node,
            "manifest",
            ingress_manifest(name, self.namespace, host, rules, certificate_arn),
            depends_on=[self.namespace_node, self.ingress_controller.node_id, *service_nodes],
            component=COMPONENT,
        )
        return self._ingress_node

    def apply_network_policy(self, allowed_source: Optional[str] = None, name: Optional[str] = None,
                             namespace: Optional[str] = None) -> str:
        """
        Deny all ingress to the namespace except from allowed_source

        Declared after routing, since it exists to restrict traffic to the
        routing entry point's address range.

        Args:
            allowed_source: CIDR allowed in; defaults to the cluster VPC range
            name: Policy name

        Returns:
            NetworkPolicy node id
        """
        self._check_namespace(namespace)
        if self._ingress_node is None:
            raise ConfigurationError("Network policy must be declared after routing")
        if self._policy_node is not None:
            raise ConfigurationError(f"Namespace {self.namespace} already has a network policy")

        cidr = allowed_source or self.cluster.network.vpc_cidr
        try:
            cidr = str(ipaddress.ip_network(cidr))
        except ValueError as e:
            raise ConfigurationError(f"Invalid allowed source '{cidr}': {e}") from e

        name = name or f"{self.namespace}-deny-all-except-alb"
        self._policy_node = self._node_id("network-policy", name)
        self.graph.add(
            self._policy_node,
            "manifest",
            network_policy_manifest(name, self.namespace, cidr),
            depends_on=[self.namespace_node, self._ingress_node],
            component=COMPONENT,
        )
        return self._policy_node

    def mark_deployed(self, results: Dict[str, Any]) -> None:
        """Move every unit to DEPLOYED once the engine has accepted its manifests"""
        for unit in self._units.values():
            unit.mark_deployed(results)
        pulumi.log.info(f"{len(self._units)} workloads deployed to {self.namespace}")

    @property
    def bindings(self) -> List[SecretBinding]:
        return list(self._bindings.values())

    @property
    def units(self) -> List[WorkloadUnit]:
        return list(self._units.values())
