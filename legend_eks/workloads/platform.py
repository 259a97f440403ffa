"""
Legend Platform Wiring
The seven Legend services, their secret bindings and the routing in front of them,
plus the monitoring stack and its Grafana admin secret
"""

import pulumi
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence

from ..cluster import MONITORING_CHART, ClusterProvisioner
from ..errors import ConfigurationError
from ..models import (ControllerHandle, DatabaseHandle, EnvFromSecret, FieldMapping, PermissionSet,
                      PlainEnv, SecretBinding, SecretRecord, WholeValue, WorkloadSpec)
from .functions import WorkloadTopology, WorkloadUnit
from .manifests import CSI_DRIVER

DATABASE_SECRET = "legend-docdb-secret"
DATABASE_RECORD = "docdb_master"
GRAFANA_RECORD = "grafana_admin_password"
GRAFANA_SECRET = "grafana-admin-secret"
GRAFANA_PASSWORD_KEY = "admin-password"

# logical record -> (synced secret name, key)
SINGLE_VALUE_BINDINGS = (
    ("domain_name", "legend-domain-secret", "LEGEND_DOMAIN"),
    ("certificate_arn", "legend-certificate-secret", "LEGEND_CERT_ARN"),
    ("gitlab_app_id", "legend-gitlab-id-secret", "GITLAB_APP_ID"),
    ("gitlab_app_secret", "legend-gitlab-secret", "GITLAB_APP_SECRET"),
)


@dataclass(frozen=True)
class LegendComponent:
    name: str
    image: str
    port: int
    route_prefix: str


LEGEND_COMPONENTS = (
    LegendComponent("legend-engine", "finos/legend-engine-server", 6300, "/engine"),
    LegendComponent("legend-sdlc", "finos/legend-sdlc-server", 6100, "/sdlc"),
    LegendComponent("legend-studio", "finos/legend-studio", 9000, "/studio"),
    LegendComponent("legend-query", "finos/legend-query", 9001, "/query"),
    LegendComponent("legend-pure-ide", "finos/legend-engine-pure-ide-light", 9200, "/ide"),
    LegendComponent("legend-depot", "finos/legend-depot-server", 6200, "/depot"),
    LegendComponent("legend-depot-store", "finos/legend-depot-store-server", 6201, "/depot-store"),
)


def legend_records(records: Mapping[str, SecretRecord]) -> List[SecretRecord]:
    """Records the Legend namespace binds, in binding order"""
    names = [logical_name for logical_name, _, _ in SINGLE_VALUE_BINDINGS] + [DATABASE_RECORD]
    missing = [n for n in names if n not in records]
    if missing:
        raise ConfigurationError(f"Legend needs secret records {missing}")
    return [records[n] for n in names]


def bind_legend_secrets(topology: WorkloadTopology, records: Mapping[str, SecretRecord],
                        database: DatabaseHandle) -> List[SecretBinding]:
    """One synced secret per record; only the database credential carries two keys"""
    bindings = []
    for logical_name, target_name, key in SINGLE_VALUE_BINDINGS:
        record = records.get(logical_name)
        if record is None:
            raise ConfigurationError(f"Legend needs secret record '{logical_name}'")
        bindings.append(topology.bind_secret(record, target_name, [FieldMapping(WholeValue(), key)]))
    bindings.append(topology.bind_database_credential(database, DATABASE_SECRET))
    return bindings


def legend_environment(database: DatabaseHandle) -> tuple:
    return (
        EnvFromSecret("LEGEND_DOMAIN", "legend-domain-secret", "LEGEND_DOMAIN"),
        EnvFromSecret("GITLAB_APP_ID", "legend-gitlab-id-secret", "GITLAB_APP_ID"),
        EnvFromSecret("GITLAB_APP_SECRET", "legend-gitlab-secret", "GITLAB_APP_SECRET"),
        EnvFromSecret("DOCDB_USER", DATABASE_SECRET, "DOCDB_USERNAME"),
        EnvFromSecret("DOCDB_PASS", DATABASE_SECRET, "DOCDB_PASSWORD"),
        PlainEnv("DOCDB_HOST", database.endpoint),
        PlainEnv("DOCDB_PORT", str(database.port)),
        PlainEnv("DOCDB_NAME", database.database_name),
    )


def deploy_legend(topology: WorkloadTopology, records: Mapping[str, SecretRecord],
                  database: DatabaseHandle, host: str, certificate_arn: Optional[str] = None,
                  image_tag: str = "latest", replicas: int = 2,
                  components: Sequence[LegendComponent] = LEGEND_COMPONENTS) -> Dict[str, WorkloadUnit]:
    """
    Deploy the Legend services behind one ingress

    Args:
        topology: Topology of the Legend namespace
        records: Vault records by logical name
        database: DocumentDB handle
        host: Public host name
        certificate_arn: ACM certificate for HTTPS
        image_tag: Tag applied to every Legend image
        replicas: Replicas per service
        components: Services to deploy

    Returns:
        Dict of component name -> WorkloadUnit
    """
    bindings = bind_legend_secrets(topology, records, database)
    mounts = tuple(b.target_name for b in bindings)
    env = legend_environment(database)

    units = {}
    for component in components:
        spec = WorkloadSpec(
            name=component.name,
            image=f"{component.image}:{image_tag}",
            port=component.port,
            mounts=mounts,
            env=env,
            route_prefix=component.route_prefix,
            replicas=replicas,
        )
        units[component.name] = topology.deploy_workload(spec)

    rules = topology.build_routing_table(u.spec for u in units.values())
    topology.add_ingress(rules, host, certificate_arn, name="legend-ingress")
    topology.apply_network_policy(name="legend-deny-all-except-alb")

    pulumi.log.info(f"Legend: {len(units)} services, {len(bindings)} secret bindings in {topology.namespace}")
    return units


def grafana_values(binding: SecretBinding, service_account: str) -> Dict[str, Any]:
    """
    kube-prometheus-stack values reading the Grafana admin password from a bound secret

    Grafana mounts the binding's CSI volume so the driver keeps the synced
    Secret alive, and runs as the namespace identity that may read it.
    """
    return {
        "grafana": {
            "serviceAccount": {"create": False, "name": service_account},
            # a fixed user keeps the chart from reading a user key the secret lacks
            "env": {"GF_SECURITY_ADMIN_USER": "admin"},
            "admin": {
                "existingSecret": binding.target_name,
                "passwordKey": binding.keys[0],
            },
            "extraSecretMounts": [{
                "name": binding.target_name,
                "mountPath": f"/mnt/secrets/{binding.target_name}",
                "readOnly": True,
                "csi": {
                    "driver": CSI_DRIVER,
                    "readOnly": True,
                    "volumeAttributes": {"secretProviderClass": binding.provider_class},
                },
            }],
        },
    }


def install_monitoring(provisioner: ClusterProvisioner, topology: WorkloadTopology,
                       records: Mapping[str, SecretRecord]) -> ControllerHandle:
    """
    Install Prometheus and Grafana into the topology's namespace

    Args:
        provisioner: Provisioner that owns the cluster
        topology: Topology of the monitoring namespace, with a secret read identity
        records: Vault records by logical name

    Returns:
        ControllerHandle of the monitoring release
    """
    record = records.get(GRAFANA_RECORD)
    if record is None:
        raise ConfigurationError(f"Monitoring needs secret record '{GRAFANA_RECORD}'")
    if topology.service_account is None:
        raise ConfigurationError(f"Monitoring namespace {topology.namespace} has no secret read identity")

    binding = topology.bind_secret(record, GRAFANA_SECRET, [FieldMapping(WholeValue(), GRAFANA_PASSWORD_KEY)])
    handle = provisioner.install_controller(
        "kube-prometheus-stack",
        MONITORING_CHART,
        topology.namespace,
        grafana_values(binding, topology.service_account),
        PermissionSet(),
        depends_on=[topology.namespace_node, topology.service_account_node, binding.node_id],
        create_namespace=False,
    )
    pulumi.log.info(f"Monitoring: Grafana admin password synced into {topology.namespace}/{GRAFANA_SECRET}")
    return handle
