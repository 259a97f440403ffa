"""
Legend Stack
Declares vault, cluster and workloads into one dependency graph
"""

from typing import Any, Dict

from .cluster import ClusterProvisioner, grant_secret_access, install_platform_controllers
from .config import Config
from .graph import DependencyGraph
from .vault import SecretVault, declare_legend_secrets
from .workloads import WorkloadTopology, deploy_legend, install_monitoring, legend_records
from .workloads.platform import GRAFANA_RECORD

MONITORING_NAMESPACE = "monitoring"


def declare_platform(config: Config) -> Dict[str, Any]:
    """
    Build the full Legend graph without touching any backend

    Args:
        config: Stack configuration

    Returns:
        Dict with the graph and the handles of each component
    """
    graph = DependencyGraph()
    tags = config.common_tags

    # 1. Secrets, sealed behind one barrier
    vault = SecretVault(graph, config.vault_key_alias, tags)
    records = declare_legend_secrets(vault, config.secret_prefix, db_username=config.db_username)
    vault_ready = vault.seal()

    # 2. Cluster, database and controllers
    provisioner = ClusterProvisioner(graph, config.cluster_name, config.cluster_version,
                                     vault_ready=vault_ready, tags=tags)
    cluster = provisioner.provision_cluster(config.capacity_policy())
    database = provisioner.provision_database(cluster, config.credential_policy(records["docdb_master"]))
    controllers = install_platform_controllers(provisioner, cluster, config.aws_region)
    secret_sync = [controllers["secret_sync_driver"], controllers["secret_sync_provider"]]

    # 3. Monitoring, reading its Grafana admin password from the vault
    monitoring = WorkloadTopology(
        graph,
        cluster,
        MONITORING_NAMESPACE,
        vault_ready,
        secret_sync=secret_sync,
        identity=grant_secret_access(provisioner, MONITORING_NAMESPACE, [records[GRAFANA_RECORD]],
                                     config.vault_key_alias),
    )
    controllers["monitoring"] = install_monitoring(provisioner, monitoring, records)

    # 4. Legend workloads
    topology = WorkloadTopology(
        graph,
        cluster,
        config.namespace,
        vault_ready,
        secret_sync=secret_sync,
        ingress_controller=controllers["load_balancer"],
        identity=grant_secret_access(provisioner, config.namespace, legend_records(records),
                                     config.vault_key_alias),
    )
    units = deploy_legend(topology, records, database, config.host, config.certificate_arn,
                          image_tag=config.image_tag, replicas=config.replicas)

    graph.validate()
    return {
        "graph": graph,
        "vault": vault,
        "records": records,
        "cluster": cluster,
        "database": database,
        "controllers": controllers,
        "monitoring": monitoring,
        "topology": topology,
        "units": units,
    }
