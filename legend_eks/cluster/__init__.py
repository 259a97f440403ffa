"""
Cluster Module
EKS cluster, DocumentDB and platform controllers
"""

from .controllers import (MONITORING_CHART, autoscaler_permissions, grant_secret_access,
                          install_platform_controllers, load_balancer_permissions,
                          secret_sync_permissions)
from .functions import (CAPACITY_NODE, CLUSTER_NODE, DATABASE_NODE, DATABASE_RULE_NODE,
                        NETWORK_NODE, ROTATION_NODE, ClusterProvisioner, autoscaler_tags)

__all__ = [
    "CAPACITY_NODE",
    "CLUSTER_NODE",
    "DATABASE_NODE",
    "DATABASE_RULE_NODE",
    "MONITORING_CHART",
    "NETWORK_NODE",
    "ROTATION_NODE",
    "ClusterProvisioner",
    "autoscaler_tags",
    "autoscaler_permissions",
    "grant_secret_access",
    "install_platform_controllers",
    "load_balancer_permissions",
    "secret_sync_permissions",
]
