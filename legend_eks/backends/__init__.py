"""
Backends Module
Pulumi materializers for every declared node kind
"""

from typing import Dict, Optional

from ..scheduler import Materializer
from . import aws
from .kubernetes import KubernetesBackend, kubeconfig


def pulumi_materializers(kubernetes: Optional[KubernetesBackend] = None) -> Dict[str, Materializer]:
    """
    Materializers keyed by node kind

    Args:
        kubernetes: Backend that receives the cluster connection

    Returns:
        Dict of node kind -> materializer
    """
    kubernetes = kubernetes or KubernetesBackend()

    def cluster(node, payload, deps):
        result = aws.create_cluster(node, payload, deps)
        result["provider"] = kubernetes.connect(result)
        return result

    return {
        "kms-key": aws.create_kms_key,
        "secret": aws.create_secret,
        "barrier": aws.barrier,
        "network": aws.create_network,
        "cluster": cluster,
        "capacity": aws.create_capacity,
        "identity": aws.grant_identity,
        "db-network-rule": aws.create_database_network_rule,
        "database": aws.create_database,
        "rotation": aws.create_secret_rotation,
        "chart": kubernetes.install_chart,
        "manifest": kubernetes.apply_manifest,
    }


__all__ = [
    "KubernetesBackend",
    "kubeconfig",
    "pulumi_materializers",
]
