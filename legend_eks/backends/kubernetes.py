"""
Kubernetes Materializers
Helm releases and manifests applied through a provider built from the cluster kubeconfig
"""

import pulumi
import pulumi_kubernetes as k8s
from typing import Any, Dict, Optional

from ..errors import BackendUnavailable
from ..graph import Node
from .aws import resource_name, upstream_resources


def kubeconfig(endpoint: str, certificate_authority: str, cluster_name: str) -> str:
    """Kubeconfig authenticating through `aws eks get-token`"""
    return f"""apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: {certificate_authority}
    server: {endpoint}
  name: {cluster_name}
contexts:
- context:
    cluster: {cluster_name}
    user: {cluster_name}
  name: {cluster_name}
current-context: {cluster_name}
kind: Config
users:
- name: {cluster_name}
  user:
    exec:
      apiVersion: client.authentication.k8s.io/v1beta1
      command: aws
      args:
        - eks
        - get-token
        - --cluster-name
        - {cluster_name}
"""


class KubernetesBackend:
    """Holds the provider for the one cluster the graph declares"""

    def __init__(self):
        self.provider: Optional[k8s.Provider] = None

    def connect(self, cluster_result: Dict[str, Any]) -> k8s.Provider:
        """
        Create the Kubernetes provider for a materialized cluster

        Args:
            cluster_result: Result of the cluster materializer

        Returns:
            Kubernetes provider
        """
        cluster = cluster_result["cluster"]
        config = pulumi.Output.all(
            cluster_result["endpoint"],
            cluster_result["certificate_authority"],
            cluster_result["cluster_name"],
        ).apply(lambda args: kubeconfig(args[0], args[1], args[2]))

        self.provider = k8s.Provider("k8s",
            kubeconfig=config,
            opts=pulumi.ResourceOptions(depends_on=[cluster]))
        return self.provider

    def _options(self, deps: Dict[str, Any]) -> pulumi.ResourceOptions:
        if self.provider is None:
            raise BackendUnavailable("kubernetes", RuntimeError("no cluster connected"))
        return pulumi.ResourceOptions(provider=self.provider, depends_on=upstream_resources(deps))

    def install_chart(self, node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
        """
        Install a Helm chart release

        Returns:
            Dict with release, status and resources
        """
        release = k8s.helm.v3.Release(
            resource_name(node),
            name=payload["release"],
            chart=payload["chart"],
            version=payload["version"],
            namespace=payload["namespace"],
            create_namespace=payload["create_namespace"],
            repository_opts=k8s.helm.v3.RepositoryOptsArgs(
                repo=payload["repository"]
            ),
            values=payload["values"],
            opts=self._options(deps),
        )
        return {"release": release, "status": release.status, "resources": [release]}

    def apply_manifest(self, node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply one manifest document

        Namespaces use the typed resource; every other kind goes through the
        generic resource, which accepts any apiVersion/kind.

        Returns:
            Dict with resource and resources
        """
        metadata = payload["metadata"]
        opts = self._options(deps)

        if payload["kind"] == "Namespace" and payload["apiVersion"] == "v1":
            resource = k8s.core.v1.Namespace(
                resource_name(node),
                metadata=k8s.meta.v1.ObjectMetaArgs(
                    name=metadata["name"],
                    labels=metadata.get("labels"),
                ),
                opts=opts,
            )
        else:
            resource = k8s.apiextensions.CustomResource(
                resource_name(node),
                api_version=payload["apiVersion"],
                kind=payload["kind"],
                metadata=metadata,
                spec=payload.get("spec"),
                opts=opts,
            )
        return {"resource": resource, "resources": [resource]}
