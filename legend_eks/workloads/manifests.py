"""
Manifest Builders
Plain Kubernetes documents; no timestamps or random names, so identical input
always renders identical YAML
"""

import json
from typing import Any, Dict, List, Optional, Sequence

from ..models import (TEMPLATE_FIELD, EnvFromSecret, FieldMapping, NamedField, PlainEnv,
                      RoutingRule, SecretBinding, SecretRecord, WholeValue, WorkloadSpec)

CSI_DRIVER = "secrets-store.csi.k8s.io"
MANAGED_BY = {"managed-by": "pulumi"}


def namespace_manifest(name: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Namespace",
        "metadata": {"name": name, "labels": {"name": name, **MANAGED_BY}},
    }


def provider_objects(record: SecretRecord, field_map: Sequence[FieldMapping]) -> List[Dict[str, Any]]:
    """
    AWS provider object list for one record

    The entire value of a templated record is its template field, so it is
    selected by path like a credential field.
    """
    entry: Dict[str, Any] = {
        "objectName": record.storage_location,
        "objectType": "secretsmanager",
    }
    whole = len(field_map) == 1 and isinstance(field_map[0].source, WholeValue)
    if whole and record.is_templated:
        entry["jmesPath"] = [{"path": TEMPLATE_FIELD, "objectAlias": field_map[0].target_key}]
    elif whole:
        entry["objectAlias"] = field_map[0].target_key
    else:
        entry["jmesPath"] = [
            {"path": m.source.name, "objectAlias": m.target_key}
            for m in field_map if isinstance(m.source, NamedField)
        ]
    return [entry]


def secret_provider_class(name: str, namespace: str, record: SecretRecord,
                          target_name: str, field_map: Sequence[FieldMapping]) -> Dict[str, Any]:
    """
    SecretProviderClass syncing one record into one Kubernetes Secret

    Args:
        name: SecretProviderClass name
        namespace: Namespace of the synced Secret
        record: Source record
        target_name: Name of the synced Kubernetes Secret
        field_map: Source selector -> key in the synced Secret

    Returns:
        Manifest dict
    """
    return {
        "apiVersion": "secrets-store.csi.x-k8s.io/v1",
        "kind": "SecretProviderClass",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(MANAGED_BY)},
        "spec": {
            "provider": "aws",
            "parameters": {
                "objects": json.dumps(provider_objects(record, field_map)),
                # fetched with the mounting pod's identity
                "usePodIdentity": "true",
            },
            "secretObjects": [{
                "secretName": target_name,
                "type": "Opaque",
                "data": [{"objectName": m.target_key, "key": m.target_key} for m in field_map],
            }],
        },
    }


def _env_entry(env) -> Dict[str, Any]:
    if isinstance(env, EnvFromSecret):
        return {"name": env.name, "valueFrom": {"secretKeyRef": {"name": env.target_name, "key": env.key}}}
    if isinstance(env, PlainEnv):
        value = env.value
        return {"name": env.name, "value": str(value) if isinstance(value, int) else value}
    raise TypeError(f"Unsupported environment entry: {env!r}")


def deployment_manifest(spec: WorkloadSpec, namespace: str, bindings: Sequence[SecretBinding],
                        service_account: Optional[str] = None) -> Dict[str, Any]:
    """
    Deployment mounting one CSI volume per binding

    The CSI driver only syncs a Kubernetes Secret while a pod mounts the
    matching volume, so every binding is mounted even when no env var reads it.
    Pods run as service_account, whose identity the provider uses to read the
    records.
    """
    labels = {"app": spec.name}
    volumes = []
    mounts = []
    for binding in bindings:
        volumes.append({
            "name": binding.target_name,
            "csi": {
                "driver": CSI_DRIVER,
                "readOnly": True,
                "volumeAttributes": {"secretProviderClass": binding.provider_class},
            },
        })
        mounts.append({
            "name": binding.target_name,
            "mountPath": f"/mnt/secrets/{binding.target_name}",
            "readOnly": True,
        })

    container = {
        "name": spec.name,
        "image": spec.image,
        "imagePullPolicy": "IfNotPresent",
        "ports": [{"containerPort": spec.port}],
        "env": [_env_entry(e) for e in spec.env],
        "volumeMounts": mounts,
    }

    pod_spec: Dict[str, Any] = {"volumes": volumes, "containers": [container]}
    if service_account:
        pod_spec["serviceAccountName"] = service_account

    return {
        "apiVersion": "apps/v1",
        "kind": "Deployment",
        "metadata": {"name": spec.name, "namespace": namespace, "labels": {**labels, **MANAGED_BY}},
        "spec": {
            "replicas": spec.replicas,
            "selector": {"matchLabels": labels},
            "template": {
                "metadata": {"labels": labels},
                "spec": pod_spec,
            },
        },
    }


def service_account_manifest(name: str, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "ServiceAccount",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(MANAGED_BY)},
    }


def service_manifest(spec: WorkloadSpec, namespace: str) -> Dict[str, Any]:
    return {
        "apiVersion": "v1",
        "kind": "Service",
        "metadata": {"name": spec.name, "namespace": namespace, "labels": {"app": spec.name, **MANAGED_BY}},
        "spec": {
            "type": "ClusterIP",
            "selector": {"app": spec.name},
            "ports": [{"port": spec.port, "targetPort": spec.port}],
        },
    }


def ingress_manifest(name: str, namespace: str, host: str, rules: Sequence[RoutingRule],
                     certificate_arn: Optional[str] = None) -> Dict[str, Any]:
    """ALB ingress with one path per routing rule, in routing-table order"""
    annotations = {
        "alb.ingress.kubernetes.io/scheme": "internet-facing",
        # services are ClusterIP, so the ALB targets pod IPs
        "alb.ingress.kubernetes.io/target-type": "ip",
    }
    if certificate_arn:
        annotations.update({
            "alb.ingress.kubernetes.io/listen-ports": '[{"HTTP": 80}, {"HTTPS": 443}]',
            "alb.ingress.kubernetes.io/certificate-arn": certificate_arn,
            "alb.ingress.kubernetes.io/ssl-redirect": "443",
        })
    else:
        annotations["alb.ingress.kubernetes.io/listen-ports"] = '[{"HTTP": 80}]'

    paths = [{
        "path": rule.path_prefix,
        "pathType": "Prefix",
        "backend": {"service": {"name": rule.workload.name, "port": {"number": rule.port}}},
    } for rule in rules]

    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "Ingress",
        "metadata": {
            "name": name,
            "namespace": namespace,
            "labels": dict(MANAGED_BY),
            "annotations": annotations,
        },
        "spec": {
            "ingressClassName": "alb",
            "rules": [{"host": host, "http": {"paths": paths}}],
        },
    }


def network_policy_manifest(name: str, namespace: str, allowed_cidr: str) -> Dict[str, Any]:
    """Deny all ingress to the namespace except from allowed_cidr"""
    return {
        "apiVersion": "networking.k8s.io/v1",
        "kind": "NetworkPolicy",
        "metadata": {"name": name, "namespace": namespace, "labels": dict(MANAGED_BY)},
        "spec": {
            "podSelector": {},
            "policyTypes": ["Ingress"],
            "ingress": [{"from": [{"ipBlock": {"cidr": allowed_cidr}}]}],
        },
    }
