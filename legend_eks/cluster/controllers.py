"""
Platform Controllers
Load balancer controller, cluster autoscaler and Secrets Store CSI, each with
the smallest permission set it needs, plus the secret read identity of workloads
"""

from typing import Dict, Iterable, Optional

from ..errors import ConfigurationError
from ..models import (ChartRef, ClusterHandle, ControllerHandle, PermissionSet, PermissionStatement,
                      SecretRecord, WorkloadIdentity)
from .functions import ClusterProvisioner

LOAD_BALANCER_CHART = ChartRef(
    chart="aws-load-balancer-controller",
    repository="https://aws.github.io/eks-charts",
    release="aws-load-balancer-controller",
)
AUTOSCALER_CHART = ChartRef(
    chart="cluster-autoscaler",
    repository="https://kubernetes.github.io/autoscaler",
    release="cluster-autoscaler",
)
SECRET_SYNC_DRIVER_CHART = ChartRef(
    chart="secrets-store-csi-driver",
    repository="https://kubernetes-sigs.github.io/secrets-store-csi-driver/charts",
    release="csi-driver",
)
SECRET_SYNC_PROVIDER_CHART = ChartRef(
    chart="secrets-store-csi-driver-provider-aws",
    repository="https://aws.github.io/secrets-store-csi-driver-provider-aws",
    release="csi-provider-aws",
)
MONITORING_CHART = ChartRef(
    chart="kube-prometheus-stack",
    repository="https://prometheus-community.github.io/helm-charts",
    release="kube-prom-stack",
)


def load_balancer_permissions(cluster_name: str) -> PermissionSet:
    """Describe anything; mutate only load balancers and groups tagged for this cluster"""
    cluster_tag = "elbv2.k8s.aws/cluster"
    return PermissionSet((
        PermissionStatement(
            actions=(
                "ec2:DescribeAccountAttributes",
                "ec2:DescribeAddresses",
                "ec2:DescribeAvailabilityZones",
                "ec2:DescribeInternetGateways",
                "ec2:DescribeVpcs",
                "ec2:DescribeSubnets",
                "ec2:DescribeSecurityGroups",
                "ec2:DescribeInstances",
                "ec2:DescribeNetworkInterfaces",
                "ec2:DescribeTags",
                "elasticloadbalancing:DescribeLoadBalancers",
                "elasticloadbalancing:DescribeLoadBalancerAttributes",
                "elasticloadbalancing:DescribeListeners",
                "elasticloadbalancing:DescribeListenerCertificates",
                "elasticloadbalancing:DescribeRules",
                "elasticloadbalancing:DescribeTargetGroups",
                "elasticloadbalancing:DescribeTargetGroupAttributes",
                "elasticloadbalancing:DescribeTargetHealth",
                "elasticloadbalancing:DescribeTags",
                "acm:ListCertificates",
                "acm:DescribeCertificate",
                "iam:ListServerCertificates",
                "iam:GetServerCertificate",
                "wafv2:GetWebACL",
                "wafv2:GetWebACLForResource",
                "shield:GetSubscriptionState",
                "cognito-idp:DescribeUserPoolClient",
            ),
            resources=("*",),
        ),
        PermissionStatement(
            actions=(
                "ec2:CreateSecurityGroup",
                "ec2:CreateTags",
                "elasticloadbalancing:CreateLoadBalancer",
                "elasticloadbalancing:CreateTargetGroup",
                "elasticloadbalancing:CreateListener",
                "elasticloadbalancing:CreateRule",
                "elasticloadbalancing:AddTags",
            ),
            resources=("*",),
            conditions=(("StringEquals", f"aws:RequestTag/{cluster_tag}", cluster_name),),
        ),
        PermissionStatement(
            actions=(
                "ec2:AuthorizeSecurityGroupIngress",
                "ec2:RevokeSecurityGroupIngress",
                "ec2:DeleteSecurityGroup",
                "ec2:DeleteTags",
                "elasticloadbalancing:ModifyLoadBalancerAttributes",
                "elasticloadbalancing:SetIpAddressType",
                "elasticloadbalancing:SetSecurityGroups",
                "elasticloadbalancing:SetSubnets",
                "elasticloadbalancing:DeleteLoadBalancer",
                "elasticloadbalancing:ModifyTargetGroup",
                "elasticloadbalancing:ModifyTargetGroupAttributes",
                "elasticloadbalancing:DeleteTargetGroup",
                "elasticloadbalancing:RegisterTargets",
                "elasticloadbalancing:DeregisterTargets",
                "elasticloadbalancing:ModifyListener",
                "elasticloadbalancing:DeleteListener",
                "elasticloadbalancing:ModifyRule",
                "elasticloadbalancing:DeleteRule",
                "elasticloadbalancing:AddListenerCertificates",
                "elasticloadbalancing:RemoveListenerCertificates",
                "elasticloadbalancing:RemoveTags",
            ),
            resources=("*",),
            conditions=(("StringEquals", f"aws:ResourceTag/{cluster_tag}", cluster_name),),
        ),
        PermissionStatement(
            actions=("iam:CreateServiceLinkedRole",),
            resources=("*",),
            conditions=(("StringEquals", "iam:AWSServiceName", "elasticloadbalancing.amazonaws.com"),),
        ),
    ))


def autoscaler_permissions(cluster_name: str) -> PermissionSet:
    """Describe anything; resize only groups carrying this cluster's autoscaler tag"""
    return PermissionSet((
        PermissionStatement(
            actions=(
                "autoscaling:DescribeAutoScalingGroups",
                "autoscaling:DescribeAutoScalingInstances",
                "autoscaling:DescribeLaunchConfigurations",
                "autoscaling:DescribeScalingActivities",
                "autoscaling:DescribeTags",
                "ec2:DescribeLaunchTemplateVersions",
                "ec2:DescribeInstanceTypes",
                "ec2:DescribeImages",
                "ec2:GetInstanceTypesFromInstanceRequirements",
                "eks:DescribeNodegroup",
            ),
            resources=("*",),
        ),
        PermissionStatement(
            actions=(
                "autoscaling:SetDesiredCapacity",
                "autoscaling:TerminateInstanceInAutoScalingGroup",
            ),
            resources=("*",),
            conditions=(("StringEquals", f"aws:ResourceTag/k8s.io/cluster-autoscaler/{cluster_name}", "owned"),),
        ),
    ))


def secret_sync_permissions(records: Iterable[SecretRecord], key_alias: str) -> PermissionSet:
    """
    Read access to exactly the vault's records

    Secrets Manager appends a six character suffix to every secret ARN, hence
    the trailing wildcard on each name.
    """
    arns = tuple(f"arn:aws:secretsmanager:*:*:secret:{r.storage_location}-??????" for r in records)
    return PermissionSet((
        PermissionStatement(
            actions=("secretsmanager:GetSecretValue", "secretsmanager:DescribeSecret"),
            resources=arns,
        ),
        PermissionStatement(
            actions=("kms:Decrypt",),
            resources=("*",),
            conditions=(("ForAnyValue:StringEquals", "kms:ResourceAliases", f"alias/{key_alias}"),),
        ),
    ))



def grant_secret_access(provisioner: ClusterProvisioner, namespace: str, records: Iterable[SecretRecord],
                        key_alias: str, service_account: Optional[str] = None) -> WorkloadIdentity:
    """
    Identity through which the pods of one namespace read their records

    The AWS secret-sync provider fetches each record with the identity of
    the pod mounting it, so the grant belongs to the workloads' service
    account rather than to the provider.

    Args:
        provisioner: Provisioner that owns the cluster
        namespace: Workload namespace
        records: Records bound into that namespace
        key_alias: Vault KMS key alias (without the alias/ prefix)
        service_account: Service account name; defaults to <namespace>-workloads

    Returns:
        WorkloadIdentity
    """
    records = list(records)
    if not records:
        raise ConfigurationError(f"Secret access for {namespace} names no records")
    return provisioner.grant_workload_identity(
        namespace,
        service_account or f"{namespace}-workloads",
        secret_sync_permissions(records, key_alias),
        readable=[r.storage_location for r in records],
    )


def install_platform_controllers(provisioner: ClusterProvisioner, cluster: ClusterHandle,
                                 region: str) -> Dict[str, ControllerHandle]:
    """
    Install every controller the workloads rely on

    Args:
        provisioner: Provisioner that owns the cluster
        cluster: Cluster handle
        region: AWS region for the autoscaler

    Returns:
        Dict of controller role -> ControllerHandle
    """
    name = cluster.cluster_name
    controllers = {}

    controllers["load_balancer"] = provisioner.install_controller(
        "aws-load-balancer-controller",
        LOAD_BALANCER_CHART,
        "kube-system",
        {
            "clusterName": name,
            "serviceAccount": {"create": True, "name": "aws-load-balancer-controller"},
        },
        load_balancer_permissions(name),
        service_account="aws-load-balancer-controller",
    )

    controllers["autoscaler"] = provisioner.install_controller(
        "cluster-autoscaler",
        AUTOSCALER_CHART,
        "kube-system",
        {
            "autoDiscovery": {"clusterName": name},
            "awsRegion": region,
            "rbac": {"serviceAccount": {"create": True, "name": "cluster-autoscaler"}},
        },
        autoscaler_permissions(name),
        service_account="cluster-autoscaler",
    )

    controllers["secret_sync_driver"] = provisioner.install_controller(
        "secrets-store-csi-driver",
        SECRET_SYNC_DRIVER_CHART,
        "kube-system",
        {"syncSecret": {"enabled": True}},
        PermissionSet(),
    )

    # reads happen as the mounting pod; see grant_secret_access
    controllers["secret_sync_provider"] = provisioner.install_controller(
        "secrets-store-csi-provider-aws",
        SECRET_SYNC_PROVIDER_CHART,
        "kube-system",
        {},
        PermissionSet(),
        depends_on=[controllers["secret_sync_driver"].node_id],
    )

    return controllers
