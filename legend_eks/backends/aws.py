"""
AWS Materializers
KMS, Secrets Manager, VPC, EKS, IAM, DocumentDB and credential rotation resources
for declared nodes
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Any, Dict, List

from ..graph import Node
from ..models import POLICY_VERSION, TEMPLATE_FIELD, GenerationPolicy

PLACEHOLDER_VALUE = "REPLACE_ME"
# AWS-published single-user rotation function for MongoDB-compatible databases
MONGODB_ROTATION_APPLICATION = (
    "arn:aws:serverlessrepo:us-east-1:297356227824:applications/SecretsManagerMongoDBRotationSingleUser")


def resource_name(node: Node) -> str:
    """Pulumi resource name for a node; node ids are unique, so names are too"""
    return node.node_id.replace(":", "-")


def upstream_resources(deps: Dict[str, Any]) -> List[Any]:
    resources = []
    for result in deps.values():
        if isinstance(result, dict):
            resources.extend(result.get("resources", []))
    return resources


def _assume_role_policy(service: str, actions: List[str] = None) -> str:
    return json.dumps({
        "Version": POLICY_VERSION,
        "Statement": [{
            "Action": actions or ["sts:AssumeRole"],
            "Effect": "Allow",
            "Principal": {"Service": service},
        }],
    })


def create_kms_key(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a KMS key with rotation and its alias

    Returns:
        Dict with key, arn, alias and resources
    """
    name = resource_name(node)
    key = aws.kms.Key(
        name,
        description=payload["description"],
        enable_key_rotation=payload["rotation"],
        deletion_window_in_days=7,
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=upstream_resources(deps)),
    )
    alias = aws.kms.Alias(
        f"{name}-alias",
        name=f"alias/{payload['alias']}",
        target_key_id=key.key_id,
    )
    return {
        "key": key,
        "arn": key.arn,
        "alias": alias.name,
        "resources": [key, alias],
    }


def create_secret(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create one Secrets Manager record according to its generation policy

    Generated values are written once; later changes made outside the stack
    are kept. Templated records start as {"value": "REPLACE_ME"}. Externally
    supplied records get no value at all.

    Returns:
        Dict with secret, name and resources; credentials add username and password
    """
    name = resource_name(node)
    key = deps[payload["key_node"]]
    policy = GenerationPolicy(payload["policy"])

    secret = aws.secretsmanager.Secret(
        name,
        name=payload["name"],
        description=payload["description"],
        kms_key_id=key["arn"],
        recovery_window_in_days=0,
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=upstream_resources(deps)),
    )
    result = {"secret": secret, "name": secret.name, "kms_key_arn": key["arn"], "resources": [secret]}

    if policy is GenerationPolicy.EXTERNALLY_SUPPLIED:
        return result

    if policy is GenerationPolicy.TEMPLATED_PLACEHOLDER:
        value = json.dumps({TEMPLATE_FIELD: PLACEHOLDER_VALUE})
    else:
        password = aws.secretsmanager.get_random_password_output(
            password_length=payload["length"],
            exclude_punctuation=True,
        ).random_password
        if policy is GenerationPolicy.GENERATED_CREDENTIAL:
            username = payload["username"]
            value = pulumi.Output.json_dumps({"username": username, "password": password})
            result["username"] = username
            result["password"] = pulumi.Output.secret(password)
        else:
            value = password

    version = aws.secretsmanager.SecretVersion(
        f"{name}-version",
        secret_id=secret.id,
        secret_string=value,
        opts=pulumi.ResourceOptions(ignore_changes=["secret_string"]),
    )
    result["resources"].append(version)
    return result


def barrier(node: Node, payload: Any, deps: Dict[str, Any]) -> Dict[str, Any]:
    """Collect upstream resources so that one dependency stands for all of them"""
    return {"resources": upstream_resources(deps)}


def create_network(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create VPC with public and private subnets per zone, one NAT gateway

    Returns:
        Dict with vpc, subnet ids and resources
    """
    name = payload["name"]
    tags = payload["tags"]
    opts = pulumi.ResourceOptions(depends_on=upstream_resources(deps))

    vpc = aws.ec2.Vpc(f"{name}-vpc",
        cidr_block=payload["vpc_cidr"],
        enable_dns_hostnames=True,
        enable_dns_support=True,
        tags=tags,
        opts=opts)

    igw = aws.ec2.InternetGateway(f"{name}-igw",
        vpc_id=vpc.id,
        tags={**tags, "Name": f"{name}-igw"})

    zones = payload["availability_zones"]
    public_subnets = []
    for i, (zone, cidr) in enumerate(zip(zones, payload["public_subnets"]), start=1):
        public_subnets.append(aws.ec2.Subnet(f"{name}-public-{i}",
            vpc_id=vpc.id,
            cidr_block=cidr,
            availability_zone=zone,
            map_public_ip_on_launch=True,
            tags={**tags, "Name": f"{name}-public-{i}", "kubernetes.io/role/elb": "1"}))

    private_subnets = []
    for i, (zone, cidr) in enumerate(zip(zones, payload["private_subnets"]), start=1):
        private_subnets.append(aws.ec2.Subnet(f"{name}-private-{i}",
            vpc_id=vpc.id,
            cidr_block=cidr,
            availability_zone=zone,
            tags={**tags, "Name": f"{name}-private-{i}", "kubernetes.io/role/internal-elb": "1"}))

    eip = aws.ec2.Eip(f"{name}-nat-eip",
        domain="vpc",
        tags={**tags, "Name": f"{name}-nat-eip"})

    nat = aws.ec2.NatGateway(f"{name}-nat",
        allocation_id=eip.id,
        subnet_id=public_subnets[0].id,
        tags={**tags, "Name": f"{name}-nat"},
        opts=pulumi.ResourceOptions(depends_on=[igw]))

    public_rt = aws.ec2.RouteTable(f"{name}-public-rt",
        vpc_id=vpc.id,
        routes=[aws.ec2.RouteTableRouteArgs(
            cidr_block="0.0.0.0/0",
            gateway_id=igw.id)],
        tags={**tags, "Name": f"{name}-public-rt"})

    private_rt = aws.ec2.RouteTable(f"{name}-private-rt",
        vpc_id=vpc.id,
        routes=[aws.ec2.RouteTableRouteArgs(
            cidr_block="0.0.0.0/0",
            nat_gateway_id=nat.id)],
        tags={**tags, "Name": f"{name}-private-rt"})

    for i, subnet in enumerate(public_subnets, start=1):
        aws.ec2.RouteTableAssociation(f"{name}-public-{i}-rt",
            subnet_id=subnet.id,
            route_table_id=public_rt.id)
    for i, subnet in enumerate(private_subnets, start=1):
        aws.ec2.RouteTableAssociation(f"{name}-private-{i}-rt",
            subnet_id=subnet.id,
            route_table_id=private_rt.id)

    return {
        "vpc": vpc,
        "vpc_id": vpc.id,
        "public_subnet_ids": [s.id for s in public_subnets],
        "private_subnet_ids": [s.id for s in private_subnets],
        "resources": [vpc, nat, public_rt, private_rt, *public_subnets, *private_subnets],
    }


def create_cluster(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create the EKS control plane with secrets encryption

    Returns:
        Dict with cluster, cluster_name, endpoint and resources
    """
    name = payload["name"]
    network = deps[payload["network_node"]]
    key = deps[payload["key_node"]]

    role = aws.iam.Role(f"{name}-cluster-role",
        assume_role_policy=_assume_role_policy("eks.amazonaws.com"),
        tags=payload["tags"])

    policy = aws.iam.RolePolicyAttachment(f"{name}-cluster-policy",
        policy_arn="arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
        role=role.name)

    cluster = aws.eks.Cluster(f"{name}-cluster",
        name=name,
        role_arn=role.arn,
        version=payload["version"],
        vpc_config=aws.eks.ClusterVpcConfigArgs(
            subnet_ids=network["public_subnet_ids"] + network["private_subnet_ids"],
            endpoint_public_access=True,
            endpoint_private_access=True,
        ),
        encryption_config=aws.eks.ClusterEncryptionConfigArgs(
            provider=aws.eks.ClusterEncryptionConfigProviderArgs(key_arn=key["arn"]),
            resources=["secrets"],
        ),
        access_config=aws.eks.ClusterAccessConfigArgs(
            authentication_mode="API_AND_CONFIG_MAP"
        ),
        enabled_cluster_log_types=payload["log_types"],
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=[policy, *upstream_resources(deps)]))

    return {
        "cluster": cluster,
        "cluster_name": cluster.name,
        "endpoint": cluster.endpoint,
        "certificate_authority": cluster.certificate_authority.data,
        "resources": [cluster],
    }


def create_capacity(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create the managed node group and the managed add-ons that run on it

    Returns:
        Dict with node_group, addons and resources
    """
    name = payload["cluster_name"]
    cluster = deps[payload["cluster_node"]]
    network = deps[payload["network_node"]]

    node_role = aws.iam.Role(f"{name}-node-role",
        assume_role_policy=_assume_role_policy("ec2.amazonaws.com"),
        tags=payload["tags"])

    attachments = []
    for suffix, policy_arn in (
        ("worker", "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"),
        ("cni", "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"),
        ("ecr", "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"),
    ):
        attachments.append(aws.iam.RolePolicyAttachment(f"{name}-node-policy-{suffix}",
            policy_arn=policy_arn,
            role=node_role.name))

    node_group = aws.eks.NodeGroup(payload["node_group_name"],
        cluster_name=cluster["cluster_name"],
        node_role_arn=node_role.arn,
        subnet_ids=network["private_subnet_ids"],
        instance_types=payload["instance_types"],
        capacity_type="ON_DEMAND",
        scaling_config=aws.eks.NodeGroupScalingConfigArgs(
            desired_size=payload["desired_size"],
            max_size=payload["max_size"],
            min_size=payload["min_size"],
        ),
        disk_size=payload["disk_size"],
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=[*attachments, *upstream_resources(deps)]))

    # pod identity agent backs every controller identity
    addons = {}
    for addon in ("vpc-cni", "coredns", "kube-proxy", "eks-pod-identity-agent"):
        addons[addon] = aws.eks.Addon(f"{name}-{addon}",
            cluster_name=cluster["cluster_name"],
            addon_name=addon,
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="OVERWRITE",
            opts=pulumi.ResourceOptions(depends_on=[node_group]))

    return {
        "node_group": node_group,
        "addons": addons,
        "resources": [node_group, *addons.values()],
    }


def grant_identity(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a pod identity role scoped to one controller's permission set

    Returns:
        Dict with role, role_arn and resources
    """
    name = payload["name"]
    opts = pulumi.ResourceOptions(depends_on=upstream_resources(deps))

    policy = aws.iam.Policy(f"{name}-policy",
        policy=json.dumps(payload["policy"]),
        tags=payload["tags"],
        opts=opts)

    role = aws.iam.Role(f"{name}-role",
        assume_role_policy=_assume_role_policy("pods.eks.amazonaws.com", ["sts:AssumeRole", "sts:TagSession"]),
        tags=payload["tags"],
        opts=opts)

    attachment = aws.iam.RolePolicyAttachment(f"{name}-policy-attach",
        role=role.name,
        policy_arn=policy.arn)

    association = aws.eks.PodIdentityAssociation(f"{name}-pod-identity",
        cluster_name=payload["cluster_name"],
        namespace=payload["namespace"],
        service_account=payload["service_account"],
        role_arn=role.arn,
        opts=pulumi.ResourceOptions(depends_on=[attachment, *upstream_resources(deps)]))

    return {
        "role": role,
        "role_arn": role.arn,
        "resources": [attachment, association],
    }


def create_database_network_rule(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """Security group admitting the database port from the VPC range only"""
    network = deps[payload["network_node"]]

    sg = aws.ec2.SecurityGroup(payload["name"],
        vpc_id=network["vpc_id"],
        description=payload["description"],
        ingress=[aws.ec2.SecurityGroupIngressArgs(
            protocol="tcp",
            from_port=payload["port"],
            to_port=payload["port"],
            cidr_blocks=[payload["ingress_cidr"]],
        )],
        egress=[aws.ec2.SecurityGroupEgressArgs(
            protocol="-1",
            from_port=0,
            to_port=0,
            cidr_blocks=["0.0.0.0/0"],
        )],
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=upstream_resources(deps)))

    return {"security_group": sg, "security_group_id": sg.id, "resources": [sg]}


def create_database(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create the DocumentDB cluster and its instances

    Returns:
        Dict with cluster, endpoint, port and resources
    """
    identifier = payload["identifier"]
    network = deps[payload["network_node"]]
    rule = deps[payload["rule_node"]]
    credential = deps[payload["credential_node"]]

    subnet_group = aws.docdb.SubnetGroup(f"{identifier}-subnet-group",
        subnet_ids=network["private_subnet_ids"],
        tags=payload["tags"])

    cluster = aws.docdb.Cluster(identifier,
        cluster_identifier=identifier,
        engine="docdb",
        master_username=credential["username"],
        master_password=credential["password"],
        port=payload["port"],
        db_subnet_group_name=subnet_group.name,
        vpc_security_group_ids=[rule["security_group_id"]],
        storage_encrypted=True,
        backup_retention_period=payload["backup_retention_days"],
        preferred_backup_window="03:00-04:00",
        skip_final_snapshot=True,
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(
            depends_on=upstream_resources(deps),
            # generated once; the secret version keeps the first value
            ignore_changes=["master_password"]))

    instances = []
    for i in range(1, payload["instances"] + 1):
        instances.append(aws.docdb.ClusterInstance(f"{identifier}-{i}",
            identifier=f"{identifier}-{i}",
            cluster_identifier=cluster.id,
            instance_class=payload["instance_class"],
            tags=payload["tags"]))

    return {
        "cluster": cluster,
        "endpoint": cluster.endpoint,
        "port": payload["port"],
        "resources": [cluster, *instances],
    }


def _secretsmanager_endpoint(arn: str) -> str:
    region = arn.split(":")[3]
    return f"https://secretsmanager.{region}.amazonaws.com"


def create_secret_rotation(node: Node, payload: Dict[str, Any], deps: Dict[str, Any]) -> Dict[str, Any]:
    """
    Rotate the database credential with the single-user rotation function

    The function runs in the private subnets under the database's security
    group. It reads engine, host and port from the secret itself, so the
    credential is rewritten with its connection details first.

    Returns:
        Dict with function stack, rotation and resources
    """
    name = payload["name"]
    credential = deps[payload["secret_node"]]
    database = deps[payload["database_node"]]
    network = deps[payload["network_node"]]
    rule = deps[payload["rule_node"]]
    secret = credential["secret"]

    connection = aws.secretsmanager.SecretVersion(f"{name}-connection",
        secret_id=secret.id,
        secret_string=pulumi.Output.json_dumps({
            "engine": "mongo",
            "host": database["endpoint"],
            "port": database["port"],
            "ssl": True,
            "username": credential["username"],
            "password": credential["password"],
        }),
        opts=pulumi.ResourceOptions(
            depends_on=upstream_resources(deps),
            # rotation owns the value from here on
            ignore_changes=["secret_string"]))

    function = aws.serverlessrepository.CloudFormationStack(f"{name}-function",
        name=name,
        application_id=MONGODB_ROTATION_APPLICATION,
        capabilities=["CAPABILITY_IAM", "CAPABILITY_RESOURCE_POLICY"],
        parameters={
            "functionName": name,
            "endpoint": secret.arn.apply(_secretsmanager_endpoint),
            "kmsKeyArn": credential["kms_key_arn"],
            "vpcSubnetIds": pulumi.Output.all(*network["private_subnet_ids"]).apply(",".join),
            "vpcSecurityGroupIds": rule["security_group_id"],
        },
        tags=payload["tags"],
        opts=pulumi.ResourceOptions(depends_on=upstream_resources(deps)))

    rotation = aws.secretsmanager.SecretRotation(f"{name}-schedule",
        secret_id=secret.id,
        rotation_lambda_arn=function.outputs.apply(lambda outputs: outputs["RotationLambdaARN"]),
        rotation_rules=aws.secretsmanager.SecretRotationRotationRulesArgs(
            automatically_after_days=payload["rotation_days"],
        ),
        opts=pulumi.ResourceOptions(depends_on=[connection, function]))

    return {
        "function": function,
        "rotation": rotation,
        "resources": [connection, function, rotation],
    }
