"""
Declaration Models
Typed contracts passed between the vault, the cluster and the workloads
"""

import ipaddress
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from .errors import ConfigurationError

POLICY_VERSION = "2012-10-17"
READ_ONLY_ACTION_PREFIXES = ("Describe", "List", "Get")
# templated records hold {"value": ...}; operators overwrite the value in place
TEMPLATE_FIELD = "value"


class GenerationPolicy(Enum):
    """How the secret store produces a record's value"""
    RANDOM_STRING = "random-string"
    TEMPLATED_PLACEHOLDER = "templated-placeholder"
    EXTERNALLY_SUPPLIED = "externally-supplied"
    # username + generated password, the only two-value record
    GENERATED_CREDENTIAL = "generated-credential"


@dataclass(frozen=True)
class OutputRef:
    """Value that only exists once `node_id` has been materialized"""
    node_id: str
    attribute: str

    def render(self) -> str:
        return f"${{{self.node_id}.{self.attribute}}}"


@dataclass(frozen=True)
class SecretSpec:
    logical_name: str
    secret_name: str
    description: str
    policy: GenerationPolicy
    length: int = 32
    username: Optional[str] = None


@dataclass(frozen=True)
class SecretRecord:
    """One isolated secret; only its identifier ever leaves the vault"""
    logical_name: str
    storage_location: str
    encryption_key_ref: str
    policy: GenerationPolicy
    node_id: str

    @property
    def is_credential(self) -> bool:
        return self.policy is GenerationPolicy.GENERATED_CREDENTIAL

    @property
    def is_templated(self) -> bool:
        return self.policy is GenerationPolicy.TEMPLATED_PLACEHOLDER


@dataclass(frozen=True)
class NetworkLayout:
    vpc_cidr: str
    availability_zones: Tuple[str, ...]
    public_subnets: Tuple[str, ...]
    private_subnets: Tuple[str, ...]

    @classmethod
    def partition(cls, vpc_cidr: str, zones: Tuple[str, ...]) -> "NetworkLayout":
        """
        Split the VPC range into one public and one private segment per zone

        Args:
            vpc_cidr: VPC CIDR block
            zones: Availability zones, in order

        Returns:
            NetworkLayout with public segments first, then private ones
        """
        try:
            network = ipaddress.ip_network(vpc_cidr)
        except ValueError as e:
            raise ConfigurationError(f"Invalid VPC CIDR '{vpc_cidr}': {e}") from e

        new_prefix = network.prefixlen + (2 * len(zones) - 1).bit_length()
        if new_prefix > 28:
            raise ConfigurationError(f"VPC CIDR {vpc_cidr} is too small for {len(zones)} zones")

        segments = [str(s) for s in network.subnets(new_prefix=new_prefix)]
        count = len(zones)
        return cls(
            vpc_cidr=str(network),
            availability_zones=tuple(zones),
            public_subnets=tuple(segments[:count]),
            private_subnets=tuple(segments[count:2 * count]),
        )


@dataclass(frozen=True)
class CapacityPolicy:
    instance_types: Tuple[str, ...]
    desired_size: int
    min_size: int
    max_size: int
    vpc_cidr: str
    availability_zones: Tuple[str, ...]
    disk_size: int = 50

    def __post_init__(self):
        if not self.instance_types:
            raise ConfigurationError("At least one node instance type is required")
        if len(self.availability_zones) < 3:
            raise ConfigurationError(
                f"Cluster network needs at least 3 availability zones, got {len(self.availability_zones)}")
        if len(set(self.availability_zones)) != len(self.availability_zones):
            raise ConfigurationError(f"Duplicate availability zones: {list(self.availability_zones)}")
        if not 1 <= self.min_size <= self.desired_size <= self.max_size:
            raise ConfigurationError(
                f"Node sizing must satisfy 1 <= min ({self.min_size}) <= desired "
                f"({self.desired_size}) <= max ({self.max_size})")


@dataclass(frozen=True)
class ClusterHandle:
    cluster_name: str
    network: NetworkLayout
    network_node: str
    cluster_node: str
    # node group; "cluster ready" for anything scheduled onto it
    capacity_node: str


@dataclass(frozen=True)
class CredentialPolicy:
    """DocumentDB credential policy: always generate-and-store"""
    credential: Optional[SecretRecord]
    instance_class: str = "db.t3.medium"
    instances: int = 2
    port: int = 27017
    backup_retention_days: int = 7
    database_name: str = "legend"
    # days between master password rotations; None disables rotation
    rotation_days: Optional[int] = 30


@dataclass(frozen=True)
class DatabaseHandle:
    endpoint: OutputRef
    port: int
    credential: SecretRecord
    node_id: str
    database_name: str = "legend"

    def __post_init__(self):
        if self.credential is None:
            raise ConfigurationError(
                "Database has no master credential; configure it with a generated credential record")
        if not self.credential.is_credential:
            raise ConfigurationError(
                f"Database credential '{self.credential.logical_name}' is not a generated credential record")


@dataclass(frozen=True)
class PermissionStatement:
    actions: Tuple[str, ...]
    resources: Tuple[str, ...]
    # (operator, key, value) triples
    conditions: Tuple[Tuple[str, str, Any], ...] = ()

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.resources

    @property
    def is_read_only(self) -> bool:
        return all(a.split(":", 1)[-1].startswith(READ_ONLY_ACTION_PREFIXES) for a in self.actions)

    def to_statement(self) -> Dict[str, Any]:
        statement = {
            "Effect": "Allow",
            "Action": list(self.actions),
            "Resource": list(self.resources),
        }
        if self.conditions:
            condition = {}
            for operator, key, value in self.conditions:
                condition.setdefault(operator, {})[key] = value
            statement["Condition"] = condition
        return statement


@dataclass(frozen=True)
class PermissionSet:
    statements: Tuple[PermissionStatement, ...] = ()

    @property
    def empty(self) -> bool:
        return not self.statements

    def validate(self, owner: str) -> None:
        """Reject unconditioned wildcard grants of mutating actions"""
        for statement in self.statements:
            if not statement.actions or not statement.resources:
                raise ConfigurationError(f"{owner}: permission statement needs actions and resources")
            if statement.is_wildcard and not statement.is_read_only and not statement.conditions:
                raise ConfigurationError(
                    f"{owner}: wildcard resource grant for mutating actions {list(statement.actions)}")

    def to_policy_document(self) -> Dict[str, Any]:
        return {
            "Version": POLICY_VERSION,
            "Statement": [s.to_statement() for s in self.statements],
        }


@dataclass(frozen=True)
class ChartRef:
    chart: str
    repository: str
    release: str
    version: Optional[str] = None


@dataclass(frozen=True)
class ControllerHandle:
    name: str
    namespace: str
    service_account: str
    node_id: str
    identity_node: Optional[str] = None


@dataclass(frozen=True)
class WorkloadIdentity:
    """Service account whose pods may read the listed records"""
    namespace: str
    service_account: str
    node_id: str
    # storage locations readable through this identity
    readable: Tuple[str, ...] = ()


@dataclass(frozen=True)
class WholeValue:
    """Selects the entire secret value"""


@dataclass(frozen=True)
class NamedField:
    """Selects one property of a JSON secret"""
    name: str


FieldSource = Union[WholeValue, NamedField]


@dataclass(frozen=True)
class FieldMapping:
    source: FieldSource
    target_key: str


@dataclass(frozen=True)
class SecretBinding:
    record: SecretRecord
    namespace: str
    target_name: str
    field_map: Tuple[FieldMapping, ...]
    provider_class: str
    node_id: str

    @property
    def keys(self) -> List[str]:
        return [m.target_key for m in self.field_map]


@dataclass(frozen=True)
class EnvFromSecret:
    name: str
    target_name: str
    key: str


@dataclass(frozen=True)
class PlainEnv:
    """Non-secret value such as a database host or port"""
    name: str
    value: Union[str, OutputRef]


EnvVar = Union[EnvFromSecret, PlainEnv]


@dataclass(frozen=True)
class WorkloadSpec:
    name: str
    image: str
    port: int
    mounts: Tuple[str, ...] = ()
    env: Tuple[EnvVar, ...] = ()
    route_prefix: Optional[str] = None
    replicas: int = 2


@dataclass(frozen=True)
class RoutingRule:
    path_prefix: str
    workload: WorkloadSpec
    port: int


class WorkloadState(Enum):
    DECLARED = "declared"
    BOUND = "bound"
    DEPLOYABLE = "deployable"
    DEPLOYED = "deployed"
