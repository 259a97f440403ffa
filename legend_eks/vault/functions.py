"""
Secret Vault Functions
One Secrets Manager record per sensitive value, all encrypted under one shared KMS key
"""

import pulumi
from typing import Dict, List, Optional

from ..errors import ConfigurationError
from ..graph import DependencyGraph
from ..models import GenerationPolicy, SecretRecord, SecretSpec

COMPONENT = "vault"
KEY_NODE = "vault:key"
READY_NODE = "vault:ready"


class SecretVault:
    """
    Declares isolated secret records

    The vault only ever hands out identifiers. Values are produced by the
    secret store according to each record's generation policy.
    """

    def __init__(self, graph: DependencyGraph, key_alias: str, tags: Dict[str, str] = None):
        self.graph = graph
        self.key_alias = key_alias
        self.tags = tags or {}
        self._records: Dict[str, SecretRecord] = {}
        self._sealed = False

        graph.add(
            KEY_NODE,
            "kms-key",
            {
                "alias": key_alias,
                "description": "Encryption key for platform secrets",
                "rotation": True,
                "tags": {**self.tags, "Name": key_alias, "Module": COMPONENT},
            },
            component=COMPONENT,
        )

    def declare_secret(self, spec: SecretSpec) -> SecretRecord:
        """
        Declare one secret record

        Args:
            spec: Logical name, storage name and generation policy

        Returns:
            SecretRecord referencing the record by name

        Raises:
            ConfigurationError: Sealed vault, duplicate name or invalid policy settings
        """
        if self._sealed:
            raise ConfigurationError(f"Vault is sealed; cannot declare '{spec.logical_name}'")
        _validate_spec(spec)

        if spec.logical_name in self._records:
            raise ConfigurationError(f"Secret '{spec.logical_name}' is already declared")
        for record in self._records.values():
            if record.storage_location == spec.secret_name:
                raise ConfigurationError(
                    f"Secrets '{record.logical_name}' and '{spec.logical_name}' "
                    f"share storage location '{spec.secret_name}'")

        node_id = f"{COMPONENT}:secret:{spec.logical_name}"
        self.graph.add(
            node_id,
            "secret",
            {
                "name": spec.secret_name,
                "description": spec.description,
                "policy": spec.policy.value,
                "length": spec.length,
                "username": spec.username,
                "key_node": KEY_NODE,
                "tags": {**self.tags, "Name": spec.secret_name, "Module": COMPONENT},
            },
            depends_on=[KEY_NODE],
            component=COMPONENT,
        )

        record = SecretRecord(
            logical_name=spec.logical_name,
            storage_location=spec.secret_name,
            encryption_key_ref=f"alias/{self.key_alias}",
            policy=spec.policy,
            node_id=node_id,
        )
        self._records[spec.logical_name] = record
        return record

    def seal(self) -> str:
        """
        Close the vault behind a single barrier node

        Consumers depend on the barrier, so a failure of any record blocks
        everything downstream instead of leaving a partial vault.
        """
        if self._sealed:
            return READY_NODE
        if not self._records:
            raise ConfigurationError("Vault declares no secrets")

        self.graph.add(
            READY_NODE,
            "barrier",
            {"records": [r.storage_location for r in self._records.values()]},
            depends_on=[r.node_id for r in self._records.values()],
            component=COMPONENT,
        )
        self._sealed = True
        pulumi.log.info(f"Vault sealed with {len(self._records)} secret records")
        return READY_NODE

    @property
    def ready_node(self) -> str:
        if not self._sealed:
            raise ConfigurationError("Vault must be sealed before it is consumed")
        return READY_NODE

    @property
    def records(self) -> List[SecretRecord]:
        return list(self._records.values())

    def record(self, logical_name: str) -> SecretRecord:
        try:
            return self._records[logical_name]
        except KeyError:
            raise ConfigurationError(f"Unknown secret '{logical_name}'") from None

    def exports(self) -> Dict[str, str]:
        """Logical name -> storage location, for stack outputs"""
        return {name: r.storage_location for name, r in self._records.items()}


def _validate_spec(spec: SecretSpec) -> None:
    if not spec.logical_name or not spec.secret_name:
        raise ConfigurationError("Secret needs both a logical name and a storage name")
    if spec.length < 1:
        raise ConfigurationError(f"Secret '{spec.logical_name}' length must be positive")

    if spec.policy is GenerationPolicy.GENERATED_CREDENTIAL:
        if not spec.username:
            raise ConfigurationError(f"Credential '{spec.logical_name}' needs a username")
    elif spec.username:
        # a username would turn a single-value record into a pair
        raise ConfigurationError(
            f"Secret '{spec.logical_name}' holds a single value and cannot carry a username")


def declare_legend_secrets(vault: SecretVault, prefix: str = "legend",
                           db_username: str = "legend",
                           grafana_password_length: int = 16) -> Dict[str, SecretRecord]:
    """
    Declare the Legend platform secret set

    Args:
        vault: Vault to declare into
        prefix: Storage name prefix
        db_username: DocumentDB master username
        grafana_password_length: Length of the generated Grafana admin password

    Returns:
        Dict of logical name -> SecretRecord
    """
    specs = [
        SecretSpec("domain_name", f"{prefix}/domainName",
                   "Legend domain name", GenerationPolicy.TEMPLATED_PLACEHOLDER, length=1),
        SecretSpec("certificate_arn", f"{prefix}/certificateArn",
                   "ACM certificate ARN for the Legend domain", GenerationPolicy.TEMPLATED_PLACEHOLDER, length=1),
        SecretSpec("gitlab_app_id", f"{prefix}/gitlabAppId",
                   "GitLab application id for Legend OAuth", GenerationPolicy.EXTERNALLY_SUPPLIED),
        SecretSpec("gitlab_app_secret", f"{prefix}/gitlabAppSecret",
                   "GitLab application secret for Legend OAuth", GenerationPolicy.EXTERNALLY_SUPPLIED),
        SecretSpec("grafana_admin_password", f"{prefix}/grafanaAdminPassword",
                   "Admin password for the Grafana UI", GenerationPolicy.RANDOM_STRING,
                   length=grafana_password_length),
        SecretSpec("docdb_master", f"{prefix}/docdbMaster",
                   "DocumentDB master credential", GenerationPolicy.GENERATED_CREDENTIAL,
                   username=db_username),
    ]
    return {spec.logical_name: vault.declare_secret(spec) for spec in specs}
