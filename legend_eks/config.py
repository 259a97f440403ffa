"""
Configuration management for the Legend EKS deployment
"""

import pulumi
from typing import Dict, List, Optional

from .models import CapacityPolicy, CredentialPolicy, SecretRecord


class Config:
    """Centralized configuration management for the Legend deployment"""

    def __init__(self):
        self.config = pulumi.Config()
        self.aws_config = pulumi.Config("aws")

        # AWS Configuration
        self.aws_region = self.aws_config.get("region") or "us-east-1"

        # Cluster Configuration
        self.cluster_name = self.config.get("cluster_name") or "legend"
        self.cluster_version = self.config.get("cluster_version") or "1.29"

        # VPC Configuration
        self.vpc_cidr = self.config.get("vpc_cidr") or "10.0.0.0/16"
        self.availability_zones = self.config.get_object("availability_zones") or [
            f"{self.aws_region}a", f"{self.aws_region}b", f"{self.aws_region}c"]

        # Node Configuration
        self.node_instance_types = self.config.get_object("node_instance_types") or ["t3.xlarge"]
        self.node_desired_size = self.config.get_int("node_desired_size") or 3
        self.node_max_size = self.config.get_int("node_max_size") or 6
        self.node_min_size = self.config.get_int("node_min_size") or 2
        self.node_disk_size = self.config.get_int("node_disk_size") or 50

        # DocumentDB Configuration
        self.db_instance_class = self.config.get("db_instance_class") or "db.t3.medium"
        self.db_instances = self.config.get_int("db_instances") or 2
        self.db_username = self.config.get("db_username") or "legend"
        self.db_rotation_days = self.config.get_int("db_rotation_days") or 30

        # Legend Configuration
        self.namespace = self.config.get("namespace") or "legend"
        self.secret_prefix = self.config.get("secret_prefix") or "legend"
        self.domain_name = self.config.get("domain_name") or ""
        self.certificate_arn = self.config.get("certificate_arn")
        self.image_tag = self.config.get("image_tag") or "latest"
        self.replicas = self.config.get_int("replicas") or 2

        # Additional tags
        self.additional_tags = self.config.get_object("tags") or {}

    @property
    def common_tags(self) -> Dict[str, str]:
        """Get common tags for all resources"""
        base_tags = {
            "Environment": pulumi.get_stack(),
            "Project": "legend-eks",
            "ManagedBy": "pulumi",
        }
        base_tags.update(self.additional_tags)
        return base_tags

    @property
    def vault_key_alias(self) -> str:
        return f"{self.secret_prefix}-secrets-key"

    @property
    def host(self) -> str:
        """Public host; falls back to a cluster-scoped name until a domain is configured"""
        return self.domain_name or f"{self.cluster_name}.{self.aws_region}.example.internal"

    def capacity_policy(self) -> CapacityPolicy:
        return CapacityPolicy(
            instance_types=tuple(self.node_instance_types),
            desired_size=self.node_desired_size,
            min_size=self.node_min_size,
            max_size=self.node_max_size,
            vpc_cidr=self.vpc_cidr,
            availability_zones=tuple(self.availability_zones),
            disk_size=self.node_disk_size,
        )

    def credential_policy(self, credential: Optional[SecretRecord]) -> CredentialPolicy:
        return CredentialPolicy(
            credential=credential,
            instance_class=self.db_instance_class,
            instances=self.db_instances,
            rotation_days=self.db_rotation_days,
        )


def get_config() -> Config:
    """Get the global configuration instance"""
    return Config()
