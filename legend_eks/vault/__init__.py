"""
Secret Vault Module
Isolated secret records for the Legend platform
"""

from .functions import KEY_NODE, READY_NODE, SecretVault, declare_legend_secrets

__all__ = [
    "KEY_NODE",
    "READY_NODE",
    "SecretVault",
    "declare_legend_secrets",
]
