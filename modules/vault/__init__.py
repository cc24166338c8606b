"""
Vault Module
Secrets management inside the cluster, auto-unsealed by KMS
"""

from .functions import create_vault_resources

__all__ = ["create_vault_resources"]
