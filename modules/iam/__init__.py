"""
IAM Module
Roles for the EKS control plane, worker nodes and service accounts
"""

from .functions import create_iam_resources, create_irsa_role, irsa_assume_role_policy

__all__ = ["create_iam_resources", "create_irsa_role", "irsa_assume_role_policy"]
