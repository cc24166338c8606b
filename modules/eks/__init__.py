"""
EKS Module
Cluster, OIDC provider, managed node groups and add-ons
"""

from .functions import create_eks_resources

__all__ = ["create_eks_resources"]
