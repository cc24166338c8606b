"""
Policy Module
Kyverno admission control for the cluster
"""

from .functions import create_policy_resources, build_cluster_policies, render_policies_yaml

__all__ = ["create_policy_resources", "build_cluster_policies", "render_policies_yaml"]
