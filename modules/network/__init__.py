"""
Network Module
Three-tier VPC (public, private, data) with NAT gateways
"""

from .functions import create_network_resources

__all__ = ["create_network_resources"]
