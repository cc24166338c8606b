"""
ALB Module
Load balancer security group and AWS Load Balancer Controller
"""

from .functions import create_alb_resources

__all__ = ["create_alb_resources"]
