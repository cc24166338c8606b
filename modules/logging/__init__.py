"""
Logging Module
CloudWatch log groups, VPC flow logs and Fluent Bit
"""

from .functions import create_logging_resources

__all__ = ["create_logging_resources"]
