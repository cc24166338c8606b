"""
RDS Module
PostgreSQL in isolated data subnets
"""

from .functions import create_rds_resources

__all__ = ["create_rds_resources"]
