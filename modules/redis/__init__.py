"""
Redis Module
ElastiCache Redis in isolated data subnets
"""

from .functions import create_redis_resources

__all__ = ["create_redis_resources"]
