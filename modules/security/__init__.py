"""
Security Module
KMS keys, generated credentials and VPC-scoped security groups
"""

from .functions import create_security_resources, KMS_KEY_PURPOSES

__all__ = ["create_security_resources", "KMS_KEY_PURPOSES"]
