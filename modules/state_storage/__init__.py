"""
State Storage Module
Backend for Pulumi state: S3 bucket, DynamoDB lock table and secrets key.
Declared by the bootstrap program, which runs once before the platform stack.
"""

from .functions import create_state_storage_resources, state_resource_names

__all__ = ["create_state_storage_resources", "state_resource_names"]
