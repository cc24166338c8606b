"""
ECR Module
Private container registries for platform images
"""

from .functions import create_ecr_resources

__all__ = ["create_ecr_resources"]
