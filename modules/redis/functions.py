"""
Redis Module Functions
ElastiCache Redis replication group in the isolated data subnets
"""

import pulumi
import pulumi_aws as aws
from typing import Dict, List, Any


def parameter_group_family(engine_version: str) -> str:
    """Parameter group family for a Redis version, e.g. "7.1" -> "redis7" """
    major = engine_version.split(".")[0]
    if not major.isdigit():
        raise ValueError(f"Cannot derive parameter group family from engine version {engine_version!r}")
    return f"redis{major}"


def create_replication_group(name: str, engine_version: str, node_type: str, num_cache_clusters: int,
                             subnet_group_name: pulumi.Output[str], parameter_group_name: pulumi.Output[str],
                             security_group_ids: List[pulumi.Output[str]], kms_key_arn: pulumi.Input[str],
                             auth_token: pulumi.Input[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create Redis replication group with at-rest and in-transit encryption

    Failover and Multi-AZ need a replica, so both are enabled only when
    there is more than one cache cluster.
    """
    tags = tags or {}
    failover = num_cache_clusters > 1

    group = aws.elasticache.ReplicationGroup(
        f"{name}-redis",
        replication_group_id=f"{name}-redis",
        description=f"Redis for {name}",
        engine="redis",
        engine_version=engine_version,
        node_type=node_type,
        num_cache_clusters=num_cache_clusters,
        port=6379,
        parameter_group_name=parameter_group_name,
        subnet_group_name=subnet_group_name,
        security_group_ids=security_group_ids,
        at_rest_encryption_enabled=True,
        kms_key_id=kms_key_arn,
        transit_encryption_enabled=True,
        auth_token=auth_token,
        automatic_failover_enabled=failover,
        multi_az_enabled=failover,
        snapshot_retention_limit=5,
        snapshot_window="02:00-03:00",
        maintenance_window="sun:05:00-sun:06:00",
        auto_minor_version_upgrade=True,
        tags={
            **tags,
            "Name": f"{name}-redis",
            "Module": "redis"
        }
    )

    return {
        "replication_group": group,
        "primary_endpoint": group.primary_endpoint_address,
        "reader_endpoint": group.reader_endpoint_address
    }


def create_redis_resources(name: str, subnet_ids: List[pulumi.Output[str]],
                           security_group_id: pulumi.Output[str], kms_key_arn: pulumi.Input[str],
                           auth_token: pulumi.Input[str], engine_version: str = "7.1",
                           node_type: str = "cache.m6g.large", num_cache_clusters: int = 2,
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete ElastiCache Redis infrastructure

    Args:
        name: Resource name prefix
        subnet_ids: Data subnet IDs
        security_group_id: Cache security group
        kms_key_arn: KMS key for at-rest encryption
        auth_token: Redis AUTH token
        engine_version: Redis version
        node_type: Cache node type
        num_cache_clusters: Primary plus replicas
        tags: Additional tags

    Returns:
        Dict with all Redis resources and outputs
    """
    tags = tags or {}

    subnet_group = aws.elasticache.SubnetGroup(
        f"{name}-cache-subnet-group",
        name=f"{name}-cache",
        subnet_ids=subnet_ids,
        description=f"Data subnets for {name} Redis",
        tags={**tags, "Module": "redis"}
    )

    parameter_group = aws.elasticache.ParameterGroup(
        f"{name}-cache-params",
        name=f"{name}-cache-params",
        family=parameter_group_family(engine_version),
        parameters=[
            aws.elasticache.ParameterGroupParameterArgs(name="maxmemory-policy", value="volatile-lru"),
        ],
        tags={**tags, "Module": "redis"}
    )

    group_result = create_replication_group(
        name=name,
        engine_version=engine_version,
        node_type=node_type,
        num_cache_clusters=num_cache_clusters,
        subnet_group_name=subnet_group.name,
        parameter_group_name=parameter_group.name,
        security_group_ids=[security_group_id],
        kms_key_arn=kms_key_arn,
        auth_token=auth_token,
        tags=tags
    )

    if num_cache_clusters == 1:
        pulumi.log.warn(f"Redis {name} runs without replicas, automatic failover is off")

    return {
        "primary_endpoint": group_result["primary_endpoint"],
        "reader_endpoint": group_result["reader_endpoint"],
        "port": 6379,
        # Keep references to resources for dependencies
        "_subnet_group": subnet_group,
        "_parameter_group": parameter_group,
        "_replication_group": group_result["replication_group"]
    }
