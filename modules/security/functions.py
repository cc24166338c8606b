"""
Security Module Functions
Creates KMS keys, generated credentials and VPC-scoped security groups
"""

import json
import pulumi
import pulumi_aws as aws
import pulumi_random as random
from typing import Dict, List, Any


KMS_KEY_PURPOSES = ("eks", "rds", "redis", "ecr", "logs", "vault")

# ElastiCache auth tokens reject '@', '"' and '/'
REDIS_AUTH_TOKEN_SPECIAL = "!&#$^<>-"
# RDS master passwords reject '/', '@', '"' and spaces
DB_PASSWORD_SPECIAL = "!#$%&*()-_=+[]{}<>:?"


def key_policy(account_id: str, region: str, purpose: str) -> Dict[str, Any]:
    """
    Build the key policy for a KMS key

    The account root always administers the key. The logs key additionally
    lets CloudWatch Logs use it for log groups in this account and region.
    """
    statements = [
        {
            "Sid": "EnableRootAccess",
            "Effect": "Allow",
            "Principal": {"AWS": f"arn:aws:iam::{account_id}:root"},
            "Action": "kms:*",
            "Resource": "*"
        }
    ]

    if purpose == "logs":
        statements.append({
            "Sid": "AllowCloudWatchLogs",
            "Effect": "Allow",
            "Principal": {"Service": f"logs.{region}.amazonaws.com"},
            "Action": [
                "kms:Encrypt*",
                "kms:Decrypt*",
                "kms:ReEncrypt*",
                "kms:GenerateDataKey*",
                "kms:Describe*"
            ],
            "Resource": "*",
            "Condition": {
                "ArnLike": {
                    "kms:EncryptionContext:aws:logs:arn": f"arn:aws:logs:{region}:{account_id}:*"
                }
            }
        })

    return {"Version": "2012-10-17", "Statement": statements}


def create_kms_keys(name: str, account_id: str, region: str, deletion_window_in_days: int = 30,
                    purposes=KMS_KEY_PURPOSES, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create one KMS key with alias per purpose

    Args:
        name: Resource name prefix
        account_id: AWS account ID
        region: AWS region
        deletion_window_in_days: Pending deletion window
        purposes: Key purposes to create
        tags: Additional tags

    Returns:
        Dict with keys and their ARNs by purpose
    """
    tags = tags or {}

    keys = {}
    aliases = {}
    for purpose in purposes:
        key = aws.kms.Key(
            f"{name}-{purpose}-kms-key",
            description=f"{purpose} encryption key for {name}",
            deletion_window_in_days=deletion_window_in_days,
            enable_key_rotation=True,
            policy=json.dumps(key_policy(account_id, region, purpose)),
            tags={
                **tags,
                "Name": f"{name}-{purpose}",
                "Purpose": purpose,
                "Module": "security"
            }
        )
        aliases[purpose] = aws.kms.Alias(
            f"{name}-{purpose}-kms-alias",
            name=f"alias/{name}-{purpose}",
            target_key_id=key.key_id
        )
        keys[purpose] = key

    return {
        "keys": keys,
        "aliases": aliases,
        "key_arns": {purpose: key.arn for purpose, key in keys.items()},
        "key_ids": {purpose: key.key_id for purpose, key in keys.items()}
    }


def create_credentials(name: str, kms_key_arns: Dict[str, pulumi.Output[str]],
                       db_username: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Generate the database password and cache auth token and store them in Secrets Manager

    Args:
        name: Resource name prefix
        kms_key_arns: Key ARNs by purpose, needs "rds" and "redis"
        db_username: Database master username stored next to the password
        tags: Additional tags

    Returns:
        Dict with generated secrets and Secrets Manager ARNs
    """
    tags = tags or {}

    db_password = random.RandomPassword(
        f"{name}-db-password",
        length=32,
        special=True,
        override_special=DB_PASSWORD_SPECIAL
    )

    redis_auth_token = random.RandomPassword(
        f"{name}-redis-auth-token",
        length=64,
        special=True,
        override_special=REDIS_AUTH_TOKEN_SPECIAL
    )

    db_secret = aws.secretsmanager.Secret(
        f"{name}-db-credentials",
        name=f"{name}/rds/master",
        description=f"RDS master credentials for {name}",
        kms_key_id=kms_key_arns["rds"],
        tags={**tags, "Module": "security"}
    )
    aws.secretsmanager.SecretVersion(
        f"{name}-db-credentials-version",
        secret_id=db_secret.id,
        secret_string=db_password.result.apply(
            lambda password: json.dumps({"username": db_username, "password": password})
        )
    )

    redis_secret = aws.secretsmanager.Secret(
        f"{name}-redis-credentials",
        name=f"{name}/redis/auth-token",
        description=f"ElastiCache auth token for {name}",
        kms_key_id=kms_key_arns["redis"],
        tags={**tags, "Module": "security"}
    )
    aws.secretsmanager.SecretVersion(
        f"{name}-redis-credentials-version",
        secret_id=redis_secret.id,
        secret_string=redis_auth_token.result
    )

    return {
        "db_password": db_password.result,
        "redis_auth_token": redis_auth_token.result,
        "db_secret_arn": db_secret.arn,
        "redis_secret_arn": redis_secret.arn,
        "_db_secret": db_secret,
        "_redis_secret": redis_secret
    }


def create_security_groups(name: str, vpc_id: pulumi.Output[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create cluster, node, database and cache security groups and the rules between them
    """
    tags = tags or {}

    def security_group(role: str, description: str):
        return aws.ec2.SecurityGroup(
            f"{name}-{role}-sg",
            name_prefix=f"{name}-{role}-",
            description=description,
            vpc_id=vpc_id,
            tags={
                **tags,
                "Name": f"{name}-{role}-sg",
                "Module": "security"
            }
        )

    cluster_sg = security_group("cluster", "EKS control plane")
    node_sg = security_group("node", "EKS worker nodes")
    db_sg = security_group("db", "RDS PostgreSQL")
    cache_sg = security_group("cache", "ElastiCache Redis")

    rules = [
        # Nodes talk to each other on every port
        ("node-ingress-self", dict(type="ingress", from_port=0, to_port=65535, protocol="-1",
                                   self=True, security_group_id=node_sg.id)),
        ("node-ingress-cluster", dict(type="ingress", from_port=1025, to_port=65535, protocol="tcp",
                                      source_security_group_id=cluster_sg.id,
                                      security_group_id=node_sg.id)),
        ("node-ingress-cluster-https", dict(type="ingress", from_port=443, to_port=443, protocol="tcp",
                                            source_security_group_id=cluster_sg.id,
                                            security_group_id=node_sg.id)),
        ("cluster-ingress-node", dict(type="ingress", from_port=443, to_port=443, protocol="tcp",
                                      source_security_group_id=node_sg.id,
                                      security_group_id=cluster_sg.id)),
        ("db-ingress-node", dict(type="ingress", from_port=5432, to_port=5432, protocol="tcp",
                                 source_security_group_id=node_sg.id, security_group_id=db_sg.id)),
        ("cache-ingress-node", dict(type="ingress", from_port=6379, to_port=6379, protocol="tcp",
                                    source_security_group_id=node_sg.id, security_group_id=cache_sg.id)),
        ("node-egress", dict(type="egress", from_port=0, to_port=0, protocol="-1",
                             cidr_blocks=["0.0.0.0/0"], security_group_id=node_sg.id)),
        ("cluster-egress", dict(type="egress", from_port=0, to_port=0, protocol="-1",
                                cidr_blocks=["0.0.0.0/0"], security_group_id=cluster_sg.id)),
    ]

    rule_resources = {
        rule_name: aws.ec2.SecurityGroupRule(f"{name}-{rule_name}", **args)
        for rule_name, args in rules
    }

    return {
        "cluster_security_group_id": cluster_sg.id,
        "node_security_group_id": node_sg.id,
        "db_security_group_id": db_sg.id,
        "cache_security_group_id": cache_sg.id,
        "_security_groups": {
            "cluster": cluster_sg,
            "node": node_sg,
            "db": db_sg,
            "cache": cache_sg
        },
        "_rules": rule_resources
    }


def create_security_resources(name: str, vpc_id: pulumi.Output[str], db_username: str,
                              deletion_window_in_days: int = 30,
                              tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create keys, credentials and security groups

    Args:
        name: Resource name prefix
        vpc_id: VPC the security groups belong to
        db_username: Database master username
        deletion_window_in_days: KMS pending deletion window
        tags: Additional tags for all resources

    Returns:
        Dict with all security resources and outputs
    """
    tags = tags or {}

    current = aws.get_caller_identity()
    region = aws.get_region()

    kms_result = create_kms_keys(name, current.account_id, region.name, deletion_window_in_days, tags=tags)
    credentials_result = create_credentials(name, kms_result["key_arns"], db_username, tags)
    sg_result = create_security_groups(name, vpc_id, tags)

    return {
        "account_id": current.account_id,
        "region": region.name,
        "kms_key_arns": kms_result["key_arns"],
        "kms_key_ids": kms_result["key_ids"],
        "db_password": credentials_result["db_password"],
        "redis_auth_token": credentials_result["redis_auth_token"],
        "db_secret_arn": credentials_result["db_secret_arn"],
        "redis_secret_arn": credentials_result["redis_secret_arn"],
        "cluster_security_group_id": sg_result["cluster_security_group_id"],
        "node_security_group_id": sg_result["node_security_group_id"],
        "db_security_group_id": sg_result["db_security_group_id"],
        "cache_security_group_id": sg_result["cache_security_group_id"],
        # Keep references to resources for dependencies
        "_kms_keys": kms_result["keys"],
        "_secrets": {
            "db": credentials_result["_db_secret"],
            "redis": credentials_result["_redis_secret"]
        },
        "_security_groups": sg_result["_security_groups"]
    }
