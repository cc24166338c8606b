"""
RDS Module Functions
PostgreSQL instance in the isolated data subnets
"""

import pulumi
import pulumi_aws as aws
from typing import Dict, List, Any


def parameter_group_family(engine_version: str) -> str:
    """Parameter group family for a PostgreSQL version, e.g. "16.4" -> "postgres16" """
    major = engine_version.split(".")[0]
    if not major.isdigit():
        raise ValueError(f"Cannot derive parameter group family from engine version {engine_version!r}")
    return f"postgres{major}"


def create_db_subnet_group(name: str, subnet_ids: List[pulumi.Output[str]],
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    subnet_group = aws.rds.SubnetGroup(
        f"{name}-db-subnet-group",
        subnet_ids=subnet_ids,
        description=f"Data subnets for {name} PostgreSQL",
        tags={
            **tags,
            "Name": f"{name}-db-subnet-group",
            "Module": "rds"
        }
    )

    return {
        "subnet_group": subnet_group,
        "subnet_group_name": subnet_group.name
    }


def create_db_parameter_group(name: str, engine_version: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create parameter group that rejects unencrypted connections and logs slow queries
    """
    tags = tags or {}

    parameter_group = aws.rds.ParameterGroup(
        f"{name}-db-params",
        family=parameter_group_family(engine_version),
        description=f"{name} PostgreSQL parameters",
        parameters=[
            aws.rds.ParameterGroupParameterArgs(name="rds.force_ssl", value="1"),
            aws.rds.ParameterGroupParameterArgs(name="log_min_duration_statement", value="1000"),
            aws.rds.ParameterGroupParameterArgs(name="log_connections", value="1"),
        ],
        tags={
            **tags,
            "Name": f"{name}-db-params",
            "Module": "rds"
        }
    )

    return {
        "parameter_group": parameter_group,
        "parameter_group_name": parameter_group.name
    }


def create_db_instance(name: str, engine_version: str, instance_class: str,
                       allocated_storage: int, max_allocated_storage: int,
                       db_name: str, username: str, password: pulumi.Input[str],
                       subnet_group_name: pulumi.Output[str], parameter_group_name: pulumi.Output[str],
                       security_group_ids: List[pulumi.Output[str]], kms_key_arn: pulumi.Input[str],
                       multi_az: bool = True, backup_retention_days: int = 7,
                       deletion_protection: bool = True,
                       tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create encrypted, private PostgreSQL instance

    Args:
        name: Resource name prefix
        engine_version: PostgreSQL version
        instance_class: Instance class
        allocated_storage: Initial storage in GB
        max_allocated_storage: Storage autoscaling ceiling in GB
        db_name: Initial database name
        username: Master username
        password: Master password
        subnet_group_name: DB subnet group
        parameter_group_name: DB parameter group
        security_group_ids: Security groups
        kms_key_arn: KMS key for storage and Performance Insights
        multi_az: Standby in a second AZ
        backup_retention_days: Automated backup retention
        deletion_protection: Block deletion, and keep a final snapshot
        tags: Additional tags

    Returns:
        Dict with instance resource and outputs
    """
    tags = tags or {}

    instance = aws.rds.Instance(
        f"{name}-postgres",
        identifier=f"{name}-postgres",
        engine="postgres",
        engine_version=engine_version,
        instance_class=instance_class,
        allocated_storage=allocated_storage,
        max_allocated_storage=max_allocated_storage,
        storage_type="gp3",
        storage_encrypted=True,
        kms_key_id=kms_key_arn,
        db_name=db_name,
        username=username,
        password=password,
        db_subnet_group_name=subnet_group_name,
        parameter_group_name=parameter_group_name,
        vpc_security_group_ids=security_group_ids,
        publicly_accessible=False,
        multi_az=multi_az,
        backup_retention_period=backup_retention_days,
        preferred_backup_window="03:00-04:00",
        preferred_maintenance_window="mon:04:00-mon:05:00",
        auto_minor_version_upgrade=True,
        copy_tags_to_snapshot=True,
        iam_database_authentication_enabled=True,
        performance_insights_enabled=True,
        performance_insights_kms_key_id=kms_key_arn,
        enabled_cloudwatch_logs_exports=["postgresql", "upgrade"],
        deletion_protection=deletion_protection,
        skip_final_snapshot=not deletion_protection,
        final_snapshot_identifier=f"{name}-postgres-final" if deletion_protection else None,
        tags={
            **tags,
            "Name": f"{name}-postgres",
            "Module": "rds"
        }
    )

    return {
        "instance": instance,
        "endpoint": instance.endpoint,
        "address": instance.address,
        "port": instance.port
    }


def create_rds_resources(name: str, subnet_ids: List[pulumi.Output[str]],
                         security_group_id: pulumi.Output[str], kms_key_arn: pulumi.Input[str],
                         password: pulumi.Input[str], engine_version: str = "16.4",
                         instance_class: str = "db.m6g.large", allocated_storage: int = 50,
                         max_allocated_storage: int = 200, db_name: str = "app",
                         username: str = "platform_admin", multi_az: bool = True,
                         backup_retention_days: int = 7, deletion_protection: bool = True,
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete RDS PostgreSQL infrastructure

    Returns:
        Dict with all RDS resources and outputs
    """
    tags = tags or {}

    subnet_group_result = create_db_subnet_group(name, subnet_ids, tags)
    parameter_group_result = create_db_parameter_group(name, engine_version, tags)

    instance_result = create_db_instance(
        name=name,
        engine_version=engine_version,
        instance_class=instance_class,
        allocated_storage=allocated_storage,
        max_allocated_storage=max_allocated_storage,
        db_name=db_name,
        username=username,
        password=password,
        subnet_group_name=subnet_group_result["subnet_group_name"],
        parameter_group_name=parameter_group_result["parameter_group_name"],
        security_group_ids=[security_group_id],
        kms_key_arn=kms_key_arn,
        multi_az=multi_az,
        backup_retention_days=backup_retention_days,
        deletion_protection=deletion_protection,
        tags=tags
    )

    if not deletion_protection:
        pulumi.log.warn(f"RDS instance {name}-postgres has deletion protection disabled")

    return {
        "endpoint": instance_result["endpoint"],
        "address": instance_result["address"],
        "port": instance_result["port"],
        "db_name": db_name,
        # Keep references to resources for dependencies
        "_subnet_group": subnet_group_result["subnet_group"],
        "_parameter_group": parameter_group_result["parameter_group"],
        "_instance": instance_result["instance"]
    }
