"""
Configuration management for the secure-platform deployment
"""

import ipaddress
import pulumi
from typing import Dict, Any, List, Optional


# Default tier sizes carved out of the VPC CIDR, per availability zone
PUBLIC_SUBNET_PREFIX = 20
PRIVATE_SUBNET_PREFIX = 19
DATA_SUBNET_PREFIX = 21


def plan_subnet_tiers(vpc_cidr: str, az_count: int) -> Dict[str, List[str]]:
    """
    Carve public, private and data subnet CIDRs out of the VPC CIDR

    Private subnets are allocated first since they are the largest, then
    public, then data. Each tier gets one subnet per availability zone.

    Args:
        vpc_cidr: VPC CIDR block
        az_count: Number of availability zones

    Returns:
        Dict with "public", "private" and "data" CIDR lists
    """
    network = ipaddress.ip_network(vpc_cidr)
    if az_count < 1:
        raise ValueError("az_count must be at least 1")

    tiers = {}
    cursor = network.network_address
    for tier, prefix in (("private", PRIVATE_SUBNET_PREFIX),
                         ("public", PUBLIC_SUBNET_PREFIX),
                         ("data", DATA_SUBNET_PREFIX)):
        if prefix < network.prefixlen:
            raise ValueError(f"VPC CIDR {vpc_cidr} is too small for /{prefix} {tier} subnets")
        cidrs = []
        for _ in range(az_count):
            # Align the cursor to the subnet boundary
            block_size = 2 ** (network.max_prefixlen - prefix)
            offset = int(cursor) % block_size
            if offset:
                cursor = cursor + (block_size - offset)
            subnet = ipaddress.ip_network(f"{cursor}/{prefix}")
            if not subnet.subnet_of(network):
                raise ValueError(f"VPC CIDR {vpc_cidr} has no room for {az_count} {tier} subnets")
            cidrs.append(str(subnet))
            cursor = subnet.broadcast_address + 1
        tiers[tier] = cidrs
    return tiers


def nat_gateway_count(az_count: int, single_nat_gateway: bool) -> int:
    """Number of NAT gateways: one per AZ unless a single shared one is requested"""
    return 1 if single_nat_gateway else az_count


class Config:
    """Centralized configuration management for the platform deployment"""

    def __init__(self, config: Optional[pulumi.Config] = None):
        self.config = config or pulumi.Config()

        # Project
        self.project_name = self.config.get("project_name") or "secure-platform"
        self.environment = self.config.get("environment") or pulumi.get_stack()
        self.aws_region = self.config.get("aws_region") or pulumi.Config("aws").get("region") or "eu-west-1"

        # Cluster Configuration
        self.cluster_name = self.config.get("cluster_name") or f"{self.project_name}-{self.environment}"
        self.cluster_version = self.config.get("cluster_version") or "1.31"
        self.endpoint_public_access = self._bool("endpoint_public_access", True)
        self.public_access_cidrs = self.config.get_object("public_access_cidrs") or ["0.0.0.0/0"]
        self.cluster_enabled_log_types = self.config.get_object("cluster_enabled_log_types") or [
            "api", "audit", "authenticator", "controllerManager", "scheduler"
        ]

        # Node Configuration
        self.system_node_instance_types = self.config.get_object("system_node_instance_types") or ["m6i.large"]
        self.system_node_desired_size = self.config.get_int("system_node_desired_size") or 2
        self.system_node_min_size = self.config.get_int("system_node_min_size") or 2
        self.system_node_max_size = self.config.get_int("system_node_max_size") or 3
        self.node_instance_types = self.config.get_object("node_instance_types") or ["m6i.xlarge", "m5.xlarge"]
        self.node_desired_size = self.config.get_int("node_desired_size") or 3
        self.node_min_size = self.config.get_int("node_min_size") or 2
        self.node_max_size = self.config.get_int("node_max_size") or 10
        self.node_disk_size = self.config.get_int("node_disk_size") or 50
        self.enable_spot_instances = self._bool("enable_spot_instances", False)

        # VPC Configuration
        self.vpc_cidr = self.config.get("vpc_cidr") or "10.0.0.0/16"
        self.availability_zone_count = self.config.get_int("availability_zone_count") or 3
        self.single_nat_gateway = self._bool("single_nat_gateway", False)
        self.enable_flow_logs = self._bool("enable_flow_logs", True)
        self.public_subnet_cidrs = self.config.get_object("public_subnet_cidrs")
        self.private_subnet_cidrs = self.config.get_object("private_subnet_cidrs")
        self.data_subnet_cidrs = self.config.get_object("data_subnet_cidrs")
        # Explicit subnet lists may not fit the default plan, so plan only when one is missing
        if not (self.public_subnet_cidrs and self.private_subnet_cidrs and self.data_subnet_cidrs):
            planned = plan_subnet_tiers(self.vpc_cidr, self.availability_zone_count)
            self.public_subnet_cidrs = self.public_subnet_cidrs or planned["public"]
            self.private_subnet_cidrs = self.private_subnet_cidrs or planned["private"]
            self.data_subnet_cidrs = self.data_subnet_cidrs or planned["data"]

        # Security
        self.kms_deletion_window_in_days = self.config.get_int("kms_deletion_window_in_days") or 30

        # Database Configuration
        self.db_engine_version = self.config.get("db_engine_version") or "16.4"
        self.db_instance_class = self.config.get("db_instance_class") or "db.m6g.large"
        self.db_allocated_storage = self.config.get_int("db_allocated_storage") or 50
        self.db_max_allocated_storage = self.config.get_int("db_max_allocated_storage") or 200
        self.db_name = self.config.get("db_name") or "app"
        self.db_username = self.config.get("db_username") or "platform_admin"
        self.db_multi_az = self._bool("db_multi_az", True)
        self.db_backup_retention_days = self.config.get_int("db_backup_retention_days") or 7
        self.db_deletion_protection = self._bool("db_deletion_protection", True)

        # Cache Configuration
        self.redis_engine_version = self.config.get("redis_engine_version") or "7.1"
        self.redis_node_type = self.config.get("redis_node_type") or "cache.m6g.large"
        self.redis_num_cache_clusters = self.config.get_int("redis_num_cache_clusters") or 2

        # Edge
        self.alb_ingress_cidrs = self.config.get_object("alb_ingress_cidrs") or ["0.0.0.0/0"]
        self.ecr_repositories = self.config.get_object("ecr_repositories") or ["api", "worker", "web"]
        self.ecr_keep_image_count = self.config.get_int("ecr_keep_image_count") or 30
        self.log_retention_days = self.config.get_int("log_retention_days") or 90

        # Policy and secrets tooling
        self.kyverno_chart_version = self.config.get("kyverno_chart_version") or "3.2.6"
        self.kyverno_validation_failure_action = self.config.get("kyverno_validation_failure_action") or "Enforce"
        self.cosign_public_key = self.config.get("cosign_public_key") or ""
        self.vault_chart_version = self.config.get("vault_chart_version") or "0.28.1"
        self.vault_replicas = self.config.get_int("vault_replicas") or 3
        self.alb_controller_chart_version = self.config.get("alb_controller_chart_version") or "1.8.2"
        self.fluent_bit_chart_version = self.config.get("fluent_bit_chart_version") or "0.1.34"

        # Additional tags
        self.additional_tags = self.config.get_object("tags") or {}

    def _bool(self, key: str, default: bool) -> bool:
        value = self.config.get_bool(key)
        return default if value is None else value

    @property
    def common_tags(self) -> Dict[str, str]:
        """Get common tags for all resources"""
        base_tags = {
            "Environment": self.environment,
            "Project": self.project_name,
            "ManagedBy": "pulumi",
        }
        base_tags.update(self.additional_tags)
        return base_tags

    @property
    def capacity_type(self) -> str:
        """Get workload node group capacity type based on spot instance configuration"""
        return "SPOT" if self.enable_spot_instances else "ON_DEMAND"

    @property
    def nat_gateway_count(self) -> int:
        return nat_gateway_count(self.availability_zone_count, self.single_nat_gateway)

    @property
    def redis_failover_enabled(self) -> bool:
        return self.redis_num_cache_clusters > 1

    def validate(self) -> None:
        """Check cross-field constraints, raising ValueError on the first violation"""
        for label, min_size, desired, max_size in (
            ("system node group", self.system_node_min_size, self.system_node_desired_size,
             self.system_node_max_size),
            ("workload node group", self.node_min_size, self.node_desired_size, self.node_max_size),
        ):
            if not min_size <= desired <= max_size:
                raise ValueError(
                    f"{label}: expected min <= desired <= max, got {min_size}/{desired}/{max_size}"
                )

        for tier, cidrs in (("public", self.public_subnet_cidrs),
                            ("private", self.private_subnet_cidrs),
                            ("data", self.data_subnet_cidrs)):
            if len(cidrs) != self.availability_zone_count:
                raise ValueError(
                    f"{tier} subnets: expected {self.availability_zone_count} CIDRs, got {len(cidrs)}"
                )

        # RDS and ElastiCache subnet groups need at least two AZs
        if self.availability_zone_count < 2:
            raise ValueError("availability_zone_count must be at least 2 for data subnet groups")

        if self.redis_num_cache_clusters < 1:
            raise ValueError("redis_num_cache_clusters must be at least 1")

        if self.kyverno_validation_failure_action not in ("Enforce", "Audit"):
            raise ValueError(
                "kyverno_validation_failure_action must be Enforce or Audit, "
                f"got {self.kyverno_validation_failure_action!r}"
            )

        if self.db_max_allocated_storage < self.db_allocated_storage:
            raise ValueError("db_max_allocated_storage must not be lower than db_allocated_storage")


def get_config() -> Config:
    """Get the global configuration instance"""
    return Config()
