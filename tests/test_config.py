"""
Unit tests for configuration defaults, subnet planning and validation
"""

import unittest
from unittest.mock import Mock, patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config import Config, plan_subnet_tiers, nat_gateway_count


class FakeConfig:
    """Stands in for pulumi.Config with a plain dict of values"""

    def __init__(self, values=None):
        self.values = values or {}

    def get(self, key):
        return self.values.get(key)

    get_int = get
    get_bool = get
    get_object = get


def make_config(**values):
    with patch('config.pulumi') as mock_pulumi:
        mock_pulumi.get_stack.return_value = "dev"
        mock_pulumi.Config.return_value = Mock(get=Mock(return_value="eu-central-1"))
        return Config(FakeConfig(values))


class TestSubnetPlanning(unittest.TestCase):
    """Test carving subnet tiers out of the VPC CIDR"""

    def test_default_vpc_three_azs(self):
        tiers = plan_subnet_tiers("10.0.0.0/16", 3)

        self.assertEqual(tiers["private"], ["10.0.0.0/19", "10.0.32.0/19", "10.0.64.0/19"])
        self.assertEqual(tiers["public"], ["10.0.96.0/20", "10.0.112.0/20", "10.0.128.0/20"])
        self.assertEqual(tiers["data"], ["10.0.144.0/21", "10.0.152.0/21", "10.0.160.0/21"])

    def test_tiers_do_not_overlap(self):
        import ipaddress
        tiers = plan_subnet_tiers("172.16.0.0/16", 2)
        subnets = [ipaddress.ip_network(c) for cidrs in tiers.values() for c in cidrs]

        for i, a in enumerate(subnets):
            for b in subnets[i + 1:]:
                self.assertFalse(a.overlaps(b), f"{a} overlaps {b}")

    def test_vpc_too_small(self):
        with self.assertRaises(ValueError):
            plan_subnet_tiers("10.0.0.0/20", 2)

    def test_vpc_without_room(self):
        with self.assertRaises(ValueError):
            plan_subnet_tiers("10.0.0.0/17", 3)

    def test_zero_azs(self):
        with self.assertRaises(ValueError):
            plan_subnet_tiers("10.0.0.0/16", 0)

    def test_nat_gateway_count(self):
        self.assertEqual(nat_gateway_count(3, single_nat_gateway=False), 3)
        self.assertEqual(nat_gateway_count(3, single_nat_gateway=True), 1)


class TestConfig(unittest.TestCase):
    """Test defaults and derived properties"""

    def test_defaults(self):
        config = make_config()

        self.assertEqual(config.environment, "dev")
        self.assertEqual(config.cluster_name, "secure-platform-dev")
        self.assertEqual(config.aws_region, "eu-central-1")
        self.assertEqual(len(config.private_subnet_cidrs), 3)
        self.assertEqual(config.capacity_type, "ON_DEMAND")
        self.assertEqual(config.nat_gateway_count, 3)
        self.assertTrue(config.redis_failover_enabled)
        self.assertTrue(config.db_deletion_protection)
        self.assertEqual(config.ecr_repositories, ["api", "worker", "web"])

    def test_false_booleans_are_respected(self):
        config = make_config(db_deletion_protection=False, endpoint_public_access=False,
                             enable_spot_instances=True, single_nat_gateway=True)

        self.assertFalse(config.db_deletion_protection)
        self.assertFalse(config.endpoint_public_access)
        self.assertEqual(config.capacity_type, "SPOT")
        self.assertEqual(config.nat_gateway_count, 1)

    def test_explicit_subnets_skip_planning(self):
        config = make_config(
            availability_zone_count=6,
            public_subnet_cidrs=[f"10.0.{i}.0/24" for i in range(6)],
            private_subnet_cidrs=[f"10.0.{i}.0/24" for i in range(10, 16)],
            data_subnet_cidrs=[f"10.0.{i}.0/24" for i in range(20, 26)],
        )

        config.validate()
        self.assertEqual(config.private_subnet_cidrs[0], "10.0.10.0/24")
        self.assertEqual(len(config.data_subnet_cidrs), 6)

    def test_explicit_subnets_in_small_vpc(self):
        config = make_config(
            vpc_cidr="10.1.0.0/22",
            availability_zone_count=2,
            public_subnet_cidrs=["10.1.0.0/26", "10.1.0.64/26"],
            private_subnet_cidrs=["10.1.1.0/24", "10.1.2.0/24"],
            data_subnet_cidrs=["10.1.3.0/26", "10.1.3.64/26"],
        )

        config.validate()
        self.assertEqual(config.public_subnet_cidrs, ["10.1.0.0/26", "10.1.0.64/26"])

    def test_common_tags_include_additional_tags(self):
        config = make_config(tags={"CostCenter": "platform"})

        self.assertEqual(config.common_tags["ManagedBy"], "pulumi")
        self.assertEqual(config.common_tags["Environment"], "dev")
        self.assertEqual(config.common_tags["CostCenter"], "platform")

    def test_single_redis_node_disables_failover(self):
        self.assertFalse(make_config(redis_num_cache_clusters=1).redis_failover_enabled)


class TestConfigValidation(unittest.TestCase):
    """Test cross-field validation"""

    def test_defaults_are_valid(self):
        make_config().validate()

    def test_node_sizes_out_of_order(self):
        config = make_config(node_min_size=4, node_desired_size=3, node_max_size=10)
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        self.assertIn("workload node group", str(ctx.exception))

    def test_subnet_count_must_match_azs(self):
        config = make_config(public_subnet_cidrs=["10.0.96.0/20"])
        with self.assertRaises(ValueError) as ctx:
            config.validate()
        self.assertIn("public subnets", str(ctx.exception))

    def test_single_az_rejected(self):
        config = make_config(availability_zone_count=1)
        with self.assertRaises(ValueError):
            config.validate()

    def test_unknown_kyverno_action(self):
        config = make_config(kyverno_validation_failure_action="Warn")
        with self.assertRaises(ValueError):
            config.validate()

    def test_db_max_storage_below_allocated(self):
        config = make_config(db_allocated_storage=100, db_max_allocated_storage=50)
        with self.assertRaises(ValueError):
            config.validate()


if __name__ == '__main__':
    unittest.main()
