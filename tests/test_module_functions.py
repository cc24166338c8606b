"""
Unit tests for the Pulumi modules
Resource classes are mocked so the module functions run without the Pulumi engine
"""

import unittest
from contextlib import ExitStack
from unittest.mock import Mock, patch
import sys
import os

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.network.functions import create_network_resources, create_subnets
from modules.security.functions import create_security_resources, key_policy, KMS_KEY_PURPOSES
from modules.iam.functions import create_iam_resources, create_irsa_role, irsa_assume_role_policy
from modules.eks.functions import create_eks_resources
from modules.rds.functions import create_rds_resources, parameter_group_family as postgres_family
from modules.redis.functions import create_redis_resources, parameter_group_family as redis_family
from modules.alb.functions import create_alb_resources
from modules.ecr.functions import create_ecr_resources, lifecycle_policy
from modules.logging.functions import create_logging_resources, dataplane_fluent_bit_config, log_writer_policy
from modules.vault.functions import create_vault_resources, server_config
from modules.state_storage.functions import create_state_storage_resources, state_resource_names


def patch_modules(stack, *paths):
    """Patch the given module globals and return the mocks keyed by path"""
    mocks = {}
    for path in paths:
        mocks[path] = stack.enter_context(patch(path))
    return mocks


class TestNetworkFunctions(unittest.TestCase):
    """Test the three-tier network"""

    def setUp(self):
        self.stack = ExitStack()
        self.mock_aws = self.stack.enter_context(patch('modules.network.functions.aws'))
        self.stack.enter_context(patch('modules.network.functions.pulumi'))
        self.mock_aws.get_availability_zones.return_value = Mock(
            names=["eu-west-1a", "eu-west-1b", "eu-west-1c"]
        )
        self.mock_aws.ec2.Subnet.side_effect = lambda name, **kwargs: Mock(id=f"{name}-id", tags=kwargs["tags"])
        self.mock_aws.ec2.NatGateway.side_effect = lambda name, **kwargs: Mock(id=f"{name}-id")

    def tearDown(self):
        self.stack.close()

    def create(self, nat_gateway_count=3, az_count=3):
        return create_network_resources(
            name="test",
            cluster_name="test-cluster",
            vpc_cidr="10.0.0.0/16",
            public_subnet_cidrs=["10.0.96.0/20", "10.0.112.0/20", "10.0.128.0/20"][:az_count],
            private_subnet_cidrs=["10.0.0.0/19", "10.0.32.0/19", "10.0.64.0/19"][:az_count],
            data_subnet_cidrs=["10.0.144.0/21", "10.0.152.0/21", "10.0.160.0/21"][:az_count],
            nat_gateway_count=nat_gateway_count
        )

    def test_network_function_structure(self):
        result = self.create()

        self.assertIn("vpc_id", result)
        self.assertEqual(len(result["public_subnet_ids"]), 3)
        self.assertEqual(len(result["private_subnet_ids"]), 3)
        self.assertEqual(len(result["data_subnet_ids"]), 3)
        self.assertEqual(result["availability_zones"], ["eu-west-1a", "eu-west-1b", "eu-west-1c"])
        self.assertEqual(self.mock_aws.ec2.Subnet.call_count, 9)

    def test_single_nat_gateway_shared_by_private_subnets(self):
        result = self.create(nat_gateway_count=1)

        self.assertEqual(len(result["nat_gateway_ids"]), 1)
        self.assertEqual(self.mock_aws.ec2.Eip.call_count, 1)
        nat_routes = [c.kwargs["nat_gateway_id"] for c in self.mock_aws.ec2.Route.call_args_list
                      if "nat_gateway_id" in c.kwargs]
        self.assertEqual(nat_routes, ["test-nat-1-id"] * 3)

    def test_data_subnets_have_no_default_route(self):
        self.create()

        route_names = [c.args[0] for c in self.mock_aws.ec2.Route.call_args_list]
        self.assertFalse(any("data" in route_name for route_name in route_names))

    def test_subnet_tier_tags(self):
        self.create()

        tags = {c.args[0]: c.kwargs["tags"] for c in self.mock_aws.ec2.Subnet.call_args_list}
        self.assertEqual(tags["test-public-subnet-1"]["kubernetes.io/role/elb"], "1")
        self.assertEqual(tags["test-private-subnet-1"]["kubernetes.io/role/internal-elb"], "1")
        self.assertEqual(tags["test-private-subnet-1"]["karpenter.sh/discovery"], "test-cluster")
        self.assertNotIn("kubernetes.io/cluster/test-cluster", tags["test-data-subnet-1"])

    def test_too_few_availability_zones(self):
        self.mock_aws.get_availability_zones.return_value = Mock(names=["eu-west-1a", "eu-west-1b"])
        with self.assertRaises(ValueError):
            self.create()

    def test_unknown_tier(self):
        with self.assertRaises(ValueError):
            create_subnets("test", "dmz", "vpc-1", ["10.0.0.0/24"], ["eu-west-1a"], "test-cluster")


class TestSecurityFunctions(unittest.TestCase):
    """Test keys, credentials and security groups"""

    def test_logs_key_policy_allows_cloudwatch(self):
        policy = key_policy("123456789012", "eu-west-1", "logs")

        self.assertEqual(len(policy["Statement"]), 2)
        self.assertEqual(policy["Statement"][1]["Principal"]["Service"], "logs.eu-west-1.amazonaws.com")
        self.assertEqual(len(key_policy("123456789012", "eu-west-1", "rds")["Statement"]), 1)

    def test_security_function_structure(self):
        with patch('modules.security.functions.aws') as mock_aws, \
                patch('modules.security.functions.random') as mock_random:
            mock_aws.get_caller_identity.return_value = Mock(account_id="123456789012")
            mock_aws.get_region.return_value = Mock()
            mock_aws.get_region.return_value.name = "eu-west-1"

            result = create_security_resources(name="test", vpc_id="vpc-12345", db_username="admin")

            self.assertEqual(result["account_id"], "123456789012")
            self.assertEqual(result["region"], "eu-west-1")
            self.assertEqual(set(result["kms_key_arns"]), set(KMS_KEY_PURPOSES))
            self.assertEqual(mock_aws.kms.Key.call_count, len(KMS_KEY_PURPOSES))
            self.assertIn("db_password", result)
            self.assertIn("redis_auth_token", result)
            self.assertIn("cache_security_group_id", result)

            lengths = sorted(c.kwargs["length"] for c in mock_random.RandomPassword.call_args_list)
            self.assertEqual(lengths, [32, 64])

    def test_data_ports_only_open_to_nodes(self):
        with patch('modules.security.functions.aws') as mock_aws, \
                patch('modules.security.functions.random'):
            mock_aws.get_caller_identity.return_value = Mock(account_id="123456789012")
            node_sg = Mock(id="sg-node")
            mock_aws.ec2.SecurityGroup.side_effect = lambda name, **kwargs: (
                node_sg if name == "test-node-sg" else Mock(id=name)
            )

            create_security_resources(name="test", vpc_id="vpc-12345", db_username="admin")

            rules = {c.args[0]: c.kwargs for c in mock_aws.ec2.SecurityGroupRule.call_args_list}
            self.assertEqual(rules["test-db-ingress-node"]["from_port"], 5432)
            self.assertEqual(rules["test-db-ingress-node"]["source_security_group_id"], "sg-node")
            self.assertEqual(rules["test-cache-ingress-node"]["from_port"], 6379)


class TestIamFunctions(unittest.TestCase):
    """Test cluster, node and service account roles"""

    def test_iam_function_structure(self):
        with patch('modules.iam.functions.aws') as mock_aws:
            mock_role = Mock()
            mock_role.arn = "arn:aws:iam::123456789012:role/test-role"
            mock_role.name = "test-role"
            mock_aws.iam.Role.return_value = mock_role

            result = create_iam_resources(cluster_name="test-cluster")

            self.assertIn("cluster_role_arn", result)
            self.assertIn("cluster_role_name", result)
            self.assertIn("node_group_role_arn", result)
            self.assertIn("node_group_role_name", result)
            self.assertEqual(len(result["_node_policy_attachments"]), 4)

    def test_irsa_trust_policy(self):
        policy = irsa_assume_role_policy(
            "arn:aws:iam::123456789012:oidc-provider/oidc.eks.eu-west-1.amazonaws.com/id/ABC",
            "https://oidc.eks.eu-west-1.amazonaws.com/id/ABC",
            "vault", "vault"
        )

        statement = policy["Statement"][0]
        self.assertEqual(statement["Action"], "sts:AssumeRoleWithWebIdentity")
        conditions = statement["Condition"]["StringEquals"]
        self.assertEqual(conditions["oidc.eks.eu-west-1.amazonaws.com/id/ABC:sub"],
                         "system:serviceaccount:vault:vault")
        self.assertEqual(conditions["oidc.eks.eu-west-1.amazonaws.com/id/ABC:aud"], "sts.amazonaws.com")

    def test_irsa_role_attaches_policies(self):
        with patch('modules.iam.functions.aws') as mock_aws, \
                patch('modules.iam.functions.pulumi'):
            result = create_irsa_role("test-ebs", "provider-arn", "issuer", "kube-system", "ebs",
                                      managed_policy_arns=["arn:a", "arn:b"])

            self.assertIsNone(result["inline_policy"])
            self.assertEqual(len(result["policy_attachments"]), 2)
            mock_aws.iam.RolePolicy.assert_not_called()


class TestEksFunctions(unittest.TestCase):
    """Test cluster, node groups and add-ons"""

    def test_eks_function_structure(self):
        with ExitStack() as stack:
            mocks = patch_modules(
                stack,
                'modules.eks.functions.aws',
                'modules.eks.functions.pulumi',
                'modules.eks.functions.k8s',
                'modules.iam.functions.aws',
                'modules.iam.functions.pulumi',
            )
            mock_aws = mocks['modules.eks.functions.aws']

            result = create_eks_resources(
                cluster_name="test-cluster",
                cluster_version="1.31",
                cluster_role_arn="arn:cluster",
                node_group_role_arn="arn:node",
                subnet_ids=["subnet-1", "subnet-2"],
                cluster_security_group_id="sg-1",
                node_security_group_id="sg-node",
                secrets_kms_key_arn="arn:kms-eks",
                logs_kms_key_arn="arn:kms-logs",
                region="eu-west-1",
                system_node_instance_types=["m6i.large"],
                system_node_sizes={"desired": 2, "min": 2, "max": 3},
                node_instance_types=["m6i.xlarge"],
                node_sizes={"desired": 3, "min": 2, "max": 10},
                capacity_type="SPOT"
            )

            self.assertIn("cluster_endpoint", result)
            self.assertIn("oidc_provider_arn", result)
            self.assertIn("k8s_provider", result)

            node_groups = {c.args[0]: c.kwargs for c in mock_aws.eks.NodeGroup.call_args_list}
            self.assertEqual(node_groups["test-cluster-system-node-group"]["capacity_type"], "ON_DEMAND")
            self.assertEqual(node_groups["test-cluster-workload-node-group"]["capacity_type"], "SPOT")

    def test_node_groups_carry_node_security_group(self):
        with ExitStack() as stack:
            mocks = patch_modules(
                stack,
                'modules.eks.functions.aws',
                'modules.eks.functions.pulumi',
                'modules.eks.functions.k8s',
                'modules.iam.functions.aws',
                'modules.iam.functions.pulumi',
            )
            mock_aws = mocks['modules.eks.functions.aws']
            launch_template = mock_aws.ec2.LaunchTemplate.return_value

            create_eks_resources(
                cluster_name="test-cluster",
                cluster_version="1.31",
                cluster_role_arn="arn:cluster",
                node_group_role_arn="arn:node",
                subnet_ids=["subnet-1", "subnet-2"],
                cluster_security_group_id="sg-1",
                node_security_group_id="sg-node",
                secrets_kms_key_arn="arn:kms-eks",
                logs_kms_key_arn="arn:kms-logs",
                region="eu-west-1",
                system_node_instance_types=["m6i.large"],
                system_node_sizes={"desired": 2, "min": 2, "max": 3},
                node_instance_types=["m6i.xlarge"],
                node_sizes={"desired": 3, "min": 2, "max": 10},
                node_disk_size=80
            )

            templates = mock_aws.ec2.LaunchTemplate.call_args_list
            self.assertEqual(len(templates), 2)
            for call in templates:
                self.assertIn("sg-node", call.kwargs["vpc_security_group_ids"])
                self.assertEqual(len(call.kwargs["vpc_security_group_ids"]), 2)
                mock_aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs.assert_called_with(
                    volume_size=80, volume_type="gp3", encrypted="true", delete_on_termination="true"
                )

            launch_template_args = mock_aws.eks.NodeGroupLaunchTemplateArgs
            self.assertEqual(launch_template_args.call_args.kwargs["id"], launch_template.id)
            for call in mock_aws.eks.NodeGroup.call_args_list:
                self.assertNotIn("disk_size", call.kwargs)
                self.assertEqual(call.kwargs["launch_template"], launch_template_args.return_value)

            addons = [c.kwargs["addon_name"] for c in mock_aws.eks.Addon.call_args_list]
            self.assertEqual(addons, ["vpc-cni", "kube-proxy", "coredns", "aws-ebs-csi-driver"])

            mock_aws.iam.OpenIdConnectProvider.assert_called_once()


class TestDataServiceFunctions(unittest.TestCase):
    """Test RDS and ElastiCache"""

    def test_parameter_group_families(self):
        self.assertEqual(postgres_family("16.4"), "postgres16")
        self.assertEqual(redis_family("7.1"), "redis7")
        with self.assertRaises(ValueError):
            postgres_family("latest")

    def test_rds_function_structure(self):
        with patch('modules.rds.functions.aws') as mock_aws, \
                patch('modules.rds.functions.pulumi') as mock_pulumi:
            result = create_rds_resources(
                name="test",
                subnet_ids=["subnet-1", "subnet-2"],
                security_group_id="sg-db",
                kms_key_arn="arn:kms-rds",
                password="secret",
                deletion_protection=False
            )

            self.assertIn("endpoint", result)
            self.assertEqual(result["db_name"], "app")
            instance_kwargs = mock_aws.rds.Instance.call_args.kwargs
            self.assertTrue(instance_kwargs["storage_encrypted"])
            self.assertFalse(instance_kwargs["publicly_accessible"])
            mock_pulumi.log.warn.assert_called_once()

    def test_redis_single_node_has_no_failover(self):
        with patch('modules.redis.functions.aws') as mock_aws, \
                patch('modules.redis.functions.pulumi') as mock_pulumi:
            result = create_redis_resources(
                name="test",
                subnet_ids=["subnet-1", "subnet-2"],
                security_group_id="sg-cache",
                kms_key_arn="arn:kms-redis",
                auth_token="token",
                num_cache_clusters=1
            )

            self.assertEqual(result["port"], 6379)
            group_kwargs = mock_aws.elasticache.ReplicationGroup.call_args.kwargs
            self.assertFalse(group_kwargs["automatic_failover_enabled"])
            self.assertFalse(group_kwargs["multi_az_enabled"])
            self.assertTrue(group_kwargs["transit_encryption_enabled"])
            mock_pulumi.log.warn.assert_called_once()

    def test_redis_replicas_enable_failover(self):
        with patch('modules.redis.functions.aws') as mock_aws, \
                patch('modules.redis.functions.pulumi'):
            create_redis_resources(
                name="test",
                subnet_ids=["subnet-1", "subnet-2"],
                security_group_id="sg-cache",
                kms_key_arn="arn:kms-redis",
                auth_token="token",
                num_cache_clusters=2
            )

            group_kwargs = mock_aws.elasticache.ReplicationGroup.call_args.kwargs
            self.assertTrue(group_kwargs["automatic_failover_enabled"])
            self.assertTrue(group_kwargs["multi_az_enabled"])


class TestEdgeFunctions(unittest.TestCase):
    """Test ALB controller and ECR"""

    def test_alb_function_structure(self):
        with ExitStack() as stack:
            mocks = patch_modules(
                stack,
                'modules.alb.functions.aws',
                'modules.alb.functions.pulumi',
                'modules.alb.functions.k8s',
                'modules.iam.functions.aws',
                'modules.iam.functions.pulumi',
            )

            result = create_alb_resources(
                name="test",
                cluster_name="test-cluster",
                vpc_id="vpc-1",
                node_security_group_id="sg-node",
                oidc_provider_arn="provider-arn",
                oidc_issuer_url="issuer",
                region="eu-west-1",
                provider=Mock()
            )

            self.assertIn("alb_security_group_id", result)
            self.assertIn("controller_role_arn", result)
            release_kwargs = mocks['modules.alb.functions.k8s'].helm.v3.Release.call_args.kwargs
            self.assertEqual(release_kwargs["chart"], "aws-load-balancer-controller")
            mocks['modules.iam.functions.aws'].iam.RolePolicy.assert_called_once()

    def test_ecr_lifecycle_policy(self):
        rules = lifecycle_policy(30)["rules"]

        self.assertEqual(rules[0]["selection"]["tagStatus"], "untagged")
        self.assertEqual(rules[1]["selection"]["countNumber"], 30)

    def test_ecr_function_structure(self):
        with patch('modules.ecr.functions.aws') as mock_aws, \
                patch('modules.ecr.functions.pulumi'):
            result = create_ecr_resources(
                name="test",
                repositories=["api", "worker"],
                kms_key_arn="arn:kms-ecr",
                account_id="123456789012",
                region="eu-west-1"
            )

            self.assertEqual(result["registry_url"], "123456789012.dkr.ecr.eu-west-1.amazonaws.com")
            self.assertEqual(set(result["repository_urls"]), {"api", "worker"})
            self.assertIn("--password-stdin 123456789012.dkr.ecr.eu-west-1.amazonaws.com",
                          result["docker_login_command"])
            repo_kwargs = mock_aws.ecr.Repository.call_args.kwargs
            self.assertEqual(repo_kwargs["image_tag_mutability"], "IMMUTABLE")

    def test_ecr_duplicate_repositories(self):
        with patch('modules.ecr.functions.aws'), patch('modules.ecr.functions.pulumi'):
            with self.assertRaises(ValueError):
                create_ecr_resources("test", ["api", "api"], "arn:kms", "123456789012", "eu-west-1")


def log_group(resource_name, **kwargs):
    group = Mock(arn=f"arn:{kwargs['name']}")
    group.name = kwargs["name"]
    return group


class TestLoggingFunctions(unittest.TestCase):
    """Test log groups, flow logs and Fluent Bit"""

    def test_log_writer_policy(self):
        policy = log_writer_policy(["arn:logs:app"])

        self.assertEqual(policy["Statement"][0]["Resource"], ["arn:logs:app:*", "arn:logs:app"])

    def test_dataplane_logs_shipped(self):
        config = dataplane_fluent_bit_config("eu-west-1", "/aws/eks/test-cluster/dataplane")

        self.assertIn("_SYSTEMD_UNIT=kubelet.service", config["additionalInputs"])
        self.assertIn("Tag                 dataplane.systemd.*", config["additionalInputs"])
        self.assertIn("Match               dataplane.*", config["additionalOutputs"])
        self.assertIn("log_group_name      /aws/eks/test-cluster/dataplane", config["additionalOutputs"])

    def test_fluent_bit_outputs_split_by_tag(self):
        with ExitStack() as stack:
            _, mocks = self.create(stack, enable_flow_logs=False)

            values = mocks['modules.logging.functions.k8s'].helm.v3.Release.call_args.kwargs["values"]
            self.assertEqual(values["cloudWatchLogs"]["match"], "kube.*")
            self.assertIn("additionalInputs", values)
            self.assertIn("additionalOutputs", values)

    def create(self, stack, enable_flow_logs):
        mocks = patch_modules(
            stack,
            'modules.logging.functions.aws',
            'modules.logging.functions.pulumi',
            'modules.logging.functions.k8s',
            'modules.iam.functions.aws',
            'modules.iam.functions.pulumi',
        )
        mocks["modules.logging.functions.aws"].cloudwatch.LogGroup.side_effect = log_group
        result = create_logging_resources(
            name="test",
            cluster_name="test-cluster",
            cluster_name_value="test-cluster",
            vpc_id="vpc-1",
            oidc_provider_arn="provider-arn",
            oidc_issuer_url="issuer",
            kms_key_arn="arn:kms-logs",
            region="eu-west-1",
            provider=Mock(),
            enable_flow_logs=enable_flow_logs
        )
        return result, mocks

    def test_logging_function_structure(self):
        with ExitStack() as stack:
            result, mocks = self.create(stack, enable_flow_logs=True)

            self.assertEqual(set(result["log_group_names"]), {"application", "dataplane"})
            self.assertIsNotNone(result["flow_log_id"])
            mocks['modules.logging.functions.aws'].ec2.FlowLog.assert_called_once()

    def test_flow_logs_disabled(self):
        with ExitStack() as stack:
            result, mocks = self.create(stack, enable_flow_logs=False)

            self.assertIsNone(result["flow_log_id"])
            mocks['modules.logging.functions.aws'].ec2.FlowLog.assert_not_called()
            mocks['modules.logging.functions.pulumi'].log.warn.assert_called_once()


class TestVaultFunctions(unittest.TestCase):
    """Test Vault server configuration and deployment"""

    def test_server_config_joins_every_peer(self):
        config = server_config("eu-west-1", "key-123", replicas=5)

        self.assertEqual(config.count("retry_join"), 5)
        self.assertIn('leader_api_addr = "http://vault-4.vault-internal:8200"', config)
        self.assertIn('seal "awskms"', config)
        self.assertIn('kms_key_id = "key-123"', config)

    def test_vault_function_structure(self):
        with ExitStack() as stack:
            mocks = patch_modules(
                stack,
                'modules.vault.functions.pulumi',
                'modules.vault.functions.k8s',
                'modules.iam.functions.aws',
                'modules.iam.functions.pulumi',
            )

            result = create_vault_resources(
                name="test",
                oidc_provider_arn="provider-arn",
                oidc_issuer_url="issuer",
                kms_key_arn="arn:kms-vault",
                kms_key_id="key-123",
                region="eu-west-1",
                provider=Mock(),
                replicas=4
            )

            self.assertEqual(result["vault_address"], "http://vault.vault.svc:8200")
            self.assertIn("vault_role_arn", result)
            mocks['modules.vault.functions.pulumi'].log.warn.assert_called_once()
            values = mocks['modules.vault.functions.k8s'].helm.v3.Release.call_args.kwargs["values"]
            self.assertTrue(values["server"]["ha"]["raft"]["enabled"])
            self.assertEqual(values["server"]["ha"]["replicas"], 4)


class TestStateStorageFunctions(unittest.TestCase):
    """Test the Pulumi state backend"""

    def test_state_resource_names(self):
        names = state_resource_names("secure-platform", "eu-west-1")

        self.assertEqual(names["bucket_name"], "secure-platform-pulumi-state-eu-west-1")
        self.assertEqual(names["dynamodb_table_name"], "secure-platform-pulumi-state-lock")
        self.assertEqual(names["kms_alias"], "alias/secure-platform-pulumi-secrets")

    def test_state_storage_function_structure(self):
        with patch('modules.state_storage.functions.aws') as mock_aws, \
                patch('modules.state_storage.functions.pulumi'):
            mock_bucket = Mock()
            mock_bucket.id = "test-bucket"
            mock_aws.s3.Bucket.return_value = mock_bucket

            mock_table = Mock()
            mock_table.name = "test-table"
            mock_aws.dynamodb.Table.return_value = mock_table

            result = create_state_storage_resources(
                project_name="secure-platform",
                aws_region="eu-west-1"
            )

            self.assertIn("bucket_name_output", result)
            self.assertIn("dynamodb_table_name_output", result)
            self.assertIn("configuration_commands", result)

            backend_config = result["backend_config"]
            self.assertEqual(backend_config["backend_type"], "s3")
            self.assertEqual(backend_config["dynamodb_table"], "secure-platform-pulumi-state-lock")
            self.assertTrue(backend_config["secrets_provider"].startswith("awskms://alias/"))
            self.assertIn("export PULUMI_BACKEND_URL=s3://secure-platform-pulumi-state-eu-west-1?region=eu-west-1",
                          result["configuration_commands"])

            table_kwargs = mock_aws.dynamodb.Table.call_args.kwargs
            self.assertEqual(table_kwargs["hash_key"], "LockID")


if __name__ == '__main__':
    unittest.main()
