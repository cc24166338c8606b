"""
Secure Platform - EKS, data services and admission policy on AWS
Modules are wired in dependency order (see modules.MODULE_DEPENDENCIES)
"""
import pulumi
from config import get_config
from modules import deployment_order
from modules.network import create_network_resources
from modules.security import create_security_resources
from modules.iam import create_iam_resources
from modules.eks import create_eks_resources
from modules.rds import create_rds_resources
from modules.redis import create_redis_resources
from modules.alb import create_alb_resources
from modules.ecr import create_ecr_resources
from modules.logging import create_logging_resources
from modules.policy import create_policy_resources
from modules.vault import create_vault_resources

config = get_config()
config.validate()

name = config.cluster_name
tags = config.common_tags

pulumi.log.info(f"Deploying {name} modules: {' -> '.join(deployment_order())}")

# 1. Network
network = create_network_resources(
    name=name,
    cluster_name=config.cluster_name,
    vpc_cidr=config.vpc_cidr,
    public_subnet_cidrs=config.public_subnet_cidrs,
    private_subnet_cidrs=config.private_subnet_cidrs,
    data_subnet_cidrs=config.data_subnet_cidrs,
    nat_gateway_count=config.nat_gateway_count,
    tags=tags
)

# 2. Keys, credentials and security groups
security = create_security_resources(
    name=name,
    vpc_id=network["vpc_id"],
    db_username=config.db_username,
    deletion_window_in_days=config.kms_deletion_window_in_days,
    tags=tags
)

# 3. Cluster and node roles
iam = create_iam_resources(cluster_name=config.cluster_name, tags=tags)

# 4. EKS
eks = create_eks_resources(
    cluster_name=config.cluster_name,
    cluster_version=config.cluster_version,
    cluster_role_arn=iam["cluster_role_arn"],
    node_group_role_arn=iam["node_group_role_arn"],
    subnet_ids=network["private_subnet_ids"],
    cluster_security_group_id=security["cluster_security_group_id"],
    node_security_group_id=security["node_security_group_id"],
    secrets_kms_key_arn=security["kms_key_arns"]["eks"],
    logs_kms_key_arn=security["kms_key_arns"]["logs"],
    region=security["region"],
    system_node_instance_types=config.system_node_instance_types,
    system_node_sizes={
        "desired": config.system_node_desired_size,
        "min": config.system_node_min_size,
        "max": config.system_node_max_size
    },
    node_instance_types=config.node_instance_types,
    node_sizes={
        "desired": config.node_desired_size,
        "min": config.node_min_size,
        "max": config.node_max_size
    },
    node_disk_size=config.node_disk_size,
    capacity_type=config.capacity_type,
    cluster_enabled_log_types=config.cluster_enabled_log_types,
    log_retention_days=config.log_retention_days,
    endpoint_public_access=config.endpoint_public_access,
    public_access_cidrs=config.public_access_cidrs,
    iam_dependencies=[iam["_cluster_policy_attachment"], *iam["_node_policy_attachments"].values()],
    tags=tags
)

# 5. Data services
database = create_rds_resources(
    name=name,
    subnet_ids=network["data_subnet_ids"],
    security_group_id=security["db_security_group_id"],
    kms_key_arn=security["kms_key_arns"]["rds"],
    password=security["db_password"],
    engine_version=config.db_engine_version,
    instance_class=config.db_instance_class,
    allocated_storage=config.db_allocated_storage,
    max_allocated_storage=config.db_max_allocated_storage,
    db_name=config.db_name,
    username=config.db_username,
    multi_az=config.db_multi_az,
    backup_retention_days=config.db_backup_retention_days,
    deletion_protection=config.db_deletion_protection,
    tags=tags
)

cache = create_redis_resources(
    name=name,
    subnet_ids=network["data_subnet_ids"],
    security_group_id=security["cache_security_group_id"],
    kms_key_arn=security["kms_key_arns"]["redis"],
    auth_token=security["redis_auth_token"],
    engine_version=config.redis_engine_version,
    node_type=config.redis_node_type,
    num_cache_clusters=config.redis_num_cache_clusters,
    tags=tags
)

# 6. Edge
alb = create_alb_resources(
    name=name,
    cluster_name=eks["cluster_name"],
    vpc_id=network["vpc_id"],
    node_security_group_id=security["node_security_group_id"],
    oidc_provider_arn=eks["oidc_provider_arn"],
    oidc_issuer_url=eks["oidc_issuer_url"],
    region=security["region"],
    provider=eks["k8s_provider"],
    chart_version=config.alb_controller_chart_version,
    ingress_cidrs=config.alb_ingress_cidrs,
    tags=tags
)

ecr = create_ecr_resources(
    name=name,
    repositories=config.ecr_repositories,
    kms_key_arn=security["kms_key_arns"]["ecr"],
    account_id=security["account_id"],
    region=security["region"],
    keep_image_count=config.ecr_keep_image_count,
    tags=tags
)

log_shipping = create_logging_resources(
    name=name,
    cluster_name=eks["cluster_name"],
    cluster_name_value=config.cluster_name,
    vpc_id=network["vpc_id"],
    oidc_provider_arn=eks["oidc_provider_arn"],
    oidc_issuer_url=eks["oidc_issuer_url"],
    kms_key_arn=security["kms_key_arns"]["logs"],
    region=security["region"],
    provider=eks["k8s_provider"],
    retention_days=config.log_retention_days,
    enable_flow_logs=config.enable_flow_logs,
    chart_version=config.fluent_bit_chart_version,
    tags=tags
)

# 7. Admission policy
policy = create_policy_resources(
    name=name,
    registry=ecr["registry_url"],
    provider=eks["k8s_provider"],
    chart_version=config.kyverno_chart_version,
    validation_failure_action=config.kyverno_validation_failure_action,
    cosign_public_key=config.cosign_public_key
)

# 8. Vault
vault = create_vault_resources(
    name=name,
    oidc_provider_arn=eks["oidc_provider_arn"],
    oidc_issuer_url=eks["oidc_issuer_url"],
    kms_key_arn=security["kms_key_arns"]["vault"],
    kms_key_id=security["kms_key_ids"]["vault"],
    region=security["region"],
    provider=eks["k8s_provider"],
    replicas=config.vault_replicas,
    chart_version=config.vault_chart_version,
    tags=tags
)

# Exports
pulumi.export("vpc_id", network["vpc_id"])
pulumi.export("private_subnet_ids", network["private_subnet_ids"])
pulumi.export("data_subnet_ids", network["data_subnet_ids"])
pulumi.export("cluster_name", eks["cluster_name"])
pulumi.export("cluster_endpoint", eks["cluster_endpoint"])
pulumi.export("oidc_provider_arn", eks["oidc_provider_arn"])
pulumi.export("kubeconfig_command",
    pulumi.Output.concat(
        "aws eks update-kubeconfig --region ", security["region"], " --name ", eks["cluster_name"]
    ))
pulumi.export("database_endpoint", database["endpoint"])
pulumi.export("database_secret_arn", security["db_secret_arn"])
pulumi.export("redis_primary_endpoint", cache["primary_endpoint"])
pulumi.export("redis_secret_arn", security["redis_secret_arn"])
pulumi.export("alb_security_group_id", alb["alb_security_group_id"])
pulumi.export("ecr_registry_url", ecr["registry_url"])
pulumi.export("ecr_repository_urls", ecr["repository_urls"])
pulumi.export("ecr_ci_push_policy_arn", ecr["ci_push_policy_arn"])
pulumi.export("docker_login_command", ecr["docker_login_command"])
pulumi.export("log_group_names", log_shipping["log_group_names"])
pulumi.export("kyverno_policies", policy["policy_names"])
pulumi.export("vault_address", vault["vault_address"])
