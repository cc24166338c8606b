"""
EKS Module Functions
Creates EKS cluster, OIDC provider, managed node groups and add-ons
"""

import pulumi
import pulumi_aws as aws
import pulumi_kubernetes as k8s
from typing import Dict, List, Any

from modules.iam.functions import create_irsa_role


# Root CA thumbprint of the EKS OIDC issuer endpoints
EKS_OIDC_THUMBPRINT = "9e99a48a9960b14926bb7f3b02e22da2b0ab7280"


def create_cloudwatch_log_group(name: str, retention_days: int = 90, kms_key_arn: pulumi.Input[str] = None,
                                tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create CloudWatch log group for EKS control plane logs

    The name must match what EKS writes to, so the group exists (with our
    retention and encryption) before the cluster starts logging.
    """
    tags = tags or {}

    log_group = aws.cloudwatch.LogGroup(
        f"{name}-eks-log-group",
        name=f"/aws/eks/{name}/cluster",
        retention_in_days=retention_days,
        kms_key_id=kms_key_arn,
        tags={
            **tags,
            "Name": f"{name}-eks-log-group",
            "Module": "eks"
        }
    )

    return {
        "log_group": log_group,
        "log_group_name": log_group.name
    }


def create_eks_cluster(name: str, version: str, role_arn: pulumi.Output[str],
                       subnet_ids: List[pulumi.Output[str]], security_group_ids: List[pulumi.Output[str]],
                       kms_key_arn: pulumi.Input[str], log_group=None,
                       enabled_log_types: List[str] = None,
                       endpoint_public_access: bool = True,
                       public_access_cidrs: List[str] = None,
                       depends_on: List[pulumi.Resource] = None,
                       tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS cluster with envelope encryption of Kubernetes secrets

    Args:
        name: Cluster name
        version: Kubernetes version
        role_arn: IAM role ARN for cluster
        subnet_ids: Subnets for the control plane ENIs
        security_group_ids: Additional security groups
        kms_key_arn: KMS key ARN for secrets encryption
        log_group: Control plane log group the cluster depends on
        enabled_log_types: Control plane log types
        endpoint_public_access: Enable public API endpoint
        public_access_cidrs: CIDRs allowed on the public endpoint
        depends_on: Extra dependencies (IAM policy attachments)
        tags: Additional tags

    Returns:
        Dict with cluster resource and outputs
    """
    tags = tags or {}
    enabled_log_types = enabled_log_types or ["api", "audit", "authenticator"]
    public_access_cidrs = public_access_cidrs or ["0.0.0.0/0"]
    depends_on = list(depends_on or [])
    if log_group is not None:
        depends_on.append(log_group)

    cluster = aws.eks.Cluster(
        f"{name}-cluster",
        name=name,
        version=version,
        role_arn=role_arn,
        vpc_config=aws.eks.ClusterVpcConfigArgs(
            subnet_ids=subnet_ids,
            endpoint_private_access=True,
            endpoint_public_access=endpoint_public_access,
            public_access_cidrs=public_access_cidrs if endpoint_public_access else None,
            security_group_ids=security_group_ids
        ),
        enabled_cluster_log_types=enabled_log_types,
        encryption_config=aws.eks.ClusterEncryptionConfigArgs(
            provider=aws.eks.ClusterEncryptionConfigProviderArgs(
                key_arn=kms_key_arn
            ),
            resources=["secrets"]
        ),
        tags={
            **tags,
            "Name": f"{name}-cluster",
            "Module": "eks"
        },
        opts=pulumi.ResourceOptions(depends_on=depends_on)
    )

    oidc_issuer = cluster.identities.apply(lambda identities: identities[0].oidcs[0].issuer)

    return {
        "cluster": cluster,
        "cluster_name": cluster.name,
        "cluster_arn": cluster.arn,
        "cluster_endpoint": cluster.endpoint,
        "cluster_version": cluster.version,
        "cluster_certificate_authority_data": cluster.certificate_authority.data,
        "oidc_issuer_url": oidc_issuer
    }


def create_oidc_provider(name: str, oidc_issuer_url: pulumi.Output[str],
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM OIDC provider for IAM Roles for Service Accounts
    """
    tags = tags or {}

    provider = aws.iam.OpenIdConnectProvider(
        f"{name}-oidc-provider",
        url=oidc_issuer_url,
        client_id_lists=["sts.amazonaws.com"],
        thumbprint_lists=[EKS_OIDC_THUMBPRINT],
        tags={
            **tags,
            "Name": f"{name}-oidc-provider",
            "Module": "eks"
        }
    )

    return {
        "oidc_provider": provider,
        "oidc_provider_arn": provider.arn
    }


def create_node_group(name: str, group: str, cluster_name: pulumi.Output[str], role_arn: pulumi.Output[str],
                      subnet_ids: List[pulumi.Output[str]], instance_types: List[str],
                      desired_size: int, max_size: int, min_size: int, disk_size: int,
                      security_group_ids: List[pulumi.Input[str]] = None,
                      capacity_type: str = "ON_DEMAND", labels: Dict[str, str] = None,
                      taints: List[Dict[str, str]] = None, depends_on: List[pulumi.Resource] = None,
                      tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS managed node group

    Args:
        name: Cluster name used as resource prefix
        group: Node group role, e.g. "system" or "workload"
        cluster_name: EKS cluster name
        role_arn: IAM role ARN for node group
        subnet_ids: Private subnet IDs
        instance_types: List of EC2 instance types
        desired_size: Desired number of nodes
        max_size: Maximum number of nodes
        min_size: Minimum number of nodes
        disk_size: EBS volume size in GB
        security_group_ids: Security groups of the node ENIs
        capacity_type: Capacity type (ON_DEMAND or SPOT)
        labels: Kubernetes node labels
        taints: Kubernetes taints as dicts with key, value and effect
        depends_on: Extra dependencies (node role policy attachments)
        tags: Additional tags

    Returns:
        Dict with node group resource and outputs
    """
    tags = tags or {}
    labels = {"node-group": group, **(labels or {})}

    # Root volume and security groups live on the launch template, so the
    # node group must not set disk_size itself
    launch_template = aws.ec2.LaunchTemplate(
        f"{name}-{group}-launch-template",
        name_prefix=f"{name}-{group}-",
        vpc_security_group_ids=security_group_ids or [],
        block_device_mappings=[aws.ec2.LaunchTemplateBlockDeviceMappingArgs(
            device_name="/dev/xvda",
            ebs=aws.ec2.LaunchTemplateBlockDeviceMappingEbsArgs(
                volume_size=disk_size,
                volume_type="gp3",
                encrypted="true",
                delete_on_termination="true"
            )
        )],
        metadata_options=aws.ec2.LaunchTemplateMetadataOptionsArgs(
            http_endpoint="enabled",
            http_tokens="required",
            http_put_response_hop_limit=2
        ),
        tag_specifications=[aws.ec2.LaunchTemplateTagSpecificationArgs(
            resource_type="instance",
            tags={**tags, "Name": f"{name}-{group}-node"}
        )],
        tags={
            **tags,
            "Name": f"{name}-{group}-launch-template",
            "Module": "eks"
        }
    )

    node_group = aws.eks.NodeGroup(
        f"{name}-{group}-node-group",
        cluster_name=cluster_name,
        node_group_name=f"{name}-{group}",
        node_role_arn=role_arn,
        subnet_ids=subnet_ids,
        capacity_type=capacity_type,
        instance_types=instance_types,
        launch_template=aws.eks.NodeGroupLaunchTemplateArgs(
            id=launch_template.id,
            version=launch_template.latest_version.apply(str)
        ),
        labels=labels,
        taints=[aws.eks.NodeGroupTaintArgs(**taint) for taint in (taints or [])],
        scaling_config=aws.eks.NodeGroupScalingConfigArgs(
            desired_size=desired_size,
            max_size=max_size,
            min_size=min_size
        ),
        update_config=aws.eks.NodeGroupUpdateConfigArgs(
            max_unavailable_percentage=25
        ),
        tags={
            **tags,
            "Name": f"{name}-{group}-node-group",
            "Module": "eks"
        },
        opts=pulumi.ResourceOptions(
            depends_on=depends_on or [],
            # The autoscaler owns the desired size after creation
            ignore_changes=["scalingConfig.desiredSize"]
        )
    )

    return {
        "node_group": node_group,
        "launch_template": launch_template,
        "node_group_arn": node_group.arn,
        "node_group_status": node_group.status
    }


def create_eks_addons(name: str, cluster_name: pulumi.Output[str],
                      ebs_csi_role_arn: pulumi.Output[str] = None,
                      node_groups: List[pulumi.Resource] = None,
                      tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create EKS managed add-ons

    CoreDNS and the EBS CSI driver run as pods, so they wait for node groups.
    """
    tags = tags or {}
    after_nodes = pulumi.ResourceOptions(depends_on=node_groups) if node_groups else None

    def addon(addon_name: str, opts=None, **kwargs):
        return aws.eks.Addon(
            f"{name}-{addon_name}-addon",
            cluster_name=cluster_name,
            addon_name=addon_name,
            resolve_conflicts_on_create="OVERWRITE",
            resolve_conflicts_on_update="OVERWRITE",
            tags={
                **tags,
                "Name": f"{name}-{addon_name}-addon",
                "Module": "eks"
            },
            opts=opts,
            **kwargs
        )

    addons = {
        "vpc_cni": addon("vpc-cni"),
        "kube_proxy": addon("kube-proxy"),
        "coredns": addon("coredns", opts=after_nodes),
    }
    if ebs_csi_role_arn is not None:
        addons["ebs_csi"] = addon("aws-ebs-csi-driver", opts=after_nodes,
                                  service_account_role_arn=ebs_csi_role_arn)

    return {"addons": addons}


def create_kubernetes_provider(name: str, cluster_name: pulumi.Output[str], cluster_endpoint: pulumi.Output[str],
                               cluster_ca_data: pulumi.Output[str], region: str,
                               depends_on: List[pulumi.Resource] = None) -> k8s.Provider:
    """
    Create Kubernetes provider for the EKS cluster, authenticated with `aws eks get-token`
    """
    return k8s.Provider(
        f"{name}-k8s-provider",
        server=cluster_endpoint,
        cluster_ca_certificate=cluster_ca_data,
        exec=k8s.ProviderExecArgs(
            api_version="client.authentication.k8s.io/v1beta1",
            command="aws",
            args=["eks", "get-token", "--cluster-name", cluster_name, "--region", region]
        ),
        opts=pulumi.ResourceOptions(depends_on=depends_on or [])
    )


def create_eks_resources(cluster_name: str, cluster_version: str,
                         cluster_role_arn: pulumi.Output[str], node_group_role_arn: pulumi.Output[str],
                         subnet_ids: List[pulumi.Output[str]],
                         cluster_security_group_id: pulumi.Output[str],
                         node_security_group_id: pulumi.Output[str],
                         secrets_kms_key_arn: pulumi.Input[str],
                         logs_kms_key_arn: pulumi.Input[str],
                         region: str,
                         system_node_instance_types: List[str],
                         system_node_sizes: Dict[str, int],
                         node_instance_types: List[str],
                         node_sizes: Dict[str, int],
                         node_disk_size: int = 50,
                         capacity_type: str = "ON_DEMAND",
                         cluster_enabled_log_types: List[str] = None,
                         log_retention_days: int = 90,
                         endpoint_public_access: bool = True,
                         public_access_cidrs: List[str] = None,
                         iam_dependencies: List[pulumi.Resource] = None,
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete EKS infrastructure

    Args:
        cluster_name: EKS cluster name
        cluster_version: Kubernetes version
        cluster_role_arn: IAM role ARN for cluster
        node_group_role_arn: IAM role ARN for node groups
        subnet_ids: Private subnet IDs
        cluster_security_group_id: Cluster security group ID
        node_security_group_id: Security group attached to every worker node
        secrets_kms_key_arn: KMS key for Kubernetes secrets
        logs_kms_key_arn: KMS key for the control plane log group
        region: AWS region (for kubeconfig token generation)
        system_node_instance_types: Instance types of the system node group
        system_node_sizes: Dict with desired, min and max for the system group
        node_instance_types: Instance types of the workload node group
        node_sizes: Dict with desired, min and max for the workload group
        node_disk_size: EBS volume size in GB
        capacity_type: Workload capacity type (ON_DEMAND or SPOT)
        cluster_enabled_log_types: Control plane log types
        log_retention_days: Control plane log retention
        endpoint_public_access: Enable public API endpoint
        public_access_cidrs: CIDRs allowed on the public endpoint
        iam_dependencies: IAM policy attachments the cluster and nodes need first
        tags: Additional tags

    Returns:
        Dict with all EKS resources and outputs
    """
    tags = tags or {}
    iam_dependencies = iam_dependencies or []

    log_group_result = create_cloudwatch_log_group(cluster_name, log_retention_days, logs_kms_key_arn, tags)

    cluster_result = create_eks_cluster(
        name=cluster_name,
        version=cluster_version,
        role_arn=cluster_role_arn,
        subnet_ids=subnet_ids,
        security_group_ids=[cluster_security_group_id],
        kms_key_arn=secrets_kms_key_arn,
        log_group=log_group_result["log_group"],
        enabled_log_types=cluster_enabled_log_types,
        endpoint_public_access=endpoint_public_access,
        public_access_cidrs=public_access_cidrs,
        depends_on=iam_dependencies,
        tags=tags
    )

    oidc_result = create_oidc_provider(cluster_name, cluster_result["oidc_issuer_url"], tags)

    # A launch template replaces the default node security group, so the
    # EKS managed cluster security group is attached alongside ours
    node_security_group_ids = [
        node_security_group_id,
        cluster_result["cluster"].vpc_config.cluster_security_group_id
    ]

    system_group = create_node_group(
        name=cluster_name,
        group="system",
        cluster_name=cluster_result["cluster_name"],
        role_arn=node_group_role_arn,
        subnet_ids=subnet_ids,
        instance_types=system_node_instance_types,
        desired_size=system_node_sizes["desired"],
        max_size=system_node_sizes["max"],
        min_size=system_node_sizes["min"],
        disk_size=node_disk_size,
        security_group_ids=node_security_group_ids,
        capacity_type="ON_DEMAND",
        taints=[{"key": "CriticalAddonsOnly", "value": "true", "effect": "NO_SCHEDULE"}],
        depends_on=iam_dependencies,
        tags=tags
    )

    workload_group = create_node_group(
        name=cluster_name,
        group="workload",
        cluster_name=cluster_result["cluster_name"],
        role_arn=node_group_role_arn,
        subnet_ids=subnet_ids,
        instance_types=node_instance_types,
        desired_size=node_sizes["desired"],
        max_size=node_sizes["max"],
        min_size=node_sizes["min"],
        disk_size=node_disk_size,
        security_group_ids=node_security_group_ids,
        capacity_type=capacity_type,
        depends_on=iam_dependencies,
        tags=tags
    )

    ebs_csi_role = create_irsa_role(
        f"{cluster_name}-ebs-csi",
        oidc_result["oidc_provider_arn"],
        cluster_result["oidc_issuer_url"],
        namespace="kube-system",
        service_account="ebs-csi-controller-sa",
        managed_policy_arns=["arn:aws:iam::aws:policy/service-role/AmazonEBSCSIDriverPolicy"],
        tags=tags
    )

    node_groups = [system_group["node_group"], workload_group["node_group"]]
    addons_result = create_eks_addons(
        name=cluster_name,
        cluster_name=cluster_result["cluster_name"],
        ebs_csi_role_arn=ebs_csi_role["role_arn"],
        node_groups=node_groups,
        tags=tags
    )

    k8s_provider = create_kubernetes_provider(
        cluster_name,
        cluster_result["cluster_name"],
        cluster_result["cluster_endpoint"],
        cluster_result["cluster_certificate_authority_data"],
        region,
        depends_on=node_groups
    )

    return {
        "cluster_name": cluster_result["cluster_name"],
        "cluster_arn": cluster_result["cluster_arn"],
        "cluster_endpoint": cluster_result["cluster_endpoint"],
        "cluster_version_output": cluster_result["cluster_version"],
        "cluster_certificate_authority_data": cluster_result["cluster_certificate_authority_data"],
        "oidc_issuer_url": cluster_result["oidc_issuer_url"],
        "oidc_provider_arn": oidc_result["oidc_provider_arn"],
        "system_node_group_arn": system_group["node_group_arn"],
        "workload_node_group_arn": workload_group["node_group_arn"],
        "k8s_provider": k8s_provider,
        # Keep references to resources for dependencies
        "_log_group": log_group_result["log_group"],
        "_cluster": cluster_result["cluster"],
        "_oidc_provider": oidc_result["oidc_provider"],
        "_node_groups": node_groups,
        "_addons": addons_result["addons"]
    }
