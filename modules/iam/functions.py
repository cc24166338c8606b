"""
IAM Module Functions
Creates IAM roles for the EKS cluster, node groups and service accounts (IRSA)
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Dict, Optional, Sequence, Any


NODE_MANAGED_POLICIES = [
    ("worker", "arn:aws:iam::aws:policy/AmazonEKSWorkerNodePolicy"),
    ("cni", "arn:aws:iam::aws:policy/AmazonEKS_CNI_Policy"),
    ("registry", "arn:aws:iam::aws:policy/AmazonEC2ContainerRegistryReadOnly"),
    ("ssm", "arn:aws:iam::aws:policy/AmazonSSMManagedInstanceCore")
]


def service_assume_role_policy(service: str) -> str:
    """Trust policy allowing an AWS service principal to assume the role"""
    return json.dumps({
        "Version": "2012-10-17",
        "Statement": [
            {
                "Action": "sts:AssumeRole",
                "Effect": "Allow",
                "Principal": {
                    "Service": service
                }
            }
        ]
    })


def irsa_assume_role_policy(oidc_provider_arn: str, oidc_issuer_url: str,
                            namespace: str, service_account: str) -> Dict[str, Any]:
    """
    Trust policy letting one Kubernetes service account assume a role

    Args:
        oidc_provider_arn: ARN of the cluster's IAM OIDC provider
        oidc_issuer_url: Cluster OIDC issuer URL, with or without https://
        namespace: Service account namespace
        service_account: Service account name

    Returns:
        Policy document as a dict
    """
    issuer = oidc_issuer_url
    if issuer.startswith("https://"):
        issuer = issuer[len("https://"):]

    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Principal": {"Federated": oidc_provider_arn},
                "Action": "sts:AssumeRoleWithWebIdentity",
                "Condition": {
                    "StringEquals": {
                        f"{issuer}:sub": f"system:serviceaccount:{namespace}:{service_account}",
                        f"{issuer}:aud": "sts.amazonaws.com"
                    }
                }
            }
        ]
    }


def create_cluster_role(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role for EKS cluster

    Args:
        name: Role name
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-cluster-role",
        name=f"{name}-cluster-role",
        assume_role_policy=service_assume_role_policy("eks.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{name}-cluster-role",
            "Module": "iam"
        }
    )

    policy_attachment = aws.iam.RolePolicyAttachment(
        f"{name}-cluster-policy",
        policy_arn="arn:aws:iam::aws:policy/AmazonEKSClusterPolicy",
        role=role.name
    )

    return {
        "role": role,
        "policy_attachment": policy_attachment,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_node_group_role(name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM role for EKS node groups

    Args:
        name: Role name prefix
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    role = aws.iam.Role(
        f"{name}-ng-role",
        name=f"{name}-ng-role",
        assume_role_policy=service_assume_role_policy("ec2.amazonaws.com"),
        tags={
            **tags,
            "Name": f"{name}-node-group-role",
            "Module": "iam"
        }
    )

    policy_attachments = {}
    for policy_name, policy_arn in NODE_MANAGED_POLICIES:
        attachment = aws.iam.RolePolicyAttachment(
            f"{name}-node-{policy_name}-policy",
            policy_arn=policy_arn,
            role=role.name
        )
        policy_attachments[f"{policy_name}_policy"] = attachment

    instance_profile = aws.iam.InstanceProfile(
        f"{name}-node-instance-profile",
        name=f"{name}-node-instance-profile",
        role=role.name,
        tags={
            **tags,
            "Name": f"{name}-node-instance-profile",
            "Module": "iam"
        }
    )

    return {
        "role": role,
        "policy_attachments": policy_attachments,
        "instance_profile": instance_profile,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_irsa_role(name: str, oidc_provider_arn: pulumi.Output[str], oidc_issuer_url: pulumi.Output[str],
                     namespace: str, service_account: str,
                     policy_document: Optional[pulumi.Input[str]] = None,
                     managed_policy_arns: Sequence[str] = (),
                     tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create an IAM role bound to a Kubernetes service account

    Args:
        name: Role name
        oidc_provider_arn: Cluster OIDC provider ARN
        oidc_issuer_url: Cluster OIDC issuer URL
        namespace: Service account namespace
        service_account: Service account name
        policy_document: Optional inline policy JSON
        managed_policy_arns: AWS managed policies to attach
        tags: Additional tags

    Returns:
        Dict with role resource and outputs
    """
    tags = tags or {}

    assume_role_policy = pulumi.Output.all(oidc_provider_arn, oidc_issuer_url).apply(
        lambda args: json.dumps(irsa_assume_role_policy(args[0], args[1], namespace, service_account))
    )

    role = aws.iam.Role(
        f"{name}-irsa-role",
        name=name,
        assume_role_policy=assume_role_policy,
        tags={
            **tags,
            "Name": name,
            "ServiceAccount": f"{namespace}/{service_account}",
            "Module": "iam"
        }
    )

    inline_policy = None
    if policy_document is not None:
        inline_policy = aws.iam.RolePolicy(
            f"{name}-irsa-policy",
            role=role.id,
            policy=policy_document
        )

    attachments = []
    for i, policy_arn in enumerate(managed_policy_arns):
        attachments.append(aws.iam.RolePolicyAttachment(
            f"{name}-irsa-attachment-{i+1}",
            role=role.name,
            policy_arn=policy_arn
        ))

    return {
        "role": role,
        "inline_policy": inline_policy,
        "policy_attachments": attachments,
        "role_arn": role.arn,
        "role_name": role.name
    }


def create_iam_resources(cluster_name: str, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create IAM roles for the EKS control plane and worker nodes

    Service-account roles are created later by the modules that own the
    workloads, once the cluster OIDC provider exists.

    Args:
        cluster_name: EKS cluster name
        tags: Additional tags

    Returns:
        Dict with all IAM resources and outputs
    """
    tags = tags or {}

    cluster_role_result = create_cluster_role(cluster_name, tags)
    node_role_result = create_node_group_role(cluster_name, tags)

    return {
        "cluster_role_arn": cluster_role_result["role_arn"],
        "cluster_role_name": cluster_role_result["role_name"],
        "node_group_role_arn": node_role_result["role_arn"],
        "node_group_role_name": node_role_result["role_name"],
        # Keep references to resources for dependencies
        "_cluster_role": cluster_role_result["role"],
        "_node_role": node_role_result["role"],
        "_cluster_policy_attachment": cluster_role_result["policy_attachment"],
        "_node_policy_attachments": node_role_result["policy_attachments"],
        "_instance_profile": node_role_result["instance_profile"]
    }
