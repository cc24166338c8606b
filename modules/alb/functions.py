"""
ALB Module Functions
Load balancer security group and the AWS Load Balancer Controller
"""

import json
import pulumi
import pulumi_aws as aws
import pulumi_kubernetes as k8s
from typing import Dict, List, Any

from modules.iam.functions import create_irsa_role


CONTROLLER_SERVICE_ACCOUNT = "aws-load-balancer-controller"
CONTROLLER_NAMESPACE = "kube-system"

# Permissions the controller needs to reconcile Ingress and Service objects
# into ALBs/NLBs, target groups and their security groups
CONTROLLER_POLICY = {
    "Version": "2012-10-17",
    "Statement": [
        {
            "Effect": "Allow",
            "Action": ["iam:CreateServiceLinkedRole"],
            "Resource": "*",
            "Condition": {
                "StringEquals": {"iam:AWSServiceName": "elasticloadbalancing.amazonaws.com"}
            }
        },
        {
            "Effect": "Allow",
            "Action": [
                "ec2:DescribeAccountAttributes",
                "ec2:DescribeAddresses",
                "ec2:DescribeAvailabilityZones",
                "ec2:DescribeInternetGateways",
                "ec2:DescribeVpcs",
                "ec2:DescribeVpcPeeringConnections",
                "ec2:DescribeSubnets",
                "ec2:DescribeSecurityGroups",
                "ec2:DescribeInstances",
                "ec2:DescribeNetworkInterfaces",
                "ec2:DescribeTags",
                "ec2:GetCoipPoolUsage",
                "ec2:DescribeCoipPools",
                "elasticloadbalancing:Describe*",
                "acm:ListCertificates",
                "acm:DescribeCertificate",
                "wafv2:GetWebACL",
                "wafv2:GetWebACLForResource",
                "wafv2:AssociateWebACL",
                "wafv2:DisassociateWebACL",
                "shield:GetSubscriptionState",
                "shield:DescribeProtection",
                "shield:CreateProtection",
                "shield:DeleteProtection"
            ],
            "Resource": "*"
        },
        {
            "Effect": "Allow",
            "Action": [
                "ec2:AuthorizeSecurityGroupIngress",
                "ec2:RevokeSecurityGroupIngress",
                "ec2:CreateSecurityGroup",
                "ec2:DeleteSecurityGroup",
                "ec2:CreateTags",
                "ec2:DeleteTags"
            ],
            "Resource": "*"
        },
        {
            "Effect": "Allow",
            "Action": [
                "elasticloadbalancing:CreateLoadBalancer",
                "elasticloadbalancing:CreateTargetGroup",
                "elasticloadbalancing:CreateListener",
                "elasticloadbalancing:DeleteListener",
                "elasticloadbalancing:CreateRule",
                "elasticloadbalancing:DeleteRule",
                "elasticloadbalancing:ModifyLoadBalancerAttributes",
                "elasticloadbalancing:SetIpAddressType",
                "elasticloadbalancing:SetSecurityGroups",
                "elasticloadbalancing:SetSubnets",
                "elasticloadbalancing:DeleteLoadBalancer",
                "elasticloadbalancing:ModifyTargetGroup",
                "elasticloadbalancing:ModifyTargetGroupAttributes",
                "elasticloadbalancing:DeleteTargetGroup",
                "elasticloadbalancing:RegisterTargets",
                "elasticloadbalancing:DeregisterTargets",
                "elasticloadbalancing:ModifyListener",
                "elasticloadbalancing:AddListenerCertificates",
                "elasticloadbalancing:RemoveListenerCertificates",
                "elasticloadbalancing:ModifyRule",
                "elasticloadbalancing:AddTags",
                "elasticloadbalancing:RemoveTags",
                "elasticloadbalancing:SetWebAcl"
            ],
            "Resource": "*"
        }
    ]
}


def create_alb_security_group(name: str, vpc_id: pulumi.Output[str], node_security_group_id: pulumi.Output[str],
                              ingress_cidrs: List[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create security group for internet-facing ALBs and let it reach the nodes

    Args:
        name: Resource name prefix
        vpc_id: VPC ID
        node_security_group_id: Worker node security group
        ingress_cidrs: CIDRs allowed on 80/443
        tags: Additional tags

    Returns:
        Dict with security group resources and outputs
    """
    tags = tags or {}

    security_group = aws.ec2.SecurityGroup(
        f"{name}-alb-sg",
        name_prefix=f"{name}-alb-",
        description="Internet-facing application load balancers",
        vpc_id=vpc_id,
        ingress=[
            aws.ec2.SecurityGroupIngressArgs(protocol="tcp", from_port=port, to_port=port,
                                             cidr_blocks=ingress_cidrs, description=label)
            for port, label in ((80, "HTTP"), (443, "HTTPS"))
        ],
        egress=[aws.ec2.SecurityGroupEgressArgs(
            protocol="-1",
            from_port=0,
            to_port=0,
            cidr_blocks=["0.0.0.0/0"],
        )],
        tags={
            **tags,
            "Name": f"{name}-alb-sg",
            "Module": "alb"
        }
    )

    # Target type "ip" sends traffic straight to pod IPs on the nodes
    node_ingress_alb = aws.ec2.SecurityGroupRule(
        f"{name}-node-ingress-alb",
        type="ingress",
        from_port=0,
        to_port=65535,
        protocol="tcp",
        source_security_group_id=security_group.id,
        security_group_id=node_security_group_id
    )

    return {
        "security_group": security_group,
        "node_ingress_alb": node_ingress_alb,
        "security_group_id": security_group.id
    }


def deploy_load_balancer_controller(name: str, cluster_name: pulumi.Output[str], vpc_id: pulumi.Output[str],
                                    region: str, role_arn: pulumi.Output[str], chart_version: str,
                                    provider: k8s.Provider) -> Dict[str, Any]:
    """
    Deploy the AWS Load Balancer Controller using Helm
    """
    release = k8s.helm.v3.Release(
        f"{name}-aws-load-balancer-controller",
        name="aws-load-balancer-controller",
        chart="aws-load-balancer-controller",
        version=chart_version,
        namespace=CONTROLLER_NAMESPACE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://aws.github.io/eks-charts"
        ),
        values={
            "clusterName": cluster_name,
            "region": region,
            "vpcId": vpc_id,
            "replicaCount": 2,
            "serviceAccount": {
                "create": True,
                "name": CONTROLLER_SERVICE_ACCOUNT,
                "annotations": {"eks.amazonaws.com/role-arn": role_arn}
            },
            "tolerations": [
                {"key": "CriticalAddonsOnly", "operator": "Exists"}
            ],
            "nodeSelector": {"node-group": "system"}
        },
        opts=pulumi.ResourceOptions(provider=provider)
    )

    return {
        "release": release,
        "status": release.status
    }


def create_alb_resources(name: str, cluster_name: pulumi.Output[str], vpc_id: pulumi.Output[str],
                         node_security_group_id: pulumi.Output[str],
                         oidc_provider_arn: pulumi.Output[str], oidc_issuer_url: pulumi.Output[str],
                         region: str, provider: k8s.Provider, chart_version: str = "1.8.2",
                         ingress_cidrs: List[str] = None, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create ALB security group and the controller that provisions ALBs from Ingresses

    Returns:
        Dict with all ALB resources and outputs
    """
    tags = tags or {}
    ingress_cidrs = ingress_cidrs or ["0.0.0.0/0"]

    sg_result = create_alb_security_group(name, vpc_id, node_security_group_id, ingress_cidrs, tags)

    role_result = create_irsa_role(
        f"{name}-alb-controller",
        oidc_provider_arn,
        oidc_issuer_url,
        namespace=CONTROLLER_NAMESPACE,
        service_account=CONTROLLER_SERVICE_ACCOUNT,
        policy_document=json.dumps(CONTROLLER_POLICY),
        tags=tags
    )

    controller_result = deploy_load_balancer_controller(
        name, cluster_name, vpc_id, region, role_result["role_arn"], chart_version, provider
    )

    return {
        "alb_security_group_id": sg_result["security_group_id"],
        "controller_role_arn": role_result["role_arn"],
        "controller_status": controller_result["status"],
        # Keep references to resources for dependencies
        "_security_group": sg_result["security_group"],
        "_controller_role": role_result["role"],
        "_controller_release": controller_result["release"]
    }
