"""
Logging Module Functions
CloudWatch log groups, VPC flow logs and the Fluent Bit log shipper
"""

import json
import pulumi
import pulumi_aws as aws
import pulumi_kubernetes as k8s
from typing import Dict, List, Any

from modules.iam.functions import create_irsa_role, service_assume_role_policy


FLUENT_BIT_NAMESPACE = "amazon-cloudwatch"
FLUENT_BIT_SERVICE_ACCOUNT = "aws-for-fluent-bit"
LOG_STREAMS = ("application", "dataplane")


def log_writer_policy(log_group_arns: List[str]) -> Dict[str, Any]:
    """Policy allowing a principal to write to the given log groups"""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [
                    "logs:CreateLogStream",
                    "logs:PutLogEvents",
                    "logs:DescribeLogStreams"
                ],
                "Resource": [f"{arn}:*" for arn in log_group_arns] + list(log_group_arns)
            },
            {
                "Effect": "Allow",
                "Action": ["logs:DescribeLogGroups"],
                "Resource": "*"
            }
        ]
    }


def dataplane_fluent_bit_config(region: str, log_group_name: str) -> Dict[str, str]:
    """
    Extra Fluent Bit sections shipping kubelet and containerd journal logs
    to the dataplane log group
    """
    return {
        "additionalInputs": "\n".join([
            "[INPUT]",
            "    Name                systemd",
            "    Tag                 dataplane.systemd.*",
            "    Systemd_Filter      _SYSTEMD_UNIT=kubelet.service",
            "    Systemd_Filter      _SYSTEMD_UNIT=containerd.service",
            "    Path                /var/log/journal",
            "    Read_From_Tail      On",
        ]),
        "additionalOutputs": "\n".join([
            "[OUTPUT]",
            "    Name                cloudwatch_logs",
            "    Match               dataplane.*",
            f"    region              {region}",
            f"    log_group_name      {log_group_name}",
            "    log_stream_prefix   ${HOSTNAME}-",
            "    auto_create_group   false",
        ]),
    }


def create_log_groups(name: str, cluster_name: str, retention_days: int, kms_key_arn: pulumi.Input[str],
                      tags: Dict[str, str] = None) -> Dict[str, Any]:
    tags = tags or {}

    log_groups = {}
    for stream in LOG_STREAMS:
        log_groups[stream] = aws.cloudwatch.LogGroup(
            f"{name}-{stream}-log-group",
            name=f"/aws/eks/{cluster_name}/{stream}",
            retention_in_days=retention_days,
            kms_key_id=kms_key_arn,
            tags={
                **tags,
                "Name": f"{name}-{stream}",
                "Module": "logging"
            }
        )

    return {
        "log_groups": log_groups,
        "log_group_names": {stream: group.name for stream, group in log_groups.items()},
        "log_group_arns": {stream: group.arn for stream, group in log_groups.items()}
    }


def create_vpc_flow_logs(name: str, vpc_id: pulumi.Output[str], retention_days: int,
                         kms_key_arn: pulumi.Input[str], tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Send VPC flow logs (all traffic) to a dedicated log group
    """
    tags = tags or {}

    log_group = aws.cloudwatch.LogGroup(
        f"{name}-flow-log-group",
        name=f"/aws/vpc/{name}/flow-logs",
        retention_in_days=retention_days,
        kms_key_id=kms_key_arn,
        tags={**tags, "Module": "logging"}
    )

    role = aws.iam.Role(
        f"{name}-flow-log-role",
        name=f"{name}-flow-log-role",
        assume_role_policy=service_assume_role_policy("vpc-flow-logs.amazonaws.com"),
        tags={**tags, "Module": "logging"}
    )

    aws.iam.RolePolicy(
        f"{name}-flow-log-policy",
        role=role.id,
        policy=log_group.arn.apply(lambda arn: json.dumps(log_writer_policy([arn])))
    )

    flow_log = aws.ec2.FlowLog(
        f"{name}-flow-log",
        vpc_id=vpc_id,
        traffic_type="ALL",
        log_destination_type="cloud-watch-logs",
        log_destination=log_group.arn,
        iam_role_arn=role.arn,
        max_aggregation_interval=60,
        tags={**tags, "Name": f"{name}-flow-log", "Module": "logging"}
    )

    return {
        "log_group": log_group,
        "role": role,
        "flow_log": flow_log,
        "flow_log_id": flow_log.id
    }


def deploy_fluent_bit(name: str, cluster_name: pulumi.Output[str], region: str,
                      log_group_names: Dict[str, pulumi.Output[str]], role_arn: pulumi.Output[str],
                      chart_version: str, provider: k8s.Provider) -> Dict[str, Any]:
    """
    Deploy aws-for-fluent-bit using Helm

    Container logs go to the application log group, kubelet and containerd
    logs to the dataplane log group.
    """
    dataplane = pulumi.Output.from_input(log_group_names["dataplane"]).apply(
        lambda group: dataplane_fluent_bit_config(region, group)
    )

    namespace = k8s.core.v1.Namespace(
        f"{name}-logging-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=FLUENT_BIT_NAMESPACE,
            labels={"managed-by": "pulumi"}
        ),
        opts=pulumi.ResourceOptions(provider=provider)
    )

    release = k8s.helm.v3.Release(
        f"{name}-fluent-bit",
        name="aws-for-fluent-bit",
        chart="aws-for-fluent-bit",
        version=chart_version,
        namespace=FLUENT_BIT_NAMESPACE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://aws.github.io/eks-charts"
        ),
        values={
            "serviceAccount": {
                "create": True,
                "name": FLUENT_BIT_SERVICE_ACCOUNT,
                "annotations": {"eks.amazonaws.com/role-arn": role_arn}
            },
            "cloudWatchLogs": {
                "enabled": True,
                "region": region,
                "match": "kube.*",
                "logGroupName": log_group_names["application"],
                "autoCreateGroup": False
            },
            "firehose": {"enabled": False},
            "kinesis": {"enabled": False},
            "elasticsearch": {"enabled": False},
            "additionalInputs": dataplane.apply(lambda config: config["additionalInputs"]),
            "additionalOutputs": dataplane.apply(lambda config: config["additionalOutputs"]),
            "tolerations": [{"operator": "Exists"}]
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[namespace])
    )

    return {
        "namespace": namespace,
        "release": release,
        "status": release.status
    }


def create_logging_resources(name: str, cluster_name: pulumi.Output[str], cluster_name_value: str,
                             vpc_id: pulumi.Output[str], oidc_provider_arn: pulumi.Output[str],
                             oidc_issuer_url: pulumi.Output[str], kms_key_arn: pulumi.Input[str],
                             region: str, provider: k8s.Provider, retention_days: int = 90,
                             enable_flow_logs: bool = True, chart_version: str = "0.1.34",
                             tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create complete logging infrastructure

    Args:
        name: Resource name prefix
        cluster_name: EKS cluster name output
        cluster_name_value: EKS cluster name as configured (for log group paths)
        vpc_id: VPC for flow logs
        oidc_provider_arn: Cluster OIDC provider ARN
        oidc_issuer_url: Cluster OIDC issuer URL
        kms_key_arn: KMS key for log group encryption
        region: AWS region
        provider: Kubernetes provider
        retention_days: Log retention
        enable_flow_logs: Create VPC flow logs
        chart_version: aws-for-fluent-bit chart version
        tags: Additional tags

    Returns:
        Dict with all logging resources and outputs
    """
    tags = tags or {}

    groups_result = create_log_groups(name, cluster_name_value, retention_days, kms_key_arn, tags)

    flow_logs_result = None
    if enable_flow_logs:
        flow_logs_result = create_vpc_flow_logs(name, vpc_id, retention_days, kms_key_arn, tags)
    else:
        pulumi.log.warn(f"VPC flow logs are disabled for {name}")

    fluent_bit_role = create_irsa_role(
        f"{name}-fluent-bit",
        oidc_provider_arn,
        oidc_issuer_url,
        namespace=FLUENT_BIT_NAMESPACE,
        service_account=FLUENT_BIT_SERVICE_ACCOUNT,
        policy_document=pulumi.Output.all(*groups_result["log_group_arns"].values()).apply(
            lambda arns: json.dumps(log_writer_policy(list(arns)))
        ),
        tags=tags
    )

    fluent_bit_result = deploy_fluent_bit(
        name, cluster_name, region, groups_result["log_group_names"],
        fluent_bit_role["role_arn"], chart_version, provider
    )

    return {
        "log_group_names": groups_result["log_group_names"],
        "flow_log_id": flow_logs_result["flow_log_id"] if flow_logs_result else None,
        "fluent_bit_role_arn": fluent_bit_role["role_arn"],
        "fluent_bit_status": fluent_bit_result["status"],
        # Keep references to resources for dependencies
        "_log_groups": groups_result["log_groups"],
        "_flow_logs": flow_logs_result,
        "_fluent_bit": fluent_bit_result["release"]
    }
