"""
Vault Module Functions
HashiCorp Vault in HA Raft mode with AWS KMS auto-unseal
"""

import json
import pulumi
import pulumi_kubernetes as k8s
from typing import Dict, Any

from modules.iam.functions import create_irsa_role


VAULT_NAMESPACE = "vault"
VAULT_SERVICE_ACCOUNT = "vault"


def unseal_policy(kms_key_arn: str) -> Dict[str, Any]:
    """Policy letting Vault wrap and unwrap its root key with the unseal key"""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": [
                    "kms:Encrypt",
                    "kms:Decrypt",
                    "kms:DescribeKey"
                ],
                "Resource": kms_key_arn
            }
        ]
    }


def server_config(region: str, kms_key_id: str, replicas: int = 3) -> str:
    """
    Vault server HCL for Raft storage and awskms seal

    The retry_join addresses come from the StatefulSet pod names.
    """
    retry_joins = "".join(
        f"""
  retry_join {{
    leader_api_addr = "http://vault-{i}.vault-internal:8200"
  }}"""
        for i in range(replicas)
    )
    return f"""ui = true

listener "tcp" {{
  tls_disable = 1
  address = "[::]:8200"
  cluster_address = "[::]:8201"
}}

storage "raft" {{
  path = "/vault/data"{retry_joins}
}}

seal "awskms" {{
  region = "{region}"
  kms_key_id = "{kms_key_id}"
}}

service_registration "kubernetes" {{}}
"""


def deploy_vault(name: str, region: str, kms_key_id: pulumi.Input[str], role_arn: pulumi.Output[str],
                 replicas: int, chart_version: str, provider: k8s.Provider) -> Dict[str, Any]:
    """
    Deploy Vault using Helm
    """
    namespace = k8s.core.v1.Namespace(
        f"{name}-vault-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=VAULT_NAMESPACE,
            labels={"managed-by": "pulumi"}
        ),
        opts=pulumi.ResourceOptions(provider=provider)
    )

    release = k8s.helm.v3.Release(
        f"{name}-vault",
        name="vault",
        chart="vault",
        version=chart_version,
        namespace=VAULT_NAMESPACE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://helm.releases.hashicorp.com"
        ),
        values={
            "injector": {"enabled": True},
            "server": {
                "serviceAccount": {
                    "create": True,
                    "name": VAULT_SERVICE_ACCOUNT,
                    "annotations": {"eks.amazonaws.com/role-arn": role_arn}
                },
                "dataStorage": {"enabled": True, "size": "10Gi", "storageClass": "gp2"},
                "ha": {
                    "enabled": True,
                    "replicas": replicas,
                    "raft": {
                        "enabled": True,
                        "setNodeId": True,
                        "config": pulumi.Output.from_input(kms_key_id).apply(
                            lambda key_id: server_config(region, key_id, replicas)
                        )
                    }
                },
                "resources": {
                    "requests": {"cpu": "250m", "memory": "256Mi"},
                    "limits": {"memory": "512Mi"}
                }
            }
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[namespace])
    )

    return {
        "namespace": namespace,
        "release": release,
        "status": release.status
    }


def create_vault_resources(name: str, oidc_provider_arn: pulumi.Output[str], oidc_issuer_url: pulumi.Output[str],
                           kms_key_arn: pulumi.Output[str], kms_key_id: pulumi.Output[str], region: str,
                           provider: k8s.Provider, replicas: int = 3, chart_version: str = "0.28.1",
                           tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create Vault unseal role and deploy Vault

    Args:
        name: Resource name prefix
        oidc_provider_arn: Cluster OIDC provider ARN
        oidc_issuer_url: Cluster OIDC issuer URL
        kms_key_arn: ARN of the unseal key
        kms_key_id: ID of the unseal key
        region: AWS region
        provider: Kubernetes provider
        replicas: Vault server replicas (Raft peers)
        chart_version: Vault chart version
        tags: Additional tags

    Returns:
        Dict with Vault resources and outputs
    """
    tags = tags or {}

    if replicas % 2 == 0:
        pulumi.log.warn(f"Vault runs {replicas} Raft peers, an odd count tolerates the same failures with fewer nodes")

    role_result = create_irsa_role(
        f"{name}-vault",
        oidc_provider_arn,
        oidc_issuer_url,
        namespace=VAULT_NAMESPACE,
        service_account=VAULT_SERVICE_ACCOUNT,
        policy_document=pulumi.Output.from_input(kms_key_arn).apply(lambda arn: json.dumps(unseal_policy(arn))),
        tags=tags
    )

    vault_result = deploy_vault(name, region, kms_key_id, role_result["role_arn"], replicas, chart_version, provider)

    return {
        "vault_role_arn": role_result["role_arn"],
        "vault_status": vault_result["status"],
        "vault_address": f"http://vault.{VAULT_NAMESPACE}.svc:8200",
        # Keep references to resources for dependencies
        "_vault_role": role_result["role"],
        "_vault": vault_result["release"]
    }
