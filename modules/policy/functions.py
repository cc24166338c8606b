"""
Policy Module Functions
Kyverno admission controller and the cluster policies it enforces
"""

import pulumi
import pulumi_kubernetes as k8s
import yaml
from typing import Dict, List, Any, Optional

from modules.logging.functions import FLUENT_BIT_NAMESPACE
from modules.vault.functions import VAULT_NAMESPACE


KYVERNO_NAMESPACE = "kyverno"
# Platform namespaces run vendor charts whose images and security contexts
# are managed here, not by the release pipeline
EXCLUDED_NAMESPACES = ["kube-system", KYVERNO_NAMESPACE, VAULT_NAMESPACE, FLUENT_BIT_NAMESPACE]


def _cluster_policy(name: str, title: str, description: str, rules: List[Dict[str, Any]],
                    validation_failure_action: str, background: bool = True) -> Dict[str, Any]:
    return {
        "apiVersion": "kyverno.io/v1",
        "kind": "ClusterPolicy",
        "metadata": {
            "name": name,
            "annotations": {
                "policies.kyverno.io/title": title,
                "policies.kyverno.io/category": "Pod Security",
                "policies.kyverno.io/severity": "high",
                "policies.kyverno.io/description": description
            }
        },
        "spec": {
            "validationFailureAction": validation_failure_action,
            "background": background,
            "rules": rules
        }
    }


def _pod_rule(name: str, excluded_namespaces: List[str], **body) -> Dict[str, Any]:
    return {
        "name": name,
        "match": {"any": [{"resources": {"kinds": ["Pod"]}}]},
        "exclude": {"any": [{"resources": {"namespaces": list(excluded_namespaces)}}]},
        **body
    }


def disallow_privileged_containers(action: str = "Enforce",
                                   excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    privileged_false = {"=(securityContext)": {"=(privileged)": "false"}}
    return _cluster_policy(
        "disallow-privileged-containers",
        "Disallow Privileged Containers",
        "Privileged containers have full access to the host and are not allowed.",
        [_pod_rule(
            "privileged-containers",
            excluded_namespaces,
            validate={
                "message": "Privileged mode is disallowed. The fields spec.containers[*].securityContext.privileged, "
                           "spec.initContainers[*].securityContext.privileged and "
                           "spec.ephemeralContainers[*].securityContext.privileged must be unset or false.",
                "pattern": {
                    "spec": {
                        "=(ephemeralContainers)": [privileged_false],
                        "=(initContainers)": [privileged_false],
                        "containers": [privileged_false]
                    }
                }
            }
        )],
        action
    )


def require_run_as_non_root(action: str = "Enforce", excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    container_non_root = {"=(securityContext)": {"=(runAsNonRoot)": True}}
    return _cluster_policy(
        "require-run-as-non-root",
        "Require Run As Non-Root",
        "Containers must run as a non-root user, set at pod or container level.",
        [_pod_rule(
            "run-as-non-root",
            excluded_namespaces,
            validate={
                "message": "Running as root is not allowed. Either spec.securityContext.runAsNonRoot or "
                           "every container's securityContext.runAsNonRoot must be true.",
                "anyPattern": [
                    {
                        "spec": {
                            "securityContext": {"runAsNonRoot": True},
                            "=(initContainers)": [container_non_root],
                            "containers": [container_non_root]
                        }
                    },
                    {
                        "spec": {
                            "=(initContainers)": [{"securityContext": {"runAsNonRoot": True}}],
                            "containers": [{"securityContext": {"runAsNonRoot": True}}]
                        }
                    }
                ]
            }
        )],
        action
    )


def require_resource_limits(action: str = "Enforce", excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    return _cluster_policy(
        "require-resource-limits",
        "Require Requests and Limits",
        "Every container must declare CPU and memory requests and a memory limit.",
        [_pod_rule(
            "validate-resources",
            excluded_namespaces,
            validate={
                "message": "CPU and memory resource requests and a memory limit are required.",
                "pattern": {
                    "spec": {
                        "containers": [{
                            "resources": {
                                "requests": {"memory": "?*", "cpu": "?*"},
                                "limits": {"memory": "?*"}
                            }
                        }]
                    }
                }
            }
        )],
        action
    )


def disallow_latest_tag(action: str = "Enforce", excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    return _cluster_policy(
        "disallow-latest-tag",
        "Disallow Latest Tag",
        "Images must carry an explicit tag other than latest.",
        [
            _pod_rule(
                "require-image-tag",
                excluded_namespaces,
                validate={
                    "message": "An image tag is required.",
                    "pattern": {"spec": {"containers": [{"image": "*:*"}]}}
                }
            ),
            _pod_rule(
                "validate-image-tag",
                excluded_namespaces,
                validate={
                    "message": "Using a mutable image tag e.g. 'latest' is not allowed.",
                    "pattern": {"spec": {"containers": [{"image": "!*:latest"}]}}
                }
            )
        ],
        action
    )


def restrict_image_registries(registries: List[str], action: str = "Enforce",
                              excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    """Only allow images pulled from the given registry hosts"""
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    if not registries:
        raise ValueError("At least one allowed registry is required")
    image_pattern = " | ".join(f"{registry.rstrip('/')}/*" for registry in registries)
    return _cluster_policy(
        "restrict-image-registries",
        "Restrict Image Registries",
        "Images may only come from the platform registries.",
        [_pod_rule(
            "validate-registries",
            excluded_namespaces,
            validate={
                "message": f"Unknown image registry. Allowed: {', '.join(registries)}",
                "pattern": {
                    "spec": {
                        "=(ephemeralContainers)": [{"image": image_pattern}],
                        "=(initContainers)": [{"image": image_pattern}],
                        "containers": [{"image": image_pattern}]
                    }
                }
            }
        )],
        action
    )


def verify_image_signatures(registry: str, public_key: str, action: str = "Enforce",
                            excluded_namespaces: List[str] = None) -> Dict[str, Any]:
    """
    Require a Cosign signature, made with the pipeline's key, on every platform image

    Verified images are rewritten to their digest so the admitted pod runs
    exactly the signed content.
    """
    excluded_namespaces = EXCLUDED_NAMESPACES if excluded_namespaces is None else excluded_namespaces
    if not public_key.strip():
        raise ValueError("A Cosign public key is required to verify image signatures")
    policy = _cluster_policy(
        "verify-image-signatures",
        "Verify Image Signatures",
        "Images from the platform registry must be signed by the release pipeline.",
        [_pod_rule(
            "verify-cosign-signature",
            excluded_namespaces,
            verifyImages=[{
                "imageReferences": [f"{registry.rstrip('/')}/*"],
                "mutateDigest": True,
                "verifyDigest": True,
                "required": True,
                "attestors": [{
                    "count": 1,
                    "entries": [{"keys": {"publicKeys": public_key.strip()}}]
                }]
            }]
        )],
        action,
        background=False
    )
    policy["spec"]["webhookTimeoutSeconds"] = 30
    return policy


def build_cluster_policies(registry: str, cosign_public_key: Optional[str] = None,
                           action: str = "Enforce",
                           excluded_namespaces: List[str] = None) -> List[Dict[str, Any]]:
    """
    Build every cluster policy for the platform

    Signature verification is included only when a Cosign public key is known.
    """
    policies = [
        disallow_privileged_containers(action, excluded_namespaces),
        require_run_as_non_root(action, excluded_namespaces),
        require_resource_limits(action, excluded_namespaces),
        disallow_latest_tag(action, excluded_namespaces),
        restrict_image_registries([registry, "public.ecr.aws"], action, excluded_namespaces),
    ]
    if cosign_public_key:
        policies.append(verify_image_signatures(registry, cosign_public_key, action, excluded_namespaces))
    return policies


def render_policies_yaml(policies: List[Dict[str, Any]]) -> str:
    """Render policies as a multi-document YAML stream for `kyverno apply`"""
    return yaml.safe_dump_all(policies, sort_keys=False, default_flow_style=False)


def deploy_kyverno(name: str, chart_version: str, provider: k8s.Provider) -> Dict[str, Any]:
    """
    Deploy Kyverno using Helm, with three admission controller replicas
    """
    namespace = k8s.core.v1.Namespace(
        f"{name}-kyverno-namespace",
        metadata=k8s.meta.v1.ObjectMetaArgs(
            name=KYVERNO_NAMESPACE,
            labels={"managed-by": "pulumi"}
        ),
        opts=pulumi.ResourceOptions(provider=provider)
    )

    release = k8s.helm.v3.Release(
        f"{name}-kyverno",
        name="kyverno",
        chart="kyverno",
        version=chart_version,
        namespace=KYVERNO_NAMESPACE,
        repository_opts=k8s.helm.v3.RepositoryOptsArgs(
            repo="https://kyverno.github.io/kyverno/"
        ),
        values={
            "admissionController": {"replicas": 3},
            "backgroundController": {"replicas": 2},
            "cleanupController": {"replicas": 2},
            "reportsController": {"replicas": 2},
            "config": {"resourceFiltersExcludeNamespaces": EXCLUDED_NAMESPACES}
        },
        opts=pulumi.ResourceOptions(provider=provider, depends_on=[namespace])
    )

    return {
        "namespace": namespace,
        "release": release,
        "status": release.status
    }


def create_policy_resources(name: str, registry: str, provider: k8s.Provider,
                            chart_version: str = "3.2.6", validation_failure_action: str = "Enforce",
                            cosign_public_key: Optional[str] = None) -> Dict[str, Any]:
    """
    Deploy Kyverno and apply the platform cluster policies

    Args:
        name: Resource name prefix
        registry: ECR registry host images must come from
        provider: Kubernetes provider
        chart_version: Kyverno chart version
        validation_failure_action: "Enforce" blocks, "Audit" only reports
        cosign_public_key: PEM public key of the pipeline signing key

    Returns:
        Dict with Kyverno resources and applied policy names
    """
    kyverno_result = deploy_kyverno(name, chart_version, provider)

    if not cosign_public_key:
        pulumi.log.warn("No cosign_public_key configured, image signature verification is not enforced")

    policies = build_cluster_policies(registry, cosign_public_key, validation_failure_action)

    resources = {}
    for policy in policies:
        policy_name = policy["metadata"]["name"]
        resources[policy_name] = k8s.apiextensions.CustomResource(
            f"{name}-{policy_name}",
            api_version=policy["apiVersion"],
            kind=policy["kind"],
            metadata=policy["metadata"],
            spec=policy["spec"],
            opts=pulumi.ResourceOptions(provider=provider, depends_on=[kyverno_result["release"]])
        )

    return {
        "kyverno_status": kyverno_result["status"],
        "policy_names": list(resources.keys()),
        "validation_failure_action": validation_failure_action,
        # Keep references to resources for dependencies
        "_kyverno": kyverno_result["release"],
        "_policies": resources
    }
