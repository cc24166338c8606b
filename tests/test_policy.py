"""
Unit tests for the Kyverno cluster policies
"""

import unittest
from fnmatch import fnmatchcase
from contextlib import ExitStack
from unittest.mock import Mock, patch
import sys
import os

import yaml

# Add the project root to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.policy.functions import (
    build_cluster_policies,
    create_policy_resources,
    disallow_latest_tag,
    render_policies_yaml,
    restrict_image_registries,
    verify_image_signatures,
)

REGISTRY = "123456789012.dkr.ecr.eu-west-1.amazonaws.com"
PUBLIC_KEY = "-----BEGIN PUBLIC KEY-----\nMFkwEwYHKoZIzj0CAQYIKoZIzj0DAQcDQgAE\n-----END PUBLIC KEY-----\n"


class TestPolicyBuilders(unittest.TestCase):
    """Test individual policy documents"""

    def test_policies_without_key(self):
        policies = build_cluster_policies(REGISTRY)
        names = [p["metadata"]["name"] for p in policies]

        self.assertEqual(names, [
            "disallow-privileged-containers",
            "require-run-as-non-root",
            "require-resource-limits",
            "disallow-latest-tag",
            "restrict-image-registries",
        ])
        for policy in policies:
            self.assertEqual(policy["kind"], "ClusterPolicy")
            self.assertEqual(policy["spec"]["validationFailureAction"], "Enforce")

    def test_policies_with_key_verify_signatures(self):
        policies = build_cluster_policies(REGISTRY, PUBLIC_KEY, action="Audit")

        self.assertEqual(len(policies), 6)
        self.assertEqual(policies[-1]["metadata"]["name"], "verify-image-signatures")
        self.assertTrue(all(p["spec"]["validationFailureAction"] == "Audit" for p in policies))

    def test_system_namespaces_excluded(self):
        rule = disallow_latest_tag()["spec"]["rules"][0]

        self.assertEqual(rule["exclude"]["any"][0]["resources"]["namespaces"],
                         ["kube-system", "kyverno", "vault", "amazon-cloudwatch"])

    def test_registry_pattern(self):
        policy = restrict_image_registries([REGISTRY + "/", "public.ecr.aws"])
        pattern = policy["spec"]["rules"][0]["validate"]["pattern"]["spec"]["containers"][0]["image"]

        self.assertEqual(pattern, f"{REGISTRY}/* | public.ecr.aws/*")

    def test_registry_list_required(self):
        with self.assertRaises(ValueError):
            restrict_image_registries([])

    def test_signature_verification(self):
        policy = verify_image_signatures(REGISTRY, PUBLIC_KEY)
        verify = policy["spec"]["rules"][0]["verifyImages"][0]

        self.assertEqual(verify["imageReferences"], [f"{REGISTRY}/*"])
        self.assertTrue(verify["mutateDigest"])
        self.assertEqual(verify["attestors"][0]["entries"][0]["keys"]["publicKeys"], PUBLIC_KEY.strip())
        self.assertFalse(policy["spec"]["background"])
        self.assertEqual(policy["spec"]["webhookTimeoutSeconds"], 30)

    def test_signature_verification_needs_key(self):
        with self.assertRaises(ValueError):
            verify_image_signatures(REGISTRY, "  ")

    def test_render_yaml_stream(self):
        policies = build_cluster_policies(REGISTRY)
        documents = list(yaml.safe_load_all(render_policies_yaml(policies)))

        self.assertEqual(documents, policies)


def image_admitted(policy, namespace, image):
    """Evaluate the container image patterns of a policy the way Kyverno matches them"""
    for rule in policy["spec"]["rules"]:
        if namespace in rule["exclude"]["any"][0]["resources"]["namespaces"]:
            continue
        containers = rule.get("validate", {}).get("pattern", {}).get("spec", {}).get("containers", [])
        for container in containers:
            if "image" not in container:
                continue
            alternatives = [alt.strip() for alt in container["image"].split("|")]
            matched = any(
                not fnmatchcase(image, alt[1:]) if alt.startswith("!") else fnmatchcase(image, alt)
                for alt in alternatives
            )
            if not matched:
                return False
    return True


class TestPlatformWorkloads(unittest.TestCase):
    """The platform's own charts must pass the policies it installs"""

    PLATFORM_IMAGES = [
        ("vault", "hashicorp/vault:1.17.2"),
        ("vault", "hashicorp/vault-k8s:1.4.2"),
        ("amazon-cloudwatch", "public.ecr.aws/aws-observability/aws-for-fluent-bit:2.32.2"),
        ("kube-system", "public.ecr.aws/eks/aws-load-balancer-controller:v2.8.2"),
        ("kyverno", "ghcr.io/kyverno/kyverno:v1.12.5"),
    ]

    def test_platform_images_admitted(self):
        policies = build_cluster_policies(REGISTRY, PUBLIC_KEY)

        for namespace, image in self.PLATFORM_IMAGES:
            for policy in policies:
                with self.subTest(namespace=namespace, image=image, policy=policy["metadata"]["name"]):
                    self.assertTrue(image_admitted(policy, namespace, image))

    def test_application_images_still_restricted(self):
        registries = restrict_image_registries([REGISTRY, "public.ecr.aws"])
        latest = disallow_latest_tag()

        self.assertFalse(image_admitted(registries, "apps", "hashicorp/vault:1.17.2"))
        self.assertTrue(image_admitted(registries, "apps", f"{REGISTRY}/secure-platform-dev/api:v1"))
        self.assertFalse(image_admitted(latest, "apps", f"{REGISTRY}/secure-platform-dev/api:latest"))


class TestPolicyResources(unittest.TestCase):
    """Test Kyverno deployment and policy resources"""

    def test_policy_function_structure(self):
        with ExitStack() as stack:
            mock_k8s = stack.enter_context(patch('modules.policy.functions.k8s'))
            mock_pulumi = stack.enter_context(patch('modules.policy.functions.pulumi'))

            result = create_policy_resources(name="test", registry=REGISTRY, provider=Mock())

            self.assertEqual(len(result["policy_names"]), 5)
            self.assertEqual(mock_k8s.apiextensions.CustomResource.call_count, 5)
            mock_pulumi.log.warn.assert_called_once()
            release_kwargs = mock_k8s.helm.v3.Release.call_args.kwargs
            self.assertEqual(release_kwargs["chart"], "kyverno")

    def test_policy_resources_with_key(self):
        with ExitStack() as stack:
            mock_k8s = stack.enter_context(patch('modules.policy.functions.k8s'))
            mock_pulumi = stack.enter_context(patch('modules.policy.functions.pulumi'))

            result = create_policy_resources(name="test", registry=REGISTRY, provider=Mock(),
                                             cosign_public_key=PUBLIC_KEY)

            self.assertIn("verify-image-signatures", result["policy_names"])
            mock_pulumi.log.warn.assert_not_called()
            kinds = {c.kwargs["kind"] for c in mock_k8s.apiextensions.CustomResource.call_args_list}
            self.assertEqual(kinds, {"ClusterPolicy"})


if __name__ == '__main__':
    unittest.main()
