"""
ECR Module Functions
Private container registries with scanning, KMS encryption and lifecycle rules
"""

import json
import pulumi
import pulumi_aws as aws
from typing import Dict, List, Any


def lifecycle_policy(keep_image_count: int, untagged_expiry_days: int = 7) -> Dict[str, Any]:
    """
    Build the lifecycle policy document

    Untagged images (leftovers of re-pushed builds) expire first, then only
    the newest `keep_image_count` images are kept.
    """
    return {
        "rules": [
            {
                "rulePriority": 1,
                "description": f"Expire untagged images after {untagged_expiry_days} days",
                "selection": {
                    "tagStatus": "untagged",
                    "countType": "sinceImagePushed",
                    "countUnit": "days",
                    "countNumber": untagged_expiry_days
                },
                "action": {"type": "expire"}
            },
            {
                "rulePriority": 2,
                "description": f"Keep last {keep_image_count} images",
                "selection": {
                    "tagStatus": "any",
                    "countType": "imageCountMoreThan",
                    "countNumber": keep_image_count
                },
                "action": {"type": "expire"}
            }
        ]
    }


def push_policy(repository_arns: List[str]) -> Dict[str, Any]:
    """IAM policy allowing CI to push and sign images in the given repositories"""
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Effect": "Allow",
                "Action": ["ecr:GetAuthorizationToken"],
                "Resource": "*"
            },
            {
                "Effect": "Allow",
                "Action": [
                    "ecr:BatchCheckLayerAvailability",
                    "ecr:GetDownloadUrlForLayer",
                    "ecr:BatchGetImage",
                    "ecr:PutImage",
                    "ecr:InitiateLayerUpload",
                    "ecr:UploadLayerPart",
                    "ecr:CompleteLayerUpload",
                    "ecr:DescribeImages",
                    "ecr:DescribeImageScanFindings"
                ],
                "Resource": repository_arns
            }
        ]
    }


def create_repository(name: str, repository: str, kms_key_arn: pulumi.Input[str],
                      keep_image_count: int = 30, tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create a private repository with immutable tags and scan on push

    Args:
        name: Resource name prefix (also the repository namespace)
        repository: Repository name within the namespace
        kms_key_arn: KMS key for image encryption
        keep_image_count: Images kept by the lifecycle policy
        tags: Additional tags

    Returns:
        Dict with repository resources and outputs
    """
    tags = tags or {}

    repo = aws.ecr.Repository(
        f"{name}-{repository}-repo",
        name=f"{name}/{repository}",
        # Immutable tags so a signed digest can never be swapped under a tag
        image_tag_mutability="IMMUTABLE",
        image_scanning_configuration=aws.ecr.RepositoryImageScanningConfigurationArgs(
            scan_on_push=True
        ),
        encryption_configurations=[aws.ecr.RepositoryEncryptionConfigurationArgs(
            encryption_type="KMS",
            kms_key=kms_key_arn
        )],
        tags={
            **tags,
            "Name": f"{name}/{repository}",
            "Module": "ecr"
        }
    )

    lifecycle = aws.ecr.LifecyclePolicy(
        f"{name}-{repository}-lifecycle",
        repository=repo.name,
        policy=json.dumps(lifecycle_policy(keep_image_count))
    )

    return {
        "repository": repo,
        "lifecycle": lifecycle,
        "repository_url": repo.repository_url,
        "repository_arn": repo.arn
    }


def create_ecr_resources(name: str, repositories: List[str], kms_key_arn: pulumi.Input[str],
                         account_id: str, region: str, keep_image_count: int = 30,
                         tags: Dict[str, str] = None) -> Dict[str, Any]:
    """
    Create repositories and the CI push policy scoped to them

    Returns:
        Dict with all ECR resources and outputs
    """
    tags = tags or {}

    if len(set(repositories)) != len(repositories):
        raise ValueError(f"Duplicate ECR repository names: {repositories}")

    repo_results = {
        repository: create_repository(name, repository, kms_key_arn, keep_image_count, tags)
        for repository in repositories
    }

    ci_push_policy = aws.iam.Policy(
        f"{name}-ecr-push-policy",
        name=f"{name}-ecr-push",
        description="Allows CI to push images to the platform repositories",
        policy=pulumi.Output.all(*[result["repository_arn"] for result in repo_results.values()]).apply(
            lambda arns: json.dumps(push_policy(list(arns)))
        ),
        tags={**tags, "Module": "ecr"}
    )

    registry_url = f"{account_id}.dkr.ecr.{region}.amazonaws.com"

    return {
        "registry_url": registry_url,
        "repository_urls": {repository: result["repository_url"] for repository, result in repo_results.items()},
        "ci_push_policy_arn": ci_push_policy.arn,
        "docker_login_command": (
            f"aws ecr get-login-password --region {region} | "
            f"docker login --username AWS --password-stdin {registry_url}"
        ),
        # Keep references to resources for dependencies
        "_repositories": {repository: result["repository"] for repository, result in repo_results.items()},
        "_ci_push_policy": ci_push_policy
    }
