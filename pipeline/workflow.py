"""
CI workflow rendering
Writes the release chain as a GitHub Actions workflow so CI runs the same commands
"""

import shlex
from dataclasses import replace
from typing import Any, Dict, List

import yaml

from .settings import ReleaseSettings
from .steps import Step, release_steps


SETUP_ACTIONS = [
    {"uses": "actions/checkout@v4"},
    {
        "name": "Configure AWS credentials",
        "uses": "aws-actions/configure-aws-credentials@v4",
        "with": {
            "role-to-assume": "${{ secrets.CI_ROLE_ARN }}",
            "aws-region": None,
        },
    },
    {"name": "Log in to ECR", "uses": "aws-actions/amazon-ecr-login@v2"},
    {"uses": "actions/setup-python@v5", "with": {"python-version": "3.12"}},
    {"name": "Install pipeline", "run": "pip install ."},
    {"name": "Install Trivy", "uses": "aquasecurity/setup-trivy@v0.2.2"},
    {"name": "Install Kyverno CLI", "uses": "kyverno/action-install-cli@v0.2.0"},
    {"name": "Install Cosign", "uses": "sigstore/cosign-installer@v3"},
    {"name": "Install Syft", "uses": "anchore/sbom-action/download-syft@v0"},
    {"name": "Install Helm", "uses": "azure/setup-helm@v4"},
]


def workflow_step(step: Step) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"name": step.name, "run": shlex.join(step.argv)}
    if step.env:
        entry["env"] = dict(step.env)
    if step.allow_failure:
        entry["continue-on-error"] = True
    return entry


def build_workflow(settings: ReleaseSettings, branches: List[str] = None,
                   config_path: str = "pipeline.yaml") -> Dict[str, Any]:
    """Workflow document for the release chain; the image tag is the commit SHA"""
    branches = branches or ["main"]
    ci_settings = replace(settings, tag="${{ github.sha }}")

    setup = [dict(action) for action in SETUP_ACTIONS]
    setup[1] = {**setup[1], "with": {**setup[1]["with"], "aws-region": settings.aws_region}}

    render_policies = ["python", "-m", "pipeline", "render-policies", "--config", config_path]
    steps = setup + [
        {"name": "policies", "run": shlex.join(render_policies)},
    ] + [workflow_step(step) for step in release_steps(ci_settings)]

    return {
        "name": "release",
        "on": {"push": {"branches": branches}},
        "permissions": {"id-token": "write", "contents": "read"},
        "jobs": {
            "release": {
                "runs-on": "ubuntu-latest",
                "env": {
                    "COSIGN_KEY": settings.cosign_key,
                    "COSIGN_PASSWORD": "${{ secrets.COSIGN_PASSWORD }}",
                },
                "steps": steps,
            }
        },
    }


def render_workflow(settings: ReleaseSettings, branches: List[str] = None,
                    config_path: str = "pipeline.yaml") -> str:
    return yaml.safe_dump(build_workflow(settings, branches, config_path), sort_keys=False, width=120)
