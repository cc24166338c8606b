"""
Pipeline steps
Builds the ordered command chains for infrastructure changes and application releases
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .settings import ReleaseSettings


INFRA_ACTIONS = ("preview", "up", "destroy", "refresh")


@dataclass
class Step:
    """One external command in a pipeline"""

    name: str
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    retries: int = 0
    allow_failure: bool = False
    cwd: Optional[str] = None
    timeout: Optional[float] = None

    @property
    def tool(self) -> str:
        return self.argv[0]


def infra_steps(stack: str, action: str = "preview", backend_url: str = None,
                secrets_provider: str = None, cwd: str = None) -> List[Step]:
    """
    Steps for a Pulumi lifecycle action on one stack

    Every action first selects (or creates) the stack. `up` runs a preview
    before applying so the diff lands in the log.

    Args:
        stack: Stack name, e.g. prod
        action: One of preview, up, destroy, refresh
        backend_url: Optional PULUMI_BACKEND_URL, e.g. s3://bucket?region=eu-west-1
        secrets_provider: Secrets provider used when the stack is created
        cwd: Directory holding Pulumi.yaml

    Returns:
        Ordered list of steps

    Raises:
        ValueError: on an unknown action
    """
    if action not in INFRA_ACTIONS:
        raise ValueError(f"Unknown infra action '{action}', expected one of {', '.join(INFRA_ACTIONS)}")

    env = {"PULUMI_BACKEND_URL": backend_url} if backend_url else {}

    select = ["pulumi", "stack", "select", stack, "--create"]
    if secrets_provider:
        select.append(f"--secrets-provider={secrets_provider}")

    steps = [Step("stack-select", select, env=env, cwd=cwd)]

    preview = Step("preview", ["pulumi", "preview", "--stack", stack, "--diff", "--non-interactive"],
                   env=env, cwd=cwd)

    if action == "preview":
        steps.append(preview)
    elif action == "up":
        steps.append(preview)
        steps.append(Step("up", ["pulumi", "up", "--stack", stack, "--yes", "--skip-preview",
                                 "--non-interactive"], env=env, cwd=cwd))
    elif action == "destroy":
        steps.append(Step("destroy", ["pulumi", "destroy", "--stack", stack, "--yes",
                                      "--non-interactive"], env=env, cwd=cwd))
    else:
        steps.append(Step("refresh", ["pulumi", "refresh", "--stack", stack, "--yes",
                                      "--non-interactive"], env=env, cwd=cwd))

    return steps


def release_steps(settings: ReleaseSettings) -> List[Step]:
    """
    Steps for releasing one image: gates first, deploy last

    Any failing scan or policy check stops the chain before the image is
    pushed, and nothing is deployed unless it was signed and attested.
    """
    image = settings.image

    values_args: List[str] = []
    for values_file in settings.values:
        values_args += ["-f", values_file]
    # Rendered and deployed manifests must reference the same image
    chart_args = values_args + [
        "--set", f"image.repository={settings.registry.rstrip('/')}/{settings.repository}",
        "--set", f"image.tag={settings.tag}",
    ]

    return [
        Step("scan-source", ["trivy", "fs", "--exit-code", "1", "--severity", settings.severity,
                             "--scanners", "vuln,secret", settings.context]),
        Step("scan-config", ["trivy", "config", "--exit-code", "1", "--severity", settings.severity,
                             settings.context]),
        Step("render-chart", ["helm", "template", settings.release, settings.chart,
                              "--namespace", settings.namespace, *chart_args,
                              "--output-dir", settings.rendered_dir]),
        Step("policy-check", ["kyverno", "apply", settings.policies_path,
                              "--resource", settings.rendered_dir]),
        Step("build", ["docker", "build", "-f", settings.dockerfile, "-t", image, settings.context]),
        Step("scan-image", ["trivy", "image", "--exit-code", "1", "--severity", settings.severity,
                            "--ignore-unfixed", image]),
        Step("sbom", ["syft", image, "-o", f"spdx-json={settings.sbom_path}"]),
        Step("push", ["docker", "push", image], retries=settings.push_retries),
        Step("sign", ["cosign", "sign", "--yes", "--key", settings.cosign_key, image],
             env={"AWS_REGION": settings.aws_region}),
        Step("attest", ["cosign", "attest", "--yes", "--key", settings.cosign_key,
                        "--type", "spdxjson", "--predicate", settings.sbom_path, image],
             env={"AWS_REGION": settings.aws_region}),
        Step("deploy", ["helm", "upgrade", "--install", settings.release, settings.chart,
                        "--namespace", settings.namespace, "--create-namespace", *chart_args,
                        "--atomic", "--wait", "--timeout", settings.helm_timeout]),
    ]
