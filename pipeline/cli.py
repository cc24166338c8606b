"""
Command line entry point: python -m pipeline {infra,release,render-workflow,render-policies}
"""

import argparse
import logging
import os
import sys
from typing import List, Optional

from modules.policy import build_cluster_policies, render_policies_yaml

from .runner import PipelineError, PipelineRunner
from .settings import ReleaseSettings
from .steps import INFRA_ACTIONS, infra_steps, release_steps
from .workflow import render_workflow

logger = logging.getLogger("pipeline")


def write_policies(settings: ReleaseSettings) -> str:
    """
    Write the admission policies the policy-check step evaluates

    Only the static policies are written; signature verification runs at admission.
    """
    os.makedirs(settings.build_dir, exist_ok=True)
    policies = build_cluster_policies(settings.registry)
    with open(settings.policies_path, "w") as f:
        f.write(render_policies_yaml(policies))
    logger.info("Wrote %d policies to %s", len(policies), settings.policies_path)
    return settings.policies_path


def load_settings(args: argparse.Namespace) -> ReleaseSettings:
    overrides = {
        "tag": getattr(args, "tag", None),
        "cosign_key": getattr(args, "cosign_key", None),
    }
    return ReleaseSettings.from_file(args.config, overrides)


def cmd_infra(args: argparse.Namespace) -> int:
    steps = infra_steps(
        args.stack,
        args.action,
        backend_url=args.backend_url,
        secrets_provider=args.secrets_provider,
        cwd=args.cwd
    )
    PipelineRunner(dry_run=args.dry_run).run(steps)
    return 0


def cmd_release(args: argparse.Namespace) -> int:
    settings = load_settings(args)
    write_policies(settings)
    results = PipelineRunner(dry_run=args.dry_run).run(release_steps(settings))
    if not args.dry_run:
        logger.info("Released %s (%d steps passed)", settings.image, len(results))
    return 0


def cmd_render_workflow(args: argparse.Namespace) -> int:
    content = render_workflow(load_settings(args), branches=args.branch, config_path=args.config)
    if args.output:
        directory = os.path.dirname(args.output)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(args.output, "w") as f:
            f.write(content)
        logger.info("Wrote workflow to %s", args.output)
    else:
        sys.stdout.write(content)
    return 0


def cmd_render_policies(args: argparse.Namespace) -> int:
    write_policies(load_settings(args))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="python -m pipeline", description=__doc__)
    parser.add_argument("-v", "--verbose", action="store_true", help="Log command output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    infra = subparsers.add_parser("infra", help="Run a Pulumi lifecycle action")
    infra.add_argument("action", choices=INFRA_ACTIONS)
    infra.add_argument("--stack", required=True)
    infra.add_argument("--backend-url", default=os.environ.get("PULUMI_BACKEND_URL"))
    infra.add_argument("--secrets-provider")
    infra.add_argument("--cwd", help="Directory holding Pulumi.yaml")
    infra.add_argument("--dry-run", action="store_true")
    infra.set_defaults(func=cmd_infra)

    release = subparsers.add_parser("release", help="Scan, build, sign and deploy an image")
    release.add_argument("--config", default="pipeline.yaml")
    release.add_argument("--tag")
    release.add_argument("--cosign-key")
    release.add_argument("--dry-run", action="store_true")
    release.set_defaults(func=cmd_release)

    workflow = subparsers.add_parser("render-workflow", help="Write the release chain as a CI workflow")
    workflow.add_argument("--config", default="pipeline.yaml")
    workflow.add_argument("--output", help="Destination file, stdout when omitted")
    workflow.add_argument("--branch", action="append", help="Branch triggering the workflow")
    workflow.set_defaults(func=cmd_render_workflow)

    policies = subparsers.add_parser("render-policies", help="Write admission policies for policy-check")
    policies.add_argument("--config", default="pipeline.yaml")
    policies.set_defaults(func=cmd_render_policies)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s"
    )

    try:
        return args.func(args)
    except (PipelineError, ValueError, OSError) as e:
        logger.error("%s", e)
        return 1
