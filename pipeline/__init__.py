"""
Release and infrastructure pipeline
Runs Pulumi, scanners, signers and Helm as gated subprocess steps
"""

from .runner import PipelineRunner, PipelineError, StepFailedError, StepResult, ToolNotFoundError
from .settings import ReleaseSettings
from .steps import Step, infra_steps, release_steps
from .workflow import render_workflow

__all__ = [
    "PipelineRunner",
    "PipelineError",
    "StepFailedError",
    "StepResult",
    "ToolNotFoundError",
    "ReleaseSettings",
    "Step",
    "infra_steps",
    "release_steps",
    "render_workflow",
]
