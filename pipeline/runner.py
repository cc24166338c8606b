"""
Pipeline runner
Executes steps one after another and stops at the first failing gate
"""

import logging
import os
import shutil
import subprocess
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from .steps import Step

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Base class for pipeline failures"""


class ToolNotFoundError(PipelineError):
    """The executable a step needs is not on PATH"""

    def __init__(self, step_name: str, tool: str):
        self.step_name = step_name
        self.tool = tool
        super().__init__(f"Step '{step_name}' needs '{tool}', which was not found on PATH")


class StepFailedError(PipelineError):
    """A step exited non-zero"""

    def __init__(self, step_name: str, returncode: int, output_tail: str = ""):
        self.step_name = step_name
        self.returncode = returncode
        self.output_tail = output_tail
        message = f"Step '{step_name}' failed with exit code {returncode}"
        if output_tail:
            message = f"{message}:\n{output_tail}"
        super().__init__(message)


@dataclass
class StepResult:
    name: str
    returncode: int
    attempts: int = 1
    skipped: bool = False
    output: str = ""

    @property
    def succeeded(self) -> bool:
        return self.returncode == 0


def tail(output: str, lines: int) -> str:
    return "\n".join(output.rstrip().splitlines()[-lines:])


class PipelineRunner:
    """
    Runs pipeline steps sequentially

    Args:
        dry_run: Log the commands without executing them
        initial_delay: First backoff delay in seconds for steps with retries
        tail_lines: Lines of output kept on a StepFailedError
        sleep: Sleep function, replaceable in tests
    """

    def __init__(self, dry_run: bool = False, initial_delay: float = 2.0, tail_lines: int = 20,
                 sleep: Callable[[float], None] = time.sleep):
        self.dry_run = dry_run
        self.initial_delay = initial_delay
        self.tail_lines = tail_lines
        self.sleep = sleep

    def check_tools(self, steps: List[Step]) -> None:
        """Fail before the first step if any executable is missing"""
        for step in steps:
            if shutil.which(step.tool) is None:
                raise ToolNotFoundError(step.name, step.tool)

    def _execute(self, step: Step) -> subprocess.CompletedProcess:
        env = {**os.environ, **step.env}
        return subprocess.run(
            step.argv,
            env=env,
            cwd=step.cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            universal_newlines=True,
            timeout=step.timeout,
            check=False
        )

    def run_step(self, step: Step) -> StepResult:
        """
        Run one step, retrying with exponential backoff when the step allows it

        Raises:
            StepFailedError: if the last attempt exits non-zero and the step
                does not allow failure
        """
        command = " ".join(step.argv)

        if self.dry_run:
            logger.info("[dry-run] %s: %s", step.name, command)
            return StepResult(step.name, 0, attempts=0, skipped=True)

        logger.info("Running %s: %s", step.name, command)

        delay = self.initial_delay
        attempts = step.retries + 1
        completed: Optional[subprocess.CompletedProcess] = None

        for attempt in range(1, attempts + 1):
            completed = self._execute(step)
            for line in (completed.stdout or "").splitlines():
                logger.debug("%s | %s", step.name, line)

            if completed.returncode == 0:
                logger.info("Step %s passed", step.name)
                return StepResult(step.name, 0, attempts=attempt, output=completed.stdout or "")

            if attempt < attempts:
                logger.warning("Step %s attempt %d failed, retrying in %.1fs",
                               step.name, attempt, delay)
                self.sleep(delay)
                delay *= 2

        output = completed.stdout or ""
        if step.allow_failure:
            logger.warning("Step %s failed with exit code %d, continuing",
                           step.name, completed.returncode)
            return StepResult(step.name, completed.returncode, attempts=attempts, output=output)

        logger.error("Step %s failed with exit code %d", step.name, completed.returncode)
        raise StepFailedError(step.name, completed.returncode, tail(output, self.tail_lines))

    def run(self, steps: List[Step]) -> List[StepResult]:
        """
        Run all steps in order

        Returns:
            One result per executed step

        Raises:
            ToolNotFoundError: if an executable is missing (checked before anything runs)
            StepFailedError: at the first gating failure; later steps are not run
        """
        if not self.dry_run:
            self.check_tools(steps)

        results = []
        for step in steps:
            results.append(self.run_step(step))

        logger.info("Pipeline finished: %d steps", len(results))
        return results
