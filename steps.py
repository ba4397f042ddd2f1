"""
Ordered step runner shared by the environment init and delete stages.

Each stage is a list of named steps. Steps run strictly in order and the
runner stops at the first failure, reporting which step failed.
"""

import sys
from dataclasses import dataclass
from typing import Callable, List, Optional


@dataclass
class Step:
    """A named unit of work within a stage."""
    name: str
    run: Callable[[], None]
    description: str = ""


class StepFailedError(Exception):
    """Exception raised when a step fails; wraps the step's own error."""

    def __init__(self, step_name: str, cause: BaseException):
        super().__init__(f"{step_name}: {cause}")
        self.step_name = step_name
        self.cause = cause


def run_steps(steps: List[Step], completed: Optional[List[str]] = None) -> None:
    """
    Run steps in order, stopping at the first one that raises.

    Args:
        steps: Steps to run
        completed: Optional list the names of finished steps are appended to

    Raises:
        StepFailedError: If any step raises
    """
    for i, step in enumerate(steps, 1):
        label = step.description or step.name
        print(f"\n[{i}/{len(steps)}] {label}")
        try:
            step.run()
        except Exception as e:
            print(f"[{i}/{len(steps)}] {step.name} failed: {e}", file=sys.stderr)
            raise StepFailedError(step.name, e) from e
        if completed is not None:
            completed.append(step.name)
