"""Version-control hook invoked after a task's output is approved."""

from __future__ import annotations

import logging
import os
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from agent_company.orchestrator.models import TaskView

logger = logging.getLogger(__name__)

_OUTPUT_PREVIEW_CHARS = 1_000


@dataclass(slots=True)
class IntegrationOutcome:
    success: bool
    detail: str = ""

    def to_event_details(self) -> dict[str, object]:
        return {"success": self.success, "detail": self.detail}


class IntegrationHook(Protocol):
    """Integrates an approved task's output (commit, merge, publish...)."""

    def integrate(self, task: TaskView, *, workspace_path: Path | None) -> IntegrationOutcome:
        """Run the integration step and report its outcome."""


class NullIntegrationHook:
    """Accepts every approved task without doing anything."""

    def integrate(self, task: TaskView, *, workspace_path: Path | None) -> IntegrationOutcome:
        return IntegrationOutcome(success=True, detail="no integration configured")


class CommandIntegrationHook:
    """Run a configured command with task details in its environment.

    The command sees ``AGENT_COMPANY_TASK_ID``, ``AGENT_COMPANY_TASK_TITLE``
    and ``AGENT_COMPANY_INSTRUCTION_ID``; exit code 0 means integrated.
    """

    def __init__(self, command: Sequence[str], *, timeout_seconds: float = 60.0) -> None:
        if not command:
            raise ValueError("Integration command must not be empty.")
        self.command = tuple(command)
        self.timeout_seconds = timeout_seconds

    def integrate(self, task: TaskView, *, workspace_path: Path | None) -> IntegrationOutcome:
        env = os.environ.copy()
        env["AGENT_COMPANY_TASK_ID"] = task.task_id
        env["AGENT_COMPANY_TASK_TITLE"] = task.title
        env["AGENT_COMPANY_INSTRUCTION_ID"] = task.instruction_id or ""
        try:
            completed = subprocess.run(  # noqa: S603
                list(self.command),
                cwd=workspace_path,
                env=env,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired:
            return IntegrationOutcome(
                success=False,
                detail=f"integration timed out after {self.timeout_seconds:.1f}s",
            )
        except OSError as error:
            return IntegrationOutcome(success=False, detail=f"integration failed to start: {error}")

        output = (completed.stdout or completed.stderr or "").strip()[-_OUTPUT_PREVIEW_CHARS:]
        if completed.returncode != 0:
            logger.warning(
                "Integration command exited with %d for task %s",
                completed.returncode,
                task.task_id,
                extra={"task_id": task.task_id},
            )
            return IntegrationOutcome(
                success=False,
                detail=f"exit code {completed.returncode}: {output}" if output else (
                    f"exit code {completed.returncode}"
                ),
            )
        return IntegrationOutcome(success=True, detail=output)
