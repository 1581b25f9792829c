"""CLI entrypoint for agent-company."""

from pathlib import Path

import rich_click as click

from agent_company import __version__
from agent_company.orchestrator.controllers import (
    InspectTaskCommand,
    ListTasksCommand,
    MutateTaskCommand,
    OrchestratorCliController,
    RunInstructionCommand,
    SmokeCommand,
)
from agent_company.orchestrator.events import configure_logging
from agent_company.orchestrator.models import TaskStatus
from agent_company.orchestrator.runtime import SERVICE_NAME

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()


@click.group()
@click.version_option(version=__version__, prog_name="agent-company")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def agent_company(verbose: bool) -> None:
    """Multi-agent task orchestration CLI."""

    configure_logging(service=SERVICE_NAME, verbose=verbose)


@agent_company.command("run")
@click.argument("instruction")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workers",
    type=click.IntRange(min=1, max=64),
    default=None,
    help="Worker agents to start; defaults to AGENT_COMPANY_WORKER_REPLICAS.",
)
@click.option(
    "--priority",
    type=click.IntRange(min=0, max=10),
    default=5,
    show_default=True,
    help="Default priority for decomposed tasks.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1),
    default=1800.0,
    show_default=True,
    help="How long to wait for the instruction to finish.",
)
def run(
    instruction: str,
    db_path: Path | None,
    workers: int | None,
    priority: int,
    timeout_seconds: float,
) -> None:
    """Run one instruction through the coordinator and worker pool."""

    report = ORCHESTRATOR_CONTROLLER.run_instruction(
        RunInstructionCommand(
            db_path=db_path,
            instruction=instruction,
            workers=workers,
            priority=priority,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Instruction did not complete.")


@agent_company.group()
def tasks() -> None:
    """Task store inspection commands."""


@tasks.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice([status.value for status in TaskStatus], case_sensitive=False),
    default=None,
    help="Optional status filter.",
)
@click.option("--instruction-id", default=None, help="Only tasks of this instruction.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max tasks to print.",
)
def tasks_list(
    db_path: Path | None,
    status: str | None,
    instruction_id: str | None,
    limit: int,
) -> None:
    """List tasks in creation order."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.list_tasks(
            ListTasksCommand(
                db_path=db_path,
                status=status.lower() if status else None,
                instruction_id=instruction_id,
                limit=limit,
            ),
        ),
    )


@tasks.command("inspect")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_inspect(db_path: Path | None, task_id: str) -> None:
    """Inspect one task with event history."""

    _emit_lines(
        ORCHESTRATOR_CONTROLLER.inspect_task(
            InspectTaskCommand(db_path=db_path, task_id=task_id),
        ),
    )


@tasks.command("retry")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_retry(db_path: Path | None, task_id: str) -> None:
    """Re-submit a failed or cancelled task as a new task."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.retry_task(
            MutateTaskCommand(db_path=db_path, task_id=task_id),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@tasks.command("cancel")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--task-id", required=True, help="Task id.")
def tasks_cancel(db_path: Path | None, task_id: str) -> None:
    """Cancel a task that has not finished yet."""

    try:
        lines = ORCHESTRATOR_CONTROLLER.cancel_task(
            MutateTaskCommand(db_path=db_path, task_id=task_id),
        )
    except RuntimeError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


@agent_company.command("smoke")
@click.option(
    "--command",
    default=None,
    help="Agent CLI to probe, for example `claude`. Defaults to AGENT_COMPANY_COMMAND.",
)
@click.option(
    "--prompt",
    default="Reply with a JSON object: {\"status\": \"OK\"}",
    show_default=True,
    help="Synthetic prompt used for the run check.",
)
@click.option(
    "--expect-substring",
    default=None,
    help="Substring required in the decoded reply.",
)
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=1, max=600),
    default=45.0,
    show_default=True,
    help="Timeout for the probe and run commands.",
)
def smoke(
    command: str | None,
    prompt: str,
    expect_substring: str | None,
    timeout_seconds: float,
) -> None:
    """Check that the agent CLI is installed and answers one structured prompt."""

    report = ORCHESTRATOR_CONTROLLER.smoke(
        SmokeCommand(
            command=command,
            prompt=prompt,
            expect_substring=expect_substring,
            timeout_seconds=timeout_seconds,
        ),
    )
    _emit_lines(report.lines)
    if not report.success:
        raise click.ClickException("Agent smoke check failed.")


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_company()
