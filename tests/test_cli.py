from __future__ import annotations

import re
import shlex
from pathlib import Path

import allure
from click.testing import CliRunner

from agent_company.main import agent_company
from agent_company.orchestrator.models import TaskCreate, TaskStatus
from agent_company.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("CLI Ops"),
]


def _seed_tasks(db_path: Path) -> tuple[str, str]:
    repo = TaskRepository(db_path)
    repo.init_schema()
    ready = repo.create(TaskCreate(title="Ready task", priority=7))
    doomed = repo.create(TaskCreate(title="Doomed task", max_attempts=1))
    repo.assign(task_id=doomed.task_id, agent_id="worker-1")
    repo.start(task_id=doomed.task_id, agent_id="worker-1")
    repo.fail(task_id=doomed.task_id, error="exit code 3: boom")
    repo.close()
    return ready.task_id, doomed.task_id


def test_tasks_list_and_inspect(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    ready_id, doomed_id = _seed_tasks(db_path)
    runner = CliRunner()

    listed = runner.invoke(agent_company, ["tasks", "list", "--db-path", str(db_path)])
    assert listed.exit_code == 0, listed.output
    assert "Tasks: ready=1 failed=1" in listed.output
    assert f"{ready_id} status=ready priority=7" in listed.output

    failed_only = runner.invoke(
        agent_company,
        ["tasks", "list", "--db-path", str(db_path), "--status", "FAILED"],
    )
    assert failed_only.exit_code == 0, failed_only.output
    assert doomed_id in failed_only.output
    assert ready_id not in failed_only.output

    inspected = runner.invoke(
        agent_company,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", doomed_id],
    )
    assert inspected.exit_code == 0, inspected.output
    assert "Status: failed" in inspected.output
    assert "Attempt: 1/1" in inspected.output
    assert "Error: exit code 3: boom" in inspected.output
    assert "created - -> pending" in inspected.output

    missing = runner.invoke(
        agent_company,
        ["tasks", "inspect", "--db-path", str(db_path), "--task-id", "nope"],
    )
    assert "Task not found: nope" in missing.output


def test_tasks_retry_and_cancel(tmp_path: Path) -> None:
    db_path = tmp_path / "cli.db"
    ready_id, doomed_id = _seed_tasks(db_path)
    runner = CliRunner()

    retried = runner.invoke(
        agent_company,
        ["tasks", "retry", "--db-path", str(db_path), "--task-id", doomed_id],
    )
    assert retried.exit_code == 0, retried.output
    match = re.search(rf"Task re-submitted: {doomed_id} -> (\S+)", retried.output)
    assert match is not None

    cancelled = runner.invoke(
        agent_company,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", ready_id],
    )
    assert cancelled.exit_code == 0, cancelled.output
    assert f"Task cancelled: {ready_id}" in cancelled.output

    again = runner.invoke(
        agent_company,
        ["tasks", "cancel", "--db-path", str(db_path), "--task-id", ready_id],
    )
    assert again.exit_code != 0
    assert "cannot be cancelled" in again.output

    not_failed = runner.invoke(
        agent_company,
        ["tasks", "retry", "--db-path", str(db_path), "--task-id", match.group(1)],
    )
    assert not_failed.exit_code != 0
    assert "Only failed/cancelled tasks can be re-submitted" in not_failed.output

    repo = TaskRepository(db_path)
    repo.init_schema()
    resubmitted = repo.get(match.group(1))
    repo.close()
    assert resubmitted is not None
    assert resubmitted.status == TaskStatus.READY
    assert resubmitted.parent_task_id == doomed_id


def test_smoke_against_echo_agent(echo_command: tuple[str, ...]) -> None:
    runner = CliRunner()

    passed = runner.invoke(
        agent_company,
        [
            "smoke",
            "--command",
            shlex.join(echo_command),
            "--expect-substring",
            "done: adhoc",
        ],
    )
    assert passed.exit_code == 0, passed.output
    assert "available=yes version=0.1.0 (Echo Agent)" in passed.output
    assert "Smoke status: passed" in passed.output

    unexpected = runner.invoke(
        agent_company,
        ["smoke", "--command", shlex.join(echo_command), "--expect-substring", "banana"],
    )
    assert unexpected.exit_code != 0
    assert "Smoke status: failed" in unexpected.output


def test_smoke_reports_missing_executable(tmp_path: Path) -> None:
    result = CliRunner().invoke(
        agent_company,
        ["smoke", "--command", str(tmp_path / "no-such-agent")],
    )

    assert result.exit_code != 0
    assert "available=no" in result.output


def test_run_completes_instruction_with_echo_agent(
    tmp_path: Path,
    monkeypatch,
    echo_command: tuple[str, ...],
    echo_state_dir: Path,
) -> None:
    db_path = tmp_path / "run.db"
    monkeypatch.setenv("AGENT_COMPANY_COMMAND", shlex.join(echo_command))
    monkeypatch.setenv("AGENT_COMPANY_WORKSPACE_ROOT", str(tmp_path / "workspaces"))
    monkeypatch.setenv("AGENT_COMPANY_RESTART_DELAY_SECONDS", "0.05")
    monkeypatch.setenv("AGENT_COMPANY_HEALTH_CHECK_INTERVAL_SECONDS", "0.5")
    monkeypatch.setenv("AGENT_COMPANY_SCHEDULER_TICK_SECONDS", "0.1")
    monkeypatch.setenv("AGENT_COMPANY_REVIEW_RETRIES", "0")

    result = CliRunner().invoke(
        agent_company,
        [
            "run",
            "Summarize the changelog",
            "--db-path",
            str(db_path),
            "--workers",
            "1",
            "--timeout-seconds",
            "60",
        ],
    )

    assert result.exit_code == 0, result.output
    assert "Status: completed" in result.output
    assert "Tasks: 1" in result.output
    assert "review=approved title='Summarize the changelog'" in result.output
    assert "worker-1 role=worker" in result.output
