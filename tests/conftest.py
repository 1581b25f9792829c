"""Shared test fixtures."""

from __future__ import annotations

import logging
import os
import sys
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_company.config import SupervisorSettings, TaskSettings
from agent_company.orchestrator.backend.cli_backend import CommandExecutor
from agent_company.orchestrator.backend.echo_agent import STATE_DIR_ENV
from agent_company.orchestrator.events import ErrorReporter, EventBus
from agent_company.orchestrator.repository import TaskRepository

ECHO_AGENT_COMMAND = (sys.executable, "-m", "agent_company.orchestrator.backend.echo_agent")
_SRC_DIR = Path(__file__).resolve().parents[1] / "src"


@pytest.fixture(autouse=True)
def _subprocess_import_path(monkeypatch) -> None:
    """Let `python -m agent_company...` children import the package from the source tree."""

    current = os.environ.get("PYTHONPATH")
    monkeypatch.setenv(
        "PYTHONPATH",
        os.pathsep.join([str(_SRC_DIR), current]) if current else str(_SRC_DIR),
    )


@pytest.fixture(autouse=True)
def _restore_package_logger() -> Iterator[None]:
    """CLI entry points install their own handler; keep caplog working afterwards."""

    package_logger = logging.getLogger("agent_company")
    handlers = list(package_logger.handlers)
    level = package_logger.level
    propagate = package_logger.propagate
    yield
    package_logger.handlers = handlers
    package_logger.setLevel(level)
    package_logger.propagate = propagate


@pytest.fixture()
def echo_state_dir(tmp_path: Path, monkeypatch) -> Path:
    """Isolate the echo agent's per-run counters (fail-tests, reject-review, crash-once)."""

    state_dir = tmp_path / "echo-state"
    monkeypatch.setenv(STATE_DIR_ENV, str(state_dir))
    return state_dir


@pytest.fixture()
def events() -> EventBus:
    return EventBus()


@pytest.fixture()
def reporter(events: EventBus) -> ErrorReporter:
    return ErrorReporter(service="agent-company-tests", events=events)


@pytest.fixture()
def repository(tmp_path: Path, events: EventBus) -> Iterator[TaskRepository]:
    repo = TaskRepository(tmp_path / "tasks.db", events=events)
    repo.init_schema()
    yield repo
    repo.close()


@pytest.fixture()
def echo_command() -> tuple[str, ...]:
    return ECHO_AGENT_COMMAND


@pytest.fixture()
def echo_executor(echo_command: tuple[str, ...]) -> CommandExecutor:
    return CommandExecutor(executable=echo_command, default_timeout_seconds=30.0)


@pytest.fixture()
def fast_supervisor_settings() -> SupervisorSettings:
    return SupervisorSettings(
        max_retries=3,
        restart_delay_seconds=0.05,
        start_timeout_seconds=5.0,
        liveness_probe_seconds=0.05,
        graceful_shutdown_seconds=2.0,
        health_check_interval_seconds=0.2,
    )


@pytest.fixture()
def task_settings() -> TaskSettings:
    return TaskSettings(max_attempts=3, review_retries=0, self_test=True)
