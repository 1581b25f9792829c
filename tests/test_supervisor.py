from __future__ import annotations

import os
import signal
import sys
import time
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import allure
import pytest

from agent_company.config import SupervisorSettings
from agent_company.orchestrator.backend.cli_backend import CommandExecutor
from agent_company.orchestrator.errors import (
    ProcessCrashError,
    ProcessStartError,
    ShutdownError,
)
from agent_company.orchestrator.events import ErrorReporter, EventBus, EventKind
from agent_company.orchestrator.models import (
    AgentRole,
    CommandFailure,
    CommandOptions,
    ProcessStatus,
)
from agent_company.orchestrator.supervisor import AgentProcessSupervisor

pytestmark = [
    allure.epic("Agent Processes"),
    allure.feature("Supervisor Lifecycle & Crash Recovery"),
]

_EXITING_HOST = (sys.executable, "-c", "import sys; sys.exit(3)")


def _wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


@pytest.fixture()
def make_supervisor(
    tmp_path: Path,
    echo_executor: CommandExecutor,
    fast_supervisor_settings: SupervisorSettings,
    reporter: ErrorReporter,
    events: EventBus,
) -> Iterator:
    created: list[AgentProcessSupervisor] = []

    def _make(
        settings: SupervisorSettings | None = None,
        *,
        agent_id: str = "worker-1",
    ) -> AgentProcessSupervisor:
        supervisor = AgentProcessSupervisor(
            agent_id=agent_id,
            role=AgentRole.WORKER,
            workspace_path=tmp_path / "workspaces" / agent_id,
            executor=echo_executor,
            settings=settings or fast_supervisor_settings,
            reporter=reporter,
            events=events,
            command_options=CommandOptions(timeout_seconds=30),
        )
        created.append(supervisor)
        return supervisor

    yield _make
    for supervisor in created:
        supervisor.stop()


def test_start_runs_commands_and_stop_cleans_up(make_supervisor, events: EventBus) -> None:
    channel = events.subscribe([EventKind.AGENT_STATUS_UPDATE])
    supervisor = make_supervisor()

    supervisor.start()
    assert supervisor.status == ProcessStatus.RUNNING
    assert supervisor.pid is not None
    assert supervisor.workspace_path.is_dir()
    assert supervisor.check_health()

    result = supervisor.execute("Phase: execute\nTitle: hello\n")
    assert result.success
    assert result.payload["summary"] == "done: hello"
    assert supervisor.last_activity_at is not None

    supervisor.stop()
    assert supervisor.status == ProcessStatus.STOPPED
    assert supervisor.pid is None

    statuses = [event.payload["status"] for event in channel.drain()]
    assert statuses == ["starting", "running", "stopped"]


def test_start_failure_raises_and_enters_error(
    make_supervisor,
    fast_supervisor_settings: SupervisorSettings,
) -> None:
    supervisor = make_supervisor(
        replace(fast_supervisor_settings, host_command=("definitely-not-a-host-binary-xyz",)),
    )

    with pytest.raises(ProcessStartError, match="Failed to spawn"):
        supervisor.start()
    assert supervisor.status == ProcessStatus.ERROR
    assert supervisor.error_count == 1


def test_host_exiting_during_startup_is_a_start_failure(
    make_supervisor,
    fast_supervisor_settings: SupervisorSettings,
) -> None:
    supervisor = make_supervisor(
        replace(
            fast_supervisor_settings,
            host_command=_EXITING_HOST,
            liveness_probe_seconds=1.0,
        ),
    )

    with pytest.raises(ProcessStartError, match="exited during startup"):
        supervisor.start()
    assert supervisor.status == ProcessStatus.ERROR


def test_crashing_command_rejects_caller_and_restarts_agent(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()
    first_pid = supervisor.pid

    with pytest.raises(ProcessCrashError, match="killed by signal"):
        supervisor.execute("Phase: execute\nTask ID: t-crash\n[[crash]]")

    assert _wait_until(
        lambda: supervisor.status == ProcessStatus.RUNNING and supervisor.restart_count == 1,
    )
    assert supervisor.error_count == 1
    assert supervisor.pid != first_pid

    result = supervisor.execute("Phase: execute\nTitle: after crash\n")
    assert result.success


def test_health_check_detects_a_dead_host(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()
    pid = supervisor.pid
    assert pid is not None

    os.kill(pid, signal.SIGKILL)

    assert _wait_until(
        lambda: supervisor.restart_count == 1 and supervisor.status == ProcessStatus.RUNNING,
    )
    assert supervisor.pid != pid


def test_restarts_stop_at_max_retries(
    make_supervisor,
    fast_supervisor_settings: SupervisorSettings,
    events: EventBus,
) -> None:
    logs = events.subscribe([EventKind.LOG_ENTRY])
    supervisor = make_supervisor(replace(fast_supervisor_settings, max_retries=2))
    supervisor.start()
    pid = supervisor.pid
    assert pid is not None

    # Every restart attempt from now on spawns a host that exits immediately.
    supervisor.settings.host_command = _EXITING_HOST
    os.kill(pid, signal.SIGKILL)

    assert _wait_until(lambda: supervisor.is_terminal_error)
    assert supervisor.restart_count == 2
    assert supervisor.status == ProcessStatus.ERROR

    with pytest.raises(ProcessCrashError, match="terminal error"):
        supervisor.execute("Title: too late")

    error_types = [event.payload["error_type"] for event in logs.drain()]
    assert "MaxRetriesExceeded" in error_types


def test_manual_restart_counts_against_budget(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()

    supervisor.restart()

    assert supervisor.status == ProcessStatus.RUNNING
    assert supervisor.restart_count == 1
    assert supervisor.execute("Title: after restart").success


def test_commands_run_one_at_a_time_in_submission_order(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()

    futures = [
        supervisor.submit(f"Phase: execute\nTask ID: t-{index}\n[[sleep:0.1]]")
        for index in range(4)
    ]
    results = [future.result(timeout=30) for future in futures]

    assert [result.payload["task_id"] for result in results] == ["t-0", "t-1", "t-2", "t-3"]


def test_stop_rejects_in_flight_and_queued_commands(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()

    in_flight = supervisor.submit("Phase: execute\n[[sleep:10]]")
    queued = supervisor.submit("Phase: execute\nTitle: queued")
    assert _wait_until(lambda: in_flight.running())

    started = time.monotonic()
    supervisor.stop()

    assert time.monotonic() - started < 8.0
    with pytest.raises(ShutdownError):
        in_flight.result(timeout=5)
    with pytest.raises(ShutdownError):
        queued.result(timeout=5)
    with pytest.raises(ShutdownError, match="not running"):
        supervisor.execute("Title: after stop")


def test_invalid_utf8_output_still_resolves_the_caller(make_supervisor) -> None:
    supervisor = make_supervisor()
    supervisor.start()

    result = supervisor.submit("Phase: execute\n[[stray-bytes]]").result(timeout=30)

    assert not result.success
    assert result.failure == CommandFailure.PARSE
    assert supervisor.execute("Phase: execute\nTitle: next").success


class _ExplodingOnceExecutor(CommandExecutor):
    def __init__(self, *args, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self.exploded = False

    def execute_command(self, prompt, options=None, *, interrupt=None):
        if not self.exploded:
            self.exploded = True
            raise RuntimeError("executor blew up")
        return super().execute_command(prompt, options, interrupt=interrupt)


def test_executor_exception_fails_the_command_and_dispatcher_survives(
    tmp_path: Path,
    echo_command: tuple[str, ...],
    fast_supervisor_settings: SupervisorSettings,
    reporter: ErrorReporter,
    events: EventBus,
) -> None:
    supervisor = AgentProcessSupervisor(
        agent_id="worker-1",
        role=AgentRole.WORKER,
        workspace_path=tmp_path / "workspaces" / "worker-1",
        executor=_ExplodingOnceExecutor(executable=echo_command, default_timeout_seconds=30.0),
        settings=fast_supervisor_settings,
        reporter=reporter,
        events=events,
        command_options=CommandOptions(timeout_seconds=30),
    )
    supervisor.start()
    try:
        failed = supervisor.submit("Phase: execute\nTitle: first").result(timeout=10)
        assert not failed.success
        assert failed.failure == CommandFailure.EXECUTION
        assert "executor blew up" in (failed.error or "")

        following = supervisor.submit("Phase: execute\nTitle: second").result(timeout=30)
        assert following.success
        assert following.payload["summary"] == "done: second"
        assert supervisor.status == ProcessStatus.RUNNING
    finally:
        supervisor.stop()
