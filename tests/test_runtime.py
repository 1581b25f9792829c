from __future__ import annotations

import json
import time
from collections.abc import Iterator
from pathlib import Path

import allure
import pytest

from agent_company.config import (
    CommandSettings,
    PoolSettings,
    Settings,
    SupervisorSettings,
    TaskSettings,
)
from agent_company.orchestrator.events import EventBus, EventKind
from agent_company.orchestrator.models import (
    AgentRole,
    FailureClass,
    InstructionStatus,
    ReviewStatus,
    TaskCreate,
    TaskStatus,
)
from agent_company.orchestrator.repository import TaskRepository
from agent_company.orchestrator.runtime import AgentCompanyRuntime

pytestmark = [
    allure.epic("Runtime"),
    allure.feature("Coordinator and Worker Pool"),
]


@pytest.fixture()
def runtime_settings(
    tmp_path: Path,
    echo_command: tuple[str, ...],
    echo_state_dir: Path,
    fast_supervisor_settings: SupervisorSettings,
) -> Settings:
    return Settings(
        db_path=tmp_path / "runtime.db",
        supervisor=fast_supervisor_settings,
        command=CommandSettings(executable=echo_command, timeout_seconds=30),
        tasks=TaskSettings(max_attempts=3, review_retries=0, self_test=True),
        pool=PoolSettings(
            worker_replicas=2,
            workspace_root=tmp_path / "workspaces",
            scheduler_tick_seconds=0.1,
            stats_interval_seconds=0.2,
        ),
    )


@pytest.fixture()
def runtime(runtime_settings: Settings) -> Iterator[AgentCompanyRuntime]:
    company = AgentCompanyRuntime(runtime_settings, events=EventBus())
    company.start()
    yield company
    company.shutdown()


def _plan(*tasks: dict) -> str:
    return f"Build the release\n```json\n{json.dumps({'tasks': list(tasks)})}\n```"


def _event_time(runtime: AgentCompanyRuntime, task_id: str, event_type: str):
    details = runtime.repository.get_task_details(task_id=task_id)
    assert details is not None
    return next(event.created_at for event in details.events if event.event_type == event_type)


def test_instruction_runs_through_dependent_tasks(runtime: AgentCompanyRuntime) -> None:
    instruction = runtime.submit_instruction(
        _plan(
            {"key": "a", "title": "Write module"},
            {"key": "b", "title": "Write tests", "depends_on": ["a"]},
            {"key": "c", "title": "Write docs", "depends_on": ["a"]},
        ),
    )

    final = runtime.wait_for_instruction(instruction.instruction_id, timeout_seconds=60)

    assert final.status == InstructionStatus.COMPLETED
    tasks = {
        task.title: task
        for task in runtime.repository.list_tasks(instruction_id=instruction.instruction_id)
    }
    assert set(tasks) == {"Write module", "Write tests", "Write docs"}
    for task in tasks.values():
        assert task.status == TaskStatus.COMPLETED
        assert task.review_status == ReviewStatus.APPROVED
        assert task.result is not None
        assert task.result.payload["summary"] == f"done: {task.title}"
    module_done = _event_time(runtime, tasks["Write module"].task_id, "completed")
    assert _event_time(runtime, tasks["Write tests"].task_id, "started") >= module_done
    assert _event_time(runtime, tasks["Write docs"].task_id, "started") >= module_done


def test_flaky_self_test_is_retried_inside_the_runtime(runtime: AgentCompanyRuntime) -> None:
    instruction = runtime.submit_instruction(
        _plan({"title": "Flaky", "description": "[[fail-tests:1]]"}),
    )

    final = runtime.wait_for_instruction(instruction.instruction_id, timeout_seconds=60)

    assert final.status == InstructionStatus.COMPLETED
    [task] = runtime.repository.list_tasks(instruction_id=instruction.instruction_id)
    assert task.status == TaskStatus.COMPLETED
    assert task.attempt_count == 2


def test_exhausted_task_fails_the_instruction(runtime: AgentCompanyRuntime) -> None:
    instruction = runtime.submit_instruction(
        _plan(
            {"key": "a", "title": "Never passes", "description": "[[fail-tests:5]]"},
            {"key": "b", "title": "Blocked", "depends_on": ["a"]},
        ),
    )

    final = runtime.wait_for_instruction(instruction.instruction_id, timeout_seconds=60)

    assert final.status == InstructionStatus.FAILED
    tasks = {
        task.title: task
        for task in runtime.repository.list_tasks(instruction_id=instruction.instruction_id)
    }
    assert tasks["Never passes"].status == TaskStatus.FAILED
    assert tasks["Never passes"].attempt_count == 3
    assert tasks["Blocked"].status == TaskStatus.PENDING


def test_pool_scales_up_and_down(runtime: AgentCompanyRuntime) -> None:
    views = runtime.agents()
    assert [view.role for view in views] == [
        AgentRole.COORDINATOR,
        AgentRole.WORKER,
        AgentRole.WORKER,
    ]

    runtime.scale_to(4)
    workers = [view for view in runtime.agents() if view.role == AgentRole.WORKER]
    assert len(workers) == 4
    assert all(view.pid is not None for view in workers)

    runtime.scale_to(1)
    workers = [view for view in runtime.agents() if view.role == AgentRole.WORKER]
    assert [view.agent_id for view in workers] == ["worker-1"]

    with pytest.raises(ValueError, match="replicas must be >= 0"):
        runtime.scale_to(-1)


def test_runtime_publishes_system_stats(runtime: AgentCompanyRuntime) -> None:
    def _full_pool_stats():
        return [
            event
            for event in runtime.events.history(EventKind.SYSTEM_STATS)
            if event.payload["agents_total"] == 2
        ]

    deadline = time.monotonic() + 5
    while time.monotonic() < deadline and not _full_pool_stats():
        time.sleep(0.05)

    [latest, *_] = reversed(_full_pool_stats())
    assert latest.payload["agents_by_state"] == {"idle": 2}
    assert "tasks_by_status" in latest.payload


def test_submit_requires_started_runtime(runtime_settings: Settings) -> None:
    company = AgentCompanyRuntime(runtime_settings)

    with pytest.raises(RuntimeError, match="Runtime is not started"):
        company.submit_instruction("anything")


def test_claims_left_by_a_previous_run_are_recovered_on_start(
    runtime_settings: Settings,
) -> None:
    previous = TaskRepository(runtime_settings.db_path)
    previous.init_schema()
    task = previous.create(TaskCreate(title="Interrupted work"))
    previous.assign(task_id=task.task_id, agent_id="worker-1")
    previous.start(task_id=task.task_id, agent_id="worker-1")
    previous.close()

    company = AgentCompanyRuntime(runtime_settings, events=EventBus())
    company.start()
    try:
        deadline = time.monotonic() + 60
        while time.monotonic() < deadline:
            if company.repository.get(task.task_id).status == TaskStatus.COMPLETED:
                break
            time.sleep(0.05)

        stored = company.repository.get(task.task_id)
        assert stored.status == TaskStatus.COMPLETED
        assert stored.result.payload["summary"] == "done: Interrupted work"
        details = company.repository.get_task_details(task_id=task.task_id)
        [recovery] = [event for event in details.events if event.event_type == "retry_scheduled"]
        assert recovery.details["failure_class"] == FailureClass.PROCESS_CRASH.value
        assert recovery.details["agent_id"] == "worker-1"
    finally:
        company.shutdown()
