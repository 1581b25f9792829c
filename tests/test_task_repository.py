from __future__ import annotations

import threading
from pathlib import Path

import allure
import pytest

from agent_company.orchestrator.errors import (
    DependencyCycleError,
    TaskNotAssignable,
    TaskPermanentlyFailed,
)
from agent_company.orchestrator.events import EventBus, EventKind
from agent_company.orchestrator.models import (
    FailureClass,
    InstructionStatus,
    ReviewStatus,
    TaskCreate,
    TaskStatus,
    WorkResult,
)
from agent_company.orchestrator.repository import TaskRepository

pytestmark = [
    allure.epic("Task Store"),
    allure.feature("Dependency Graph & Atomic Transitions"),
]


def _ok(task_id: str) -> WorkResult:
    return WorkResult(task_id=task_id, success=True, payload={"summary": "done"})


def _claim(repository: TaskRepository, task_id: str, agent_id: str = "worker-1") -> None:
    repository.assign(task_id=task_id, agent_id=agent_id)
    assert repository.start(task_id=task_id, agent_id=agent_id)


def test_task_without_dependencies_becomes_ready_on_create(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="standalone"))

    assert task.status == TaskStatus.READY
    assert task.attempt_count == 0
    assert task.seq >= 1

    details = repository.get_task_details(task_id=task.task_id)
    assert details is not None
    assert [event.event_type for event in details.events] == ["created", "ready"]


def test_dependent_is_released_only_after_upstream_completes(
    repository: TaskRepository,
) -> None:
    upstream = repository.create(TaskCreate(title="upstream"))
    dependent = repository.create(
        TaskCreate(title="dependent", dependencies=(upstream.task_id,)),
    )
    assert dependent.status == TaskStatus.PENDING
    assert dependent.dependencies == (upstream.task_id,)

    with pytest.raises(TaskNotAssignable):
        repository.assign(task_id=dependent.task_id, agent_id="worker-1")
    assert repository.mark_ready() == []

    _claim(repository, upstream.task_id)
    assert repository.get(dependent.task_id).status == TaskStatus.PENDING

    assert repository.complete(task_id=upstream.task_id, result=_ok(upstream.task_id))
    assert repository.get(dependent.task_id).status == TaskStatus.READY


def test_create_many_resolves_in_batch_dependencies(repository: TaskRepository) -> None:
    views = repository.create_many(
        [
            TaskCreate(task_id="a", title="a"),
            TaskCreate(task_id="b", title="b", dependencies=("a",)),
            TaskCreate(task_id="c", title="c", dependencies=("a", "b")),
        ],
    )

    statuses = {view.task_id: view.status for view in views}
    assert statuses == {"a": TaskStatus.READY, "b": TaskStatus.PENDING, "c": TaskStatus.PENDING}
    assert [view.task_id for view in repository.list_dependents(task_id="a")] == ["b", "c"]


def test_create_rejects_cycles_and_unknown_dependencies(repository: TaskRepository) -> None:
    with pytest.raises(DependencyCycleError):
        repository.create_many(
            [
                TaskCreate(task_id="x", title="x", dependencies=("y",)),
                TaskCreate(task_id="y", title="y", dependencies=("x",)),
            ],
        )
    with pytest.raises(DependencyCycleError, match="depends on itself"):
        repository.create(TaskCreate(task_id="self", title="self", dependencies=("self",)))
    with pytest.raises(ValueError, match="Unknown dependency"):
        repository.create(TaskCreate(title="orphan", dependencies=("missing-task",)))

    assert repository.list_tasks() == []


def test_pop_ready_orders_by_priority_then_creation(repository: TaskRepository) -> None:
    low = repository.create(TaskCreate(title="low", priority=1))
    first_high = repository.create(TaskCreate(title="high-1", priority=9))
    second_high = repository.create(TaskCreate(title="high-2", priority=9))

    claimed = [
        repository.pop_ready(agent_id="worker-1"),
        repository.pop_ready(agent_id="worker-2"),
        repository.pop_ready(agent_id="worker-3"),
    ]

    assert [task.task_id for task in claimed if task is not None] == [
        first_high.task_id,
        second_high.task_id,
        low.task_id,
    ]
    assert all(task is not None and task.status == TaskStatus.ASSIGNED for task in claimed)
    assert repository.pop_ready(agent_id="worker-4") is None


def test_pop_ready_filters_by_capability(repository: TaskRepository) -> None:
    repository.create(TaskCreate(title="docs", capability="docs", priority=9))
    code = repository.create(TaskCreate(title="code", capability="python", priority=1))

    claimed = repository.pop_ready(agent_id="worker-1", capabilities=("python",))
    assert claimed is not None
    assert claimed.task_id == code.task_id
    assert repository.pop_ready(agent_id="worker-2", capabilities=("python",)) is None

    wildcard = repository.pop_ready(agent_id="worker-3", capabilities=("*",))
    assert wildcard is not None
    assert wildcard.capability == "docs"


def test_queue_contract_push_pop_ack_nack(repository: TaskRepository) -> None:
    first = repository.push(TaskCreate(title="first", max_attempts=2))
    second = repository.push(TaskCreate(title="second"))

    claimed = repository.pop_ready(agent_id="worker-1")
    assert claimed is not None and claimed.task_id == first.task_id

    requeued = repository.nack(first.task_id, "flaky")
    assert requeued is not None
    assert requeued.status == TaskStatus.READY
    assert requeued.assigned_agent_id is None

    again = repository.pop_ready(agent_id="worker-2")
    assert again is not None and again.task_id == first.task_id
    assert repository.ack(first.task_id, _ok(first.task_id))
    assert not repository.ack(first.task_id, _ok(first.task_id))
    assert repository.get(first.task_id).attempt_count == 2

    assert repository.nack(second.task_id, "never claimed") is None
    assert repository.get(second.task_id).status == TaskStatus.READY


def test_concurrent_claims_never_share_a_task(tmp_path: Path) -> None:
    db_path = tmp_path / "race.db"
    repository = TaskRepository(db_path)
    repository.init_schema()
    repository.create_many([TaskCreate(title=f"task-{index}") for index in range(12)])

    claims: dict[str, list[str]] = {}
    lock = threading.Lock()
    start = threading.Event()

    def _worker(agent_id: str) -> None:
        local = TaskRepository(db_path)
        try:
            start.wait(timeout=5)
            while True:
                task = local.pop_ready(agent_id=agent_id)
                if task is None:
                    return
                with lock:
                    claims.setdefault(task.task_id, []).append(agent_id)
        finally:
            local.close()

    threads = [threading.Thread(target=_worker, args=(f"worker-{index}",)) for index in range(4)]
    for thread in threads:
        thread.start()
    start.set()
    for thread in threads:
        thread.join(timeout=30)

    assert len(claims) == 12
    assert all(len(owners) == 1 for owners in claims.values())
    for task in repository.list_tasks():
        assert task.status == TaskStatus.ASSIGNED
        assert task.assigned_agent_id == claims[task.task_id][0]
    repository.close()


def test_fail_requeues_until_attempts_are_exhausted(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="flaky", max_attempts=2))

    _claim(repository, task.task_id)
    retried = repository.fail(
        task_id=task.task_id,
        error="boom",
        failure_class=FailureClass.BACKEND_TRANSIENT,
    )
    assert retried is not None
    assert retried.status == TaskStatus.READY
    assert retried.attempt_count == 1
    assert retried.assigned_agent_id is None
    assert retried.failure_class == FailureClass.BACKEND_TRANSIENT

    _claim(repository, task.task_id, agent_id="worker-2")
    failed = repository.fail(task_id=task.task_id, error="boom again")
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.attempt_count == 2
    assert failed.last_error == "boom again"

    assert repository.fail(task_id=task.task_id, error="late") is None
    assert repository.get(task.task_id).attempt_count == 2


def test_requeue_orphaned_recovers_claims_without_a_live_owner(
    repository: TaskRepository,
) -> None:
    started = repository.create(TaskCreate(title="was running"))
    assigned = repository.create(TaskCreate(title="was assigned"))
    last_try = repository.create(TaskCreate(title="last attempt", max_attempts=1))
    live = repository.create(TaskCreate(title="still owned"))
    untouched = repository.create(TaskCreate(title="never claimed"))
    _claim(repository, started.task_id, agent_id="worker-1")
    repository.assign(task_id=assigned.task_id, agent_id="worker-2")
    _claim(repository, last_try.task_id, agent_id="worker-3")
    _claim(repository, live.task_id, agent_id="worker-4")

    recovered = repository.requeue_orphaned(active_agent_ids=["worker-4"])

    assert recovered == [started.task_id, assigned.task_id, last_try.task_id]
    for task_id in (started.task_id, assigned.task_id):
        view = repository.get(task_id)
        assert view.status == TaskStatus.READY
        assert view.assigned_agent_id is None
        assert view.attempt_count == 1
        assert view.failure_class == FailureClass.PROCESS_CRASH
    exhausted = repository.get(last_try.task_id)
    assert exhausted.status == TaskStatus.FAILED
    assert "worker-3 is not running" in exhausted.last_error
    assert repository.get(live.task_id).status == TaskStatus.IN_PROGRESS
    assert repository.get(untouched.task_id).status == TaskStatus.READY

    assert repository.requeue_orphaned(active_agent_ids=["worker-4"]) == []


def test_dependents_of_failed_task_stay_pending(repository: TaskRepository) -> None:
    upstream = repository.create(TaskCreate(title="upstream", max_attempts=1))
    dependent = repository.create(TaskCreate(title="down", dependencies=(upstream.task_id,)))

    _claim(repository, upstream.task_id)
    repository.fail(task_id=upstream.task_id, error="fatal")

    assert repository.get(upstream.task_id).status == TaskStatus.FAILED
    assert repository.get(dependent.task_id).status == TaskStatus.PENDING
    assert repository.mark_ready() == []


def test_fix_and_retest_attempts_stay_within_budget(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="self-tested", max_attempts=3))
    _claim(repository, task.task_id)

    first = repository.record_attempt_failure(task_id=task.task_id, error="test 1 failed")
    second = repository.record_attempt_failure(task_id=task.task_id, error="test 2 failed")
    assert (first.attempt_count, second.attempt_count) == (1, 2)
    assert second.status == TaskStatus.IN_PROGRESS

    with pytest.raises(TaskPermanentlyFailed):
        repository.record_attempt_failure(task_id=task.task_id, error="test 3 failed")

    failed = repository.fail(
        task_id=task.task_id,
        error="test 3 failed",
        failure_class=FailureClass.SELF_TEST_FAILED,
    )
    assert failed is not None
    assert failed.status == TaskStatus.FAILED
    assert failed.attempt_count == 3


def test_complete_stores_result_and_counts_the_attempt(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="happy"))
    _claim(repository, task.task_id)

    assert repository.complete(task_id=task.task_id, result=_ok(task.task_id))
    stored = repository.get(task.task_id)
    assert stored.status == TaskStatus.COMPLETED
    assert stored.attempt_count == 1
    assert stored.result is not None
    assert stored.result.payload == {"summary": "done"}
    assert stored.result.attempt_count == 1

    assert not repository.complete(task_id=task.task_id, result=_ok(task.task_id))


def test_start_requires_the_owning_agent(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="owned"))
    repository.assign(task_id=task.task_id, agent_id="worker-1")

    assert not repository.start(task_id=task.task_id, agent_id="worker-2")
    assert repository.start(task_id=task.task_id, agent_id="worker-1")


def test_cancel_and_resubmit(repository: TaskRepository) -> None:
    task = repository.create(TaskCreate(title="cancel me", priority=7))
    repository.cancel(task_id=task.task_id)
    assert repository.get(task.task_id).status == TaskStatus.CANCELLED

    with pytest.raises(RuntimeError, match="cannot be cancelled"):
        repository.cancel(task_id=task.task_id)

    resubmitted = repository.resubmit(task_id=task.task_id)
    assert resubmitted.task_id != task.task_id
    assert resubmitted.status == TaskStatus.READY
    assert resubmitted.priority == 7
    assert resubmitted.parent_task_id == task.task_id

    with pytest.raises(RuntimeError, match="Only failed/cancelled"):
        repository.resubmit(task_id=resubmitted.task_id)


def test_review_and_integration_bookkeeping(repository: TaskRepository) -> None:
    instruction = repository.create_instruction(content="build it")
    task = repository.create(TaskCreate(title="feature", instruction_id=instruction.instruction_id))
    _claim(repository, task.task_id)
    repository.complete(task_id=task.task_id, result=_ok(task.task_id))

    assert [view.task_id for view in repository.list_unreviewed()] == [task.task_id]
    progress = repository.instruction_progress(instruction_id=instruction.instruction_id)
    assert progress.awaiting_review == 1
    assert not progress.is_finished

    assert not repository.mark_integrated(task_id=task.task_id)
    assert repository.set_review_status(
        task_id=task.task_id,
        status=ReviewStatus.APPROVED,
        feedback="ship it",
    )
    assert not repository.set_review_status(task_id=task.task_id, status=ReviewStatus.REJECTED)
    assert repository.mark_integrated(task_id=task.task_id, details={"commit": "abc123"})

    stored = repository.get(task.task_id)
    assert stored.review_status == ReviewStatus.APPROVED
    assert stored.integrated
    assert repository.list_unreviewed() == []
    assert repository.instruction_progress(
        instruction_id=instruction.instruction_id,
    ).is_finished


def test_cancelled_task_keeps_instruction_unfinished(repository: TaskRepository) -> None:
    instruction = repository.create_instruction(content="two parts")
    done = repository.create(TaskCreate(title="part one", instruction_id=instruction.instruction_id))
    dropped = repository.create(
        TaskCreate(title="part two", instruction_id=instruction.instruction_id),
    )
    _claim(repository, done.task_id)
    repository.complete(task_id=done.task_id, result=_ok(done.task_id))
    repository.set_review_status(task_id=done.task_id, status=ReviewStatus.APPROVED)
    repository.cancel(task_id=dropped.task_id)

    progress = repository.instruction_progress(instruction_id=instruction.instruction_id)
    assert progress.completed == 1
    assert progress.cancelled == 1
    assert not progress.is_finished


def test_instruction_terminal_status_is_not_overwritten(repository: TaskRepository) -> None:
    instruction = repository.create_instruction(content="do things", priority=3)
    assert instruction.status == InstructionStatus.RECEIVED

    repository.update_instruction_status(
        instruction_id=instruction.instruction_id,
        status=InstructionStatus.FAILED,
        error="task failed",
    )
    after = repository.update_instruction_status(
        instruction_id=instruction.instruction_id,
        status=InstructionStatus.COMPLETED,
    )
    assert after.status == InstructionStatus.FAILED
    assert after.error == "task failed"


def test_transitions_publish_task_updates(tmp_path: Path) -> None:
    events = EventBus()
    channel = events.subscribe([EventKind.TASK_UPDATE])
    repository = TaskRepository(tmp_path / "events.db", events=events)
    repository.init_schema()

    task = repository.create(TaskCreate(title="observed"))
    repository.pop_ready(agent_id="worker-1")
    repository.start(task_id=task.task_id, agent_id="worker-1")
    repository.complete(task_id=task.task_id, result=_ok(task.task_id))

    published = [event.payload["event_type"] for event in channel.drain()]
    assert published == ["created", "ready", "assigned", "started", "completed"]
    counts = repository.count_by_status()
    assert counts[TaskStatus.COMPLETED] == 1
    assert counts[TaskStatus.READY] == 0
    repository.close()
