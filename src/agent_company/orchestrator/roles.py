"""Role strategies: what each agent role may do and how it talks to its CLI."""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from enum import Enum
from types import MappingProxyType
from typing import Any

from agent_company.config import CommandSettings
from agent_company.orchestrator.models import AgentRole, CommandOptions, OutputFormat
from agent_company.orchestrator.prompts import (
    DECOMPOSE_PROMPT,
    EXECUTE_PROMPT,
    FIX_PROMPT,
    REVIEW_PROMPT,
    SELF_TEST_PROMPT,
    WORKER_SYSTEM_PROMPT,
)
from agent_company.orchestrator.repository import TaskRepository

WORKER_TOOLS = ("Bash", "Edit", "Create", "Delete", "Read", "Grep", "Glob")
COORDINATOR_TOOLS = ("Bash", "Read", "Grep", "Glob")


class PromptPhase(str, Enum):
    DECOMPOSE = "decompose"
    EXECUTE = "execute"
    SELF_TEST = "self_test"
    FIX = "fix"
    REVIEW = "review"


class StoreOperation(str, Enum):
    """Task store operations a role may invoke."""

    READ = "read"
    CREATE_TASKS = "create_tasks"
    START = "start"
    RECORD_ATTEMPT_FAILURE = "record_attempt_failure"
    COMPLETE = "complete"
    FAIL = "fail"
    REVIEW = "review"
    INTEGRATE = "integrate"
    INSTRUCTIONS = "instructions"
    AUDIT = "audit"


_OPERATION_METHODS: Mapping[str, StoreOperation] = MappingProxyType(
    {
        "get": StoreOperation.READ,
        "list_tasks": StoreOperation.READ,
        "list_unreviewed": StoreOperation.READ,
        "list_dependents": StoreOperation.READ,
        "get_task_details": StoreOperation.READ,
        "instruction_progress": StoreOperation.READ,
        "get_instruction": StoreOperation.READ,
        "create": StoreOperation.CREATE_TASKS,
        "create_many": StoreOperation.CREATE_TASKS,
        "cancel": StoreOperation.CREATE_TASKS,
        "start": StoreOperation.START,
        "record_attempt_failure": StoreOperation.RECORD_ATTEMPT_FAILURE,
        "complete": StoreOperation.COMPLETE,
        "fail": StoreOperation.FAIL,
        "set_review_status": StoreOperation.REVIEW,
        "add_task_event": StoreOperation.AUDIT,
        "mark_integrated": StoreOperation.INTEGRATE,
        "create_instruction": StoreOperation.INSTRUCTIONS,
        "update_instruction_status": StoreOperation.INSTRUCTIONS,
    },
)


class OperationNotPermitted(PermissionError):
    """Raised when a role touches a store operation outside its strategy."""


@dataclass(slots=True, frozen=True)
class RoleStrategy:
    """Everything that differs between the coordinator and a worker."""

    role: AgentRole
    permitted_operations: frozenset[StoreOperation]
    prompts: Mapping[PromptPhase, str]
    command_options: CommandOptions

    def permits(self, operation: StoreOperation) -> bool:
        return operation in self.permitted_operations

    def render(self, phase: PromptPhase, **values: Any) -> str:
        template = self.prompts.get(phase)
        if template is None:
            raise ValueError(f"Role {self.role.value} has no {phase.value} prompt.")
        return template.format(**values)

    def options_for(self, *, title: str | None = None) -> CommandOptions:
        if self.role == AgentRole.WORKER and title:
            return replace(
                self.command_options,
                append_context=WORKER_SYSTEM_PROMPT.format(title=title),
            )
        return self.command_options


class PermittedStore:
    """Task store view limited to the operations a role is allowed to use."""

    def __init__(self, repository: TaskRepository, strategy: RoleStrategy) -> None:
        self._repository = repository
        self._strategy = strategy

    def __getattr__(self, name: str) -> Any:
        operation = _OPERATION_METHODS.get(name)
        if operation is None:
            raise AttributeError(f"Task store operation not exposed to agents: {name}")
        if not self._strategy.permits(operation):
            raise OperationNotPermitted(
                f"Role {self._strategy.role.value} may not call {name} ({operation.value}).",
            )
        return getattr(self._repository, name)


def coordinator_strategy(settings: CommandSettings) -> RoleStrategy:
    return RoleStrategy(
        role=AgentRole.COORDINATOR,
        permitted_operations=frozenset(
            {
                StoreOperation.READ,
                StoreOperation.AUDIT,
                StoreOperation.CREATE_TASKS,
                StoreOperation.REVIEW,
                StoreOperation.INTEGRATE,
                StoreOperation.INSTRUCTIONS,
            },
        ),
        prompts=MappingProxyType(
            {PromptPhase.DECOMPOSE: DECOMPOSE_PROMPT, PromptPhase.REVIEW: REVIEW_PROMPT},
        ),
        command_options=_command_options(settings, default_tools=COORDINATOR_TOOLS),
    )


def worker_strategy(settings: CommandSettings) -> RoleStrategy:
    return RoleStrategy(
        role=AgentRole.WORKER,
        permitted_operations=frozenset(
            {
                StoreOperation.READ,
                StoreOperation.AUDIT,
                StoreOperation.START,
                StoreOperation.RECORD_ATTEMPT_FAILURE,
                StoreOperation.COMPLETE,
                StoreOperation.FAIL,
            },
        ),
        prompts=MappingProxyType(
            {
                PromptPhase.EXECUTE: EXECUTE_PROMPT,
                PromptPhase.SELF_TEST: SELF_TEST_PROMPT,
                PromptPhase.FIX: FIX_PROMPT,
            },
        ),
        command_options=_command_options(settings, default_tools=WORKER_TOOLS),
    )


def strategy_for(role: AgentRole, settings: CommandSettings) -> RoleStrategy:
    if role == AgentRole.COORDINATOR:
        return coordinator_strategy(settings)
    return worker_strategy(settings)


def _command_options(settings: CommandSettings, *, default_tools: Iterable[str]) -> CommandOptions:
    return CommandOptions(
        output_format=OutputFormat.STRUCTURED,
        timeout_seconds=settings.timeout_seconds,
        tool_allow_list=settings.allowed_tools or tuple(default_tools),
        tool_deny_list=settings.disallowed_tools,
        permission_mode=settings.permission_mode,
        model=settings.model,
    )
