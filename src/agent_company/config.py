"""Runtime configuration for the orchestration core."""

from __future__ import annotations

import os
import shlex
import sys
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_HOST_COMMAND = (sys.executable, "-m", "agent_company.orchestrator.backend.agent_host")


@dataclass(slots=True)
class SupervisorSettings:
    """Agent process lifecycle settings."""

    host_command: tuple[str, ...] = DEFAULT_HOST_COMMAND
    max_retries: int = 3
    restart_delay_seconds: float = 5.0
    start_timeout_seconds: float = 10.0
    liveness_probe_seconds: float = 0.2
    graceful_shutdown_seconds: float = 5.0
    health_check_interval_seconds: float = 30.0


@dataclass(slots=True)
class CommandSettings:
    """External agent CLI invocation settings."""

    executable: tuple[str, ...] = ("claude",)
    timeout_seconds: float = 120.0
    permission_mode: str = "bypassPermissions"
    model: str | None = None
    allowed_tools: tuple[str, ...] = ()
    disallowed_tools: tuple[str, ...] = ()


@dataclass(slots=True)
class TaskSettings:
    """Task-layer retry budget."""

    max_attempts: int = 3
    review_retries: int = 2
    self_test: bool = True


@dataclass(slots=True)
class PoolSettings:
    """Agent pool settings."""

    worker_replicas: int = 2
    worker_capabilities: tuple[str, ...] = ("*",)
    workspace_root: Path = Path(".agent_company/workspaces")
    scheduler_tick_seconds: float = 1.0
    stats_interval_seconds: float = 10.0


@dataclass(slots=True)
class IntegrationSettings:
    """Post-approval version-control hook."""

    command: tuple[str, ...] = ()
    timeout_seconds: float = 60.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".agent_company.db")
    sqlite_busy_timeout_ms: int = 5_000
    supervisor: SupervisorSettings = field(default_factory=SupervisorSettings)
    command: CommandSettings = field(default_factory=CommandSettings)
    tasks: TaskSettings = field(default_factory=TaskSettings)
    pool: PoolSettings = field(default_factory=PoolSettings)
    integration: IntegrationSettings = field(default_factory=IntegrationSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        return cls(
            db_path=db_path or Path(os.getenv("AGENT_COMPANY_DB_PATH", ".agent_company.db")),
            sqlite_busy_timeout_ms=int(os.getenv("AGENT_COMPANY_SQLITE_BUSY_TIMEOUT_MS", "5000")),
            supervisor=SupervisorSettings(
                host_command=_env_command("AGENT_COMPANY_HOST_COMMAND", DEFAULT_HOST_COMMAND),
                max_retries=int(os.getenv("AGENT_COMPANY_MAX_RETRIES", "3")),
                restart_delay_seconds=float(
                    os.getenv("AGENT_COMPANY_RESTART_DELAY_SECONDS", "5.0"),
                ),
                start_timeout_seconds=float(
                    os.getenv("AGENT_COMPANY_START_TIMEOUT_SECONDS", "10.0"),
                ),
                liveness_probe_seconds=float(
                    os.getenv("AGENT_COMPANY_LIVENESS_PROBE_SECONDS", "0.2"),
                ),
                graceful_shutdown_seconds=float(
                    os.getenv("AGENT_COMPANY_GRACEFUL_SHUTDOWN_SECONDS", "5.0"),
                ),
                health_check_interval_seconds=float(
                    os.getenv("AGENT_COMPANY_HEALTH_CHECK_INTERVAL_SECONDS", "30.0"),
                ),
            ),
            command=CommandSettings(
                executable=_env_command("AGENT_COMPANY_COMMAND", ("claude",)),
                timeout_seconds=float(os.getenv("AGENT_COMPANY_COMMAND_TIMEOUT_SECONDS", "120")),
                permission_mode=os.getenv("AGENT_COMPANY_PERMISSION_MODE", "bypassPermissions"),
                model=os.getenv("AGENT_COMPANY_MODEL") or None,
                allowed_tools=_env_list("AGENT_COMPANY_ALLOWED_TOOLS"),
                disallowed_tools=_env_list("AGENT_COMPANY_DISALLOWED_TOOLS"),
            ),
            tasks=TaskSettings(
                max_attempts=int(os.getenv("AGENT_COMPANY_TASK_MAX_ATTEMPTS", "3")),
                review_retries=int(os.getenv("AGENT_COMPANY_REVIEW_RETRIES", "2")),
                self_test=_env_bool("AGENT_COMPANY_SELF_TEST", default=True),
            ),
            pool=PoolSettings(
                worker_replicas=int(os.getenv("AGENT_COMPANY_WORKER_REPLICAS", "2")),
                worker_capabilities=_env_list("AGENT_COMPANY_WORKER_CAPABILITIES") or ("*",),
                workspace_root=Path(
                    os.getenv("AGENT_COMPANY_WORKSPACE_ROOT", ".agent_company/workspaces"),
                ),
                scheduler_tick_seconds=float(
                    os.getenv("AGENT_COMPANY_SCHEDULER_TICK_SECONDS", "1.0"),
                ),
                stats_interval_seconds=float(
                    os.getenv("AGENT_COMPANY_STATS_INTERVAL_SECONDS", "10.0"),
                ),
            ),
            integration=IntegrationSettings(
                command=_env_command("AGENT_COMPANY_INTEGRATION_COMMAND", ()),
                timeout_seconds=float(
                    os.getenv("AGENT_COMPANY_INTEGRATION_TIMEOUT_SECONDS", "60"),
                ),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for values the runtime cannot work with."""

        if not self.command.executable:
            raise ValueError("AGENT_COMPANY_COMMAND must not be empty.")
        if not self.supervisor.host_command:
            raise ValueError("AGENT_COMPANY_HOST_COMMAND must not be empty.")
        if self.supervisor.max_retries < 0:
            raise ValueError("AGENT_COMPANY_MAX_RETRIES must be >= 0.")
        if self.supervisor.start_timeout_seconds <= 0:
            raise ValueError("AGENT_COMPANY_START_TIMEOUT_SECONDS must be > 0.")
        if self.supervisor.health_check_interval_seconds <= 0:
            raise ValueError("AGENT_COMPANY_HEALTH_CHECK_INTERVAL_SECONDS must be > 0.")
        if self.command.timeout_seconds <= 0:
            raise ValueError("AGENT_COMPANY_COMMAND_TIMEOUT_SECONDS must be > 0.")
        if self.tasks.max_attempts < 1:
            raise ValueError("AGENT_COMPANY_TASK_MAX_ATTEMPTS must be >= 1.")
        if self.pool.worker_replicas < 0:
            raise ValueError("AGENT_COMPANY_WORKER_REPLICAS must be >= 0.")


def _env_command(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    return tuple(shlex.split(raw))


def _env_list(name: str) -> tuple[str, ...]:
    raw = os.getenv(name, "")
    return tuple(part.strip() for part in raw.split(",") if part.strip())


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
