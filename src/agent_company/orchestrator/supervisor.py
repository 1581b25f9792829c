"""Lifecycle owner for one agent's external process and its command queue.

State machine::

    stopped -> starting -> running -> {error, restarting} -> stopped

Each supervisor owns a long-lived host process (liveness anchor), a FIFO
dispatcher thread that runs one command at a time through the
``CommandExecutor``, and a health-check thread. Crashes are recovered
automatically while ``restart_count < max_retries``; after that the agent
stays in ``error`` until an operator intervenes.
"""

from __future__ import annotations

import logging
import os
import queue
import subprocess
import threading
import time
from collections.abc import Callable
from concurrent.futures import Future
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from agent_company.config import SupervisorSettings
from agent_company.orchestrator.backend.cli_backend import CommandExecutor
from agent_company.orchestrator.errors import (
    MaxRetriesExceeded,
    ProcessCrashError,
    ProcessStartError,
    ShutdownError,
)
from agent_company.orchestrator.events import ErrorReporter, EventBus, EventKind
from agent_company.orchestrator.models import (
    AgentRole,
    Command,
    CommandFailure,
    CommandOptions,
    CommandResult,
    ProcessStatus,
)
from agent_company.storage.common import utc_now

logger = logging.getLogger(__name__)

_SHUTDOWN = "shutdown"
_CRASH = "crash"


@dataclass(slots=True)
class _PendingCommand:
    command: Command
    future: Future[CommandResult]


class AgentProcessSupervisor:
    """Supervises one agent process and serializes its commands."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        agent_id: str,
        role: AgentRole,
        workspace_path: Path,
        executor: CommandExecutor,
        settings: SupervisorSettings,
        reporter: ErrorReporter,
        events: EventBus | None = None,
        command_options: CommandOptions | None = None,
    ) -> None:
        self.agent_id = agent_id
        self.role = role
        self.workspace_path = workspace_path
        self.executor = executor
        self.settings = settings
        self.reporter = reporter
        self.events = events
        self.command_options = command_options or CommandOptions(
            timeout_seconds=executor.default_timeout_seconds,
        )

        self._lock = threading.RLock()
        self._state_changed = threading.Condition(self._lock)
        self._status = ProcessStatus.STOPPED
        self._process: subprocess.Popen[bytes] | None = None
        self._restart_count = 0
        self._error_count = 0
        self._last_activity_at: datetime | None = None
        self._queue: queue.Queue[_PendingCommand | None] = queue.Queue()
        self._current: _PendingCommand | None = None
        self._current_interrupt: str | None = None
        self._closed = True
        self._stopping = False
        self._recovering = False
        self._dispatcher: threading.Thread | None = None
        self._health_thread: threading.Thread | None = None
        self._health_stop = threading.Event()

    # -- introspection ------------------------------------------------------------

    @property
    def status(self) -> ProcessStatus:
        with self._lock:
            return self._status

    @property
    def restart_count(self) -> int:
        with self._lock:
            return self._restart_count

    @property
    def error_count(self) -> int:
        with self._lock:
            return self._error_count

    @property
    def last_activity_at(self) -> datetime | None:
        with self._lock:
            return self._last_activity_at

    @property
    def pid(self) -> int | None:
        with self._lock:
            return self._process.pid if self._process is not None else None

    @property
    def is_terminal_error(self) -> bool:
        with self._lock:
            return self._status == ProcessStatus.ERROR and not self._recovering

    def wait_for_status(self, status: ProcessStatus, timeout: float) -> bool:
        """Block until the supervisor reaches ``status`` or the timeout expires."""

        deadline = time.monotonic() + timeout
        with self._lock:
            while self._status != status:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._state_changed.wait(timeout=remaining)
            return True

    # -- lifecycle ----------------------------------------------------------------

    def start(self) -> None:
        """Spawn the agent process and begin accepting commands."""

        with self._lock:
            if self._status == ProcessStatus.RUNNING:
                return
            self._closed = False
            self._spawn_host()
            self._ensure_threads()

    def stop(self) -> None:
        """Terminate the process; in-flight and queued commands get ``ShutdownError``."""

        self._shutdown(final_status=ProcessStatus.STOPPED, close=True)

    def restart(self) -> None:
        """Stop, wait the restart delay, and start again; counts against the restart budget."""

        with self._lock:
            self._set_status(ProcessStatus.RESTARTING)
        self._shutdown(final_status=ProcessStatus.RESTARTING, close=False)
        if self.settings.restart_delay_seconds > 0:
            time.sleep(self.settings.restart_delay_seconds)
        with self._lock:
            self._restart_count += 1
            self._closed = False
            self._spawn_host()
            self._ensure_threads()

    def check_health(self) -> bool:
        """Liveness probe; an exited process is handled as a crash."""

        with self._lock:
            process = self._process
            status = self._status
        if status != ProcessStatus.RUNNING or process is None:
            return status == ProcessStatus.RUNNING
        exit_code = process.poll()
        if exit_code is None:
            return True
        self._handle_unexpected_exit(f"process exited with code {exit_code}")
        return False

    # -- commands -----------------------------------------------------------------

    def submit(
        self,
        prompt: str,
        options: CommandOptions | None = None,
        *,
        task_id: str | None = None,
    ) -> Future[CommandResult]:
        """Queue one command; it runs after every command submitted before it."""

        effective = options or self.command_options
        if effective.workspace_path is None:
            effective = replace(effective, workspace_path=self.workspace_path)
        command = Command(
            command_id=uuid4().hex,
            prompt=prompt,
            options=effective,
            issued_at=utc_now(),
            task_id=task_id,
        )
        future: Future[CommandResult] = Future()
        with self._lock:
            if self._closed:
                future.set_exception(ShutdownError(f"Agent {self.agent_id} is not running."))
                return future
            if self._status == ProcessStatus.ERROR and not self._recovering:
                future.set_exception(
                    ProcessCrashError(f"Agent {self.agent_id} is in terminal error state."),
                )
                return future
            self._queue.put(_PendingCommand(command=command, future=future))
        return future

    def execute(
        self,
        prompt: str,
        options: CommandOptions | None = None,
        *,
        task_id: str | None = None,
    ) -> CommandResult:
        """Submit and wait; raises ``ProcessCrashError`` or ``ShutdownError`` on interruption."""

        return self.submit(prompt, options, task_id=task_id).result()

    # -- internals ----------------------------------------------------------------

    def _spawn_host(self) -> None:
        # Caller holds the lock.
        self._set_status(ProcessStatus.STARTING)
        env = os.environ.copy()
        env["AGENT_COMPANY_AGENT_ID"] = self.agent_id
        env["AGENT_COMPANY_AGENT_ROLE"] = self.role.value
        try:
            self.workspace_path.mkdir(parents=True, exist_ok=True)
            process = subprocess.Popen(  # noqa: S603
                list(self.settings.host_command),
                cwd=self.workspace_path,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except OSError as error:
            self._error_count += 1
            self._set_status(ProcessStatus.ERROR)
            raise ProcessStartError(
                f"Failed to spawn agent {self.agent_id}: {error}",
            ) from error

        probe_seconds = min(
            self.settings.liveness_probe_seconds,
            self.settings.start_timeout_seconds,
        )
        deadline = time.monotonic() + probe_seconds
        while time.monotonic() < deadline and process.poll() is None:
            time.sleep(0.01)
        exit_code = process.poll()
        if exit_code is not None or not process.pid:
            self._error_count += 1
            self._set_status(ProcessStatus.ERROR)
            raise ProcessStartError(
                f"Agent {self.agent_id} exited during startup (exit code {exit_code}).",
            )

        self._process = process
        self._last_activity_at = utc_now()
        self._set_status(ProcessStatus.RUNNING)
        logger.info(
            "Agent %s started (pid=%s restarts=%d)",
            self.agent_id,
            process.pid,
            self._restart_count,
            extra={"agent_id": self.agent_id},
        )

    def _ensure_threads(self) -> None:
        if self._dispatcher is None or not self._dispatcher.is_alive():
            self._dispatcher = threading.Thread(
                target=self._dispatch_loop,
                name=f"{self.agent_id}-dispatcher",
                daemon=True,
            )
            self._dispatcher.start()
        if self._health_thread is None or not self._health_thread.is_alive():
            self._health_stop.clear()
            self._health_thread = threading.Thread(
                target=self._health_loop,
                name=f"{self.agent_id}-health",
                daemon=True,
            )
            self._health_thread.start()

    def _shutdown(self, *, final_status: ProcessStatus, close: bool) -> None:
        with self._lock:
            self._stopping = True
            if close:
                self._closed = True
            if self._current is not None:
                self._current_interrupt = _SHUTDOWN
            self._reject_queued(
                lambda command: ShutdownError(
                    f"Command {command.command_id} cancelled: agent {self.agent_id} is stopping.",
                ),
            )
            process = self._process

        if process is not None:
            _terminate_process(process, grace_seconds=self.settings.graceful_shutdown_seconds)
        self._wait_idle(timeout=self.settings.graceful_shutdown_seconds + 2.0)

        with self._lock:
            self._process = None
            self._stopping = False
            self._recovering = False
            self._set_status(final_status)

        if close:
            self._health_stop.set()
            self._queue.put(None)
            current = threading.current_thread()
            for thread in (self._dispatcher, self._health_thread):
                if thread is not None and thread is not current:
                    thread.join(timeout=self.settings.graceful_shutdown_seconds + 2.0)
            logger.info("Agent %s stopped", self.agent_id, extra={"agent_id": self.agent_id})

    def _wait_idle(self, *, timeout: float) -> None:
        deadline = time.monotonic() + timeout
        with self._lock:
            while self._current is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    logger.warning(
                        "Agent %s: in-flight command did not stop within %.1fs",
                        self.agent_id,
                        timeout,
                        extra={"agent_id": self.agent_id},
                    )
                    return
                self._state_changed.wait(timeout=remaining)

    def _reject_queued(self, make_error: Callable[[Command], Exception]) -> None:
        # Caller holds the lock.
        sentinels = 0
        while True:
            try:
                pending = self._queue.get_nowait()
            except queue.Empty:
                break
            if pending is None:
                sentinels += 1
                continue
            if pending.future.set_running_or_notify_cancel():
                pending.future.set_exception(make_error(pending.command))
        for _ in range(sentinels):
            self._queue.put(None)

    def _dispatch_loop(self) -> None:
        while True:
            pending = self._queue.get()
            if pending is None:
                return
            if not pending.future.set_running_or_notify_cancel():
                continue
            error = self._claim_for_run(pending)
            if error is not None:
                pending.future.set_exception(error)
                continue
            self._run_pending(pending)

    def _claim_for_run(self, pending: _PendingCommand) -> Exception | None:
        """Wait until the process can take a command, then mark it in flight."""

        with self._lock:
            while True:
                if self._closed or self._stopping:
                    return ShutdownError(
                        f"Command {pending.command.command_id} cancelled: "
                        f"agent {self.agent_id} is stopping.",
                    )
                if self._status == ProcessStatus.RUNNING:
                    self._current = pending
                    self._current_interrupt = None
                    return None
                if self._status == ProcessStatus.ERROR and not self._recovering:
                    return ProcessCrashError(
                        f"Agent {self.agent_id} is in terminal error state.",
                    )
                if self._status == ProcessStatus.STOPPED:
                    return ShutdownError(f"Agent {self.agent_id} is stopped.")
                self._state_changed.wait(timeout=0.5)

    def _run_pending(self, pending: _PendingCommand) -> None:
        command = pending.command
        try:
            result = self.executor.execute_command(
                command.prompt,
                command.options,
                interrupt=self._interrupt_probe,
            )
        except Exception as error:  # noqa: BLE001
            # Callers block on this future; the dispatcher keeps running.
            self.reporter.report(
                f"Command {command.command_id} raised inside the executor",
                error=error,
                agent_id=self.agent_id,
                task_id=command.task_id,
            )
            result = CommandResult(
                success=False,
                error=f"executor error: {type(error).__name__}: {error}",
                failure=CommandFailure.EXECUTION,
            )
        finally:
            with self._lock:
                interrupt = self._current_interrupt
                self._current = None
                self._current_interrupt = None
                self._last_activity_at = utc_now()
                self._state_changed.notify_all()
        command.completed_at = utc_now()

        if result.failure == CommandFailure.INTERRUPTED or interrupt is not None:
            if (result.error or interrupt) == _SHUTDOWN:
                pending.future.set_exception(
                    ShutdownError(
                        f"Command {command.command_id} cancelled: agent {self.agent_id} stopped.",
                    ),
                )
            else:
                pending.future.set_exception(
                    ProcessCrashError(
                        f"Command {command.command_id} interrupted: "
                        f"agent {self.agent_id} process crashed.",
                    ),
                )
            return

        if result.failure == CommandFailure.EXECUTION and result.killed_by_signal:
            signal_number = -(result.exit_code or 0)
            pending.future.set_exception(
                ProcessCrashError(
                    f"Command {command.command_id} on agent {self.agent_id} "
                    f"was killed by signal {signal_number}.",
                ),
            )
            self._handle_unexpected_exit(f"command process killed by signal {signal_number}")
            return

        pending.future.set_result(result)

    def _interrupt_probe(self) -> str | None:
        with self._lock:
            return self._current_interrupt

    def _health_loop(self) -> None:
        while not self._health_stop.wait(self.settings.health_check_interval_seconds):
            self.check_health()

    def _handle_unexpected_exit(self, reason: str) -> None:
        with self._lock:
            if self._stopping or self._closed or self._recovering:
                return
            if self._status not in {ProcessStatus.RUNNING, ProcessStatus.STARTING}:
                return
            self._recovering = True
            self._error_count += 1
            if self._current is not None:
                self._current_interrupt = _CRASH
            process = self._process
            self._process = None
            self._set_status(ProcessStatus.ERROR)
            can_restart = self._restart_count < self.settings.max_retries

        self.reporter.report(
            f"Agent process exited unexpectedly ({reason})",
            error=ProcessCrashError(reason),
            agent_id=self.agent_id,
        )
        if process is not None and process.poll() is None:
            _terminate_process(process, grace_seconds=self.settings.graceful_shutdown_seconds)
        if can_restart:
            threading.Thread(
                target=self._recover,
                name=f"{self.agent_id}-recovery",
                daemon=True,
            ).start()
        else:
            self._enter_terminal_error()

    def _recover(self) -> None:
        while True:
            with self._lock:
                if self._closed or self._stopping:
                    self._recovering = False
                    self._state_changed.notify_all()
                    return
                self._set_status(ProcessStatus.RESTARTING)
            if self._health_stop.wait(self.settings.restart_delay_seconds):
                with self._lock:
                    self._recovering = False
                    self._state_changed.notify_all()
                return
            with self._lock:
                if self._closed or self._stopping:
                    self._recovering = False
                    self._state_changed.notify_all()
                    return
                self._restart_count += 1
                attempt = self._restart_count
                try:
                    self._spawn_host()
                except ProcessStartError as error:
                    self.reporter.report(
                        f"Restart {attempt}/{self.settings.max_retries} failed",
                        error=error,
                        agent_id=self.agent_id,
                    )
                    if self._restart_count >= self.settings.max_retries:
                        break
                    continue
                self._recovering = False
                self._state_changed.notify_all()
            self.reporter.info(
                f"Agent restarted after crash ({attempt}/{self.settings.max_retries})",
                agent_id=self.agent_id,
            )
            return
        self._enter_terminal_error()

    def _enter_terminal_error(self) -> None:
        with self._lock:
            self._recovering = False
            self._set_status(ProcessStatus.ERROR)
            self._reject_queued(
                lambda command: ProcessCrashError(
                    f"Command {command.command_id} dropped: "
                    f"agent {self.agent_id} is in terminal error state.",
                ),
            )
            restart_count = self._restart_count
        self.reporter.report(
            "Agent requires operator intervention",
            error=MaxRetriesExceeded(self.agent_id, restart_count),
            agent_id=self.agent_id,
        )

    def _set_status(self, status: ProcessStatus) -> None:
        # Caller holds the lock.
        previous = self._status
        self._status = status
        self._state_changed.notify_all()
        if previous == status:
            return
        logger.debug(
            "Agent %s status %s -> %s",
            self.agent_id,
            previous.value,
            status.value,
            extra={"agent_id": self.agent_id},
        )
        if self.events is None:
            return
        self.events.publish(
            EventKind.AGENT_STATUS_UPDATE,
            {
                "agent_id": self.agent_id,
                "role": self.role.value,
                "status": status.value,
                "previous_status": previous.value,
                "restart_count": self._restart_count,
                "error_count": self._error_count,
                "terminal": status == ProcessStatus.ERROR and not self._recovering,
            },
        )


def _terminate_process(process: subprocess.Popen[bytes], *, grace_seconds: float) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=max(0.0, grace_seconds))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)
