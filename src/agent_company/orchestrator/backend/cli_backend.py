"""Stateless one-shot command execution against the external agent CLI."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
import time
from collections.abc import Callable, Sequence
from typing import IO, Any

from agent_company.orchestrator.models import (
    CommandFailure,
    CommandOptions,
    CommandResult,
    OutputFormat,
)

logger = logging.getLogger(__name__)

TIMEOUT_ERROR = "timeout"

_FENCED_JSON = re.compile(r"```(?:json)?\s*([\[{].*?[\]}])\s*```", re.DOTALL | re.IGNORECASE)
_STDERR_PREVIEW_CHARS = 2_000

InterruptProbe = Callable[[], "str | None"]


class _ResponseParseError(ValueError):
    pass


class _ResponseReportedError(RuntimeError):
    pass


class CommandExecutor:
    """Run one prompt per process invocation; no conversational state is kept.

    The executable is launched with an argument list derived from
    ``CommandOptions``; only stdout, stderr and the exit code are consumed.
    """

    def __init__(
        self,
        *,
        executable: Sequence[str] = ("claude",),
        default_timeout_seconds: float = 120.0,
        poll_interval_seconds: float = 0.02,
        env: dict[str, str] | None = None,
    ) -> None:
        if not executable:
            raise ValueError("Command executable must not be empty.")
        self.executable = tuple(executable)
        self.default_timeout_seconds = default_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.env = env

    def build_args(self, prompt: str, options: CommandOptions) -> list[str]:
        """Translate options into the external tool's argument list."""

        args = [*self.executable, "-p", prompt]
        args += [
            "--output-format",
            "json" if options.output_format == OutputFormat.STRUCTURED else "text",
        ]
        if options.permission_mode and options.permission_mode != "default":
            args += ["--permission-mode", options.permission_mode]
        if options.workspace_path is not None:
            args += ["--add-dir", str(options.workspace_path)]
        if options.tool_allow_list:
            args += ["--allowedTools", " ".join(options.tool_allow_list)]
        if options.tool_deny_list:
            args += ["--disallowedTools", " ".join(options.tool_deny_list)]
        if options.model:
            args += ["--model", options.model]
        if options.append_context:
            args += ["--append-system-prompt", options.append_context]
        return args

    def execute_command(
        self,
        prompt: str,
        options: CommandOptions | None = None,
        *,
        interrupt: InterruptProbe | None = None,
    ) -> CommandResult:
        """Run one command and fold every outcome into a ``CommandResult``.

        ``interrupt`` is polled while the command runs; a non-empty reason
        kills the command and yields an ``interrupted`` failure carrying
        that reason.
        """

        options = options or CommandOptions(timeout_seconds=self.default_timeout_seconds)
        timeout_seconds = options.timeout_seconds or self.default_timeout_seconds
        run_args = self.build_args(prompt, options)
        cwd = str(options.workspace_path) if options.workspace_path is not None else None
        started = time.monotonic()
        logger.debug(
            "Executing command (prompt_chars=%d format=%s timeout=%.2fs)",
            len(prompt),
            options.output_format.value,
            timeout_seconds,
        )

        with (
            tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stdout_handle,
            tempfile.TemporaryFile("w+", encoding="utf-8", errors="replace") as stderr_handle,
        ):
            try:
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    env=self._build_env(),
                    cwd=cwd,
                    stdin=subprocess.DEVNULL,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
            except OSError as error:
                return CommandResult(
                    success=False,
                    error=f"Failed to start {self.executable[0]}: {error}",
                    failure=CommandFailure.EXECUTION,
                    duration_ms=_elapsed_ms(started),
                )

            outcome = _wait_for_process(
                process,
                timeout_seconds=timeout_seconds,
                poll_interval_seconds=self.poll_interval_seconds,
                interrupt=interrupt,
            )
            stdout_text = _read_all(stdout_handle)
            stderr_text = _read_all(stderr_handle)

        duration_ms = _elapsed_ms(started)
        if outcome == TIMEOUT_ERROR:
            logger.warning("Command timed out after %.2fs", timeout_seconds)
            return CommandResult(
                success=False,
                error=TIMEOUT_ERROR,
                failure=CommandFailure.TIMEOUT,
                duration_ms=duration_ms,
                exit_code=process.returncode,
                stderr=stderr_text[-_STDERR_PREVIEW_CHARS:],
            )
        if outcome is not None:
            return CommandResult(
                success=False,
                error=outcome,
                failure=CommandFailure.INTERRUPTED,
                duration_ms=duration_ms,
                exit_code=process.returncode,
                stderr=stderr_text[-_STDERR_PREVIEW_CHARS:],
            )
        return _build_result(
            stdout_text=stdout_text,
            stderr_text=stderr_text,
            exit_code=process.returncode,
            output_format=options.output_format,
            duration_ms=duration_ms,
        )

    def execute_batch(
        self,
        prompts: Sequence[str],
        options: CommandOptions | None = None,
    ) -> list[CommandResult]:
        """Run prompts one after another, optionally stopping at the first failure."""

        options = options or CommandOptions(timeout_seconds=self.default_timeout_seconds)
        results: list[CommandResult] = []
        for prompt in prompts:
            result = self.execute_command(prompt, options)
            results.append(result)
            if not result.success and options.stop_on_error:
                break
        return results

    def check_availability(self, *, timeout_seconds: float = 5.0) -> tuple[bool, str]:
        """Probe ``<executable> --version``."""

        try:
            completed = subprocess.run(  # noqa: S603
                [*self.executable, "--version"],
                env=self._build_env(),
                capture_output=True,
                text=True,
                timeout=timeout_seconds,
                check=False,
            )
        except FileNotFoundError:
            return False, f"Command not found: {self.executable[0]}"
        except subprocess.TimeoutExpired:
            return False, f"Version probe timed out after {timeout_seconds:.1f}s"
        except OSError as error:
            return False, f"Version probe failed: {error}"
        output = (completed.stdout or completed.stderr).strip()
        if completed.returncode != 0:
            return False, output or f"exit code {completed.returncode}"
        return True, output

    def _build_env(self) -> dict[str, str]:
        env = os.environ.copy()
        if self.env:
            env.update(self.env)
        return env


def parse_structured_payload(text: str) -> Any:
    """Decode JSON from a model reply, tolerating code fences and surrounding prose."""

    stripped = text.strip()
    if not stripped:
        raise _ResponseParseError("empty structured response")
    for candidate in _json_candidates(stripped):
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    raise _ResponseParseError(f"response is not valid JSON: {stripped[:120]!r}")


def _json_candidates(text: str) -> list[str]:
    candidates = [text]
    fenced = _FENCED_JSON.search(text)
    if fenced is not None:
        candidates.append(fenced.group(1))
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])
    return candidates


def _build_result(
    *,
    stdout_text: str,
    stderr_text: str,
    exit_code: int | None,
    output_format: OutputFormat,
    duration_ms: int,
) -> CommandResult:
    stderr_preview = stderr_text[-_STDERR_PREVIEW_CHARS:]
    if exit_code != 0:
        detail = stderr_text.strip() or stdout_text.strip()
        return CommandResult(
            success=False,
            error=f"exit code {exit_code}: {detail[-500:]}" if detail else f"exit code {exit_code}",
            failure=CommandFailure.EXECUTION,
            duration_ms=duration_ms,
            exit_code=exit_code,
            stderr=stderr_preview,
        )

    if output_format == OutputFormat.PLAIN:
        return CommandResult(
            success=True,
            payload=stdout_text.strip(),
            duration_ms=duration_ms,
            exit_code=exit_code,
            stderr=stderr_preview,
        )

    try:
        payload, cost, session_id = _decode_envelope(stdout_text)
    except _ResponseReportedError as error:
        return CommandResult(
            success=False,
            error=str(error),
            failure=CommandFailure.EXECUTION,
            duration_ms=duration_ms,
            exit_code=exit_code,
            stderr=stderr_preview,
        )
    except _ResponseParseError as error:
        logger.warning("Failed to parse structured response: %s", error)
        return CommandResult(
            success=False,
            error=f"JSON parse error: {error}",
            failure=CommandFailure.PARSE,
            duration_ms=duration_ms,
            exit_code=exit_code,
            stderr=stderr_preview,
        )
    return CommandResult(
        success=True,
        payload=payload,
        duration_ms=duration_ms,
        cost_usd=cost,
        session_id=session_id,
        exit_code=exit_code,
        stderr=stderr_preview,
    )


def _decode_envelope(stdout_text: str) -> tuple[Any, float | None, str | None]:
    try:
        envelope = json.loads(stdout_text)
    except json.JSONDecodeError as error:
        raise _ResponseParseError(f"envelope is not JSON ({error})") from error
    if not isinstance(envelope, dict):
        raise _ResponseParseError("envelope is not a JSON object")

    result = envelope.get("result")
    if envelope.get("is_error"):
        raise _ResponseReportedError(str(result or envelope.get("subtype") or "tool error"))

    payload = parse_structured_payload(result) if isinstance(result, str) else result
    if payload is None:
        raise _ResponseParseError("envelope has no result")

    cost = envelope.get("total_cost_usd")
    session_id = envelope.get("session_id")
    return (
        payload,
        float(cost) if isinstance(cost, int | float) else None,
        str(session_id) if session_id else None,
    )


def _wait_for_process(
    process: subprocess.Popen[str],
    *,
    timeout_seconds: float,
    poll_interval_seconds: float,
    interrupt: InterruptProbe | None,
) -> str | None:
    """Block until exit; return ``"timeout"``, an interrupt reason, or ``None`` on exit."""

    deadline = time.monotonic() + timeout_seconds
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _kill_process(process)
            return TIMEOUT_ERROR
        try:
            process.wait(timeout=min(poll_interval_seconds, remaining))
        except subprocess.TimeoutExpired:
            pass
        else:
            return None
        if interrupt is not None:
            reason = interrupt()
            if reason:
                _kill_process(process)
                return reason


def _kill_process(process: subprocess.Popen[str]) -> None:
    try:
        process.kill()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        logger.error("Process %s did not exit after SIGKILL", process.pid)


def _read_all(handle: IO[str]) -> str:
    handle.flush()
    handle.seek(0)
    return handle.read()


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
