"""Local deterministic stand-in for the agent CLI used by tests and smoke runs.

Accepts the same arguments the executor renders (``-p``, ``--output-format``,
``--add-dir``...) and answers every phase with canned JSON. Directives embedded
in the prompt script failures:

- ``[[sleep:S]]``: sleep S seconds while executing
- ``[[crash]]`` / ``[[crash-once]]``: kill itself with SIGKILL while executing
- ``[[exit:N]]``: exit with status N while executing
- ``[[garbage]]``: answer with a non-JSON result while executing
- ``[[error-envelope]]``: answer with an ``is_error`` envelope while executing
- ``[[stray-bytes]]``: write bytes that are not valid UTF-8 to stdout and stderr
- ``[[fail-tests:N]]``: fail the first N self-tests of a task
- ``[[reject-review:N]]``: reject the first N reviews carrying this directive
"""

from __future__ import annotations

import argparse
import hashlib
import json
import os
import re
import signal
import sys
import time
from pathlib import Path
from uuid import uuid4

STATE_DIR_ENV = "AGENT_COMPANY_ECHO_STATE_DIR"

_PHASE = re.compile(r"^Phase:\s*(\w+)", re.MULTILINE)
_TASK_ID = re.compile(r"^Task ID:\s*(\S+)", re.MULTILINE)
_TITLE = re.compile(r"^Title:\s*(.+)$", re.MULTILINE)
_INSTRUCTION = re.compile(r"<instruction>\s*(.*?)\s*</instruction>", re.DOTALL)
_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_DIRECTIVE = re.compile(r"\[\[([a-z-]+)(?::([^\]]+))?\]\]")


def main(argv: list[str] | None = None) -> int:
    """Answer one prompt the way the real CLI would, deterministically."""

    parser = argparse.ArgumentParser()
    parser.add_argument("-p", "--print", dest="prompt", default="")
    parser.add_argument("--output-format", default="text")
    parser.add_argument("--permission-mode", default="default")
    parser.add_argument("--add-dir", default=None)
    parser.add_argument("--allowedTools", default="")
    parser.add_argument("--disallowedTools", default="")
    parser.add_argument("--model", default=None)
    parser.add_argument("--append-system-prompt", default=None)
    parser.add_argument("--version", action="store_true")
    args = parser.parse_args(argv)

    if args.version:
        print("0.1.0 (Echo Agent)")
        return 0

    prompt: str = args.prompt
    phase_match = _PHASE.search(prompt)
    phase = phase_match.group(1).lower() if phase_match else "execute"
    task_match = _TASK_ID.search(prompt)
    task_key = task_match.group(1) if task_match else "adhoc"
    state_dir = Path(os.getenv(STATE_DIR_ENV) or args.add_dir or ".")
    directives = {name: value for name, value in _DIRECTIVE.findall(prompt)}

    if phase == "decompose":
        payload: object = _decompose(prompt)
    elif phase == "self_test":
        limit = int(directives.get("fail-tests") or 0)
        runs = _bump(state_dir, f"self-test:{task_key}")
        passed = runs > limit
        payload = {
            "passed": passed,
            "details": "all checks passed" if passed else f"check {runs} failed",
        }
    elif phase == "review":
        limit = int(directives.get("reject-review") or 0)
        runs = _bump(state_dir, f"review:{limit}:{_title(prompt)}") if limit else limit + 1
        approved = runs > limit
        payload = {
            "approved": approved,
            "feedback": "looks good" if approved else f"rejected in review round {runs}",
            "suggestions": [],
            "issues": [] if approved else ["output incomplete"],
            "score": 90 if approved else 40,
        }
    else:
        exit_code = _apply_execute_directives(directives, state_dir=state_dir, task_key=task_key)
        if exit_code is not None:
            return exit_code
        if "garbage" in directives:
            return _emit(args.output_format, "this is definitely not json", raw=True)
        if "error-envelope" in directives:
            print(json.dumps({"type": "result", "is_error": True, "result": "tool refused"}))
            return 0
        if "stray-bytes" in directives:
            sys.stdout.buffer.write(b"partial \xff\xfe output\n")
            sys.stderr.buffer.write(b"warn \xc3\x28\n")
            return 0
        payload = {"summary": f"done: {_title(prompt)}", "phase": phase, "task_id": task_key}

    return _emit(args.output_format, payload)


def _apply_execute_directives(
    directives: dict[str, str],
    *,
    state_dir: Path,
    task_key: str,
) -> int | None:
    if "sleep" in directives:
        time.sleep(float(directives["sleep"]))
    if "crash" in directives or (
        "crash-once" in directives and _bump(state_dir, f"crash:{task_key}") == 1
    ):
        os.kill(os.getpid(), signal.SIGKILL)
    if "exit" in directives:
        print(f"simulated failure with exit {directives['exit']}", file=sys.stderr)
        return int(directives["exit"])
    return None


def _decompose(prompt: str) -> object:
    match = _INSTRUCTION.search(prompt)
    instruction = match.group(1) if match else prompt
    fenced = _FENCED_JSON.search(instruction)
    if fenced is not None:
        return json.loads(fenced.group(1))
    first_line = instruction.strip().splitlines()[0] if instruction.strip() else "task"
    return {"tasks": [{"title": first_line[:80], "description": instruction, "priority": 5}]}


def _emit(output_format: str, payload: object, *, raw: bool = False) -> int:
    text = payload if raw else json.dumps(payload, ensure_ascii=False)
    if output_format == "json":
        print(
            json.dumps(
                {
                    "type": "result",
                    "subtype": "success",
                    "is_error": False,
                    "result": text,
                    "total_cost_usd": 0.0,
                    "session_id": uuid4().hex,
                },
            ),
        )
    else:
        print(text)
    return 0


def _bump(state_dir: Path, key: str) -> int:
    state_dir.mkdir(parents=True, exist_ok=True)
    digest = hashlib.sha1(key.encode("utf-8"), usedforsecurity=False).hexdigest()[:16]
    path = state_dir / f".echo-agent-{digest}"
    count = int(path.read_text("utf-8")) if path.exists() else 0
    count += 1
    path.write_text(str(count), "utf-8")
    return count


def _title(prompt: str) -> str:
    match = _TITLE.search(prompt)
    return match.group(1).strip() if match else "adhoc"


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
