"""Prompt templates for each coordinator and worker phase.

Every prompt starts with ``Phase:`` and, for task phases, ``Task ID:`` and
``Title:`` header lines so replies and logs can be correlated.
"""

from __future__ import annotations

DECOMPOSE_PROMPT = """\
Phase: decompose
Instruction ID: {instruction_id}

You are the coordinator of a team of worker agents. Break the instruction
below into concrete tasks that a single worker can finish on its own.

<instruction>
{content}
</instruction>

Answer with ONLY a JSON object of this shape:
{{"tasks": [{{"key": "t1", "title": "...", "description": "...", "priority": 5,
"capability": "general", "depends_on": []}}]}}

Rules:
- priority is 0-10; higher runs first.
- depends_on lists keys (or titles) of tasks that must complete first.
- Keep titles unique within the answer.
- Use capability "general" unless the task needs a specialist.
"""

EXECUTE_PROMPT = """\
Phase: execute
Task ID: {task_id}
Title: {title}
Attempt: {attempt} of {max_attempts}

You are a worker agent. Complete the task below inside your workspace.

{description}

Answer with ONLY a JSON object:
{{"summary": "...", "files": ["..."], "notes": "..."}}
"""

SELF_TEST_PROMPT = """\
Phase: self_test
Task ID: {task_id}
Title: {title}

Verify the work you just did. Run whatever checks fit the task and report
honestly; do not change the work in this step.

Task:
{description}

Your reported output:
{output}

Answer with ONLY a JSON object:
{{"passed": true, "details": "..."}}
"""

FIX_PROMPT = """\
Phase: fix
Task ID: {task_id}
Title: {title}
Attempt: {attempt} of {max_attempts}

Your self-test failed. Fix the work so the checks pass.

Task:
{description}

Self-test report:
{details}

Answer with ONLY a JSON object:
{{"summary": "...", "files": ["..."], "notes": "..."}}
"""

REVIEW_PROMPT = """\
Phase: review
Task ID: {task_id}
Title: {title}
Remediation round: {remediation_round}

You are the coordinator reviewing a worker's finished task. Approve it only
if the output fully satisfies the task.

Task:
{description}

Worker output:
{output}

Answer with ONLY a JSON object:
{{"approved": true, "feedback": "...", "issues": [], "suggestions": [], "score": 0}}
"""

REMEDIATION_DESCRIPTION = """\
{description}

Review feedback (round {round}):
{feedback}"""

WORKER_SYSTEM_PROMPT = (
    'You are a skilled developer working on task "{title}". '
    "Focus on clean, maintainable, well-tested work."
)
