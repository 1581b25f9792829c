"""Coordinator/worker orchestration over supervised agent CLI processes.

Why a SQLite task store instead of a broker?
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~
Everything runs on one machine and the expensive part of every task is an
external agent CLI call measured in seconds or minutes. Conditional
``UPDATE ... WHERE status = ...`` statements give the only guarantee that
matters here (one assignee per task, dependents released only after their
upstream completed) without another service to operate.

Layers, bottom-up:

- ``repository``: durable tasks, dependency edges, audit events.
- ``backend.cli_backend``: stateless one-shot command execution.
- ``supervisor``: one long-lived process per agent, crash recovery, FIFO
  command queue.
- ``scheduler``: pairs idle workers with Ready tasks.
- ``agent``: the coordinator/worker state machine.
- ``runtime``: composition root.
"""
