"""Long-lived host process representing one supervised agent.

Commands run as separate one-shot invocations; this process only anchors the
agent's lifetime so the supervisor can probe liveness and detect crashes.
"""

from __future__ import annotations

import argparse
import os
import signal
import sys
import threading


def main(argv: list[str] | None = None) -> int:
    """Stay alive until SIGTERM/SIGINT."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--agent-id", default=os.getenv("AGENT_COMPANY_AGENT_ID", "agent"))
    parser.add_argument("--heartbeat-seconds", type=float, default=0.5)
    args = parser.parse_args(argv)

    stop = threading.Event()

    def _handler(_signum: int, _: object | None) -> None:
        stop.set()

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)
    print(f"agent host ready agent_id={args.agent_id} pid={os.getpid()}", flush=True)
    while not stop.wait(args.heartbeat_seconds):
        continue
    return 0


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
