"""Local demo agent for process runner and worker integration tests.

Behaviour is driven by ``agent.args`` of the message passed with ``--input``:
``stdout``, ``stderr``, ``exit_code``, ``sleep_seconds``, ``print_env`` and
``spawn_child_sleep_seconds`` / ``child_pid_file``.
"""

from __future__ import annotations

import argparse
import json
import os
import subprocess
import sys
import time
from pathlib import Path

VERSION = "echo-agent 1.0"


def main(argv: list[str] | None = None) -> int:
    """Run deterministic demo behaviour."""

    parser = argparse.ArgumentParser()
    parser.add_argument("--version", action="version", version=VERSION)
    parser.add_argument("--name", required=True)
    parser.add_argument("--input", required=True)
    args = parser.parse_args(argv)

    message = json.loads(args.input)
    options = message.get("agent", {}).get("args", {}) or {}

    child_sleep = options.get("spawn_child_sleep_seconds")
    if child_sleep is not None:
        child = subprocess.Popen(  # noqa: S603
            [sys.executable, "-c", f"import time; time.sleep({float(child_sleep)})"],
        )
        pid_file = options.get("child_pid_file")
        if pid_file:
            Path(pid_file).write_text(str(child.pid), "utf-8")

    sleep_seconds = float(options.get("sleep_seconds", 0))
    if sleep_seconds > 0:
        time.sleep(sleep_seconds)

    if options.get("print_env"):
        payload = {name: os.environ.get(name) for name in options["print_env"]}
        payload["cwd"] = os.getcwd()
        sys.stdout.write(json.dumps(payload, sort_keys=True))
    else:
        sys.stdout.write(str(options.get("stdout", f"{args.name} ok")))
    if options.get("stderr"):
        sys.stderr.write(str(options["stderr"]))
    return int(options.get("exit_code", 0))


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
