"""Cold-start check that the agent binary is installed and runnable."""

from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Sequence

logger = logging.getLogger(__name__)


class PreflightError(RuntimeError):
    """Agent binary is missing or fails its version probe."""


def check_agent_binary(command: Sequence[str], *, timeout_seconds: int = 10) -> str:
    """Run ``<command> --version`` and return the reported version."""

    if not command:
        raise PreflightError("Agent command is empty.")
    executable = command[0]
    resolved = shutil.which(executable)
    if resolved is None:
        raise PreflightError(
            f'Cold-start check failed: "{executable}" is not installed or not on PATH.',
        )

    try:
        completed = subprocess.run(  # noqa: S603
            [resolved, *command[1:], "--version"],
            check=False,
            capture_output=True,
            text=True,
            stdin=subprocess.DEVNULL,
            timeout=timeout_seconds,
        )
    except subprocess.TimeoutExpired as error:
        raise PreflightError(
            f"Cold-start check timed out after {timeout_seconds}s: {executable} --version",
        ) from error
    except OSError as error:
        raise PreflightError(f"Cold-start check failed to start {executable}: {error}") from error

    if completed.returncode != 0:
        raise PreflightError(
            f"Cold-start check failed: {executable} --version exited "
            f"with code {completed.returncode}: {_truncate(completed.stderr)}",
        )

    version = completed.stdout.strip() or completed.stderr.strip()
    logger.info("Cold-start check passed: %s %s", executable, version)
    return version


def _truncate(value: str, *, limit: int = 240) -> str:
    compact = value.strip().replace("\n", " ")
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
