"""Controllers for worker CLI commands."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.models import FailureKind, WorkerOutcome
from agent_dispatch.orchestrator.preflight import PreflightError, check_agent_binary
from agent_dispatch.orchestrator.worker import WorkerLoop

# sysexits.h codes understood by queue wrappers: 65 acknowledges, 75 asks for redelivery.
EXIT_OK = 0
EXIT_TERMINAL = 65
EXIT_RETRYABLE = 75


@dataclass(slots=True)
class WorkerHandleCommand:
    """CLI input for handling one delivered envelope."""

    envelope: str
    skip_preflight: bool = False


@dataclass(slots=True)
class WorkerHandleResult:
    """Report to render in CLI plus the process exit code."""

    lines: list[str]
    exit_code: int


class WorkerCliController:
    """Coordinates preflight and single-message worker passes."""

    def handle(self, command: WorkerHandleCommand) -> WorkerHandleResult:
        settings = Settings.from_env()
        settings.validate_for_worker()

        if not command.skip_preflight:
            try:
                check_agent_binary(
                    settings.worker.agent_command,
                    timeout_seconds=settings.worker.preflight_timeout_seconds,
                )
            except PreflightError as error:
                return WorkerHandleResult(
                    lines=[f"Preflight failed: {error}"],
                    exit_code=EXIT_RETRYABLE,
                )

        with _worker(settings) as worker:
            outcome = worker.handle(command.envelope)
        return WorkerHandleResult(
            lines=render_outcome(outcome),
            exit_code=outcome_exit_code(outcome),
        )

    def preflight(self) -> list[str]:
        settings = Settings.from_env()
        version = check_agent_binary(
            settings.worker.agent_command,
            timeout_seconds=settings.worker.preflight_timeout_seconds,
        )
        return [f"Agent binary OK: {settings.worker.agent_command[0]} {version}"]


def outcome_exit_code(outcome: WorkerOutcome) -> int:
    if outcome.retryable:
        return EXIT_RETRYABLE
    # Dispatch-only failures are reported but the agent work itself completed.
    if outcome.failure_kind in (None, FailureKind.DISPATCH_ONLY):
        return EXIT_OK
    return EXIT_TERMINAL


def render_outcome(outcome: WorkerOutcome) -> list[str]:
    lines = [
        "Worker outcome: "
        f"correlation_id={outcome.correlation_id or '-'} state={outcome.state.value} "
        f"failure={outcome.failure_kind.value if outcome.failure_kind else '-'} "
        f"retryable={'yes' if outcome.retryable else 'no'} "
        f"exit_code={outcome.exit_code if outcome.exit_code is not None else '-'}",
        "Transitions: " + " -> ".join(state.value for state in outcome.transitions),
    ]
    if outcome.error_summary:
        lines.append(f"Error: {outcome.error_summary}")
    return lines


@contextmanager
def _worker(settings: Settings) -> Iterator[WorkerLoop]:
    worker = WorkerLoop(settings=settings)
    try:
        yield worker
    finally:
        worker.close()
