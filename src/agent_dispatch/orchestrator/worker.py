"""Worker pass that executes one delivered agent task end to end."""

from __future__ import annotations

import logging
import time
from collections.abc import Mapping
from typing import Any

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.backend import (
    AgentRunner,
    ExecutionResult,
    ProcessRunner,
    ProcessRunRequest,
    RunnerError,
    RunnerErrorKind,
)
from agent_dispatch.orchestrator.codec import DecodeError, MessageCodec
from agent_dispatch.orchestrator.dispatcher import DispatchError, ResultDispatcher
from agent_dispatch.orchestrator.failure_classifier import is_agent_failure_retryable
from agent_dispatch.orchestrator.models import FailureKind, Task, WorkerOutcome, WorkerState
from agent_dispatch.orchestrator.sandbox import (
    ProvisionError,
    ProvisionErrorKind,
    Sandbox,
    SandboxProvisioner,
)
from agent_dispatch.orchestrator.sanitization import sanitize_preview

logger = logging.getLogger(__name__)


class RetryableTaskError(RuntimeError):
    """Raised to the transport so the message is redelivered instead of acknowledged."""

    def __init__(self, outcome: WorkerOutcome) -> None:
        super().__init__(
            f"Retryable failure ({outcome.failure_kind.value if outcome.failure_kind else '-'}) "
            f"correlation_id={outcome.correlation_id}: {outcome.error_summary}",
        )
        self.outcome = outcome


class WorkerLoop:
    """Codec -> sandbox -> runner -> dispatcher for exactly one delivered message.

    One instance handles one task at a time. Nothing is shared between passes
    except the injected collaborators, which hold no per-task state.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        codec: MessageCodec | None = None,
        provisioner: SandboxProvisioner | None = None,
        runner: AgentRunner | None = None,
        dispatcher: ResultDispatcher | None = None,
    ) -> None:
        self.settings = settings
        worker = settings.worker
        self.codec = codec or MessageCodec(
            default_hard_deadline_seconds=worker.default_hard_deadline_seconds,
            max_hard_deadline_seconds=worker.max_hard_deadline_seconds,
        )
        self.provisioner = provisioner or SandboxProvisioner(
            worker.sandbox_root,
            keep_sandboxes=worker.keep_sandboxes,
        )
        self.runner = runner or ProcessRunner(kill_grace_seconds=worker.kill_grace_seconds)
        self.dispatcher = dispatcher or ResultDispatcher(settings=settings.sinks)

    def handle(self, raw_envelope: Mapping[str, Any] | str | bytes) -> WorkerOutcome:
        """Run one pass and return its classified outcome."""

        transitions = [WorkerState.DECODING]
        try:
            task = self.codec.decode(raw_envelope)
        except DecodeError as error:
            return self._fail(
                transitions,
                correlation_id=error.correlation_id,
                failure_kind=FailureKind.MALFORMED,
                retryable=False,
                error_summary=str(error),
            )

        transitions.append(WorkerState.PROVISIONING)
        try:
            sandbox = self.provisioner.acquire(task.correlation_id)
        except ProvisionError as error:
            unsafe = error.kind == ProvisionErrorKind.UNSAFE_IDENTIFIER
            return self._fail(
                transitions,
                correlation_id=task.correlation_id,
                failure_kind=(
                    FailureKind.UNSAFE_IDENTIFIER if unsafe else FailureKind.INFRASTRUCTURE
                ),
                retryable=not unsafe,
                error_summary=str(error),
            )

        try:
            return self._execute_and_dispatch(task=task, sandbox=sandbox, transitions=transitions)
        finally:
            self.provisioner.release(sandbox)

    def process(self, raw_envelope: Mapping[str, Any] | str | bytes) -> WorkerOutcome:
        """Transport-facing variant: raise RetryableTaskError for retryable failures."""

        outcome = self.handle(raw_envelope)
        if outcome.retryable:
            raise RetryableTaskError(outcome)
        return outcome

    def close(self) -> None:
        self.dispatcher.close()

    def _execute_and_dispatch(
        self,
        *,
        task: Task,
        sandbox: Sandbox,
        transitions: list[WorkerState],
    ) -> WorkerOutcome:
        transitions.append(WorkerState.EXECUTING)
        logger.info(
            "Agent task started: correlation_id=%s agent=%s hard_deadline=%ss",
            task.correlation_id,
            task.agent_name,
            task.hard_deadline_seconds,
        )
        step_start = time.monotonic()
        try:
            result = self.runner.run(self._build_request(task=task, sandbox=sandbox))
        except RunnerError as error:
            if error.kind == RunnerErrorKind.SPAWN_FAILED:
                return self._fail(
                    transitions,
                    correlation_id=task.correlation_id,
                    failure_kind=FailureKind.INFRASTRUCTURE,
                    retryable=True,
                    error_summary=str(error),
                )
            return self._fail(
                transitions,
                correlation_id=task.correlation_id,
                failure_kind=FailureKind.TIMEOUT,
                retryable=False,
                error_summary=str(error),
                result=error.result,
            )
        elapsed = time.monotonic() - step_start

        if result.exit_code != 0:
            return self._agent_error(task=task, result=result, transitions=transitions)

        logger.info(
            "Agent task completed: correlation_id=%s agent=%s elapsed=%.1fs stdout_bytes=%d",
            task.correlation_id,
            task.agent_name,
            elapsed,
            len(result.stdout),
        )

        transitions.append(WorkerState.DISPATCHING)
        try:
            self.dispatcher.dispatch(task.reply, result)
        except DispatchError as error:
            # Not retried: redelivery would re-run the agent and duplicate side effects.
            return self._fail(
                transitions,
                correlation_id=task.correlation_id,
                failure_kind=FailureKind.DISPATCH_ONLY,
                retryable=False,
                error_summary=sanitize_preview(str(error)),
                result=result,
            )

        transitions.append(WorkerState.DONE)
        return WorkerOutcome(
            state=WorkerState.DONE,
            correlation_id=task.correlation_id,
            exit_code=result.exit_code,
            transitions=transitions,
        )

    def _agent_error(
        self,
        *,
        task: Task,
        result: ExecutionResult,
        transitions: list[WorkerState],
    ) -> WorkerOutcome:
        worker = self.settings.worker
        stdout = result.stdout.decode("utf-8", errors="replace")
        stderr = result.stderr.decode("utf-8", errors="replace")
        retryable, classification = is_agent_failure_retryable(
            policy=worker.agent_error_policy,
            exit_code=result.exit_code,
            stdout=stdout,
            stderr=stderr,
            transient_exit_codes=worker.transient_exit_codes,
        )
        if classification is not None:
            logger.info(
                "Agent failure classified: correlation_id=%s details=%s",
                task.correlation_id,
                classification.to_log_details(),
            )
        stderr_preview = sanitize_preview(stderr, max_chars=worker.stderr_preview_chars)
        return self._fail(
            transitions,
            correlation_id=task.correlation_id,
            failure_kind=FailureKind.AGENT_ERROR,
            retryable=retryable,
            error_summary=f"Agent exited with code {result.exit_code}: {stderr_preview or '-'}",
            result=result,
        )

    def _build_request(self, *, task: Task, sandbox: Sandbox) -> ProcessRunRequest:
        worker = self.settings.worker
        env_overlay: dict[str, str] = {}
        if worker.agent_api_key:
            env_overlay[worker.agent_api_key_env] = worker.agent_api_key
        env_overlay.update(sandbox.env)

        binary, *leading_args = worker.agent_command
        return ProcessRunRequest(
            binary=binary,
            args=[
                *leading_args,
                "--name",
                task.agent_name,
                "--input",
                task.serialized_message,
            ],
            cwd=sandbox.root,
            hard_deadline_seconds=task.hard_deadline_seconds,
            env_overlay=env_overlay,
        )

    @staticmethod
    def _fail(  # noqa: PLR0913
        transitions: list[WorkerState],
        *,
        correlation_id: str | None,
        failure_kind: FailureKind,
        retryable: bool,
        error_summary: str,
        result: ExecutionResult | None = None,
    ) -> WorkerOutcome:
        failed_in = transitions[-1]
        transitions.append(WorkerState.FAILED)
        log = logger.warning if failure_kind == FailureKind.DISPATCH_ONLY else logger.error
        log(
            "Agent task failed: correlation_id=%s kind=%s state=%s retryable=%s error=%s",
            correlation_id or "-",
            failure_kind.value,
            failed_in.value,
            retryable,
            error_summary,
        )
        return WorkerOutcome(
            state=WorkerState.FAILED,
            correlation_id=correlation_id,
            failure_kind=failure_kind,
            retryable=retryable,
            error_summary=error_summary,
            failed_in=failed_in,
            exit_code=result.exit_code if result is not None else None,
            transitions=transitions,
        )
