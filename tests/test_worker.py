from __future__ import annotations

import json
import time
from dataclasses import replace

import allure
import pytest

from agent_dispatch.config import Settings
from agent_dispatch.orchestrator.backend import ExecutionResult, ProcessRunRequest
from agent_dispatch.orchestrator.dispatcher import ResultDispatcher
from agent_dispatch.orchestrator.models import FailureKind, WorkerState
from agent_dispatch.orchestrator.worker import RetryableTaskError, WorkerLoop

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Worker Pass"),
]

ISSUE_REPLY = {
    "type": "github.pr_review",
    "targets": {"repo": "acme/widgets", "pr": 7, "token": "ghs_abc"},
}


class _FixedRunner:
    """Runner stub returning a prepared result and recording requests."""

    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.requests: list[ProcessRunRequest] = []

    def run(self, request: ProcessRunRequest) -> ExecutionResult:
        self.requests.append(request)
        return self.result


def _worker(settings: Settings, transport, **kwargs) -> WorkerLoop:
    return WorkerLoop(
        settings=settings,
        dispatcher=ResultDispatcher(settings=settings.sinks, client=transport.client()),
        **kwargs,
    )


def _with_worker(settings: Settings, **changes) -> Settings:
    return Settings(worker=replace(settings.worker, **changes), sinks=settings.sinks)


def test_no_reply_task_completes_and_cleans_sandbox(settings, transport, make_envelope) -> None:
    outcome = _worker(settings, transport).handle(
        make_envelope({"correlation_id": "req-1", "agent": {"name": "echo"}}),
    )

    assert outcome.state == WorkerState.DONE
    assert outcome.succeeded
    assert outcome.acknowledge
    assert outcome.exit_code == 0
    assert outcome.transitions == [
        WorkerState.DECODING,
        WorkerState.PROVISIONING,
        WorkerState.EXECUTING,
        WorkerState.DISPATCHING,
        WorkerState.DONE,
    ]
    assert transport.requests == []
    assert not (settings.worker.sandbox_root / "req-1").exists()


def test_issue_comment_receives_agent_stdout(settings, transport, make_envelope) -> None:
    outcome = _worker(settings, transport).handle(
        make_envelope(
            {
                "correlation_id": "req-2",
                "agent": {"name": "pr-reviewer", "args": {"stdout": "Looks good"}},
                "reply": ISSUE_REPLY,
            },
        ),
    )

    assert outcome.state == WorkerState.DONE
    (request,) = transport.requests
    assert request.url.path == "/api/repos/acme/widgets/issues/7/comments"
    assert transport.json_bodies() == [{"body": "Looks good"}]


def test_agent_gets_sandbox_env_and_api_key(settings, transport, make_envelope) -> None:
    runner = _FixedRunner(ExecutionResult(exit_code=0, stdout=b"", stderr=b""))

    _worker(settings, transport, runner=runner).handle(
        make_envelope({"correlation_id": "req-3", "agent": {"name": "echo", "args": {"a": 1}}}),
    )

    (request,) = runner.requests
    sandbox_root = settings.worker.sandbox_root / "req-3"
    assert request.cwd == sandbox_root
    assert request.env_overlay["HOME"] == str(sandbox_root)
    assert request.env_overlay["TMPDIR"] == str(sandbox_root / "tmp")
    assert request.env_overlay["CURSOR_API_KEY"] == "test-agent-key"
    assert request.hard_deadline_seconds == 900
    assert request.binary == settings.worker.agent_command[0]
    name_index = request.args.index("--name")
    assert request.args[name_index + 1] == "echo"
    message = json.loads(request.args[request.args.index("--input") + 1])
    assert message["agent"]["args"] == {"a": 1}


def test_real_agent_sees_sandbox_home(settings, transport, make_envelope) -> None:
    outcome = _worker(settings, transport).handle(
        make_envelope(
            {
                "correlation_id": "req-4",
                "agent": {"name": "echo", "args": {"print_env": ["HOME", "CURSOR_API_KEY"]}},
                "reply": {
                    "type": "slack.message",
                    "targets": {"response_url": "https://hooks.slack.test/r/1"},
                },
            },
        ),
    )

    assert outcome.state == WorkerState.DONE
    printed = json.loads(transport.json_bodies()[0]["text"])
    assert printed["HOME"] == str(settings.worker.sandbox_root / "req-4")
    assert printed["CURSOR_API_KEY"] == "test-agent-key"


def test_timeout_fails_promptly_and_cleans_sandbox(settings, transport, make_envelope) -> None:
    started = time.monotonic()
    outcome = _worker(settings, transport).handle(
        make_envelope(
            {
                "correlation_id": "req-5",
                "agent": {"name": "echo", "args": {"sleep_seconds": 30}},
                "reply": ISSUE_REPLY,
                "timeouts": {"hard_seconds": 1},
            },
        ),
    )
    elapsed = time.monotonic() - started

    assert outcome.state == WorkerState.FAILED
    assert outcome.failure_kind == FailureKind.TIMEOUT
    assert outcome.failed_in == WorkerState.EXECUTING
    assert not outcome.retryable
    assert elapsed < 10
    assert transport.requests == []
    assert not (settings.worker.sandbox_root / "req-5").exists()


def test_malformed_message_is_terminal(settings, transport) -> None:
    outcome = _worker(settings, transport).handle({"data": {"message": {"data": "!!"}}})

    assert outcome.state == WorkerState.FAILED
    assert outcome.failure_kind == FailureKind.MALFORMED
    assert outcome.failed_in == WorkerState.DECODING
    assert outcome.correlation_id is None
    assert not outcome.retryable
    assert outcome.acknowledge


def test_malformed_message_reports_its_correlation_id(settings, transport, make_envelope) -> None:
    outcome = _worker(settings, transport).handle(
        make_envelope({"correlation_id": "req-9", "agent": {"args": {}}}),
    )

    assert outcome.failure_kind == FailureKind.MALFORMED
    assert outcome.correlation_id == "req-9"
    assert not outcome.retryable
    assert not settings.worker.sandbox_root.exists()


def test_huge_deadline_is_clamped_and_task_completes(settings, transport, make_envelope) -> None:
    runner = _FixedRunner(ExecutionResult(exit_code=0, stdout=b"ok", stderr=b""))

    outcome = _worker(settings, transport, runner=runner).handle(
        make_envelope({"agent": {"name": "echo"}, "timeouts": {"hard_seconds": 1e10}}),
    )

    assert outcome.state == WorkerState.DONE
    assert runner.requests[0].hard_deadline_seconds == settings.worker.max_hard_deadline_seconds


def test_unsafe_correlation_id_is_terminal(settings, transport, make_envelope) -> None:
    outcome = _worker(settings, transport).handle(
        make_envelope({"correlation_id": "../../etc", "agent": {"name": "echo"}}),
    )

    assert outcome.failure_kind == FailureKind.UNSAFE_IDENTIFIER
    assert outcome.failed_in == WorkerState.PROVISIONING
    assert not outcome.retryable
    assert not settings.worker.sandbox_root.exists()


def test_spawn_failure_is_retryable_infrastructure(
    settings,
    transport,
    make_envelope,
    tmp_path,
) -> None:
    settings = _with_worker(settings, agent_command=(str(tmp_path / "missing-agent"),))
    worker = _worker(settings, transport)
    envelope = make_envelope({"correlation_id": "req-6", "agent": {"name": "echo"}})

    outcome = worker.handle(envelope)

    assert outcome.failure_kind == FailureKind.INFRASTRUCTURE
    assert outcome.retryable
    assert not outcome.acknowledge
    assert not (settings.worker.sandbox_root / "req-6").exists()

    with pytest.raises(RetryableTaskError) as excinfo:
        worker.process(envelope)
    assert excinfo.value.outcome.failure_kind == FailureKind.INFRASTRUCTURE


@pytest.mark.parametrize(
    ("policy", "stderr", "expected_retryable"),
    [
        ("terminal", "rate limit exceeded", False),
        ("retry", "bad input", True),
        ("classify", "429 Too Many Requests", True),
        ("classify", "invalid prompt", False),
    ],
)
def test_agent_error_follows_policy(
    settings,
    transport,
    make_envelope,
    policy: str,
    stderr: str,
    expected_retryable: bool,
) -> None:
    settings = _with_worker(settings, agent_error_policy=policy)
    outcome = _worker(settings, transport).handle(
        make_envelope(
            {
                "correlation_id": "req-7",
                "agent": {"name": "echo", "args": {"stderr": stderr, "exit_code": 2}},
                "reply": ISSUE_REPLY,
            },
        ),
    )

    assert outcome.failure_kind == FailureKind.AGENT_ERROR
    assert outcome.exit_code == 2
    assert outcome.retryable is expected_retryable
    assert outcome.error_summary is not None
    assert outcome.error_summary.startswith("Agent exited with code 2: ")
    assert transport.requests == []


def test_agent_error_summary_is_redacted(settings, transport, make_envelope) -> None:
    runner = _FixedRunner(
        ExecutionResult(
            exit_code=1,
            stdout=b"",
            stderr=b"auth failed with Bearer abcdefghijklmnop",
        ),
    )

    outcome = _worker(settings, transport, runner=runner).handle(
        make_envelope({"correlation_id": "req-8", "agent": {"name": "echo"}}),
    )

    assert "abcdefghijklmnop" not in (outcome.error_summary or "")


def test_dispatch_failure_is_reported_not_retried(
    settings,
    make_transport,
    make_envelope,
) -> None:
    transport = make_transport(502)
    outcome = _worker(settings, transport).handle(
        make_envelope({"correlation_id": "req-9", "agent": {"name": "echo"}, "reply": ISSUE_REPLY}),
    )

    assert outcome.state == WorkerState.FAILED
    assert outcome.failure_kind == FailureKind.DISPATCH_ONLY
    assert outcome.failed_in == WorkerState.DISPATCHING
    assert outcome.exit_code == 0
    assert not outcome.retryable
    assert len(transport.requests) == 1
    assert not (settings.worker.sandbox_root / "req-9").exists()


def test_sandbox_released_when_runner_raises_unexpectedly(settings, transport, make_envelope):
    class _BrokenRunner:
        def run(self, request: ProcessRunRequest) -> ExecutionResult:
            raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        _worker(settings, transport, runner=_BrokenRunner()).handle(
            make_envelope({"correlation_id": "req-10", "agent": {"name": "echo"}}),
        )

    assert not (settings.worker.sandbox_root / "req-10").exists()
