from __future__ import annotations

import json
import shlex
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from agent_dispatch.main import agent_dispatch

pytestmark = [
    allure.epic("Worker Operations"),
    allure.feature("Worker CLI"),
]


@pytest.fixture()
def worker_env(monkeypatch, tmp_path: Path, echo_command: tuple[str, ...]) -> Path:
    sandbox_root = tmp_path / "sandboxes"
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_COMMAND", shlex.join(echo_command))
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_API_KEY", "test-agent-key")
    monkeypatch.setenv("AGENT_DISPATCH_SANDBOX_ROOT", str(sandbox_root))
    monkeypatch.delenv("AGENT_DISPATCH_AGENT_ERROR_POLICY", raising=False)
    return sandbox_root


def test_handle_success_from_file(worker_env, make_envelope, tmp_path: Path) -> None:
    envelope_file = tmp_path / "envelope.json"
    envelope_file.write_text(
        json.dumps(make_envelope({"correlation_id": "cli-1", "agent": {"name": "echo"}})),
        "utf-8",
    )

    result = CliRunner().invoke(
        agent_dispatch,
        ["worker", "handle", "--envelope-file", str(envelope_file)],
    )

    assert result.exit_code == 0, result.output
    assert "correlation_id=cli-1 state=done" in result.output
    assert "decoding -> provisioning -> executing -> dispatching -> done" in result.output
    assert not (worker_env / "cli-1").exists()


def test_handle_reads_stdin_and_reports_terminal_failure(worker_env) -> None:
    result = CliRunner().invoke(
        agent_dispatch,
        ["worker", "handle", "--skip-preflight"],
        input='{"data": {"message": {}}}',
    )

    assert result.exit_code == 65
    assert "failure=malformed" in result.output
    assert "Error: Malformed envelope" in result.output


def test_handle_agent_error_is_terminal_by_default(worker_env, make_envelope) -> None:
    envelope = make_envelope(
        {"correlation_id": "cli-2", "agent": {"name": "echo", "args": {"exit_code": 4}}},
    )

    result = CliRunner().invoke(
        agent_dispatch,
        ["worker", "handle", "--skip-preflight"],
        input=json.dumps(envelope),
    )

    assert result.exit_code == 65
    assert "failure=agent_error" in result.output
    assert "exit_code=4" in result.output


def test_handle_missing_agent_binary_is_retryable(
    worker_env,
    monkeypatch,
    make_envelope,
    tmp_path: Path,
) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_COMMAND", str(tmp_path / "missing-agent"))
    envelope = json.dumps(make_envelope({"agent": {"name": "echo"}}))

    preflight_failure = CliRunner().invoke(agent_dispatch, ["worker", "handle"], input=envelope)
    spawn_failure = CliRunner().invoke(
        agent_dispatch,
        ["worker", "handle", "--skip-preflight"],
        input=envelope,
    )

    assert preflight_failure.exit_code == 75
    assert "Preflight failed" in preflight_failure.output
    assert spawn_failure.exit_code == 75
    assert "failure=infrastructure" in spawn_failure.output
    assert "retryable=yes" in spawn_failure.output


def test_handle_rejects_invalid_configuration(worker_env, monkeypatch) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_ERROR_POLICY", "sometimes")

    result = CliRunner().invoke(agent_dispatch, ["worker", "handle"], input="{}")

    assert result.exit_code == 1
    assert "AGENT_DISPATCH_AGENT_ERROR_POLICY" in result.output


def test_preflight_reports_agent_version(worker_env) -> None:
    result = CliRunner().invoke(agent_dispatch, ["worker", "preflight"])

    assert result.exit_code == 0, result.output
    assert "Agent binary OK" in result.output
    assert "echo-agent 1.0" in result.output


def test_preflight_reports_missing_binary(worker_env, monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_DISPATCH_AGENT_COMMAND", str(tmp_path / "missing-agent"))

    result = CliRunner().invoke(agent_dispatch, ["worker", "preflight"])

    assert result.exit_code == 1
    assert "PATH" in result.output
