"""Shared test fixtures."""

from __future__ import annotations

import base64
import json
import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import pytest

from agent_dispatch.config import Settings, SinkSettings, WorkerSettings
from agent_dispatch.orchestrator.backend import echo_agent

EnvelopeFactory = Callable[..., dict[str, Any]]


class RecordingTransport:
    """httpx transport stub that records requests and replies with a fixed status."""

    def __init__(self, status_code: int = 201) -> None:
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"ok": True})

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self))

    def json_bodies(self) -> list[dict[str, Any]]:
        return [json.loads(request.content) for request in self.requests]


@pytest.fixture()
def make_envelope() -> EnvelopeFactory:
    """Wrap a task message the way the queue delivers it."""

    def _make(message: dict[str, Any], *, wrapper: str = "cloud_event") -> dict[str, Any]:
        encoded = base64.b64encode(json.dumps(message).encode("utf-8")).decode("ascii")
        if wrapper == "push":
            return {"message": {"data": encoded, "messageId": "1"}, "subscription": "s"}
        return {"data": {"message": {"data": encoded}}}

    return _make


@pytest.fixture()
def echo_command() -> tuple[str, ...]:
    """Run the bundled echo agent by file path; it only needs the stdlib."""

    return (sys.executable, str(Path(echo_agent.__file__).resolve()))


@pytest.fixture()
def settings(tmp_path: Path, echo_command: tuple[str, ...]) -> Settings:
    return Settings(
        worker=WorkerSettings(
            agent_command=echo_command,
            agent_api_key="test-agent-key",
            sandbox_root=tmp_path / "sandboxes",
            kill_grace_seconds=2.0,
        ),
        sinks=SinkSettings(github_api_url="https://github.test/api"),
    )


@pytest.fixture()
def transport() -> RecordingTransport:
    return RecordingTransport()


@pytest.fixture()
def make_transport() -> Callable[[int], RecordingTransport]:
    return RecordingTransport
