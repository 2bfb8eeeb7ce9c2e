"""Agent process backend implementations."""

from agent_dispatch.orchestrator.backend.base import AgentRunner, ExecutionResult, ProcessRunRequest
from agent_dispatch.orchestrator.backend.process_runner import (
    ProcessRunner,
    RunnerError,
    RunnerErrorKind,
)

__all__ = [
    "AgentRunner",
    "ExecutionResult",
    "ProcessRunRequest",
    "ProcessRunner",
    "RunnerError",
    "RunnerErrorKind",
]
