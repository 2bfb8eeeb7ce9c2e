"""Backend interface for agent process execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol


@dataclass(slots=True)
class ProcessRunRequest:
    """Inputs required to execute one agent invocation."""

    binary: str
    args: list[str]
    cwd: Path
    hard_deadline_seconds: int
    env_overlay: dict[str, str] = field(default_factory=dict, repr=False)


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """Captured outcome of one agent process."""

    exit_code: int
    stdout: bytes
    stderr: bytes
    timed_out: bool = False


class AgentRunner(Protocol):
    """Protocol implemented by process runners."""

    def run(self, request: ProcessRunRequest) -> ExecutionResult:
        """Run the agent and return captured output."""
