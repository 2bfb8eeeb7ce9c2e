"""Subprocess runner for the external agent binary with a hard deadline."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Mapping
from enum import Enum
from typing import IO

from agent_dispatch.orchestrator.backend.base import ExecutionResult, ProcessRunRequest

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 65_536


class RunnerErrorKind(str, Enum):
    SPAWN_FAILED = "spawn_failed"
    TIMEOUT = "timeout"


class RunnerError(RuntimeError):
    """Runner execution error with retryability hint."""

    def __init__(
        self,
        message: str,
        *,
        kind: RunnerErrorKind,
        transient: bool,
        result: ExecutionResult | None = None,
    ) -> None:
        super().__init__(message)
        self.kind = kind
        self.transient = transient
        self.result = result


class _StreamCollector:
    """Drains one pipe on a daemon thread so a stalled reader never blocks the deadline."""

    def __init__(self, pipe: IO[bytes] | None, name: str) -> None:
        self._pipe = pipe
        self._chunks: list[bytes] = []
        self._thread = threading.Thread(target=self._pump, name=f"agent-{name}", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def join(self, timeout: float) -> None:
        self._thread.join(timeout=min(max(0.0, timeout), threading.TIMEOUT_MAX))

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def data(self) -> bytes:
        return b"".join(list(self._chunks))

    def _pump(self) -> None:
        if self._pipe is None:
            return
        try:
            while True:
                chunk = self._pipe.read1(_READ_CHUNK_BYTES)
                if not chunk:
                    break
                self._chunks.append(chunk)
        except (OSError, ValueError):
            # Pipe closed underneath us after the process group was killed.
            return
        finally:
            try:
                self._pipe.close()
            except OSError:
                pass


class ProcessRunner:
    """Spawn the agent in its own process group and enforce the hard deadline."""

    def __init__(
        self,
        *,
        base_env: Mapping[str, str] | None = None,
        kill_grace_seconds: float = 5.0,
    ) -> None:
        self.base_env = base_env
        self.kill_grace_seconds = kill_grace_seconds

    def run(self, request: ProcessRunRequest) -> ExecutionResult:
        env = dict(os.environ if self.base_env is None else self.base_env)
        env.update(request.env_overlay)
        argv = [request.binary, *request.args]

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=str(request.cwd),
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                start_new_session=True,
            )
        except OSError as error:
            raise RunnerError(
                f"Agent binary failed to start: {request.binary}: {error}",
                kind=RunnerErrorKind.SPAWN_FAILED,
                transient=True,
            ) from error

        stdout = _StreamCollector(process.stdout, "stdout")
        stderr = _StreamCollector(process.stderr, "stderr")
        stdout.start()
        stderr.start()

        deadline = time.monotonic() + request.hard_deadline_seconds
        timed_out = False
        try:
            try:
                process.wait(timeout=request.hard_deadline_seconds)
            except subprocess.TimeoutExpired:
                timed_out = True

            if not timed_out:
                # Descendants may still hold the pipes open after the leader exits.
                for collector in (stdout, stderr):
                    collector.join(deadline - time.monotonic())
                timed_out = stdout.is_alive() or stderr.is_alive()

            if timed_out:
                logger.warning(
                    "Agent exceeded %ss hard deadline, killing process group: pid=%s",
                    request.hard_deadline_seconds,
                    process.pid,
                )
                _kill_process_group(process)
        finally:
            if process.poll() is None:
                _kill_process_group(process)
            process.wait()
            for collector in (stdout, stderr):
                collector.join(self.kill_grace_seconds)

        result = ExecutionResult(
            exit_code=process.returncode,
            stdout=stdout.data(),
            stderr=stderr.data(),
            timed_out=timed_out,
        )
        if timed_out:
            raise RunnerError(
                f"Agent exceeded {request.hard_deadline_seconds}s hard timeout",
                kind=RunnerErrorKind.TIMEOUT,
                transient=False,
                result=result,
            )
        return result


def _kill_process_group(process: subprocess.Popen[bytes]) -> None:
    killpg = getattr(os, "killpg", None)
    if killpg is not None:
        try:
            # start_new_session makes the child its own group leader.
            killpg(process.pid, signal.SIGKILL)
            return
        except OSError as error:
            logger.debug("Process group kill failed for pid=%s: %s", process.pid, error)
    try:
        process.kill()
    except OSError:
        return
