"""Runtime configuration for the task worker and result sinks."""

from __future__ import annotations

import os
import shlex
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_HARD_DEADLINE_SECONDS = 900
MAX_HARD_DEADLINE_SECONDS = 86_400
AGENT_ERROR_POLICIES = ("terminal", "retry", "classify")


@dataclass(slots=True)
class WorkerSettings:
    """Agent process and sandbox settings."""

    agent_command: tuple[str, ...] = ("cursor-agent",)
    agent_api_key: str | None = None
    agent_api_key_env: str = "CURSOR_API_KEY"
    require_api_key: bool = True
    sandbox_root: Path = field(
        default_factory=lambda: Path(tempfile.gettempdir()) / "agent-dispatch",
    )
    keep_sandboxes: bool = False
    default_hard_deadline_seconds: int = DEFAULT_HARD_DEADLINE_SECONDS
    max_hard_deadline_seconds: int = MAX_HARD_DEADLINE_SECONDS
    kill_grace_seconds: float = 5.0
    stderr_preview_chars: int = 4_000
    agent_error_policy: str = "terminal"
    transient_exit_codes: tuple[int, ...] = (137, 143)
    preflight_timeout_seconds: int = 10


@dataclass(slots=True)
class SinkSettings:
    """Outbound notification sink settings."""

    github_api_url: str = "https://api.github.com"
    issue_comment_max_chars: int = 65_000
    chat_message_max_chars: int = 39_000
    sink_timeout_seconds: float = 30.0


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    worker: WorkerSettings = field(default_factory=WorkerSettings)
    sinks: SinkSettings = field(default_factory=SinkSettings)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment once at process startup."""

        defaults = WorkerSettings()
        return cls(
            worker=WorkerSettings(
                agent_command=_parse_command(
                    os.getenv("AGENT_DISPATCH_AGENT_COMMAND", "cursor-agent"),
                ),
                agent_api_key=(
                    os.getenv("AGENT_DISPATCH_AGENT_API_KEY") or os.getenv("CURSOR_API_KEY") or None
                ),
                agent_api_key_env=os.getenv("AGENT_DISPATCH_AGENT_API_KEY_ENV", "CURSOR_API_KEY"),
                require_api_key=_env_bool("AGENT_DISPATCH_REQUIRE_API_KEY", default=True),
                sandbox_root=Path(
                    os.getenv("AGENT_DISPATCH_SANDBOX_ROOT", str(defaults.sandbox_root)),
                ),
                keep_sandboxes=_env_bool("AGENT_DISPATCH_KEEP_SANDBOXES", default=False),
                default_hard_deadline_seconds=int(
                    os.getenv(
                        "AGENT_DISPATCH_DEFAULT_HARD_DEADLINE_SECONDS",
                        str(DEFAULT_HARD_DEADLINE_SECONDS),
                    ),
                ),
                max_hard_deadline_seconds=int(
                    os.getenv(
                        "AGENT_DISPATCH_MAX_HARD_DEADLINE_SECONDS",
                        str(MAX_HARD_DEADLINE_SECONDS),
                    ),
                ),
                kill_grace_seconds=float(os.getenv("AGENT_DISPATCH_KILL_GRACE_SECONDS", "5.0")),
                stderr_preview_chars=int(
                    os.getenv("AGENT_DISPATCH_STDERR_PREVIEW_CHARS", "4000"),
                ),
                agent_error_policy=os.getenv("AGENT_DISPATCH_AGENT_ERROR_POLICY", "terminal")
                .strip()
                .lower(),
                transient_exit_codes=_parse_exit_codes(
                    os.getenv("AGENT_DISPATCH_TRANSIENT_EXIT_CODES", "137,143"),
                ),
                preflight_timeout_seconds=int(
                    os.getenv("AGENT_DISPATCH_PREFLIGHT_TIMEOUT_SECONDS", "10"),
                ),
            ),
            sinks=SinkSettings(
                github_api_url=os.getenv(
                    "AGENT_DISPATCH_GITHUB_API_URL",
                    "https://api.github.com",
                ).rstrip("/"),
                issue_comment_max_chars=int(
                    os.getenv("AGENT_DISPATCH_ISSUE_COMMENT_MAX_CHARS", "65000"),
                ),
                chat_message_max_chars=int(
                    os.getenv("AGENT_DISPATCH_CHAT_MESSAGE_MAX_CHARS", "39000"),
                ),
                sink_timeout_seconds=float(
                    os.getenv("AGENT_DISPATCH_SINK_TIMEOUT_SECONDS", "30.0"),
                ),
            ),
        )

    def validate_for_worker(self) -> None:
        """Raise configuration error if the worker cannot run with these settings."""

        worker = self.worker
        if not worker.agent_command:
            raise ValueError("AGENT_DISPATCH_AGENT_COMMAND must not be empty.")
        if worker.require_api_key and not worker.agent_api_key:
            raise ValueError(
                "Agent API key is required. "
                "Set AGENT_DISPATCH_AGENT_API_KEY (or CURSOR_API_KEY).",
            )
        if worker.default_hard_deadline_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_DEFAULT_HARD_DEADLINE_SECONDS must be > 0.")
        if not (
            worker.default_hard_deadline_seconds
            <= worker.max_hard_deadline_seconds
            <= threading.TIMEOUT_MAX
        ):
            raise ValueError(
                "AGENT_DISPATCH_MAX_HARD_DEADLINE_SECONDS must be between the default hard "
                f"deadline and {int(threading.TIMEOUT_MAX)}.",
            )
        if worker.kill_grace_seconds < 0:
            raise ValueError("AGENT_DISPATCH_KILL_GRACE_SECONDS must be >= 0.")
        if worker.stderr_preview_chars <= 0:
            raise ValueError("AGENT_DISPATCH_STDERR_PREVIEW_CHARS must be > 0.")
        if worker.agent_error_policy not in AGENT_ERROR_POLICIES:
            raise ValueError(
                f"Unsupported AGENT_DISPATCH_AGENT_ERROR_POLICY: {worker.agent_error_policy!r}. "
                f"Expected one of: {', '.join(AGENT_ERROR_POLICIES)}.",
            )
        if worker.preflight_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_PREFLIGHT_TIMEOUT_SECONDS must be > 0.")

        sinks = self.sinks
        _validate_http_url(sinks.github_api_url, name="AGENT_DISPATCH_GITHUB_API_URL")
        if sinks.issue_comment_max_chars <= 0:
            raise ValueError("AGENT_DISPATCH_ISSUE_COMMENT_MAX_CHARS must be > 0.")
        if sinks.chat_message_max_chars <= 0:
            raise ValueError("AGENT_DISPATCH_CHAT_MESSAGE_MAX_CHARS must be > 0.")
        if sinks.sink_timeout_seconds <= 0:
            raise ValueError("AGENT_DISPATCH_SINK_TIMEOUT_SECONDS must be > 0.")


def _parse_command(raw: str) -> tuple[str, ...]:
    return tuple(shlex.split(raw.strip()))


def _parse_exit_codes(raw: str) -> tuple[int, ...]:
    codes: list[int] = []
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            codes.append(int(token))
        except ValueError as error:
            raise ValueError(
                f"Invalid AGENT_DISPATCH_TRANSIENT_EXIT_CODES entry: {token!r}",
            ) from error
    return tuple(codes)


def _validate_http_url(value: str, *, name: str) -> None:
    parsed = urlparse(value)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(
            f"Invalid {name}: {value!r}. Expected an absolute URL with http:// or https:// scheme.",
        )


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
