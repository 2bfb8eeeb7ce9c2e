"""Domain models for decoded tasks and worker outcomes."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


class ReplyKind(str, Enum):
    """Notification sinks a task result can be routed to."""

    ISSUE_COMMENT = "issue_comment"
    CHAT_MESSAGE = "chat_message"
    NONE = "none"


class FailureKind(str, Enum):
    """Normalized failure classes used by the redelivery policy."""

    MALFORMED = "malformed"
    UNSAFE_IDENTIFIER = "unsafe_identifier"
    INFRASTRUCTURE = "infrastructure"
    TIMEOUT = "timeout"
    AGENT_ERROR = "agent_error"
    DISPATCH_ONLY = "dispatch_only"


class WorkerState(str, Enum):
    """States of one worker pass over a delivered message."""

    DECODING = "decoding"
    PROVISIONING = "provisioning"
    EXECUTING = "executing"
    DISPATCHING = "dispatching"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True, slots=True)
class IssueCommentReply:
    """Post the result as a comment on an issue or pull request."""

    repo: str
    number: int
    token: str = field(repr=False)

    @property
    def kind(self) -> ReplyKind:
        return ReplyKind.ISSUE_COMMENT


@dataclass(frozen=True, slots=True)
class ChatMessageReply:
    """Post the result as a chat message to a caller-supplied callback URL."""

    callback_url: str = field(repr=False)

    @property
    def kind(self) -> ReplyKind:
        return ReplyKind.CHAT_MESSAGE


@dataclass(frozen=True, slots=True)
class NoReply:
    """Discard the result."""

    @property
    def kind(self) -> ReplyKind:
        return ReplyKind.NONE


ReplyDescriptor = IssueCommentReply | ChatMessageReply | NoReply


@dataclass(frozen=True, slots=True)
class Task:
    """One decoded unit of work. Immutable for the lifetime of a worker pass.

    ``args_payload`` is the canonical JSON of ``agent.args`` for callers that
    inspect a task. The agent itself receives ``serialized_message``, which
    already carries the args, as its single ``--input`` argument.
    """

    correlation_id: str
    agent_name: str
    args_payload: str
    reply: ReplyDescriptor
    hard_deadline_seconds: int
    serialized_message: str = field(repr=False)
    correlation_id_generated: bool = False


@dataclass(slots=True)
class WorkerOutcome:
    """Result of one worker pass, consumed by the transport acknowledgement logic."""

    state: WorkerState
    correlation_id: str | None
    failure_kind: FailureKind | None = None
    retryable: bool = False
    error_summary: str | None = None
    failed_in: WorkerState | None = None
    exit_code: int | None = None
    transitions: list[WorkerState] = field(default_factory=list)

    @property
    def acknowledge(self) -> bool:
        """Whether the delivered message should be acknowledged (not redelivered)."""

        return not self.retryable

    @property
    def succeeded(self) -> bool:
        return self.state == WorkerState.DONE
