"""Route captured agent output to the sink named by the reply descriptor."""

from __future__ import annotations

import logging

import httpx

from agent_dispatch.config import SinkSettings
from agent_dispatch.orchestrator.backend.base import ExecutionResult
from agent_dispatch.orchestrator.models import (
    ChatMessageReply,
    IssueCommentReply,
    NoReply,
    ReplyDescriptor,
    ReplyKind,
)

logger = logging.getLogger(__name__)

EMPTY_OUTPUT_TEXT = "_Agent finished without output._"
DEFAULT_USER_AGENT = "agent-dispatch/1.0"


class DispatchError(RuntimeError):
    """Sink delivery failed after the agent already completed."""

    def __init__(self, message: str, *, sink: ReplyKind, status_code: int | None = None) -> None:
        super().__init__(message)
        self.sink = sink
        self.status_code = status_code


def truncate_text(text: str, max_chars: int) -> str:
    """Deterministic prefix bounded to max_chars characters."""

    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def render_output(result: ExecutionResult) -> str:
    text = result.stdout.decode("utf-8", errors="replace")
    if not text.strip():
        return EMPTY_OUTPUT_TEXT
    return text


class ResultDispatcher:
    """HTTP sink dispatcher with timeout and user-agent configuration."""

    def __init__(
        self,
        *,
        settings: SinkSettings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings or SinkSettings()
        self._owns_client = client is None
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(self.settings.sink_timeout_seconds, connect=10.0),
            headers={"User-Agent": DEFAULT_USER_AGENT},
        )

    def dispatch(self, reply: ReplyDescriptor, result: ExecutionResult) -> None:
        """Deliver result to the sink. Raises DispatchError on failure."""

        if isinstance(reply, NoReply):
            return
        if isinstance(reply, IssueCommentReply):
            self._post_issue_comment(reply, render_output(result))
            return
        if isinstance(reply, ChatMessageReply):
            self._post_chat_message(reply, render_output(result))
            return
        raise TypeError(f"Unsupported reply descriptor: {reply!r}")

    def _post_issue_comment(self, reply: IssueCommentReply, text: str) -> None:
        url = (
            f"{self.settings.github_api_url.rstrip('/')}"
            f"/repos/{reply.repo}/issues/{reply.number}/comments"
        )
        self._post(
            sink=ReplyKind.ISSUE_COMMENT,
            url=url,
            payload={"body": truncate_text(text, self.settings.issue_comment_max_chars)},
            headers={
                "Authorization": f"Bearer {reply.token}",
                "Accept": "application/vnd.github+json",
            },
            target=f"{reply.repo}#{reply.number}",
        )

    def _post_chat_message(self, reply: ChatMessageReply, text: str) -> None:
        self._post(
            sink=ReplyKind.CHAT_MESSAGE,
            url=reply.callback_url,
            payload={"text": truncate_text(text, self.settings.chat_message_max_chars)},
            headers={},
            target=httpx.URL(reply.callback_url).host,
        )

    def _post(
        self,
        *,
        sink: ReplyKind,
        url: str,
        payload: dict[str, str],
        headers: dict[str, str],
        target: str,
    ) -> None:
        try:
            response = self._client.post(url, json=payload, headers=headers)
        except httpx.TimeoutException as error:
            raise DispatchError(f"{sink.value} sink timed out: {target}", sink=sink) from error
        except httpx.HTTPError as error:
            raise DispatchError(
                f"{sink.value} sink HTTP error for {target}: {error}",
                sink=sink,
            ) from error

        if not response.is_success:
            raise DispatchError(
                f"{sink.value} sink rejected delivery to {target}: HTTP {response.status_code}",
                sink=sink,
                status_code=response.status_code,
            )
        logger.info("Result delivered: sink=%s target=%s", sink.value, target)

    def close(self) -> None:
        if self._owns_client:
            self._client.close()

    def __enter__(self) -> ResultDispatcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()
