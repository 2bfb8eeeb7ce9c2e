"""Decode queue delivery envelopes into typed tasks."""

from __future__ import annotations

import base64
import binascii
import json
import math
import re
from collections.abc import Mapping
from enum import Enum
from typing import Any
from urllib.parse import urlparse
from uuid import uuid4

from agent_dispatch.config import DEFAULT_HARD_DEADLINE_SECONDS, MAX_HARD_DEADLINE_SECONDS
from agent_dispatch.orchestrator.models import (
    ChatMessageReply,
    IssueCommentReply,
    NoReply,
    ReplyDescriptor,
    Task,
)

_REPO_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")


class DecodeErrorKind(str, Enum):
    MALFORMED = "malformed"


class DecodeError(RuntimeError):
    """Envelope cannot be turned into a task; redelivery will not fix it."""

    def __init__(self, message: str, *, correlation_id: str | None = None) -> None:
        super().__init__(message)
        self.correlation_id = correlation_id
        self.kind = DecodeErrorKind.MALFORMED
        self.transient = False


class MessageCodec:
    """Pure decoder for delivery envelopes.

    Accepts the CloudEvent wrapper ``{"data": {"message": {"data": <b64>}}}``
    and the push wrapper ``{"message": {"data": <b64>}}``, either as a mapping
    or as JSON text/bytes.
    """

    def __init__(
        self,
        *,
        default_hard_deadline_seconds: int = DEFAULT_HARD_DEADLINE_SECONDS,
        max_hard_deadline_seconds: int = MAX_HARD_DEADLINE_SECONDS,
    ) -> None:
        self.default_hard_deadline_seconds = default_hard_deadline_seconds
        self.max_hard_deadline_seconds = max_hard_deadline_seconds

    def decode(self, raw_envelope: Mapping[str, Any] | str | bytes) -> Task:
        message = _parse_message(_extract_payload(raw_envelope))

        correlation_id = message.get("correlation_id")
        if correlation_id is not None and not isinstance(correlation_id, str):
            raise DecodeError("Malformed message: correlation_id must be a string")
        known_id = correlation_id or None

        agent = message.get("agent")
        if not isinstance(agent, Mapping):
            raise DecodeError("Malformed message: missing agent object", correlation_id=known_id)
        agent_name = agent.get("name")
        if not isinstance(agent_name, str) or not agent_name.strip():
            raise DecodeError("Malformed message: missing agent.name", correlation_id=known_id)

        try:
            reply = _decode_reply(message.get("reply"))
        except DecodeError as error:
            error.correlation_id = known_id
            raise

        generated = known_id is None
        return Task(
            correlation_id=uuid4().hex if generated else known_id,
            agent_name=agent_name.strip(),
            args_payload=json.dumps(agent.get("args", {}), ensure_ascii=False, sort_keys=True),
            reply=reply,
            hard_deadline_seconds=self._hard_deadline(message.get("timeouts")),
            serialized_message=json.dumps(message, ensure_ascii=False, sort_keys=True),
            correlation_id_generated=generated,
        )

    def _hard_deadline(self, timeouts: object) -> int:
        if not isinstance(timeouts, Mapping):
            return self.default_hard_deadline_seconds
        value = timeouts.get("hard_seconds")
        if isinstance(value, bool) or not isinstance(value, int | float):
            return self.default_hard_deadline_seconds
        if not math.isfinite(value) or value <= 0:
            return self.default_hard_deadline_seconds
        return min(math.ceil(value), self.max_hard_deadline_seconds)


def _extract_payload(raw_envelope: Mapping[str, Any] | str | bytes) -> str:
    envelope: object = raw_envelope
    if isinstance(raw_envelope, str | bytes):
        try:
            envelope = json.loads(raw_envelope)
        except (json.JSONDecodeError, UnicodeDecodeError) as error:
            raise DecodeError(f"Malformed envelope: {error}") from error
    if not isinstance(envelope, Mapping):
        raise DecodeError("Malformed envelope: expected JSON object")

    data = envelope.get("data")
    message = data.get("message") if isinstance(data, Mapping) else envelope.get("message")
    encoded = message.get("data") if isinstance(message, Mapping) else None
    if not isinstance(encoded, str) or not encoded:
        raise DecodeError("Malformed envelope: missing data field")

    try:
        return base64.b64decode(encoded, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as error:
        raise DecodeError(f"Malformed envelope: payload is not base64 UTF-8 ({error})") from error


def _parse_message(payload: str) -> dict[str, Any]:
    try:
        message = json.loads(payload)
    except json.JSONDecodeError as error:
        raise DecodeError(f"Malformed message: {error}") from error
    if not isinstance(message, dict):
        raise DecodeError("Malformed message: expected JSON object")
    return message


def _decode_reply(reply: object) -> ReplyDescriptor:
    if reply is None:
        return NoReply()
    if not isinstance(reply, Mapping):
        raise DecodeError("Malformed message: reply must be an object")
    reply_type = reply.get("type")
    if reply_type is None or reply_type == "":
        return NoReply()
    if not isinstance(reply_type, str):
        raise DecodeError("Malformed message: reply.type must be a string")

    targets = reply.get("targets")
    if not isinstance(targets, Mapping):
        raise DecodeError(f"Malformed message: reply.targets required for {reply_type!r}")

    if reply_type.startswith("github."):
        return _decode_issue_comment(targets)
    if reply_type == "slack.message":
        return _decode_chat_message(targets)
    raise DecodeError(f"Malformed message: unsupported reply.type {reply_type!r}")


def _decode_issue_comment(targets: Mapping[str, Any]) -> IssueCommentReply:
    repo = targets.get("repo")
    if not isinstance(repo, str) or not _REPO_PATTERN.match(repo) or ".." in repo:
        raise DecodeError("Malformed message: reply.targets.repo must be 'owner/name'")
    number = targets.get("pr", targets.get("number"))
    if isinstance(number, str) and number.isdigit():
        number = int(number)
    if isinstance(number, bool) or not isinstance(number, int) or number <= 0:
        raise DecodeError("Malformed message: reply.targets.pr must be a positive integer")
    token = targets.get("token")
    if not isinstance(token, str) or not token:
        raise DecodeError("Malformed message: reply.targets.token is required")
    return IssueCommentReply(repo=repo, number=number, token=token)


def _decode_chat_message(targets: Mapping[str, Any]) -> ChatMessageReply:
    url = targets.get("response_url", targets.get("callback_url"))
    if not isinstance(url, str):
        raise DecodeError("Malformed message: reply.targets.response_url is required")
    parsed = urlparse(url)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise DecodeError("Malformed message: reply.targets.response_url must be http(s)")
    return ChatMessageReply(callback_url=url)
