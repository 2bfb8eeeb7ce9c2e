"""Deterministic agent failure classification for the redelivery policy."""

from __future__ import annotations

from dataclasses import dataclass

AGENT_FAILURE_CLASSIFIER_VERSION = 1

_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "service unavailable",
    "connection reset",
    "network error",
    "could not resolve host",
    "dns",
)


@dataclass(slots=True)
class AgentFailureClassification:
    """Normalized non-zero exit classification result."""

    transient: bool
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    def to_log_details(self) -> dict[str, object]:
        return {
            "classifier_version": AGENT_FAILURE_CLASSIFIER_VERSION,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_agent_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> AgentFailureClassification:
    """Classify a non-timeout agent failure as transient or non-retryable."""

    haystack = f"{stderr}\n{stdout}".lower()

    pattern = _first_match(haystack, _RATE_LIMIT_TRANSIENT_PATTERNS)
    if pattern is not None:
        return AgentFailureClassification(
            transient=True,
            reason_code="agent_rate_limit_transient",
            matched_rule="rate_limit_transient",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return AgentFailureClassification(
            transient=True,
            reason_code="agent_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return AgentFailureClassification(
        transient=False,
        reason_code="agent_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def is_agent_failure_retryable(
    *,
    policy: str,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...],
) -> tuple[bool, AgentFailureClassification | None]:
    """Apply the configured agent-error policy (terminal, retry, or classify)."""

    if policy == "terminal":
        return False, None
    if policy == "retry":
        return True, None
    if policy == "classify":
        classification = classify_agent_failure(
            exit_code=exit_code,
            stdout=stdout,
            stderr=stderr,
            transient_exit_codes=transient_exit_codes,
        )
        return classification.transient, classification
    raise ValueError(f"Unsupported agent error policy: {policy!r}")


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
