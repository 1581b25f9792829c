"""Deterministic classification of failed commands for task failure records."""

from __future__ import annotations

from dataclasses import dataclass

from agent_company.orchestrator.models import CommandFailure, CommandResult, FailureClass

COMMAND_FAILURE_CLASSIFIER_VERSION = 1

_BILLING_OR_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient",
    "billing",
    "payment",
    "credits",
    "usage limit",
)
_ACCESS_OR_AUTH_PATTERNS: tuple[str, ...] = (
    "unauthorized",
    "forbidden",
    "permission denied",
    "invalid api key",
    "authentication",
    "not logged in",
)
_MODEL_NOT_AVAILABLE_PATTERNS: tuple[str, ...] = (
    "model not found",
    "unknown model",
    "unsupported model",
    "invalid model",
    "model is not available",
)
_RATE_LIMIT_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "429",
    "overloaded",
    "please retry",
    "try again later",
)
_GENERIC_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "network error",
    "could not resolve host",
)


@dataclass(slots=True)
class CommandFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class in {FailureClass.BACKEND_TRANSIENT, FailureClass.TIMEOUT}

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for task events."""

        return {
            "classifier_version": COMMAND_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_command_failure(
    result: CommandResult,
    *,
    transient_exit_codes: tuple[int, ...] = (137, 143),
) -> CommandFailureClassification:
    """Classify a failed command result into a deterministic failure class."""

    if result.failure == CommandFailure.TIMEOUT:
        return CommandFailureClassification(
            failure_class=FailureClass.TIMEOUT,
            matched_rule="timeout",
            matched_pattern=None,
        )
    if result.failure == CommandFailure.PARSE:
        return CommandFailureClassification(
            failure_class=FailureClass.OUTPUT_INVALID_JSON,
            matched_rule="parse",
            matched_pattern=None,
        )
    if result.failure == CommandFailure.INTERRUPTED:
        return CommandFailureClassification(
            failure_class=FailureClass.SHUTDOWN,
            matched_rule="interrupted",
            matched_pattern=None,
        )

    haystack = f"{result.stderr}\n{result.error or ''}".lower()
    for failure_class, rule, patterns in (
        (FailureClass.BILLING_OR_QUOTA, "billing_or_quota", _BILLING_OR_QUOTA_PATTERNS),
        (FailureClass.ACCESS_OR_AUTH, "access_or_auth", _ACCESS_OR_AUTH_PATTERNS),
        (FailureClass.MODEL_NOT_AVAILABLE, "model_not_available", _MODEL_NOT_AVAILABLE_PATTERNS),
        (FailureClass.BACKEND_TRANSIENT, "rate_limit_transient", _RATE_LIMIT_TRANSIENT_PATTERNS),
    ):
        pattern = _first_match(haystack, patterns)
        if pattern is not None:
            return CommandFailureClassification(
                failure_class=failure_class,
                matched_rule=rule,
                matched_pattern=pattern,
            )

    pattern = _first_match(haystack, _GENERIC_TRANSIENT_PATTERNS)
    if pattern is not None or result.exit_code in transient_exit_codes:
        return CommandFailureClassification(
            failure_class=FailureClass.BACKEND_TRANSIENT,
            matched_rule=(
                "transient_exit_code"
                if result.exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return CommandFailureClassification(
        failure_class=FailureClass.BACKEND_NON_RETRYABLE,
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
