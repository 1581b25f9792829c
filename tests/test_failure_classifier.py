from __future__ import annotations

import allure

from agent_company.orchestrator.failure_classifier import (
    COMMAND_FAILURE_CLASSIFIER_VERSION,
    classify_command_failure,
)
from agent_company.orchestrator.models import CommandFailure, CommandResult, FailureClass

pytestmark = [
    allure.epic("Command Protocol"),
    allure.feature("Failure Classification"),
]


def _failed(
    *,
    failure: CommandFailure = CommandFailure.EXECUTION,
    stderr: str = "",
    error: str | None = None,
    exit_code: int | None = 1,
) -> CommandResult:
    return CommandResult(
        success=False,
        error=error,
        failure=failure,
        stderr=stderr,
        exit_code=exit_code,
    )


def test_classifier_version_is_stable() -> None:
    assert COMMAND_FAILURE_CLASSIFIER_VERSION == 1


def test_classifier_maps_protocol_failures_before_text_rules() -> None:
    timeout = classify_command_failure(
        _failed(failure=CommandFailure.TIMEOUT, stderr="quota exceeded", error="timeout"),
    )
    assert timeout.failure_class == FailureClass.TIMEOUT
    assert timeout.transient

    parse = classify_command_failure(_failed(failure=CommandFailure.PARSE))
    assert parse.failure_class == FailureClass.OUTPUT_INVALID_JSON
    assert parse.matched_rule == "parse"

    interrupted = classify_command_failure(_failed(failure=CommandFailure.INTERRUPTED))
    assert interrupted.failure_class == FailureClass.SHUTDOWN


def test_classifier_prefers_billing_over_transient_exit_code() -> None:
    classified = classify_command_failure(
        _failed(stderr="Quota exceeded for this project", exit_code=137),
    )
    assert classified.failure_class == FailureClass.BILLING_OR_QUOTA
    assert classified.matched_rule == "billing_or_quota"
    assert classified.matched_pattern == "quota"
    assert not classified.transient


def test_classifier_maps_auth_and_model_errors() -> None:
    auth = classify_command_failure(_failed(error="exit code 1: Invalid API key provided"))
    assert auth.failure_class == FailureClass.ACCESS_OR_AUTH
    assert auth.matched_pattern == "invalid api key"

    model = classify_command_failure(_failed(stderr="Unknown model: gpt-17"))
    assert model.failure_class == FailureClass.MODEL_NOT_AVAILABLE


def test_classifier_maps_rate_limit_to_backend_transient() -> None:
    classified = classify_command_failure(_failed(stderr="429 Too Many Requests"))
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "rate_limit_transient"
    assert classified.transient


def test_classifier_uses_transient_exit_codes_without_text_match() -> None:
    classified = classify_command_failure(_failed(exit_code=143))
    assert classified.failure_class == FailureClass.BACKEND_TRANSIENT
    assert classified.matched_rule == "transient_exit_code"
    assert classified.matched_pattern is None

    generic = classify_command_failure(_failed(stderr="Connection reset by peer", exit_code=143))
    assert generic.matched_rule == "generic_transient"
    assert generic.matched_pattern == "connection reset"


def test_classifier_falls_back_to_non_retryable() -> None:
    classified = classify_command_failure(_failed(stderr="segmentation fault", exit_code=2))
    assert classified.failure_class == FailureClass.BACKEND_NON_RETRYABLE
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "backend_non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
