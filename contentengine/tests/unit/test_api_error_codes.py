from __future__ import annotations

from contentengine.apps.api.errors import code_for_error, status_for_error
from contentengine.core.errors import (
    AlreadyExecutedError,
    CandidateAlreadyApprovedError,
    ConflictError,
    ContextMismatchError,
    HydrationDisabledError,
    InfraError,
    JobTimeoutError,
    ProviderConfigError,
    RegenerationJobNotFoundError,
    SchemaInvalidError,
    UnsupportedTargetError,
    ValidationError,
)


def test_status_follows_error_family() -> None:
    assert status_for_error(RegenerationJobNotFoundError("x")) == 404
    assert status_for_error(CandidateAlreadyApprovedError("x")) == 409
    assert status_for_error(AlreadyExecutedError("x")) == 409
    assert status_for_error(ValidationError("x")) == 422
    assert status_for_error(UnsupportedTargetError("x")) == 422
    assert status_for_error(SchemaInvalidError("x")) == 422
    assert status_for_error(InfraError("x")) == 503
    assert status_for_error(JobTimeoutError("x")) == 504
    assert status_for_error(ProviderConfigError("x")) == 500


def test_codes_derive_from_class_names() -> None:
    assert code_for_error(CandidateAlreadyApprovedError("x")) == "CANDIDATE_ALREADY_APPROVED"
    assert code_for_error(RegenerationJobNotFoundError("x")) == "REGENERATION_JOB_NOT_FOUND"
    assert code_for_error(ConflictError("x")) == "CONFLICT"
    assert code_for_error(JobTimeoutError("x")) == "JOB_TIMEOUT"


def test_ai_output_errors_keep_their_stable_code() -> None:
    assert code_for_error(SchemaInvalidError("x")) == "SCHEMA_INVALID"
    assert code_for_error(ContextMismatchError("x")) == "CONTEXT_MISMATCH"


def test_kill_switch_error_reports_the_setting_that_tripped() -> None:
    assert status_for_error(HydrationDisabledError("HYDRATION_DISABLED")) == 503
    assert code_for_error(HydrationDisabledError("HYDRATION_DISABLED_NOTES")) == "HYDRATION_DISABLED_NOTES"
