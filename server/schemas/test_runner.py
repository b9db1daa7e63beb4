"""
Test Runner Pydantic Schemas
============================

Request/Response schemas for the test-runner, test-reports and test-counts
endpoints.

Field names follow the camelCase wire format used by the dashboard; Python
attributes are snake_case with aliases. Run records themselves are passed
through as the dictionaries produced by ``TestSuiteResults.to_dict()``.
"""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from testdeck.models import ContinuationOptions, TestSuiteResults

# =============================================================================
# Constants (must match testdeck/models.py)
# =============================================================================

SUITE_NAME = Literal[
    "backendTests",
    "linting",
    "build",
    "componentTestsAccessibility",
    "componentTestsCore",
]


# =============================================================================
# Requests
# =============================================================================

class ContinueRequest(BaseModel):
    """Continuation block of a run request."""

    model_config = ConfigDict(populate_by_name=True)

    from_state: dict[str, Any] | None = Field(
        default=None,
        alias="fromState",
        description="Previous run record to continue from (defaults to the latest run)",
    )
    continue_suites: list[SUITE_NAME] | None = Field(
        default=None,
        alias="continueSuites",
        description="Suites to run; all others keep their previous result",
    )


class RunRequest(BaseModel):
    """Body of POST /api/test-runner. Every field is optional."""

    model_config = ConfigDict(populate_by_name=True)

    streaming: bool = Field(default=False, description="Stream progress as Server-Sent Events")
    continue_: ContinueRequest | None = Field(default=None, alias="continue")
    only_failed: bool = Field(
        default=False,
        alias="onlyFailed",
        description="Re-run only suites that failed or never finished",
    )
    skip_quality_gates: bool = Field(
        default=False,
        alias="skipQualityGates",
        description="Do not run lint and build",
    )
    continue_suites: list[SUITE_NAME] | None = Field(default=None, alias="continueSuites")

    def to_options(self) -> ContinuationOptions:
        """
        Build engine continuation options.

        Raises:
            ValueError: if ``continue.fromState`` is not a run record
        """
        from_state = None
        continue_suites = self.continue_suites
        if self.continue_ is not None:
            if self.continue_.from_state is not None:
                from_state = TestSuiteResults.from_dict(self.continue_.from_state)
            if self.continue_.continue_suites is not None:
                continue_suites = self.continue_.continue_suites

        return ContinuationOptions(
            only_failed=self.only_failed,
            skip_quality_gates=self.skip_quality_gates,
            continue_suites=list(continue_suites) if continue_suites is not None else None,
            from_state=from_state,
        )


# =============================================================================
# Responses
# =============================================================================

class RunnerStatus(BaseModel):
    """Whether a run is active, and which one."""

    model_config = ConfigDict(populate_by_name=True)

    is_running: bool = Field(..., alias="isRunning")
    current_execution_id: str | None = Field(default=None, alias="currentExecutionId")


class TestRunnerStateResponse(BaseModel):
    """Response of GET /api/test-runner."""

    success: bool = True
    data: dict[str, Any] | None = Field(default=None, description="Latest run record, if any")
    status: RunnerStatus


class RunResponse(BaseModel):
    """Response of a non-streaming POST /api/test-runner."""

    success: bool = True
    data: dict[str, Any] | None = Field(default=None, description="Final run record")
    error: str | None = Field(default=None, description="Why the run produced no record")


class AbortResponse(BaseModel):
    """Response of DELETE /api/test-runner."""

    success: bool = True
    message: str


class TestCountsResponse(BaseModel):
    """Response of GET /api/test-counts."""

    success: bool = True
    data: dict[str, Any]
