"""
Pydantic Schemas Package
========================

Organized schemas for the testdeck API.
"""

from .test_runner import (
    AbortResponse,
    ContinueRequest,
    RunnerStatus,
    RunRequest,
    RunResponse,
    TestCountsResponse,
    TestRunnerStateResponse,
)

__all__ = [
    "AbortResponse",
    "ContinueRequest",
    "RunnerStatus",
    "RunRequest",
    "RunResponse",
    "TestCountsResponse",
    "TestRunnerStateResponse",
]
