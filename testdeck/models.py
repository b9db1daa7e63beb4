"""
Test Pipeline Data Model
========================

Records shared by the parser, counter, runner, report store and dashboard.

All records serialize to JSON with camelCase keys. The same shape is used on
the wire (SSE events) and on disk (run records), so ``to_dict()`` followed
by ``from_dict()`` gives back an equal record.

This module provides:
- Suite identifiers, quality-gate ordering and progress weights
- ParsedTestStats / TestParseResult: output of the output parser
- SuiteCounts / TestCounts: output of the test counter
- TestResult: per-suite record owned by the runner
- TestSuiteResults: run-level aggregate (persisted)
- LiveTestUpdate: in-flight progress event (never persisted)
- ContinuationOptions: partial re-run options
"""
from __future__ import annotations

import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from testdeck.exceptions import InvalidStateTransitionError


# =============================================================================
# Suites
# =============================================================================

BACKEND_TESTS = "backendTests"
LINTING = "linting"
BUILD = "build"
COMPONENT_TESTS_ACCESSIBILITY = "componentTestsAccessibility"
COMPONENT_TESTS_CORE = "componentTestsCore"

# Slot order of TestSuiteResults.results
SUITE_NAMES = (
    BACKEND_TESTS,
    LINTING,
    BUILD,
    COMPONENT_TESTS_ACCESSIBILITY,
    COMPONENT_TESTS_CORE,
)

# Quality gates run first, sequentially, in this order
QUALITY_GATES = (LINTING, BUILD)

# Test suites run in parallel once both gates pass
TEST_SUITES = (BACKEND_TESTS, COMPONENT_TESTS_ACCESSIBILITY, COMPONENT_TESTS_CORE)

COMPONENT_SUITES = frozenset({COMPONENT_TESTS_ACCESSIBILITY, COMPONENT_TESTS_CORE})

SUITE_LABELS = {
    BACKEND_TESTS: "Backend Tests",
    LINTING: "Linting",
    BUILD: "Build Validation",
    COMPONENT_TESTS_ACCESSIBILITY: "Component Tests (Accessibility)",
    COMPONENT_TESTS_CORE: "Component Tests (Core)",
}

# Relative expected duration of each suite, used for overall progress
SUITE_WEIGHTS = {
    LINTING: 0.05,
    BUILD: 0.10,
    BACKEND_TESTS: 0.45,
    COMPONENT_TESTS_ACCESSIBILITY: 0.20,
    COMPONENT_TESTS_CORE: 0.20,
}
DEFAULT_SUITE_WEIGHT = 0.20


# =============================================================================
# Statuses and update types
# =============================================================================

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

SUITE_STATUSES = (STATUS_PENDING, STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED)
TERMINAL_STATUSES = frozenset({STATUS_COMPLETED, STATUS_FAILED})

# Position of each status in the forward-only lifecycle
_STATUS_ORDER = {
    STATUS_PENDING: 0,
    STATUS_RUNNING: 1,
    STATUS_COMPLETED: 2,
    STATUS_FAILED: 2,
}

UPDATE_TEST_START = "test_start"
UPDATE_TEST_PASS = "test_pass"
UPDATE_TEST_FAIL = "test_fail"
UPDATE_TEST_SKIP = "test_skip"
UPDATE_TEST_PROGRESS = "test_progress"
UPDATE_SUITE_COMPLETE = "suite_complete"

LIVE_UPDATE_TYPES = frozenset({
    UPDATE_TEST_START,
    UPDATE_TEST_PASS,
    UPDATE_TEST_FAIL,
    UPDATE_TEST_SKIP,
    UPDATE_TEST_PROGRESS,
    UPDATE_SUITE_COMPLETE,
})


# =============================================================================
# Helpers
# =============================================================================

def utc_now_iso() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def percent(part: int | float, whole: int | float) -> int:
    """Percentage of ``part`` in ``whole``, rounded half up. 0 when whole is 0."""
    if not whole:
        return 0
    return int(part * 100 / whole + 0.5)


def _as_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        try:
            return int(float(value))
        except ValueError:
            return default
    return default


def _optional_int(value: Any) -> int | None:
    if value is None:
        return None
    return _as_int(value)


# =============================================================================
# Parser output
# =============================================================================

@dataclass
class ParsedTestStats:
    """
    Unified statistics for one suite (or an aggregate of suites).

    Attributes:
        total: Number of tests known for the suite
        passed: Tests that passed
        failed: Tests that failed
        skipped: Tests that were skipped or never ran
        pass_rate: passed / total as a 0-100 percentage
        progress: Completion percentage, 0-100
    """
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    pass_rate: int = 0
    progress: int = 0

    @property
    def completed(self) -> int:
        return self.passed + self.failed

    def copy(self) -> "ParsedTestStats":
        return ParsedTestStats(**self.__dict__)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "passRate": self.pass_rate,
            "progress": self.progress,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ParsedTestStats":
        data = data or {}
        return cls(
            total=_as_int(data.get("total")),
            passed=_as_int(data.get("passed")),
            failed=_as_int(data.get("failed")),
            skipped=_as_int(data.get("skipped")),
            pass_rate=_as_int(data.get("passRate")),
            progress=_as_int(data.get("progress")),
        )


@dataclass
class TestParseResult:
    """Result of parsing one suite's raw output."""
    stats: ParsedTestStats = field(default_factory=ParsedTestStats)
    is_complete: bool = False
    current_test: str | None = None
    errors: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "stats": self.stats.to_dict(),
            "isComplete": self.is_complete,
            "currentTest": self.current_test,
            "errors": list(self.errors),
        }


# =============================================================================
# Counter output
# =============================================================================

@dataclass
class SuiteCounts:
    """Declared test counts for one family of test files."""
    total: int = 0
    files: int = 0
    file_details: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "files": self.files,
            "fileDetails": dict(self.file_details),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SuiteCounts":
        data = data or {}
        details = data.get("fileDetails") or {}
        return cls(
            total=_as_int(data.get("total")),
            files=_as_int(data.get("files")),
            file_details={str(k): _as_int(v) for k, v in details.items()},
        )


@dataclass(frozen=True)
class TestCounts:
    """
    Result of a static scan of the test source tree.

    Produced once per run by the counter and treated as the ground truth
    for progress-percentage denominators.
    """
    component_tests: SuiteCounts = field(default_factory=SuiteCounts)
    backend_tests: SuiteCounts = field(default_factory=SuiteCounts)
    total_tests: int = 0
    total_files: int = 0
    last_scan: str = ""
    scan_duration: int = 0

    def expected_total(self, suite: str) -> int | None:
        """
        Expected number of tests for a suite, when the scan knows it.

        Component tests are counted as one family, so neither component
        partition has a per-suite expectation.
        """
        if suite == BACKEND_TESTS and self.backend_tests.total > 0:
            return self.backend_tests.total
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "componentTests": self.component_tests.to_dict(),
            "backendTests": self.backend_tests.to_dict(),
            "totalTests": self.total_tests,
            "totalFiles": self.total_files,
            "lastScan": self.last_scan,
            "scanDuration": self.scan_duration,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TestCounts":
        data = data or {}
        return cls(
            component_tests=SuiteCounts.from_dict(data.get("componentTests")),
            backend_tests=SuiteCounts.from_dict(data.get("backendTests")),
            total_tests=_as_int(data.get("totalTests")),
            total_files=_as_int(data.get("totalFiles")),
            last_scan=str(data.get("lastScan") or ""),
            scan_duration=_as_int(data.get("scanDuration")),
        )


# =============================================================================
# Runner records
# =============================================================================

@dataclass
class TestResult:
    """
    Per-suite record, owned by the runner while the suite executes.

    Status moves only forward (pending -> running -> completed|failed) and
    progress never decreases while the suite is running.
    """
    command: str = ""
    status: str = STATUS_PENDING
    output: str = ""
    error: str | None = None
    start_time: int = field(default_factory=now_ms)
    end_time: int | None = None
    duration: int | None = None
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    pass_rate: int = 0
    progress: int = 0
    current_test: str | None = None
    individual_tests: ParsedTestStats | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def stats(self) -> ParsedTestStats:
        return ParsedTestStats(
            total=self.total,
            passed=self.passed,
            failed=self.failed,
            skipped=self.skipped,
            pass_rate=self.pass_rate,
            progress=self.progress,
        )

    def transition(self, status: str) -> None:
        """
        Move the suite to ``status``.

        Raises:
            InvalidStateTransitionError: for unknown statuses, backward moves,
                or a move out of a terminal status.
        """
        if status not in _STATUS_ORDER:
            raise InvalidStateTransitionError(self.status, status)
        if status == self.status:
            return
        if self.is_terminal or _STATUS_ORDER[status] < _STATUS_ORDER[self.status]:
            raise InvalidStateTransitionError(self.status, status)
        self.status = status

    def apply_stats(self, stats: ParsedTestStats, current_test: str | None = None) -> None:
        """Copy parsed stats into the record, never lowering progress."""
        self.total = stats.total
        self.passed = stats.passed
        self.failed = stats.failed
        self.skipped = stats.skipped
        self.pass_rate = stats.pass_rate
        self.progress = max(self.progress, stats.progress)
        if current_test is not None:
            self.current_test = current_test

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "command": self.command,
            "status": self.status,
            "output": self.output,
            "startTime": self.start_time,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "passRate": self.pass_rate,
            "progress": self.progress,
        }
        if self.error is not None:
            data["error"] = self.error
        if self.end_time is not None:
            data["endTime"] = self.end_time
        if self.duration is not None:
            data["duration"] = self.duration
        if self.current_test is not None:
            data["currentTest"] = self.current_test
        if self.individual_tests is not None:
            data["individualTests"] = self.individual_tests.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TestResult":
        data = data or {}
        status = data.get("status")
        if status not in _STATUS_ORDER:
            status = STATUS_PENDING
        individual = data.get("individualTests")
        return cls(
            command=str(data.get("command") or ""),
            status=status,
            output=str(data.get("output") or ""),
            error=data.get("error"),
            start_time=_as_int(data.get("startTime")),
            end_time=_optional_int(data.get("endTime")),
            duration=_optional_int(data.get("duration")),
            total=_as_int(data.get("total")),
            passed=_as_int(data.get("passed")),
            failed=_as_int(data.get("failed")),
            skipped=_as_int(data.get("skipped")),
            pass_rate=_as_int(data.get("passRate")),
            progress=_as_int(data.get("progress")),
            current_test=data.get("currentTest"),
            individual_tests=(
                ParsedTestStats.from_dict(individual)
                if isinstance(individual, dict) else None
            ),
        )


def new_suite_result(suite: str, command: str = "") -> TestResult:
    """Fresh pending slot. Quality gates are binary, so they start with total=1."""
    total = 1 if suite in QUALITY_GATES else 0
    return TestResult(command=command, total=total)


@dataclass
class TestSuiteResults:
    """
    Run-level aggregate for one execution.

    Attributes:
        execution_id: Unique per run; consumers use it to discard stale data
        timestamp: When the run started (ISO-8601)
        status: Overall lifecycle status
        overall_success: True when every executed suite completed
        results: One TestResult slot per suite, in SUITE_NAMES order
        total_duration: Wall time of the whole run in ms
        overall: Aggregate statistics across suites
        test_counts: Counter snapshot used for this run
        individual_tests: Aggregate of per-suite parsed statistics
        error: Run-level failure message, when orchestration itself failed
    """
    execution_id: str
    timestamp: str = field(default_factory=utc_now_iso)
    status: str = STATUS_PENDING
    overall_success: bool = False
    results: dict[str, TestResult] = field(
        default_factory=lambda: {name: new_suite_result(name) for name in SUITE_NAMES}
    )
    total_duration: int | None = None
    overall: ParsedTestStats = field(default_factory=ParsedTestStats)
    test_counts: TestCounts | None = None
    individual_tests: ParsedTestStats | None = None
    error: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def snapshot(self) -> "TestSuiteResults":
        """Deep copy handed to consumers; later runner mutations do not leak."""
        return copy.deepcopy(self)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        data: dict[str, Any] = {
            "executionId": self.execution_id,
            "timestamp": self.timestamp,
            "status": self.status,
            "overallSuccess": self.overall_success,
            "results": {name: result.to_dict() for name, result in self.results.items()},
            "overall": self.overall.to_dict(),
        }
        if self.total_duration is not None:
            data["totalDuration"] = self.total_duration
        if self.test_counts is not None:
            data["testCounts"] = self.test_counts.to_dict()
        if self.individual_tests is not None:
            data["individualTests"] = self.individual_tests.to_dict()
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestSuiteResults":
        """
        Build from a decoded JSON document.

        Raises:
            ValueError: if the document is not a run record.
        """
        if not isinstance(data, dict) or not isinstance(data.get("results"), dict):
            raise ValueError("Not a test suite results document: missing 'results'")
        status = data.get("status")
        if status not in _STATUS_ORDER:
            raise ValueError(f"Invalid run status: {status!r}")

        raw_results = data["results"]
        results = {}
        for name in SUITE_NAMES:
            raw = raw_results.get(name)
            results[name] = TestResult.from_dict(raw) if isinstance(raw, dict) else new_suite_result(name)

        counts = data.get("testCounts")
        individual = data.get("individualTests")
        return cls(
            execution_id=str(data.get("executionId") or ""),
            timestamp=str(data.get("timestamp") or ""),
            status=status,
            overall_success=bool(data.get("overallSuccess")),
            results=results,
            total_duration=_optional_int(data.get("totalDuration")),
            overall=ParsedTestStats.from_dict(data.get("overall")),
            test_counts=TestCounts.from_dict(counts) if isinstance(counts, dict) else None,
            individual_tests=(
                ParsedTestStats.from_dict(individual)
                if isinstance(individual, dict) else None
            ),
            error=data.get("error"),
        )


@dataclass
class LiveTestUpdate:
    """In-flight progress event. Exists only on the wire."""
    type: str
    suite: str
    execution_id: str
    stats: ParsedTestStats = field(default_factory=ParsedTestStats)
    overall_stats: ParsedTestStats = field(default_factory=ParsedTestStats)
    test_name: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)
    status: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "type": self.type,
            "suite": self.suite,
            "testName": self.test_name,
            "stats": self.stats.to_dict(),
            "overallStats": self.overall_stats.to_dict(),
            "timestamp": self.timestamp,
            "executionId": self.execution_id,
        }
        if self.status is not None:
            data["status"] = self.status
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LiveTestUpdate":
        status = data.get("status")
        return cls(
            type=str(data["type"]),
            suite=str(data["suite"]),
            execution_id=str(data.get("executionId") or ""),
            stats=ParsedTestStats.from_dict(data.get("stats")),
            overall_stats=ParsedTestStats.from_dict(data.get("overallStats")),
            test_name=data.get("testName"),
            timestamp=str(data.get("timestamp") or ""),
            status=status if status in _STATUS_ORDER else None,
        )


@dataclass
class ContinuationOptions:
    """
    Partial re-run options.

    Attributes:
        only_failed: Re-run only suites that failed or never finished last time
        skip_quality_gates: Do not execute lint/build
        continue_suites: Explicit subset of suites to run (wins over only_failed)
        from_state: Prior run to continue from (defaults to latest.json)
    """
    only_failed: bool = False
    skip_quality_gates: bool = False
    continue_suites: list[str] | None = None
    from_state: TestSuiteResults | None = None

    @property
    def is_active(self) -> bool:
        return bool(
            self.only_failed
            or self.skip_quality_gates
            or self.continue_suites is not None
            or self.from_state is not None
        )
