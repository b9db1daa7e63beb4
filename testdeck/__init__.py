"""
testdeck Package
================

Test execution and live reporting: output parsing, static test counts,
the run orchestrator, persisted run records and the dashboard consumer.
"""

from testdeck.exceptions import InvalidStateTransitionError, RunAbortedError, TestDeckError
from testdeck.models import (
    QUALITY_GATES,
    SUITE_NAMES,
    TEST_SUITES,
    ContinuationOptions,
    LiveTestUpdate,
    ParsedTestStats,
    SuiteCounts,
    TestCounts,
    TestParseResult,
    TestResult,
    TestSuiteResults,
)
from testdeck.run_config import RunnerConfig
from testdeck.test_counter import TestCounter, format_test_count_summary
from testdeck.test_output_parser import TestOutputParser, parse_test_output
from testdeck.test_reports import TestReportStore
from testdeck.test_runner import TestRun, TestRunner

__all__ = [
    "QUALITY_GATES",
    "SUITE_NAMES",
    "TEST_SUITES",
    "ContinuationOptions",
    "InvalidStateTransitionError",
    "LiveTestUpdate",
    "ParsedTestStats",
    "RunAbortedError",
    "RunnerConfig",
    "SuiteCounts",
    "TestCounter",
    "TestCounts",
    "TestDeckError",
    "TestOutputParser",
    "TestParseResult",
    "TestReportStore",
    "TestResult",
    "TestRun",
    "TestRunner",
    "TestSuiteResults",
    "format_test_count_summary",
    "parse_test_output",
]
