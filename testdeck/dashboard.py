"""
Live Dashboard
==============

Terminal consumer of the test-runner API.

This module provides:
- SSELineBuffer / extract_data_payload: SSE framing on top of network reads
- UpdateCoalescer: buffers non-critical updates and applies them on a fixed
  tick, critical updates bypass the buffer
- DashboardController: state machine over DashboardState with
  execution-id fencing, so a stale stream never mutates a newer run
- Views: suite card status, current activity, the "issues need attention"
  panel, failure context extraction and a debug report
- DashboardClient: requests-based HTTP/SSE client
- run_dashboard() and the ``testdeck`` command line

Usage:
    testdeck run --only-failed
    testdeck status
    testdeck stop
"""
from __future__ import annotations

import argparse
import json
import logging
import queue
import re
import signal
import sys
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Iterator

import requests
from dotenv import load_dotenv

from testdeck.exceptions import InvalidStateTransitionError
from testdeck.models import (
    BACKEND_TESTS,
    BUILD,
    COMPONENT_SUITES,
    LINTING,
    QUALITY_GATES,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    SUITE_LABELS,
    SUITE_NAMES,
    TEST_SUITES,
    UPDATE_SUITE_COMPLETE,
    ContinuationOptions,
    LiveTestUpdate,
    TestCounts,
    TestSuiteResults,
)
from testdeck.run_config import get_log_level, get_server_url
from testdeck.stream_messages import (
    ConnectionEstablished,
    Heartbeat,
    StreamComplete,
    StreamError,
    message_execution_id,
    parse_stream_message,
)
from testdeck.test_counter import format_test_count_summary
from testdeck.test_output_parser import calculate_weighted_progress

# Module logger
_logger = logging.getLogger(__name__)

# Cap on displayed progress until the terminal snapshot arrives
RUNNING_PROGRESS_CAP = 95

COALESCE_INTERVAL_SECONDS = 1.0

# Issues shown in the attention panel before "... and N more"
MAX_LISTED_ISSUES = 3
ERROR_EXCERPT_LENGTH = 100


# =============================================================================
# SSE framing
# =============================================================================

class SSELineBuffer:
    """
    Splits streamed text into complete lines.

    Network reads can end mid-line; the partial tail is held back until the
    next chunk completes it.
    """

    def __init__(self):
        self._partial = ""

    def feed(self, chunk: str) -> list[str]:
        text = self._partial + chunk
        lines = text.split("\n")
        self._partial = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> list[str]:
        """Remaining partial line, if any, once the stream has ended."""
        rest, self._partial = self._partial, ""
        return [rest.rstrip("\r")] if rest.strip() else []


def extract_data_payload(line: str) -> str | None:
    """JSON text of a ``data:`` line, or None for comments, blanks and non-JSON data."""
    if not line.startswith("data:"):
        return None
    payload = line[len("data:"):].strip()
    if payload.startswith("{") or payload.startswith("["):
        return payload
    return None


# =============================================================================
# Coalescing
# =============================================================================

class UpdateCoalescer:
    """
    Bounded-rate application of updates.

    Non-critical updates queue up and are applied, in arrival order, by the
    first ``tick()`` at least ``interval`` seconds after the previous flush.
    An immediate update first flushes the queue so ordering is preserved,
    then applies itself.
    """

    def __init__(
        self,
        apply: Callable[[Any], None],
        interval: float = COALESCE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._apply = apply
        self.interval = interval
        self._clock = clock
        self._pending: deque = deque()
        self._last_flush = clock()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def submit(self, update: Any, immediate: bool = False) -> None:
        if immediate:
            self.flush()
            self._apply(update)
            return
        self._pending.append(update)

    def tick(self) -> int:
        """Flush if the interval has elapsed. Returns the number of updates applied."""
        if not self._pending:
            return 0
        if self._clock() - self._last_flush < self.interval:
            return 0
        return self.flush()

    def flush(self) -> int:
        applied = 0
        while self._pending:
            self._apply(self._pending.popleft())
            applied += 1
        self._last_flush = self._clock()
        return applied

    def clear(self) -> None:
        self._pending.clear()


# =============================================================================
# Dashboard state machine
# =============================================================================

@dataclass
class DashboardState:
    """
    Everything the dashboard renders.

    Attributes:
        is_running: A run is in progress from this dashboard's point of view
        current_execution_id: Run the dashboard is tracking; other runs' messages are dropped
        latest_results: Last applied run record (live or terminal)
        progress: Overall progress, capped below 100 until the run ends
        current_test: Label of the most recent live update
        error: User-facing error, None for normal completion and user aborts
        test_counts: Last known static counts
        history: Recent run records, newest first
    """
    is_running: bool = False
    current_execution_id: str | None = None
    latest_results: TestSuiteResults | None = None
    progress: int = 0
    current_test: str | None = None
    error: str | None = None
    test_counts: TestCounts | None = None
    history: list[TestSuiteResults] = field(default_factory=list)
    connection_id: str | None = None


class DashboardController:
    """
    Applies stream messages to a DashboardState.

    Every message carrying an execution id is compared against the tracked
    one. Messages from a run this dashboard already moved away from, or
    from any run other than the tracked one, are discarded.
    """

    def __init__(
        self,
        on_change: Callable[[DashboardState], None] | None = None,
        reload_history: Callable[[], list[TestSuiteResults]] | None = None,
        interval: float = COALESCE_INTERVAL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.state = DashboardState()
        self._on_change = on_change
        self._reload_history = reload_history
        self._retired_ids: set[str] = set()
        self.coalescer = UpdateCoalescer(self._apply, interval=interval, clock=clock)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def begin_run(self, execution_id: str | None = None) -> None:
        """
        Reset for a new run.

        Slots start pending; totals known from the previous run are kept so
        denominators do not drop to zero while the new run warms up.
        """
        state = self.state
        if state.current_execution_id:
            self._retired_ids.add(state.current_execution_id)
        self.coalescer.clear()

        previous = state.latest_results
        fresh = TestSuiteResults(execution_id=execution_id or "", status=STATUS_RUNNING)
        if previous is not None:
            for name in SUITE_NAMES:
                prior = previous.results.get(name)
                if prior is not None and prior.total:
                    fresh.results[name].total = prior.total

        state.is_running = True
        state.current_execution_id = execution_id
        state.latest_results = fresh
        state.progress = 0
        state.current_test = None
        state.error = None
        state.connection_id = None
        self._changed()

    def finish(self) -> None:
        """Stream ended: apply whatever is pending and stop."""
        self.coalescer.flush()
        if self.state.is_running:
            self.state.is_running = False
            self._changed()

    def stop(self) -> None:
        """User stop: drop pending updates and mark the run stopped."""
        self.coalescer.clear()
        self.state.is_running = False
        self.state.current_test = None
        self._changed()

    def tick(self) -> int:
        return self.coalescer.tick()

    # -------------------------------------------------------------------------
    # Inbound messages
    # -------------------------------------------------------------------------

    def handle_payload(self, payload: dict[str, Any]) -> bool:
        """
        Fence and dispatch one decoded stream payload.

        Returns:
            True if the payload was accepted, False if it was discarded
        """
        message = parse_stream_message(payload)
        if message is None:
            _logger.warning("Ignoring unrecognized stream payload: %.200s", json.dumps(payload))
            return False

        execution_id = message_execution_id(payload)
        if not self._accepts(execution_id):
            _logger.warning(
                "Discarding message for execution %s (tracking %s)",
                execution_id, self.state.current_execution_id,
            )
            return False

        if isinstance(message, ConnectionEstablished):
            if execution_id:
                self.state.current_execution_id = execution_id
            self.state.connection_id = message.connection_id
            _logger.info("Connected (%s) to execution %s", message.connection_id, execution_id)
            return True

        if execution_id and self.state.current_execution_id is None:
            self.state.current_execution_id = execution_id

        if isinstance(message, Heartbeat):
            _logger.debug("Heartbeat from %s", message.connection_id)
            return True

        if isinstance(message, StreamComplete):
            _logger.info("Stream complete for execution %s", execution_id)
            return True

        if isinstance(message, StreamError):
            self._handle_stream_error(message)
            return True

        if isinstance(message, LiveTestUpdate):
            critical = message.type == UPDATE_SUITE_COMPLETE and message.suite != LINTING
            self.coalescer.submit(message, immediate=critical)
            return True

        self.coalescer.submit(message, immediate=message.is_terminal)
        return True

    def _accepts(self, execution_id: str | None) -> bool:
        if execution_id is None:
            return True
        if execution_id in self._retired_ids:
            return False
        tracked = self.state.current_execution_id
        return tracked is None or tracked == execution_id

    def _handle_stream_error(self, message: StreamError) -> None:
        self.coalescer.flush()
        state = self.state
        state.is_running = False
        state.current_test = None
        if message.is_user_abort:
            _logger.info("Execution %s was aborted", message.execution_id)
            state.error = None
        else:
            _logger.error("Stream error for execution %s: %s", message.execution_id, message.error)
            state.error = f"Stream error: {message.error}"
        self._changed()

    # -------------------------------------------------------------------------
    # Application
    # -------------------------------------------------------------------------

    def _apply(self, message: Any) -> None:
        if isinstance(message, LiveTestUpdate):
            self._apply_live_update(message)
        elif isinstance(message, TestSuiteResults):
            self._apply_snapshot(message)
        self._changed()

    def _apply_live_update(self, update: LiveTestUpdate) -> None:
        state = self.state
        if state.latest_results is None:
            state.latest_results = TestSuiteResults(
                execution_id=update.execution_id,
                status=STATUS_RUNNING,
            )
        results = state.latest_results
        slot = results.results.get(update.suite)
        if slot is None:
            _logger.warning("Live update for unknown suite %r", update.suite)
            return

        stats = update.stats
        slot.total = stats.total
        slot.passed = stats.passed
        slot.failed = stats.failed
        slot.skipped = stats.skipped
        slot.pass_rate = stats.pass_rate
        slot.progress = max(slot.progress, stats.progress)
        if update.test_name:
            slot.current_test = update.test_name

        target = update.status or STATUS_RUNNING
        try:
            slot.transition(target)
        except InvalidStateTransitionError as e:
            _logger.debug("Ignoring status change for %s: %s", update.suite, e)

        results.overall = update.overall_stats
        state.current_test = update.test_name or state.current_test
        state.progress = min(RUNNING_PROGRESS_CAP, self._weighted_progress(results))

    def _apply_snapshot(self, results: TestSuiteResults) -> None:
        state = self.state
        state.latest_results = results
        if results.is_terminal:
            state.progress = 100
            state.is_running = False
            state.current_test = None
            if results.error:
                state.error = results.error
            if self._reload_history is not None:
                try:
                    state.history = self._reload_history()
                except requests.RequestException as e:
                    _logger.warning("Could not reload run history: %s", e)
        else:
            state.progress = min(RUNNING_PROGRESS_CAP, self._weighted_progress(results))

    @staticmethod
    def _weighted_progress(results: TestSuiteResults) -> int:
        active = {
            name: result.progress
            for name, result in results.results.items()
            if result.command or result.status != STATUS_PENDING
        }
        return calculate_weighted_progress(active or {
            name: result.progress for name, result in results.results.items()
        })

    def _changed(self) -> None:
        if self._on_change is not None:
            self._on_change(self.state)


# =============================================================================
# Views
# =============================================================================

@dataclass
class SuiteCardStatus:
    status: str
    is_skipped: bool = False
    reason: str | None = None


@dataclass
class Issue:
    """One entry of the attention panel."""
    suite: str
    test_name: str
    error: str
    skipped: bool = False


@dataclass
class FailureContext:
    failures: list[str]
    context: list[str]
    summary: str


def format_duration(ms: int | float | None) -> str:
    """``850ms``, ``42s`` or ``2m 05s``."""
    if not ms:
        return "0s"
    if ms < 1000:
        return f"{int(ms)}ms"
    total_seconds = int(ms // 1000)
    if total_seconds >= 60:
        return f"{total_seconds // 60}m {total_seconds % 60:02d}s"
    return f"{total_seconds}s"


def suite_card_status(suite: str, results: TestSuiteResults | None) -> SuiteCardStatus:
    """
    Display status of one suite.

    A pending test suite always carries a reason: it is either blocked by a
    failed gate (skipped) or waiting for the gates to pass.
    """
    if results is None or suite not in results.results:
        return SuiteCardStatus(STATUS_PENDING)

    result = results.results[suite]
    if result.status in (STATUS_FAILED, STATUS_COMPLETED, STATUS_RUNNING):
        return SuiteCardStatus(result.status)

    if suite in TEST_SUITES:
        linting = results.results[LINTING].status
        build = results.results[BUILD].status
        if linting == STATUS_FAILED:
            return SuiteCardStatus(STATUS_PENDING, is_skipped=True, reason="Blocked by linting failure")
        if build == STATUS_FAILED:
            return SuiteCardStatus(STATUS_PENDING, is_skipped=True, reason="Blocked by build failure")
        if linting != STATUS_COMPLETED or build != STATUS_COMPLETED:
            return SuiteCardStatus(STATUS_PENDING, reason="Waiting for quality gates")

    return SuiteCardStatus(STATUS_PENDING)


def describe_current_activity(results: TestSuiteResults | None) -> str:
    if results is None:
        return "No test run yet"

    running = [name for name in SUITE_NAMES if results.results[name].status == STATUS_RUNNING]
    if len(running) == 1:
        suite = running[0]
        label = SUITE_LABELS[suite]
        current = results.results[suite].current_test
        return f"Running {label}: {current}" if current else f"Running {label}"
    if running:
        labels = ", ".join(SUITE_LABELS[name] for name in running)
        return f"Running {len(running)} suites in parallel: {labels}"

    if results.status == STATUS_COMPLETED:
        return "All suites passed" if results.overall_success else "Run completed"
    if results.status == STATUS_FAILED:
        return "Run failed"
    if any(results.results[gate].command for gate in QUALITY_GATES):
        return "Waiting for quality gates"
    return "Waiting to start"


_VITEST_FAILURE = re.compile(r"^\s*(?:FAIL|×)\s+(.+)$", re.MULTILINE)
_CYPRESS_FAILURE = re.compile(r"^\s+\d+\)\s+([^\n]+)\n([\s\S]*?)(?=\n\s+\d+\)|\Z)", re.MULTILINE)


def _first_line_after(text: str, position: int) -> str:
    for line in text[position:].split("\n"):
        if line.strip():
            return line.strip()
    return ""


def collect_issues(results: TestSuiteResults | None) -> list[Issue]:
    """
    Failures worth a user's attention, plus suites skipped by a failed gate.

    Failing test names come from the suite's output where the tool prints
    them; otherwise the suite itself is the issue.
    """
    if results is None:
        return []

    issues: list[Issue] = []
    for suite in SUITE_NAMES:
        result = results.results[suite]
        label = SUITE_LABELS[suite]

        if result.status == STATUS_FAILED:
            found: list[Issue] = []
            output = result.output or ""
            if suite == BACKEND_TESTS:
                for match in _VITEST_FAILURE.finditer(output):
                    detail = _first_line_after(output, match.end()) or result.error or ""
                    found.append(Issue(label, match.group(1).strip(), detail))
            elif suite in COMPONENT_SUITES and "failing" in output:
                for match in _CYPRESS_FAILURE.finditer(output):
                    detail = match.group(2).strip() or result.error or ""
                    found.append(Issue(label, match.group(1).strip().rstrip(":"), detail))
            elif suite == LINTING:
                for line in output.split("\n"):
                    if re.search(r"\berror\b", line) and not line.strip().startswith("✖"):
                        found.append(Issue(label, "ESLint Validation", line.strip()))
            elif suite == BUILD:
                for line in output.split("\n"):
                    if "error TS" in line:
                        found.append(Issue(label, "TypeScript Compilation", line.strip()))

            if not found:
                found.append(Issue(
                    label,
                    "Test Suite Execution",
                    result.error or "Test suite failed without detailed error information",
                ))
            issues.extend(found)
            continue

        card = suite_card_status(suite, results)
        if card.is_skipped and results.is_terminal:
            issues.append(Issue(label, "Skipped", card.reason or "", skipped=True))

    return issues


def _excerpt(text: str, length: int = ERROR_EXCERPT_LENGTH) -> str:
    first = (text or "").split("\n")[0]
    return first[:length] + "..." if len(first) > length else first


def _progress_bar(progress: int, width: int = 30) -> str:
    filled = int(width * max(0, min(progress, 100)) / 100)
    return "[" + "#" * filled + "-" * (width - filled) + f"] {progress:3d}%"


def render_dashboard(state: DashboardState) -> str:
    """Plain-text rendering of the dashboard."""
    results = state.latest_results
    lines = []

    if state.is_running:
        header = "Running"
    elif results is None:
        header = "Idle"
    elif results.is_terminal:
        header = "PASSED" if results.overall_success else "FAILED"
    else:
        header = "Stopped"
    execution = f" ({state.current_execution_id})" if state.current_execution_id else ""
    lines.append(f"testdeck: {header}{execution}")
    lines.append(_progress_bar(state.progress))
    lines.append(describe_current_activity(results))

    if state.test_counts is not None:
        counts = state.test_counts
        lines.append(
            f"Real test counts: {counts.total_tests} total tests "
            f"({counts.component_tests.total} component, {counts.backend_tests.total} backend)"
        )

    if results is not None:
        lines.append("")
        for suite in SUITE_NAMES:
            result = results.results[suite]
            card = suite_card_status(suite, results)
            status = card.reason or card.status
            if not result.command and result.status == STATUS_PENDING and not card.reason:
                status = "not run"
            lines.append(
                f"  {SUITE_LABELS[suite]:<34} {status:<28} "
                f"{result.passed}/{result.total} passed  {format_duration(result.duration)}"
            )
        overall = results.overall
        lines.append(
            f"  {'Overall':<34} {overall.passed} passed, {overall.failed} failed, "
            f"{overall.skipped} skipped of {overall.total} ({overall.pass_rate}%)"
        )

    issues = collect_issues(results)
    if issues:
        noun = "issue needs" if len(issues) == 1 else "issues need"
        lines.append("")
        lines.append(f"{len(issues)} {noun} attention")
        for issue in issues[:MAX_LISTED_ISSUES]:
            marker = "skipped" if issue.skipped else "failed"
            lines.append(f"  [{marker}] {issue.suite}: {issue.test_name}")
            if issue.error:
                lines.append(f"      {_excerpt(issue.error)}")
        if len(issues) > MAX_LISTED_ISSUES:
            lines.append(f"  ... and {len(issues) - MAX_LISTED_ISSUES} more")

    if state.error:
        lines.append("")
        lines.append(f"Error: {state.error}")

    return "\n".join(lines)


# =============================================================================
# Failure analysis
# =============================================================================

FAILURE_PATTERNS = (
    re.compile(r"FAIL|FAILED|✗|❌|Error:|error:|ERROR", re.IGNORECASE),
    re.compile(r"expected.*but.*received", re.IGNORECASE),
    re.compile(r"assertion failed", re.IGNORECASE),
    re.compile(r"timeout|timed out", re.IGNORECASE),
    re.compile(r"cannot find|not found|missing", re.IGNORECASE),
    re.compile(r"compilation failed|build failed", re.IGNORECASE),
    re.compile(r"syntax error|parse error", re.IGNORECASE),
)

CONTEXT_PATTERNS = (
    re.compile(r"at .+:\d+:\d+"),
    re.compile(r"^\s*\d+\s*\|"),
    re.compile(r"Test Suites:|Tests:|Snapshots:"),
    re.compile(r"Time:|Duration:"),
    re.compile(r"^npm ERR!"),
    re.compile(r"✓|✅|pass|PASS|passed|PASSED", re.IGNORECASE),
)

# Summary category for a failure line, checked in order
FAILURE_CATEGORIES = (
    ("Compilation", re.compile(r"compilation|build|syntax", re.IGNORECASE)),
    ("Test", re.compile(r"test.*fail|assertion", re.IGNORECASE)),
    ("Timeout", re.compile(r"timeout", re.IGNORECASE)),
    ("Missing File", re.compile(r"cannot find|not found", re.IGNORECASE)),
    ("Runtime Error", re.compile(r"error", re.IGNORECASE)),
)


def extract_failure_context(output: str, error: str | None = None) -> FailureContext:
    """
    Pick failure lines and their surroundings out of raw output.

    Each failure line brings up to two lines of context on either side;
    stack frames, summaries and npm errors are kept as context as well.
    """
    text = output or ""
    if error and error not in text:
        text = f"{text}\n{error}" if text else error
    lines = text.split("\n")
    failures: list[str] = []
    context: list[str] = []

    for i, raw in enumerate(lines):
        line = raw.strip()
        if not line:
            continue

        if any(pattern.search(line) for pattern in FAILURE_PATTERNS):
            failures.append(line)
            for j in range(max(0, i - 2), min(len(lines), i + 3)):
                nearby = lines[j].strip()
                if nearby and nearby not in context:
                    context.append(nearby)

        if any(pattern.search(line) for pattern in CONTEXT_PATTERNS) and line not in context:
            context.append(line)

    if not failures:
        return FailureContext(failures, context, "Build completed successfully")

    categories: list[str] = []
    for failure in failures:
        for name, pattern in FAILURE_CATEGORIES:
            if pattern.search(failure) and name not in categories:
                categories.append(name)
    summary = f"{', '.join(categories or ['Test'])} issues found ({len(failures)} errors)"
    return FailureContext(failures, context, summary)


def generate_debug_report(results: TestSuiteResults | None) -> str:
    """Markdown report of a run, meant to be pasted into an issue or a chat."""
    if results is None:
        return "No test results available yet. Please run tests first."

    duration = f"{round(results.total_duration / 1000)}s" if results.total_duration else "N/A"
    lines = [
        "## Test Status Debug Report",
        f"Generated: {results.timestamp}",
        f"Execution ID: {results.execution_id}",
        f"Overall Status: {'PASSED' if results.overall_success else 'FAILED'}",
        f"Duration: {duration}",
        "",
        "### Suites:",
    ]
    for suite in SUITE_NAMES:
        result = results.results[suite]
        card = suite_card_status(suite, results)
        lines.append(
            f"- {SUITE_LABELS[suite]}: {card.reason or result.status} "
            f"({result.passed}/{result.total} passed, {result.failed} failed, "
            f"{result.skipped} skipped, {format_duration(result.duration)})"
        )

    failed = [suite for suite in SUITE_NAMES if results.results[suite].status == STATUS_FAILED]
    all_failures: list[str] = []
    if failed:
        lines.append("")
        lines.append(f"### Failed Suites ({len(failed)}):")
        for suite in failed:
            result = results.results[suite]
            analysis = extract_failure_context(result.output, result.error)
            all_failures.extend(analysis.failures)
            lines.append("")
            lines.append(f"#### {suite.upper()} FAILURE:")
            lines.append(f"Summary: {analysis.summary}")
            if analysis.failures:
                lines.append("Key Failures:")
                for failure in analysis.failures[:5]:
                    lines.append(f"  - {' '.join(failure.split())}")
                if len(analysis.failures) > 5:
                    lines.append(f"  ... and {len(analysis.failures) - 5} more failures")
            if result.error:
                lines.append(f"Error: {result.error.splitlines()[0]}")

    recent_sections = []
    for suite in SUITE_NAMES:
        relevant = [
            line for line in (results.results[suite].output or "").split("\n")
            if any(marker in line for marker in ("✓", "❌", "×", "❯"))
        ][-5:]
        if relevant:
            recent_sections.extend([f"#### {suite} Recent Output:", "```", *relevant, "```", ""])
    if recent_sections:
        lines.append("")
        lines.append("### Test Output Analysis:")
        lines.extend(recent_sections)

    if failed:
        lines.append("")
        lines.append("### Suggested Next Steps:")
        if any(re.search(r"compilation|build|syntax", f, re.IGNORECASE) for f in all_failures):
            lines.append("- Run `npm run typecheck` to identify TypeScript errors")
        if any(re.search(r"test.*fail|assertion", f, re.IGNORECASE) for f in all_failures):
            lines.append("- Review test logic and assertions")
        if any(re.search(r"timeout", f, re.IGNORECASE) for f in all_failures):
            lines.append("- Check for performance issues or increase timeout")
        if any(re.search(r"cannot find|not found", f, re.IGNORECASE) for f in all_failures):
            lines.append("- Verify file paths and dependencies")
        lines.append("- Consider running individual test suites to isolate issues")

    return "\n".join(lines)


# =============================================================================
# HTTP client
# =============================================================================

def options_to_request(options: ContinuationOptions | None, streaming: bool) -> dict[str, Any]:
    """Request body of POST /api/test-runner."""
    options = options or ContinuationOptions()
    body: dict[str, Any] = {
        "streaming": streaming,
        "onlyFailed": options.only_failed,
        "skipQualityGates": options.skip_quality_gates,
    }
    if options.continue_suites is not None:
        body["continueSuites"] = list(options.continue_suites)
    if options.from_state is not None:
        body["continue"] = {"fromState": options.from_state.to_dict()}
    return body


class DashboardClient:
    """
    Talks to the testdeck server.

    HTTP errors surface as ``requests`` exceptions; malformed stream
    payloads are logged and skipped.
    """

    def __init__(
        self,
        base_url: str,
        session: requests.Session | None = None,
        timeout: float = 10.0,
        stream_timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        self.timeout = timeout
        self.stream_timeout = stream_timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def get_status(self) -> dict[str, Any]:
        resp = self.session.get(self._url("/api/test-runner"), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json()

    def get_test_counts(self) -> TestCounts:
        resp = self.session.get(self._url("/api/test-counts"), timeout=self.timeout)
        resp.raise_for_status()
        return TestCounts.from_dict(resp.json().get("data"))

    def load_history(self) -> list[TestSuiteResults]:
        resp = self.session.get(self._url("/api/test-reports"), timeout=self.timeout)
        resp.raise_for_status()
        history = []
        for record in resp.json():
            try:
                history.append(TestSuiteResults.from_dict(record))
            except ValueError as e:
                _logger.warning("Skipping malformed history record: %s", e)
        return history

    def abort(self) -> str:
        resp = self.session.delete(self._url("/api/test-runner"), timeout=self.timeout)
        resp.raise_for_status()
        return resp.json().get("message", "")

    def run(self, options: ContinuationOptions | None = None) -> TestSuiteResults | None:
        """Start a run and wait for it without streaming."""
        resp = self.session.post(
            self._url("/api/test-runner"),
            json=options_to_request(options, streaming=False),
            timeout=None,
        )
        resp.raise_for_status()
        data = resp.json().get("data")
        return TestSuiteResults.from_dict(data) if data else None

    def stream_run(self, options: ContinuationOptions | None = None) -> Iterator[dict[str, Any]]:
        """
        Start a streaming run and yield each decoded event payload.

        The read timeout bounds the wait for the response and for each chunk;
        server heartbeats keep a quiet run inside it.
        """
        resp = self.session.post(
            self._url("/api/test-runner"),
            json=options_to_request(options, streaming=True),
            stream=True,
            timeout=(self.timeout, self.stream_timeout),
        )
        try:
            resp.raise_for_status()
            resp.encoding = "utf-8"
            buffer = SSELineBuffer()
            for chunk in resp.iter_content(chunk_size=None, decode_unicode=True):
                for line in buffer.feed(chunk):
                    payload = self._decode(line)
                    if payload is not None:
                        yield payload
            for line in buffer.flush():
                payload = self._decode(line)
                if payload is not None:
                    yield payload
        finally:
            resp.close()

    @staticmethod
    def _decode(line: str) -> dict[str, Any] | None:
        text = extract_data_payload(line)
        if text is None:
            return None
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as e:
            _logger.warning("Skipping malformed SSE payload (%s): %.200s", e, text)
            return None
        if not isinstance(payload, dict):
            _logger.warning("Skipping non-object SSE payload: %.200s", text)
            return None
        return payload


_STREAM_END = object()


def _pump_stream(client: DashboardClient, options: ContinuationOptions | None, inbox: queue.Queue) -> None:
    """Reader thread: forward payloads, then any error, then the end marker."""
    try:
        for payload in client.stream_run(options):
            inbox.put(payload)
    except BaseException as e:
        inbox.put(e)
    finally:
        inbox.put(_STREAM_END)


def run_dashboard(
    client: DashboardClient,
    controller: DashboardController,
    options: ContinuationOptions | None = None,
) -> DashboardState:
    """
    Drive one streaming run through the controller.

    The blocking stream read runs on a daemon thread feeding a queue, so
    queued updates are flushed every coalescing interval even while the
    server is quiet. Errors raised by the reader are re-raised here.

    KeyboardInterrupt (Ctrl+C, or SIGTERM under the CLI) asks the server to
    abort the run before returning.
    """
    controller.begin_run()
    inbox: queue.Queue = queue.Queue()
    reader = threading.Thread(
        target=_pump_stream,
        args=(client, options, inbox),
        name="testdeck-stream-reader",
        daemon=True,
    )
    reader.start()
    try:
        while True:
            try:
                item = inbox.get(timeout=controller.coalescer.interval)
            except queue.Empty:
                controller.tick()
                continue
            if item is _STREAM_END:
                break
            if isinstance(item, BaseException):
                raise item
            controller.handle_payload(item)
            controller.tick()
        controller.finish()
    except KeyboardInterrupt:
        _logger.info("Interrupted, aborting execution %s", controller.state.current_execution_id)
        try:
            _logger.info(client.abort())
        except requests.RequestException as e:
            _logger.warning("Abort request failed: %s", e)
        controller.stop()
    return controller.state


# =============================================================================
# Command line
# =============================================================================

def _raise_keyboard_interrupt(signum, frame):
    raise KeyboardInterrupt


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="testdeck",
        description="Run the test pipeline and follow its progress.",
    )
    parser.add_argument(
        "--url",
        default=None,
        help="Server base URL (default: $TESTDECK_SERVER_URL or http://127.0.0.1:8888)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Start a test run")
    run_parser.add_argument("--only-failed", action="store_true", help="Re-run failed or unfinished suites only")
    run_parser.add_argument("--skip-quality-gates", action="store_true", help="Do not run lint and build")
    run_parser.add_argument(
        "--suite",
        action="append",
        choices=SUITE_NAMES,
        default=None,
        help="Run only this suite (repeatable)",
    )
    run_parser.add_argument("--no-stream", action="store_true", help="Wait for the result without live updates")

    subparsers.add_parser("status", help="Show runner status and the latest run")
    subparsers.add_parser("stop", help="Abort the active run")
    subparsers.add_parser("history", help="List recent runs")
    subparsers.add_parser("counts", help="Scan and show test counts")
    subparsers.add_parser("report", help="Print a debug report of the latest run")
    return parser


def _print_on_change(out) -> Callable[[DashboardState], None]:
    last = {"text": None}

    def render(state: DashboardState) -> None:
        text = render_dashboard(state)
        if text != last["text"]:
            last["text"] = text
            print(text, file=out)
            print("", file=out)
    return render


def _latest_from_status(status: dict[str, Any]) -> TestSuiteResults | None:
    data = status.get("data")
    return TestSuiteResults.from_dict(data) if data else None


def _command_run(client: DashboardClient, args: argparse.Namespace, out) -> int:
    options = ContinuationOptions(
        only_failed=args.only_failed,
        skip_quality_gates=args.skip_quality_gates,
        continue_suites=args.suite,
    )

    if args.no_stream:
        state = DashboardState(latest_results=client.run(options))
        if state.latest_results is not None:
            state.current_execution_id = state.latest_results.execution_id
            state.progress = 100
        print(render_dashboard(state), file=out)
        return 0 if state.latest_results and state.latest_results.overall_success else 1

    controller = DashboardController(
        on_change=_print_on_change(out),
        reload_history=client.load_history,
    )
    try:
        controller.state.test_counts = client.get_test_counts()
    except requests.RequestException as e:
        _logger.warning("Could not load test counts: %s", e)

    state = run_dashboard(client, controller, options)
    results = state.latest_results
    if state.error or results is None or not results.is_terminal:
        return 1
    return 0 if results.overall_success else 1


def main(argv: list[str] | None = None, out=None) -> int:
    """Entry point of the ``testdeck`` command."""
    out = out or sys.stdout
    load_dotenv()
    logging.basicConfig(
        level=get_log_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    args = _build_parser().parse_args(argv)
    client = DashboardClient(args.url or get_server_url())

    previous_handler = signal.signal(signal.SIGTERM, _raise_keyboard_interrupt)
    try:
        if args.command == "run":
            return _command_run(client, args, out)

        if args.command == "status":
            status = client.get_status()
            runner = status.get("status", {})
            if runner.get("isRunning"):
                print(f"Running: {runner.get('currentExecutionId')}", file=out)
            else:
                print("Idle", file=out)
            state = DashboardState(latest_results=_latest_from_status(status))
            if state.latest_results is not None:
                state.progress = 100 if state.latest_results.is_terminal else 0
                print(render_dashboard(state), file=out)
            return 0

        if args.command == "stop":
            print(client.abort(), file=out)
            return 0

        if args.command == "history":
            history = client.load_history()
            if not history:
                print("No test runs recorded", file=out)
            for record in history:
                overall = record.overall
                print(
                    f"{record.execution_id}  {record.status:<9}  "
                    f"{overall.passed}/{overall.total} passed  "
                    f"{format_duration(record.total_duration):>8}  {record.timestamp}",
                    file=out,
                )
            return 0

        if args.command == "counts":
            print(format_test_count_summary(client.get_test_counts()), file=out)
            return 0

        if args.command == "report":
            print(generate_debug_report(_latest_from_status(client.get_status())), file=out)
            return 0

    except requests.RequestException as e:
        print(f"Request to {client.base_url} failed: {e}", file=sys.stderr)
        return 2
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    return 2


if __name__ == "__main__":
    sys.exit(main())
