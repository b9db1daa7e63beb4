"""
Run Configuration
=================

Environment variable configuration for the test runner, the HTTP server and
the dashboard CLI.

Every variable is optional. Invalid values log a warning and fall back to
the default, so a typo never stops a run from starting.

Usage:
    from testdeck.run_config import RunnerConfig

    config = RunnerConfig.from_env()
    print(config.commands["linting"], config.suite_timeout)
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

from testdeck.models import (
    BACKEND_TESTS,
    BUILD,
    COMPONENT_SUITES,
    COMPONENT_TESTS_ACCESSIBILITY,
    COMPONENT_TESTS_CORE,
    LINTING,
)

# Module logger
_logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

ENV_PROJECT_DIR = "TESTDECK_PROJECT_DIR"
ENV_LINT_COMMAND = "TESTDECK_LINT_COMMAND"
ENV_BUILD_COMMAND = "TESTDECK_BUILD_COMMAND"
ENV_BACKEND_COMMAND = "TESTDECK_BACKEND_COMMAND"
ENV_ACCESSIBILITY_COMMAND = "TESTDECK_ACCESSIBILITY_COMMAND"
ENV_COMPONENT_COMMAND = "TESTDECK_COMPONENT_COMMAND"
ENV_SUITE_TIMEOUT = "TESTDECK_SUITE_TIMEOUT"
ENV_COMPONENT_TIMEOUT = "TESTDECK_COMPONENT_TIMEOUT"
ENV_KILL_GRACE_SECONDS = "TESTDECK_KILL_GRACE_SECONDS"
ENV_POLL_INTERVAL = "TESTDECK_POLL_INTERVAL"
ENV_ABORT_SETTLE_SECONDS = "TESTDECK_ABORT_SETTLE_SECONDS"
ENV_ALLOW_REMOTE = "TESTDECK_ALLOW_REMOTE"
ENV_SERVER_URL = "TESTDECK_SERVER_URL"
ENV_LOG_LEVEL = "TESTDECK_LOG_LEVEL"

# Environment variable carrying the command for each suite
COMMAND_ENV_VARS = {
    LINTING: ENV_LINT_COMMAND,
    BUILD: ENV_BUILD_COMMAND,
    BACKEND_TESTS: ENV_BACKEND_COMMAND,
    COMPONENT_TESTS_ACCESSIBILITY: ENV_ACCESSIBILITY_COMMAND,
    COMPONENT_TESTS_CORE: ENV_COMPONENT_COMMAND,
}

DEFAULT_COMMANDS = {
    LINTING: "npm run lint",
    BUILD: "npm run typecheck",
    BACKEND_TESTS: "npm run test:unit -- tests/api",
    COMPONENT_TESTS_ACCESSIBILITY: "npm run test:ct:accessibility",
    COMPONENT_TESTS_CORE: "npm run test:ct:core",
}

DEFAULT_SUITE_TIMEOUT = 120.0
DEFAULT_COMPONENT_TIMEOUT = 180.0
DEFAULT_KILL_GRACE_SECONDS = 2.0
DEFAULT_POLL_INTERVAL = 1.0
DEFAULT_ABORT_SETTLE_SECONDS = 1.0
DEFAULT_SERVER_URL = "http://127.0.0.1:8888"
DEFAULT_LOG_LEVEL = "INFO"

# Truthy values for environment variable
TRUTHY_VALUES = ("1", "true", "yes", "on", "enabled")

# Falsy values for environment variable
FALSY_VALUES = ("0", "false", "no", "off", "disabled", "")


# =============================================================================
# Environment Variable Reading
# =============================================================================

def get_bool(name: str, default: bool = False) -> bool:
    """Read a boolean flag. Unknown values log a warning and return the default."""
    raw = os.environ.get(name, "").strip().lower()
    if raw in TRUTHY_VALUES:
        return True
    if raw in FALSY_VALUES:
        return default if raw == "" else False

    _logger.warning(
        "Unknown value for %s: '%s'. Defaulting to %s. Valid values: %s",
        name, raw, default, TRUTHY_VALUES + FALSY_VALUES[:-1],
    )
    return default


def get_seconds(name: str, default: float) -> float:
    """Read a non-negative duration in seconds."""
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        value = -1.0
    if value < 0:
        _logger.warning(
            "Invalid value for %s: '%s'. Defaulting to %s seconds",
            name, raw, default,
        )
        return default
    return value


def get_command(suite: str) -> str:
    """Shell command for a suite, from its environment variable or the default."""
    raw = os.environ.get(COMMAND_ENV_VARS[suite], "").strip()
    return raw or DEFAULT_COMMANDS[suite]


def get_server_url() -> str:
    """Base URL the dashboard CLI talks to."""
    raw = os.environ.get(ENV_SERVER_URL, "").strip()
    return (raw or DEFAULT_SERVER_URL).rstrip("/")


def get_log_level() -> str:
    raw = os.environ.get(ENV_LOG_LEVEL, "").strip().upper()
    if not raw:
        return DEFAULT_LOG_LEVEL
    if raw in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        return raw
    _logger.warning("Unknown value for %s: '%s'. Defaulting to '%s'", ENV_LOG_LEVEL, raw, DEFAULT_LOG_LEVEL)
    return DEFAULT_LOG_LEVEL


def is_remote_allowed() -> bool:
    """Whether the server accepts requests from non-localhost clients."""
    return get_bool(ENV_ALLOW_REMOTE, default=False)


# =============================================================================
# Runner configuration
# =============================================================================

@dataclass
class RunnerConfig:
    """
    Settings for one TestRunner.

    Attributes:
        project_dir: Directory commands run in and tests are scanned from
        commands: Shell command per suite
        suite_timeout: Seconds before a lint/build/backend process is killed
        component_timeout: Seconds before a component-test process is killed
        kill_grace_seconds: Delay between SIGTERM and SIGKILL
        poll_interval: Seconds between live progress parses
        abort_settle_seconds: Pause after aborting a previous run
    """
    project_dir: Path = field(default_factory=Path.cwd)
    commands: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_COMMANDS))
    suite_timeout: float = DEFAULT_SUITE_TIMEOUT
    component_timeout: float = DEFAULT_COMPONENT_TIMEOUT
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    poll_interval: float = DEFAULT_POLL_INTERVAL
    abort_settle_seconds: float = DEFAULT_ABORT_SETTLE_SECONDS

    def timeout_for(self, suite: str) -> float:
        """Component tests start a browser and get the longer timeout."""
        if suite in COMPONENT_SUITES:
            return self.component_timeout
        return self.suite_timeout

    @classmethod
    def from_env(cls) -> "RunnerConfig":
        """Build a config from TESTDECK_* environment variables."""
        raw_dir = os.environ.get(ENV_PROJECT_DIR, "").strip()
        project_dir = Path(raw_dir).expanduser() if raw_dir else Path.cwd()
        if not project_dir.is_dir():
            _logger.warning(
                "%s points to a missing directory: '%s'. Defaulting to the current directory",
                ENV_PROJECT_DIR, raw_dir,
            )
            project_dir = Path.cwd()

        return cls(
            project_dir=project_dir.resolve(),
            commands={suite: get_command(suite) for suite in COMMAND_ENV_VARS},
            suite_timeout=get_seconds(ENV_SUITE_TIMEOUT, DEFAULT_SUITE_TIMEOUT),
            component_timeout=get_seconds(ENV_COMPONENT_TIMEOUT, DEFAULT_COMPONENT_TIMEOUT),
            kill_grace_seconds=get_seconds(ENV_KILL_GRACE_SECONDS, DEFAULT_KILL_GRACE_SECONDS),
            poll_interval=get_seconds(ENV_POLL_INTERVAL, DEFAULT_POLL_INTERVAL),
            abort_settle_seconds=get_seconds(ENV_ABORT_SETTLE_SECONDS, DEFAULT_ABORT_SETTLE_SECONDS),
        )
