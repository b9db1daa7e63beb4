"""
Run Configuration Tests
=======================

Tests for testdeck/run_config.py environment handling.
"""

import logging
from pathlib import Path

import pytest

from testdeck.models import BACKEND_TESTS, COMPONENT_TESTS_CORE, LINTING
from testdeck.run_config import (
    DEFAULT_COMMANDS,
    DEFAULT_COMPONENT_TIMEOUT,
    DEFAULT_SERVER_URL,
    DEFAULT_SUITE_TIMEOUT,
    ENV_ALLOW_REMOTE,
    ENV_LINT_COMMAND,
    ENV_LOG_LEVEL,
    ENV_PROJECT_DIR,
    ENV_SERVER_URL,
    ENV_SUITE_TIMEOUT,
    RunnerConfig,
    get_bool,
    get_log_level,
    get_seconds,
    get_server_url,
    is_remote_allowed,
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in (ENV_PROJECT_DIR, ENV_LINT_COMMAND, ENV_SUITE_TIMEOUT, ENV_ALLOW_REMOTE, ENV_SERVER_URL, ENV_LOG_LEVEL):
        monkeypatch.delenv(name, raising=False)


class TestGetBool:
    @pytest.mark.parametrize("value", ["1", "true", "YES", " on ", "enabled"])
    def test_truthy(self, monkeypatch, value):
        monkeypatch.setenv(ENV_ALLOW_REMOTE, value)
        assert get_bool(ENV_ALLOW_REMOTE) is True

    @pytest.mark.parametrize("value", ["0", "false", "No", "off", "disabled"])
    def test_falsy(self, monkeypatch, value):
        monkeypatch.setenv(ENV_ALLOW_REMOTE, value)
        assert get_bool(ENV_ALLOW_REMOTE, default=True) is False

    def test_unset_uses_default(self):
        assert get_bool(ENV_ALLOW_REMOTE, default=True) is True

    def test_unknown_warns(self, monkeypatch, caplog):
        monkeypatch.setenv(ENV_ALLOW_REMOTE, "maybe")
        with caplog.at_level(logging.WARNING):
            assert get_bool(ENV_ALLOW_REMOTE) is False
        assert "Unknown value" in caplog.text

    def test_remote_disabled_by_default(self):
        assert is_remote_allowed() is False


class TestGetSeconds:
    def test_valid(self, monkeypatch):
        monkeypatch.setenv(ENV_SUITE_TIMEOUT, "2.5")
        assert get_seconds(ENV_SUITE_TIMEOUT, 120.0) == 2.5

    @pytest.mark.parametrize("value", ["-1", "soon", "nan-ish"])
    def test_invalid_falls_back(self, monkeypatch, caplog, value):
        monkeypatch.setenv(ENV_SUITE_TIMEOUT, value)
        with caplog.at_level(logging.WARNING):
            assert get_seconds(ENV_SUITE_TIMEOUT, 120.0) == 120.0
        assert "Invalid value" in caplog.text


class TestServerSettings:
    def test_server_url_default(self):
        assert get_server_url() == DEFAULT_SERVER_URL

    def test_server_url_strips_slash(self, monkeypatch):
        monkeypatch.setenv(ENV_SERVER_URL, "http://devbox:9000/")
        assert get_server_url() == "http://devbox:9000"

    def test_log_level(self, monkeypatch):
        assert get_log_level() == "INFO"
        monkeypatch.setenv(ENV_LOG_LEVEL, "debug")
        assert get_log_level() == "DEBUG"
        monkeypatch.setenv(ENV_LOG_LEVEL, "chatty")
        assert get_log_level() == "INFO"


class TestRunnerConfig:
    def test_defaults(self):
        config = RunnerConfig()

        assert config.commands == DEFAULT_COMMANDS
        assert config.timeout_for(LINTING) == DEFAULT_SUITE_TIMEOUT
        assert config.timeout_for(BACKEND_TESTS) == DEFAULT_SUITE_TIMEOUT
        assert config.timeout_for(COMPONENT_TESTS_CORE) == DEFAULT_COMPONENT_TIMEOUT

    def test_from_env(self, monkeypatch, tmp_path):
        monkeypatch.setenv(ENV_PROJECT_DIR, str(tmp_path))
        monkeypatch.setenv(ENV_LINT_COMMAND, "ruff check .")
        monkeypatch.setenv(ENV_SUITE_TIMEOUT, "30")

        config = RunnerConfig.from_env()

        assert config.project_dir == tmp_path.resolve()
        assert config.commands[LINTING] == "ruff check ."
        assert config.commands[BACKEND_TESTS] == DEFAULT_COMMANDS[BACKEND_TESTS]
        assert config.suite_timeout == 30.0

    def test_missing_project_dir_falls_back(self, monkeypatch, tmp_path, caplog):
        monkeypatch.setenv(ENV_PROJECT_DIR, str(tmp_path / "missing"))

        with caplog.at_level(logging.WARNING):
            config = RunnerConfig.from_env()

        assert config.project_dir == Path.cwd().resolve()
        assert "missing directory" in caplog.text
