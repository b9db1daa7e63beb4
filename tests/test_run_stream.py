"""
Run Stream Tests
================

Tests for server/services/run_stream.py: SSE framing of a live run,
heartbeats during quiet periods, and the terminal event on abort, crash
and client disconnect.
"""

import asyncio
import json
import shlex
import sys

import pytest

from server.services.run_stream import new_connection_id, stream_run_events
from testdeck.models import BACKEND_TESTS, BUILD, COMPONENT_TESTS_ACCESSIBILITY, COMPONENT_TESTS_CORE, LINTING
from testdeck.run_config import RunnerConfig
from testdeck.test_runner import TestRunner


def py(code: str) -> str:
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"


def make_runner(tmp_path, **overrides) -> TestRunner:
    commands = {
        LINTING: py("print('ok')"),
        BUILD: py("print('ok')"),
        BACKEND_TESTS: py("print('      Tests  2 passed (2)')"),
        COMPONENT_TESTS_ACCESSIBILITY: py("print('  1 passing (1s)')"),
        COMPONENT_TESTS_CORE: py("print('  1 passing (1s)')"),
    }
    commands.update(overrides)
    return TestRunner(RunnerConfig(
        project_dir=tmp_path,
        commands=commands,
        suite_timeout=20.0,
        component_timeout=20.0,
        kill_grace_seconds=0.5,
        poll_interval=0.05,
        abort_settle_seconds=0,
    ))


def decode(frame: str) -> dict:
    assert frame.startswith("data: ") and frame.endswith("\n\n")
    return json.loads(frame[len("data: "):])


async def collect_frames(stream) -> list[dict]:
    return [decode(frame) async for frame in stream]


class TestStreamRunEvents:
    def test_connection_ids(self):
        assert new_connection_id().startswith("conn_")

    @pytest.mark.asyncio
    async def test_complete_stream(self, tmp_path):
        runner = make_runner(tmp_path)
        run = await runner.start()

        payloads = await collect_frames(stream_run_events(run, connection_id="conn_test"))

        assert payloads[0] == {
            "type": "connection_established",
            "connectionId": "conn_test",
            "executionId": run.execution_id,
            "timestamp": payloads[0]["timestamp"],
        }
        assert payloads[-1]["type"] == "stream_complete"
        assert payloads[-1]["currentExecutionId"] == run.execution_id
        assert payloads[-2]["status"] == "completed"
        assert not runner.is_running()

    @pytest.mark.asyncio
    async def test_heartbeat_when_idle(self, tmp_path):
        runner = make_runner(tmp_path, **{LINTING: py("import time; time.sleep(0.6)")})
        run = await runner.start()

        payloads = await collect_frames(stream_run_events(
            run, heartbeat_check_seconds=0.05, heartbeat_idle_seconds=0.1,
        ))

        heartbeats = [payload for payload in payloads if payload.get("type") == "heartbeat"]
        assert heartbeats
        assert all(payload["currentExecutionId"] == run.execution_id for payload in heartbeats)

    @pytest.mark.asyncio
    async def test_abort_ends_with_user_abort(self, tmp_path):
        runner = make_runner(tmp_path, **{BACKEND_TESTS: py("import time; time.sleep(30)")})
        run = await runner.start()
        payloads = []

        async for frame in stream_run_events(run):
            payload = decode(frame)
            payloads.append(payload)
            results = payload.get("results")
            if results and results[BACKEND_TESTS]["status"] == "running" and runner.is_running():
                await runner.abort()

        last = payloads[-1]
        assert last["type"] == "stream_error"
        assert last["errorType"] == "user_abort"
        assert last["status"] == "failed"
        assert last["currentExecutionId"] == run.execution_id
        assert not any(payload.get("type") == "stream_complete" for payload in payloads)

    @pytest.mark.asyncio
    async def test_disconnect_terminates_run(self, tmp_path):
        runner = make_runner(tmp_path, **{LINTING: py("import time; time.sleep(30)")})
        run = await runner.start()
        stream = stream_run_events(run)

        async for frame in stream:
            payload = decode(frame)
            results = payload.get("results")
            if results and results[LINTING]["status"] == "running":
                break
        await asyncio.wait_for(stream.aclose(), timeout=10)

        assert not runner.is_running()
        assert runner.current_execution_id is None
        assert not runner._active_processes
