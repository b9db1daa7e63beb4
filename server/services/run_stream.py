"""
Run Stream Service
==================

Turns a TestRun into a Server-Sent Events body.

Stream layout:
- connection_established (connectionId, executionId)
- one event per runner snapshot or live update, each stamped with
  connectionId, serverTimestamp and currentExecutionId
- heartbeat when nothing was sent for HEARTBEAT_IDLE_SECONDS
- stream_complete, or stream_error when the run was aborted or crashed

If the client goes away the response task is cancelled; the pending step of
the run is cancelled with it, which terminates the run's processes.
"""

import asyncio
import logging
import time
from typing import AsyncIterator

from testdeck.exceptions import RunAbortedError
from testdeck.models import now_ms, utc_now_iso
from testdeck.stream_messages import (
    ERROR_TYPE_EXECUTION,
    ERROR_TYPE_USER_ABORT,
    ConnectionEstablished,
    Heartbeat,
    StreamComplete,
    StreamError,
    format_sse_event,
)
from testdeck.test_runner import TestRun

_logger = logging.getLogger(__name__)

# How often the stream checks whether a heartbeat is due
HEARTBEAT_CHECK_SECONDS = 5.0

# Quiet period after which a heartbeat is sent
HEARTBEAT_IDLE_SECONDS = 10.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def new_connection_id() -> str:
    return f"conn_{now_ms()}"


async def stream_run_events(
    run: TestRun,
    connection_id: str | None = None,
    heartbeat_check_seconds: float = HEARTBEAT_CHECK_SECONDS,
    heartbeat_idle_seconds: float = HEARTBEAT_IDLE_SECONDS,
) -> AsyncIterator[str]:
    """
    Drive ``run`` and yield its events as SSE frames.

    Args:
        run: Started run whose events have not been consumed yet
        connection_id: Identifier stamped on every event (generated if None)
        heartbeat_check_seconds: Poll period for the idle check
        heartbeat_idle_seconds: Idle time before a heartbeat is sent

    Yields:
        ``data: <json>\\n\\n`` frames
    """
    connection_id = connection_id or new_connection_id()
    execution_id = run.execution_id
    _logger.info("SSE connection %s opened for execution %s", connection_id, execution_id)

    yield format_sse_event(ConnectionEstablished(connection_id, execution_id).to_dict())
    last_sent = time.monotonic()

    events = run.events()
    pending: asyncio.Future | None = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(events.__anext__())

            done, _ = await asyncio.wait({pending}, timeout=heartbeat_check_seconds)
            if not done:
                if time.monotonic() - last_sent >= heartbeat_idle_seconds:
                    _logger.debug("Heartbeat on %s", connection_id)
                    yield format_sse_event(Heartbeat(connection_id, execution_id).to_dict())
                    last_sent = time.monotonic()
                continue

            step, pending = pending, None
            try:
                event = step.result()
            except StopAsyncIteration:
                break

            payload = event.to_dict()
            payload["connectionId"] = connection_id
            payload["serverTimestamp"] = utc_now_iso()
            payload["currentExecutionId"] = execution_id
            yield format_sse_event(payload)
            last_sent = time.monotonic()

        yield format_sse_event(StreamComplete(connection_id, execution_id).to_dict())
        _logger.info("SSE connection %s complete", connection_id)

    except RunAbortedError as e:
        _logger.info("Execution %s aborted, closing %s", execution_id, connection_id)
        yield format_sse_event(StreamError(
            error=e.reason,
            error_type=ERROR_TYPE_USER_ABORT,
            connection_id=connection_id,
            execution_id=execution_id,
        ).to_dict())
    except Exception as e:
        _logger.exception("Execution %s failed on %s", execution_id, connection_id)
        yield format_sse_event(StreamError(
            error=str(e) or e.__class__.__name__,
            error_type=ERROR_TYPE_EXECUTION,
            connection_id=connection_id,
            execution_id=execution_id,
        ).to_dict())
    finally:
        if pending is not None and not pending.done():
            pending.cancel()
            await asyncio.gather(pending, return_exceptions=True)
        await events.aclose()
        run.close()
