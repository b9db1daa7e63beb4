"""
Stream Messages
===============

The closed set of messages carried on the test-runner event stream, and
the Server-Sent Events framing used to send them.

A stream carries, in order:
- connection_established: first event, names the connection and execution
- TestSuiteResults snapshots and LiveTestUpdate events from the runner
- heartbeat: keep-alive after a quiet period
- stream_complete or stream_error: last event

Payloads are parsed once at the transport boundary with
``parse_stream_message``. Anything that is not one of these shapes is
rejected (returns None) instead of being guessed at.

Usage:
    from testdeck.stream_messages import format_sse_event, parse_stream_message

    frame = format_sse_event(Heartbeat(connection_id="conn_1").to_dict())
    message = parse_stream_message(json.loads(payload))
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Union

from testdeck.models import (
    LIVE_UPDATE_TYPES,
    STATUS_FAILED,
    LiveTestUpdate,
    TestSuiteResults,
    utc_now_iso,
)

# Module logger
_logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

TYPE_CONNECTION_ESTABLISHED = "connection_established"
TYPE_HEARTBEAT = "heartbeat"
TYPE_STREAM_COMPLETE = "stream_complete"
TYPE_STREAM_ERROR = "stream_error"

# stream_error errorType values
ERROR_TYPE_USER_ABORT = "user_abort"
ERROR_TYPE_EXECUTION = "execution_error"


# =============================================================================
# Control messages
# =============================================================================

@dataclass
class ConnectionEstablished:
    """First event of every stream."""
    connection_id: str
    execution_id: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": TYPE_CONNECTION_ESTABLISHED,
            "connectionId": self.connection_id,
            "executionId": self.execution_id,
            "timestamp": self.timestamp,
        }


@dataclass
class Heartbeat:
    """Keep-alive sent when no data went out for a while."""
    connection_id: str
    execution_id: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": TYPE_HEARTBEAT,
            "connectionId": self.connection_id,
            "currentExecutionId": self.execution_id,
            "timestamp": self.timestamp,
        }


@dataclass
class StreamComplete:
    """Last event of a stream whose run finished (successfully or not)."""
    connection_id: str
    execution_id: str | None = None
    timestamp: str = field(default_factory=utc_now_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": TYPE_STREAM_COMPLETE,
            "connectionId": self.connection_id,
            "currentExecutionId": self.execution_id,
            "timestamp": self.timestamp,
        }


@dataclass
class StreamError:
    """
    Last event of a stream whose run was aborted or crashed.

    Attributes:
        error: Human-readable message
        error_type: ERROR_TYPE_USER_ABORT or ERROR_TYPE_EXECUTION
        status: Always "failed"
    """
    error: str
    error_type: str = ERROR_TYPE_EXECUTION
    connection_id: str | None = None
    execution_id: str | None = None
    status: str = STATUS_FAILED
    timestamp: str = field(default_factory=utc_now_iso)

    @property
    def is_user_abort(self) -> bool:
        return self.error_type == ERROR_TYPE_USER_ABORT

    def to_dict(self) -> dict[str, Any]:
        return {
            "type": TYPE_STREAM_ERROR,
            "error": self.error,
            "errorType": self.error_type,
            "status": self.status,
            "connectionId": self.connection_id,
            "currentExecutionId": self.execution_id,
            "timestamp": self.timestamp,
        }


StreamMessage = Union[
    ConnectionEstablished,
    Heartbeat,
    StreamComplete,
    StreamError,
    LiveTestUpdate,
    TestSuiteResults,
]


# =============================================================================
# Parsing and framing
# =============================================================================

def message_execution_id(payload: dict[str, Any]) -> str | None:
    """Execution id a payload belongs to, preferring the server-stamped one."""
    execution_id = payload.get("currentExecutionId") or payload.get("executionId")
    return str(execution_id) if execution_id else None


def parse_stream_message(payload: Any) -> StreamMessage | None:
    """
    Turn a decoded JSON payload into a typed message.

    Returns:
        The message, or None for anything outside the closed set
    """
    if not isinstance(payload, dict):
        return None

    message_type = payload.get("type")
    execution_id = message_execution_id(payload)
    connection_id = payload.get("connectionId")
    timestamp = str(payload.get("timestamp") or utc_now_iso())

    if message_type == TYPE_CONNECTION_ESTABLISHED:
        return ConnectionEstablished(
            connection_id=str(connection_id or ""),
            execution_id=execution_id,
            timestamp=timestamp,
        )
    if message_type == TYPE_HEARTBEAT:
        return Heartbeat(connection_id=str(connection_id or ""), execution_id=execution_id, timestamp=timestamp)
    if message_type == TYPE_STREAM_COMPLETE:
        return StreamComplete(connection_id=str(connection_id or ""), execution_id=execution_id, timestamp=timestamp)
    if message_type == TYPE_STREAM_ERROR:
        return StreamError(
            error=str(payload.get("error") or "Unknown stream error"),
            error_type=str(payload.get("errorType") or ERROR_TYPE_EXECUTION),
            connection_id=connection_id,
            execution_id=execution_id,
            timestamp=timestamp,
        )

    if message_type in LIVE_UPDATE_TYPES:
        if not isinstance(payload.get("suite"), str):
            return None
        return LiveTestUpdate.from_dict(payload)

    if message_type is None and isinstance(payload.get("results"), dict):
        try:
            return TestSuiteResults.from_dict(payload)
        except ValueError as e:
            _logger.warning("Rejected malformed results payload: %s", e)
            return None

    return None


def format_sse_event(payload: dict[str, Any]) -> str:
    """Frame one JSON payload as a Server-Sent Events ``data:`` event."""
    return f"data: {json.dumps(payload)}\n\n"
