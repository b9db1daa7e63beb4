"""
Backend Services
================

Streaming adapters between the test runner and HTTP clients.
"""

from .run_stream import new_connection_id, stream_run_events

__all__ = [
    "new_connection_id",
    "stream_run_events",
]
