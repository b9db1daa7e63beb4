"""
Engine Exceptions
=================

Errors raised by the test pipeline engine. HTTP-facing errors live in
server/exceptions.py.
"""


class TestDeckError(Exception):
    """Base class for engine errors."""


class RunAbortedError(TestDeckError):
    """Raised out of a run's event stream when the run was aborted."""

    def __init__(self, execution_id: str, reason: str = "Test execution aborted"):
        self.execution_id = execution_id
        self.reason = reason
        super().__init__(f"{reason} ({execution_id})")


class InvalidStateTransitionError(TestDeckError, ValueError):
    """A suite status was asked to move backward or out of a terminal state."""

    def __init__(self, current: str, requested: str):
        self.current = current
        self.requested = requested
        super().__init__(f"Invalid status transition: {current} -> {requested}")
