"""
API Routers
===========

FastAPI routers for the test-runner API.
"""

from .test_counts import router as test_counts_router
from .test_reports import router as test_reports_router
from .test_runner import router as test_runner_router

__all__ = [
    "test_counts_router",
    "test_reports_router",
    "test_runner_router",
]
