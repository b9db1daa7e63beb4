"""
Test Reports Router
===================

Read access to persisted run records.

Implements:
- GET /api/test-reports - Most recent run records, newest first
- GET /api/test-reports/:execution_id - One run record
"""

from typing import Any

from fastapi import APIRouter, Depends, Query

from testdeck.test_runner import TestRunner

from ..exceptions import BadRequestError, NotFoundError
from .test_runner import get_test_runner

router = APIRouter(prefix="/api/test-reports", tags=["test-reports"])


@router.get("", response_model=list[dict[str, Any]])
def list_test_reports(
    limit: int = Query(10, ge=1, le=50, description="Maximum number of records to return"),
    runner: TestRunner = Depends(get_test_runner),
):
    """Run history. ``latest.json`` is not part of it."""
    return [record.to_dict() for record in runner.store.list_history(limit)]


@router.get("/{execution_id}", response_model=dict[str, Any])
def get_test_report(execution_id: str, runner: TestRunner = Depends(get_test_runner)):
    try:
        record = runner.store.load(execution_id)
    except ValueError as e:
        raise BadRequestError(str(e), details={"id": execution_id})
    if record is None:
        raise NotFoundError("test report", execution_id)
    return record.to_dict()
