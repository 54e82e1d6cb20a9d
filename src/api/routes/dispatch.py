"""
Dispatch trigger endpoint.

An external time-based invoker (cron, a cloud scheduler job) calls
POST /run on an interval. Each call performs one dispatch run and
returns its report, so the invoker's logs show what was sent.

Runs are safe to overlap: rows are claimed before sending, so two
concurrent calls never deliver the same message twice.
"""

import logging
from datetime import datetime
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, status
from pydantic import BaseModel, Field

from ..dependencies import AuthenticatedCaller, DispatchSchedulerDep

logger = logging.getLogger(__name__)

router = APIRouter()


# ---------------------------------------------------------------------------
# Response Models
# ---------------------------------------------------------------------------

class DispatchReportResponse(BaseModel):
    """Outcome counters for one dispatch run."""
    run_id: UUID = Field(description="Identifier of this run, also present in logs")
    started_at: datetime
    finished_at: Optional[datetime] = None
    due: int = Field(description="Rows in the due set after de-duplication")
    sent: int = Field(description="Messages accepted by the provider")
    retried: int = Field(description="Failed sends released for the next run")
    failed: int = Field(description="Messages given up on permanently")
    skipped: int = Field(description="Rows without a deliverable recipient")
    expired: int = Field(description="Rows overdue past the stale cutoff")
    contended: int = Field(description="Rows claimed by another dispatcher")
    stale_claims: int = Field(description="Abandoned claims failed at the start of the run")
    errors: int = Field(description="Per-message errors caught during the run")
    aborted: bool = False
    error: Optional[str] = None


# ---------------------------------------------------------------------------
# Endpoints
# ---------------------------------------------------------------------------

@router.post(
    "/run",
    response_model=DispatchReportResponse,
    status_code=status.HTTP_200_OK,
    summary="Run one dispatch cycle",
    description="Send every scheduled message that is due and report the outcome.",
    responses={
        503: {"description": "Due messages could not be loaded; nothing was sent"},
    },
)
def run_dispatch(
    api_key: AuthenticatedCaller,
    scheduler: DispatchSchedulerDep,
) -> DispatchReportResponse:
    """
    Run the dispatcher once.

    Declared sync so FastAPI runs it in a worker thread; the Snowflake
    and Twilio clients block.
    """
    report = scheduler.run()

    if report.aborted:
        logger.error(
            "Dispatch run aborted",
            extra={"run_id": str(report.run_id), "error": report.error}
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Dispatch run aborted: {report.error}",
        )

    return DispatchReportResponse(**report.to_dict())
