"""
Example background actions.

These are ordinary routes. Started through ``POST /api/backjob/jobs`` they run
on the worker leg, where they report progress on the job bound to the request.
"""

import time
import logging
from typing import Optional
from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from lifecycle import BackJob, JobContext
from monitor import current_job_context, get_backjob

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/backjob/actions")


@router.get("/countdown", name="countdown", response_class=PlainTextResponse)
def countdown(
    steps: int = 5,
    interval: float = 1.0,
    job: Optional[JobContext] = Depends(current_job_context),
    backjob: BackJob = Depends(get_backjob),
):
    """Sleep for ``steps`` intervals, reporting progress after each one"""
    steps = max(steps, 1)
    for step in range(1, steps + 1):
        time.sleep(interval)
        if job is not None:
            backjob.update_progress(
                step * 100 // steps,
                f"Step {step} of {steps} done",
                job_id=job.job_id,
            )
    logger.info(f"Countdown of {steps} steps finished")
    return f"Counted down {steps} steps"


@router.get("/echo", name="echo", response_class=PlainTextResponse)
def echo(
    message: str = "",
    fail: bool = False,
    job: Optional[JobContext] = Depends(current_job_context),
    backjob: BackJob = Depends(get_backjob),
):
    """Return ``message``; on the worker leg it becomes the job's status text"""
    if fail and job is not None:
        backjob.fail(message or "Echo failed on request", job_id=job.job_id)
    return message
