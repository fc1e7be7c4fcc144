"""
Recognizing and running self-triggered job requests.

Every inbound request is classified from its query parameters:
- internal: carries a job id and a valid check token
- monitor leg: internal and carries the monitor marker
- worker leg: internal without the marker

The monitor leg waits for the job's start time and then calls the worker leg
synchronously. The worker leg is the application's own route, wrapped so its
progress starts at 0 and it ends finished or failed.
"""

import enum
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Mapping, Optional

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware

from dispatcher import Dispatcher, DispatchError, RequestOrigin
from lifecycle import BackJob, JobContext, current_job
from schemas import JobRequest
from utils import CHECK_PARAM, JOB_ID_PARAM, MONITOR_PARAM, utcnow, verify_check_token

logger = logging.getLogger(__name__)

# Extra seconds on top of the error timeout granted to internal requests
TIME_LIMIT_MARGIN = 5


@dataclass(frozen=True)
class TriggerInfo:
    job_id: Optional[int] = None
    is_internal: bool = False
    is_monitor: bool = False

    @property
    def is_worker(self) -> bool:
        return self.is_internal and not self.is_monitor


def classify_request(params: Mapping[str, str], key: str) -> TriggerInfo:
    raw_id = params.get(JOB_ID_PARAM)
    token = params.get(CHECK_PARAM)
    if raw_id is None or token is None:
        return TriggerInfo()
    if not verify_check_token(raw_id, token, key):
        logger.warning(f"Rejected job trigger with a bad check token for job {raw_id}")
        return TriggerInfo()
    try:
        job_id = int(raw_id)
    except ValueError:
        return TriggerInfo()
    return TriggerInfo(
        job_id=job_id,
        is_internal=True,
        is_monitor=MONITOR_PARAM in params,
    )


class MonitorState(str, enum.Enum):
    WAITING_FOR_START = "waiting_for_start"
    DISPATCHING = "dispatching"
    DONE = "done"


class Monitor:
    """Runs one job's monitor leg. Blocks for the start delay and the worker call."""

    def __init__(
        self,
        backjob: BackJob,
        dispatcher: Dispatcher,
        clock: Callable[[], datetime] = utcnow,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.backjob = backjob
        self.dispatcher = dispatcher
        self.clock = clock
        self.sleep = sleep
        self.state = MonitorState.WAITING_FOR_START

    def _enter(self, job_id: int, state: MonitorState) -> None:
        logger.info(f"Monitor for job {job_id}: {self.state.value} -> {state.value}")
        self.state = state

    def wait_for_start(self, job_id: int):
        job = self.backjob.checked_read(job_id)
        # Sleep in slices so the timeout window can be refreshed while waiting
        max_slice = max(self.backjob.settings.error_timeout / 2, 1)
        while job.start_time > self.clock():
            remaining = (job.start_time - self.clock()).total_seconds()
            self.sleep(min(remaining, max_slice))
            self.backjob.touch(job_id)
            job = self.backjob.checked_read(job_id)
        return job

    def run(self, job_id: int, origin: RequestOrigin) -> MonitorState:
        self.state = MonitorState.WAITING_FOR_START
        job = self.wait_for_start(job_id)

        self._enter(job_id, MonitorState.DISPATCHING)
        if job.request:
            request = JobRequest.model_validate_json(job.request)
            try:
                self.dispatcher.dispatch(
                    request, job_id, origin, monitor=False, asynchronous=False
                )
            except DispatchError as e:
                job = self.backjob.checked_read(job_id)
                self.backjob.mark_failed(f"{job.status_text}\n{e}".lstrip("\n"), job_id=job_id)
            # Close out workers that reported progress but never finished
            self.backjob.finish(job_id=job_id)
        else:
            self.backjob.mark_failed(
                f"Error: request not found for job {job_id}: {job.model_dump(mode='json')}",
                job_id=job_id,
            )

        self._enter(job_id, MonitorState.DONE)
        return self.state


def get_backjob(request: Request) -> BackJob:
    return request.app.state.backjob


def current_job_context(request: Request) -> Optional[JobContext]:
    """FastAPI dependency: the job the current request is executing, if any."""
    return getattr(request.state, "backjob", None)


class BackJobMiddleware(BaseHTTPMiddleware):
    """
    Intercepts self-triggered job requests.

    Monitor legs never reach the router; worker legs run the routed action
    with the job bound to the request and are closed out with its output.
    """

    def __init__(self, app, backjob: BackJob, dispatcher: Dispatcher):
        super().__init__(app)
        self.backjob = backjob
        self.dispatcher = dispatcher

    async def dispatch(self, request: Request, call_next):
        trigger = classify_request(request.query_params, self.backjob.settings.secret_key)
        if not trigger.is_internal:
            return await call_next(request)

        # Hosts that enforce a per-request time limit read it from request.state
        request.state.time_limit = self.backjob.settings.error_timeout + TIME_LIMIT_MARGIN
        logger.debug(f"Job {trigger.job_id} request time limit: {request.state.time_limit}s")

        if trigger.is_monitor:
            monitor = Monitor(self.backjob, self.dispatcher, clock=self.backjob.clock)
            await run_in_threadpool(
                monitor.run, trigger.job_id, RequestOrigin.from_request(request)
            )
            return Response(status_code=204)

        return await self._run_worker(request, call_next, trigger.job_id)

    async def _run_worker(self, request: Request, call_next, job_id: int):
        context = JobContext(job_id=job_id)
        request.state.backjob = context
        token = current_job.set(context)
        try:
            await run_in_threadpool(self.backjob.begin_worker, job_id)

            error = None
            body = b""
            status_code = 500
            headers = {}
            try:
                response = await call_next(request)
            except Exception as e:
                logger.error(f"Error running job {job_id}: {e}", exc_info=True)
                error = f"{type(e).__name__}: {e}"
            else:
                body = b"".join([chunk async for chunk in response.body_iterator])
                status_code = response.status_code
                headers = {
                    k: v for k, v in response.headers.items() if k.lower() != "content-length"
                }
                if status_code >= 500:
                    error = f"HTTP {status_code}"

            output = body.decode("utf-8", errors="replace")
            await run_in_threadpool(self.backjob.end_worker, job_id, output, error)
            return Response(content=body, status_code=status_code, headers=headers)
        finally:
            current_job.reset(token)
