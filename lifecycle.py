"""
Job lifecycle: status reads with timeout detection, progress updates,
finishing and failing, and enqueueing new jobs.

STARTED -> INPROGRESS -> COMPLETED | FAILED

Timeout detection happens on read: any caller of ``checked_read`` past the
deadline fails the job, even if its worker is still running and may write
again afterwards.
"""

import logging
from contextvars import ContextVar
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from config import Settings
from dispatcher import Dispatcher, DispatchError, RequestOrigin
from models import JobStatus
from retention import RetentionSweeper
from schemas import JobRecord, JobRequest, JobStatusResponse, JobUpdate
from store import JobStore
from utils import clamp, utcnow

logger = logging.getLogger(__name__)

TIMEOUT_MESSAGE = "Error: job timeout"


@dataclass(frozen=True)
class JobContext:
    """The job a worker-leg request is executing."""
    job_id: int


current_job: ContextVar[Optional[JobContext]] = ContextVar("current_job", default=None)


class JobTerminated(Exception):
    """Raised by ``fail`` to end the request that is executing the job."""

    def __init__(self, job_id: int, status_text: str = ""):
        super().__init__(f"Job {job_id} failed")
        self.job_id = job_id
        self.status_text = status_text


def _join_text(*parts: Optional[str]) -> str:
    return "\n".join(p for p in parts if p)


class BackJob:
    def __init__(
        self,
        settings: Settings,
        store: JobStore,
        dispatcher: Optional[Dispatcher] = None,
        sweeper: Optional[RetentionSweeper] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.dispatcher = dispatcher
        self.sweeper = sweeper or RetentionSweeper(settings, store, clock=clock)
        self.clock = clock

    def _resolve(self, job_id: Optional[int]) -> Optional[int]:
        if job_id:
            return job_id
        context = current_job.get()
        return context.job_id if context else None

    # Reads

    def read(self, job_id: int) -> JobRecord:
        """Stored record, or the defaults of a freshly started job."""
        return self.store.get(job_id) or self.store.default_record(job_id)

    def evaluate_timeout(self, job_id: int) -> bool:
        """Fail an uncompleted job whose last update is older than the error timeout."""
        if not job_id:
            return False
        job = self.store.get(job_id)
        if job is None or not job.status.uncompleted:
            return False
        deadline = job.updated_time + timedelta(seconds=self.settings.error_timeout)
        if deadline >= self.clock():
            return False
        logger.warning(f"Job {job_id} timed out, last update at {job.updated_time}")
        self.mark_failed(_join_text(job.status_text, TIMEOUT_MESSAGE), job_id=job_id)
        return True

    def checked_read(self, job_id: int) -> JobRecord:
        self.evaluate_timeout(job_id)
        return self.read(job_id)

    def public_status(self, job_id: int) -> JobStatusResponse:
        job = self.checked_read(job_id)
        return JobStatusResponse(
            job_id=job_id,
            progress=job.progress,
            status=job.status,
            status_text=job.status_text,
        )

    # Writes

    def _update(self, job_id: int, **fields: Any) -> Optional[JobRecord]:
        """Every write refreshes updated_time and defaults to INPROGRESS."""
        if not job_id:
            logger.warning(f"Ignoring update without a job id: {fields}")
            return None
        values = {"updated_time": self.clock(), "status": JobStatus.INPROGRESS}
        values.update(fields)
        logger.debug(f"Updating status for job {job_id}: {fields}")
        return self.store.apply_fields(job_id, JobUpdate(**values))

    def update_progress(
        self,
        progress: Optional[int] = None,
        status_text: Optional[str] = None,
        job_id: Optional[int] = None,
        append: bool = False,
    ) -> Optional[JobRecord]:
        """
        Report progress. With ``append`` the text is added as a new line
        after the current status text instead of replacing it.
        """
        job_id = self._resolve(job_id)
        fields: dict[str, Any] = {}
        if progress is not None:
            fields["progress"] = clamp(progress)
        if status_text is not None:
            if append and job_id:
                status_text = _join_text(self.checked_read(job_id).status_text, status_text)
            fields["status_text"] = status_text
        return self._update(job_id, **fields)

    def increment_progress(
        self,
        delta: int,
        status_text: Optional[str] = None,
        job_id: Optional[int] = None,
        append: bool = False,
    ) -> Optional[JobRecord]:
        job_id = self._resolve(job_id)
        current = self.checked_read(job_id).progress
        return self.update_progress(current + delta, status_text, job_id=job_id, append=append)

    def touch(self, job_id: int) -> None:
        """Restart the timeout window without changing the status."""
        self.store.apply_fields(job_id, JobUpdate(updated_time=self.clock()))

    def finish(self, status_text: Optional[str] = None, job_id: Optional[int] = None) -> None:
        """Complete the job. A no-op on jobs that already completed or failed."""
        job_id = self._resolve(job_id)
        job = self.checked_read(job_id)
        if job.status.uncompleted:
            fields: dict[str, Any] = {
                "progress": 100,
                "end_time": self.clock(),
                "status": JobStatus.COMPLETED,
            }
            if status_text is not None:
                fields["status_text"] = status_text
            self._update(job_id, **fields)
            logger.info(f"✅ Job {job_id} completed")
        self.sweeper.sweep()

    def mark_failed(self, status_text: Optional[str] = None, job_id: Optional[int] = None) -> None:
        """Record a failure, also on jobs that are already terminal."""
        job_id = self._resolve(job_id)
        fields: dict[str, Any] = {"end_time": self.clock(), "status": JobStatus.FAILED}
        if status_text is not None:
            fields["status_text"] = status_text
        self._update(job_id, **fields)
        logger.warning(f"Job {job_id} failed: {status_text}")

    def fail(self, status_text: Optional[str] = None, job_id: Optional[int] = None) -> None:
        """Record a failure and end the current request."""
        job_id = self._resolve(job_id)
        self.mark_failed(status_text, job_id=job_id)
        raise JobTerminated(job_id, status_text or "")

    # Worker leg hooks

    def begin_worker(self, job_id: int) -> None:
        self._update(job_id, progress=0)

    def end_worker(self, job_id: int, output: str, error: Optional[str] = None) -> None:
        if error:
            self.mark_failed(_join_text(output, f"Error: {error}"), job_id=job_id)
        else:
            self.finish(output or None, job_id=job_id)

    # Enqueueing

    def start(
        self,
        route: str,
        params: Optional[dict] = None,
        *,
        origin: RequestOrigin,
        as_current_user: bool = True,
        delay: int = 0,
        method: str = "GET",
        data: Optional[dict] = None,
    ) -> int:
        """
        Create a job for ``route`` and fire its monitor leg. Returns the job id
        straight away; a failed trigger is recorded on the job, not raised.
        """
        request = JobRequest(route=route, params=params or {}, method=method, data=data or {})
        job_id = self.store.create(request.model_dump_json(), delay=delay)

        if self.dispatcher is None:
            self.mark_failed("Error: no dispatcher configured", job_id=job_id)
            return job_id

        try:
            self.dispatcher.dispatch(
                request,
                job_id,
                origin,
                monitor=True,
                asynchronous=True,
                as_current_user=as_current_user,
            )
        except DispatchError as e:
            logger.error(f"Could not start monitor for job {job_id}: {e}")
            self.mark_failed(str(e), job_id=job_id)
        return job_id
