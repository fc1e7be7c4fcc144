"""Tests for job status reads, updates, finishing and failing."""

import pytest

from dispatcher import DispatchError, RequestOrigin
from lifecycle import TIMEOUT_MESSAGE, BackJob, JobContext, JobTerminated, current_job
from models import JobStatus
from schemas import JobRequest, JobUpdate


@pytest.fixture
def origin() -> RequestOrigin:
    return RequestOrigin(host="localhost", port=8001)


@pytest.fixture
def job_id(backjob: BackJob) -> int:
    return backjob.store.create(JobRequest(route="echo").model_dump_json())


class TestPublicStatus:
    def test_unknown_job_reports_defaults(self, backjob: BackJob) -> None:
        status = backjob.public_status(12345)
        assert status.progress == 0
        assert status.status == JobStatus.STARTED
        assert status.status_text == ""

    def test_hides_internal_fields(self, backjob: BackJob, job_id: int) -> None:
        dumped = backjob.public_status(job_id).model_dump()
        assert set(dumped) == {"job_id", "progress", "status", "status_text"}

    def test_unknown_job_is_never_timed_out(self, backjob: BackJob, clock) -> None:
        clock.advance(10_000)
        assert backjob.evaluate_timeout(12345) is False


class TestUpdateProgress:
    def test_clamps_high(self, backjob: BackJob, job_id: int) -> None:
        backjob.update_progress(150, job_id=job_id)
        assert backjob.checked_read(job_id).progress == 100

    def test_clamps_low(self, backjob: BackJob, job_id: int) -> None:
        backjob.update_progress(-5, job_id=job_id)
        assert backjob.checked_read(job_id).progress == 0

    def test_marks_in_progress_and_refreshes_clock(self, backjob: BackJob, job_id: int, clock) -> None:
        clock.advance(30)
        backjob.update_progress(10, "working", job_id=job_id)
        job = backjob.read(job_id)
        assert job.status == JobStatus.INPROGRESS
        assert job.updated_time == clock()
        assert job.status_text == "working"

    def test_text_only_keeps_progress(self, backjob: BackJob, job_id: int) -> None:
        backjob.update_progress(40, job_id=job_id)
        backjob.update_progress(status_text="still going", job_id=job_id)
        job = backjob.read(job_id)
        assert job.progress == 40
        assert job.status_text == "still going"

    def test_append_accumulates_text(self, backjob: BackJob, job_id: int) -> None:
        backjob.update_progress(10, "step 1", job_id=job_id, append=True)
        backjob.increment_progress(10, "step 2", job_id=job_id, append=True)
        backjob.update_progress(status_text="reset", job_id=job_id)
        backjob.update_progress(status_text="step 3", job_id=job_id, append=True)
        job = backjob.read(job_id)
        assert job.progress == 20
        assert job.status_text == "reset\nstep 3"

    def test_append_on_empty_text_has_no_leading_newline(self, backjob: BackJob, job_id: int) -> None:
        backjob.update_progress(status_text="first", job_id=job_id, append=True)
        assert backjob.read(job_id).status_text == "first"

    def test_uses_current_job(self, backjob: BackJob, job_id: int) -> None:
        token = current_job.set(JobContext(job_id=job_id))
        try:
            backjob.update_progress(25)
            backjob.increment_progress(10)
        finally:
            current_job.reset(token)
        assert backjob.read(job_id).progress == 35

    def test_without_job_does_nothing(self, backjob: BackJob) -> None:
        assert backjob.update_progress(10) is None

    def test_updates_keep_job_alive(self, backjob: BackJob, job_id: int, clock) -> None:
        for _ in range(5):
            clock.advance(100)
            backjob.increment_progress(10, job_id=job_id)
        job = backjob.checked_read(job_id)
        assert job.status == JobStatus.INPROGRESS
        assert job.progress == 50


class TestFinish:
    def test_completes(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.finish("all done", job_id=job_id)
        job = backjob.read(job_id)
        assert job.status == JobStatus.COMPLETED
        assert job.progress == 100
        assert job.end_time == clock()
        assert job.status_text == "all done"

    def test_second_finish_is_a_no_op(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.finish(job_id=job_id)
        first = backjob.read(job_id)

        clock.advance(60)
        backjob.finish("again", job_id=job_id)
        second = backjob.read(job_id)
        assert second.status == JobStatus.COMPLETED
        assert second.end_time == first.end_time
        assert second.status_text == first.status_text

    def test_does_not_complete_failed_job(self, backjob: BackJob, job_id: int) -> None:
        backjob.mark_failed("broken", job_id=job_id)
        backjob.finish(job_id=job_id)
        assert backjob.read(job_id).status == JobStatus.FAILED

    def test_runs_sweeper_even_when_no_op(self, backjob: BackJob, job_id: int) -> None:
        calls = []
        backjob.sweeper.sweep = lambda: calls.append(1) or 0
        backjob.finish(job_id=job_id)
        backjob.finish(job_id=job_id)
        assert len(calls) == 2


class TestFail:
    def test_fail_raises_to_end_request(self, backjob: BackJob, job_id: int) -> None:
        with pytest.raises(JobTerminated) as exc_info:
            backjob.fail("bad input", job_id=job_id)
        assert exc_info.value.job_id == job_id
        assert exc_info.value.status_text == "bad input"
        job = backjob.read(job_id)
        assert job.status == JobStatus.FAILED
        assert job.status_text == "bad input"

    def test_fail_overwrites_terminal_job(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.finish(job_id=job_id)
        clock.advance(5)
        backjob.mark_failed("late error", job_id=job_id)
        job = backjob.read(job_id)
        assert job.status == JobStatus.FAILED
        assert job.end_time == clock()
        assert job.status_text == "late error"


class TestTimeout:
    def test_stale_job_fails_on_read(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.update_progress(20, "working", job_id=job_id)
        clock.advance(121)

        job = backjob.checked_read(job_id)
        assert job.status == JobStatus.FAILED
        assert TIMEOUT_MESSAGE in job.status_text
        assert job.status_text.startswith("working")

        clock.advance(500)
        again = backjob.checked_read(job_id)
        assert again.status == JobStatus.FAILED
        assert again.status_text.count(TIMEOUT_MESSAGE) == 1

    def test_within_window_is_untouched(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.update_progress(20, job_id=job_id)
        clock.advance(120)
        assert backjob.evaluate_timeout(job_id) is False
        assert backjob.read(job_id).status == JobStatus.INPROGRESS

    def test_completed_job_never_times_out(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.finish(job_id=job_id)
        clock.advance(10_000)
        assert backjob.checked_read(job_id).status == JobStatus.COMPLETED

    def test_read_does_not_evaluate(self, backjob: BackJob, job_id: int, clock) -> None:
        backjob.store.apply_fields(job_id, JobUpdate(status=JobStatus.INPROGRESS))
        clock.advance(121)
        assert backjob.read(job_id).status == JobStatus.INPROGRESS
        assert backjob.evaluate_timeout(job_id) is True
        assert backjob.read(job_id).status == JobStatus.FAILED


class TestStart:
    def test_creates_job_and_fires_monitor(self, backjob: BackJob, dispatcher, origin) -> None:
        job_id = backjob.start("countdown", {"steps": 3}, origin=origin, delay=5)

        job = backjob.read(job_id)
        assert job.status == JobStatus.STARTED
        assert JobRequest.model_validate_json(job.request) == JobRequest(
            route="countdown", params={"steps": 3}
        )

        (call,) = dispatcher.calls
        assert call["job_id"] == job_id
        assert call["monitor"] is True
        assert call["asynchronous"] is True

    def test_transport_error_fails_job(self, backjob: BackJob, dispatcher, origin) -> None:
        dispatcher.error = DispatchError("Error 111: Connection refused")
        job_id = backjob.start("countdown", origin=origin)

        status = backjob.public_status(job_id)
        assert status.status == JobStatus.FAILED
        assert status.status_text == "Error 111: Connection refused"
