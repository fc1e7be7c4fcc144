from pydantic import BaseModel, Field
from typing import Any, Optional
from datetime import datetime

from models import JobStatus


class JobRequest(BaseModel):
    """Call descriptor stored with a job and replayed on the worker leg"""
    route: str
    params: dict[str, Any] = Field(default_factory=dict)
    method: str = "GET"
    data: dict[str, Any] = Field(default_factory=dict)


class JobRecord(BaseModel):
    id: int
    progress: int = 0
    status: JobStatus = JobStatus.STARTED
    start_time: datetime
    updated_time: datetime
    end_time: Optional[datetime] = None
    request: str = ""
    status_text: str = ""

    model_config = {
        "from_attributes": True
    }


class JobUpdate(BaseModel):
    """
    Partial update of a job record. Only fields that were explicitly set are
    merged over the stored record; the last writer wins per field.
    """
    progress: Optional[int] = None
    status: Optional[JobStatus] = None
    start_time: Optional[datetime] = None
    updated_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    request: Optional[str] = None
    status_text: Optional[str] = None

    def fields(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


def merge_record(record: JobRecord, update: JobUpdate) -> JobRecord:
    """Shallow merge: keys supplied in ``update`` win over ``record``."""
    return record.model_copy(update=update.fields())


class StartJobRequest(BaseModel):
    route: str
    params: dict[str, Any] = Field(default_factory=dict)
    method: str = "GET"
    data: dict[str, Any] = Field(default_factory=dict)
    delay: int = Field(0, ge=0)
    as_current_user: bool = True


class StartJobResponse(BaseModel):
    job_id: int
    status: JobStatus


class JobStatusResponse(BaseModel):
    job_id: int
    progress: int = 0
    status: JobStatus = JobStatus.STARTED
    status_text: str = ""


class HealthResponse(BaseModel):
    status: str
    message: str
    backends: Optional[dict] = None
