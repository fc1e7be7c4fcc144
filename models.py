from sqlalchemy import Column, Integer, DateTime, Table, Text
from database import Base
from config import settings
import enum


class JobStatus(enum.IntEnum):
    """Ordinal job status. COMPLETED and FAILED are both terminal."""
    STARTED = 0
    INPROGRESS = 1
    COMPLETED = 2
    FAILED = 3

    @property
    def uncompleted(self) -> bool:
        return self < JobStatus.COMPLETED


class BackgroundJob(Base):
    __tablename__ = settings.table_name

    id = Column(Integer, primary_key=True, autoincrement=True)
    progress = Column(Integer, default=0)
    status = Column(Integer, default=JobStatus.STARTED.value, index=True)
    start_time = Column(DateTime)
    updated_time = Column(DateTime)
    end_time = Column(DateTime, nullable=True, index=True)
    request = Column(Text, default="")
    status_text = Column(Text, default="")


def job_table(name: str) -> Table:
    """The job table stored under ``name``, with BackgroundJob's columns."""
    if name in Base.metadata.tables:
        return Base.metadata.tables[name]
    return BackgroundJob.__table__.to_metadata(Base.metadata, name=name)
