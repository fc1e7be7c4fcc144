"""
Job record store.

Reads go to the cache first and fall back to the database, repopulating the
cache on a database hit. Writes go to every enabled backend. There is no
transaction spanning both backends and no compare-and-swap: two concurrent
writers on one job id may lose each other's fields (last writer wins).
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy import delete, insert, select, update
from sqlalchemy.orm import sessionmaker

from cache import KeyValueStore
from config import Settings
from models import JobStatus, job_table
from schemas import JobRecord, JobUpdate, merge_record
from utils import utcnow

logger = logging.getLogger(__name__)


def _column_values(fields: dict) -> dict:
    if isinstance(fields.get("status"), JobStatus):
        fields = {**fields, "status": int(fields["status"])}
    return fields


class JobStore:
    def __init__(
        self,
        settings: Settings,
        cache: Optional[KeyValueStore] = None,
        session_factory: Optional[sessionmaker] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.cache = cache
        self.session_factory = session_factory
        self.clock = clock
        self.table = job_table(settings.table_name)

    @property
    def use_cache(self) -> bool:
        return self.settings.use_cache and self.cache is not None

    @property
    def use_db(self) -> bool:
        return self.settings.use_db and self.session_factory is not None

    def _key(self, job_id) -> str:
        return f"{self.settings.cache_prefix}{job_id}"

    def _counter_key(self) -> str:
        return f"{self.settings.cache_prefix}maxid"

    def default_record(self, job_id: int) -> JobRecord:
        now = self.clock()
        return JobRecord(id=job_id or 0, start_time=now, updated_time=now)

    def get(self, job_id: int) -> Optional[JobRecord]:
        if not job_id:
            return None

        if self.use_cache:
            data = self.cache.get(self._key(job_id))
            if data:
                return JobRecord.model_validate(data)

        if self.use_db:
            db = self.session_factory()
            try:
                row = db.execute(
                    select(self.table).where(self.table.c.id == job_id)
                ).mappings().first()
                record = JobRecord.model_validate(dict(row)) if row is not None else None
            finally:
                db.close()
            if record is not None:
                if self.use_cache:
                    self.cache.set(self._key(job_id), record.model_dump(mode="json"))
                return record

        return None

    def create(self, request: str, delay: int = 0) -> int:
        now = self.clock()
        record = JobRecord(
            id=0,
            start_time=now + timedelta(seconds=max(0, delay)),
            updated_time=now,
            request=request,
        )

        job_id = 0
        if self.use_db:
            db = self.session_factory()
            try:
                result = db.execute(
                    insert(self.table).values(**_column_values(record.model_dump(exclude={"id"})))
                )
                db.commit()
                job_id = result.inserted_primary_key[0]
            finally:
                db.close()

        if self.use_cache:
            if not job_id:
                job_id = self.allocate_cache_id()
            record.id = job_id
            self.cache.set(self._key(job_id), record.model_dump(mode="json"))

        logger.info(f"Created job {job_id} starting at {record.start_time}")
        return job_id

    def apply_fields(self, job_id: int, fields: JobUpdate) -> JobRecord:
        existing = self.get(job_id) or self.default_record(job_id)
        merged = merge_record(existing, fields)

        if self.use_cache:
            self.cache.set(self._key(job_id), merged.model_dump(mode="json"))

        values = _column_values(fields.fields())
        if self.use_db and values:
            db = self.session_factory()
            try:
                db.execute(
                    update(self.table)
                    .where(self.table.c.id == job_id)
                    .values(**values)
                )
                db.commit()
            finally:
                db.close()

        return merged

    def allocate_cache_id(self) -> int:
        """
        Next free id in cache-only mode. Scans forward from the persisted
        counter past ids that already hold a record. Id 0 is never handed
        out since a falsy id reads as "no job".
        """
        counter = self._counter_key()
        self.cache.add(counter, 0)
        candidate = max(int(self.cache.get(counter) or 0), 1)
        while self.cache.get(self._key(candidate)) is not None:
            candidate += 1
            self.cache.set(counter, candidate)
        return candidate

    def create_table(self) -> None:
        if not self.use_db:
            return
        db = self.session_factory()
        try:
            self.table.create(bind=db.get_bind(), checkfirst=True)
        finally:
            db.close()

    def delete_finished(self, before: datetime, status: Optional[JobStatus] = None) -> int:
        """Delete rows whose end_time is set and older than ``before``."""
        if not self.use_db:
            return 0
        stmt = delete(self.table).where(
            self.table.c.end_time.is_not(None),
            self.table.c.end_time < before,
        )
        if status is not None:
            stmt = stmt.where(self.table.c.status == status.value)
        db = self.session_factory()
        try:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount or 0
        finally:
            db.close()
