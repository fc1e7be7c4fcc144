"""Cleanup of old, finished job rows."""

import logging
from datetime import datetime, timedelta
from typing import Callable

from config import Settings
from models import JobStatus
from utils import utcnow

logger = logging.getLogger(__name__)


class RetentionSweeper:
    """
    Deletes terminal jobs from the database once they age past the backlog
    windows: ``backlog_days`` for completed jobs, ``all_backlog_days`` for
    every finished job whatever its outcome. A window of 0 days is disabled.
    """

    def __init__(self, settings: Settings, store, clock: Callable[[], datetime] = utcnow):
        self.settings = settings
        self.store = store
        self.clock = clock

    def sweep(self) -> int:
        if not self.store.use_db:
            return 0

        now = self.clock()
        removed = 0
        if self.settings.backlog_days:
            removed += self.store.delete_finished(
                now - timedelta(days=self.settings.backlog_days),
                status=JobStatus.COMPLETED,
            )
        if self.settings.all_backlog_days:
            removed += self.store.delete_finished(
                now - timedelta(days=self.settings.all_backlog_days),
            )
        if removed:
            logger.info(f"🧹 Removed {removed} finished jobs from the backlog")
        return removed
