import logging
import sqlite3
import threading
import time
from datetime import datetime
from enum import Enum
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from .content import ContentStore
from .expiry import is_expired
from .metadata import MetadataStore

logger = logging.getLogger("bucketstore.sweeper")

SWEEP_JOB_ID = "sweep_expired_buckets"
TEMP_CLEANUP_JOB_ID = "cleanup_temp_files"
ORPHAN_CLEANUP_JOB_ID = "cleanup_orphaned_buckets"


class SweepState(Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    DELETING = "deleting"


class Sweeper:
    """Deletes expired buckets on a fixed interval.

    Each bucket is removed content first, then metadata. A bucket whose content cannot
    be deleted keeps its row and is picked up again by the next cycle. A shutdown
    request is honored between buckets, never in the middle of one.
    """

    def __init__(
        self,
        metadata: MetadataStore,
        content: ContentStore,
        interval_minutes: float = 15.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.metadata = metadata
        self.content = content
        self.interval_minutes = max(1.0, float(interval_minutes))
        self._clock = clock
        self._run_lock = threading.Lock()
        self._stop_event = threading.Event()
        self.state = SweepState.IDLE
        self.pending = 0
        self.last_run_at: Optional[float] = None
        self.scheduler: Optional[BackgroundScheduler] = None

    def sweep_expired(self) -> int:
        """Run one full cycle and return the number of buckets removed."""

        if not self._run_lock.acquire(blocking=False):
            logger.info("sweep_skipped reason=already_running")
            return 0
        removed = 0
        try:
            self.state = SweepState.SCANNING
            expired = self.metadata.expired_bucket_ids(self._clock())
            self.state = SweepState.DELETING
            self.pending = len(expired)
            for bucket_id in expired:
                if self._stop_event.is_set():
                    logger.info("sweep_interrupted remaining=%d", self.pending)
                    break
                if self._delete_bucket(bucket_id):
                    removed += 1
                self.pending -= 1
        finally:
            self.state = SweepState.IDLE
            self.pending = 0
            self.last_run_at = self._clock()
            self._run_lock.release()
        if removed:
            logger.info("sweep_completed removed=%d", removed)
        return removed

    def _delete_bucket(self, bucket_id: str) -> bool:
        bucket = self.metadata.get_bucket(bucket_id, include_expired=True)
        if bucket is None or not is_expired(bucket.expires_at, self._clock()):
            # Deleted or extended since the scan.
            return False
        try:
            self.content.delete_bucket(bucket_id)
        except OSError as error:
            logger.warning("sweep_bucket_failed bucket=%s error=%s", bucket_id, error)
            return False
        try:
            self.metadata.delete_bucket(bucket_id)
        except sqlite3.Error as error:
            logger.warning("sweep_metadata_failed bucket=%s error=%s", bucket_id, error)
            return False
        logger.info("bucket_expired_removed bucket=%s", bucket_id)
        return True

    def cleanup_temp_files(self) -> int:
        return self.content.cleanup_temp_files(now=self._clock())

    def cleanup_orphaned_buckets(self) -> int:
        """Remove bucket directories that have no metadata row."""

        # Directories are listed before rows are read: a row is always committed before
        # its directory appears, so a fresh bucket can never look orphaned.
        directories = self.content.bucket_dirs()
        known = set(self.metadata.known_bucket_ids())
        removed = 0
        for bucket_id in directories:
            if bucket_id in known:
                continue
            try:
                self.content.delete_bucket(bucket_id)
                removed += 1
                logger.info("orphan_bucket_removed bucket=%s", bucket_id)
            except OSError as error:
                logger.warning("orphan_cleanup_failed bucket=%s error=%s", bucket_id, error)
        return removed

    def start(self) -> None:
        if self.scheduler is not None:
            return
        self._stop_event.clear()
        scheduler = BackgroundScheduler(daemon=True)
        scheduler.add_job(
            func=self.sweep_expired,
            trigger="interval",
            minutes=self.interval_minutes,
            id=SWEEP_JOB_ID,
            name="Delete expired buckets",
            next_run_time=datetime.now(),
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            func=self.cleanup_temp_files,
            trigger="interval",
            hours=1,
            id=TEMP_CLEANUP_JOB_ID,
            name="Clean up temporary files",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.add_job(
            func=self.cleanup_orphaned_buckets,
            trigger="interval",
            hours=1,
            id=ORPHAN_CLEANUP_JOB_ID,
            name="Clean up orphaned bucket directories",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        scheduler.start()
        self.scheduler = scheduler
        logger.info("sweeper_started interval_minutes=%s", self.interval_minutes)

    def shutdown(self, wait: bool = False) -> None:
        self._stop_event.set()
        if self.scheduler is None:
            return
        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
        self.scheduler = None
        logger.info("sweeper_stopped")

    @property
    def running(self) -> bool:
        return self.scheduler is not None and self.scheduler.running
