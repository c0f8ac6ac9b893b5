# mediaproof/scan_queue/jobs.py
"""
Durable named scan queue backed by the scan_queue_job table.

Jobs survive process restarts because they are rows, not in-memory items.
A job is claimed with a conditional UPDATE (waiting → active), so when
several workers race for the same row exactly one of them wins.

    queue = ScanQueue(db, name="scanQueue")
    queue.enqueue(scan_id=..., owner_id=..., staged_media_path=...)
    job = queue.claim_next()        # None when the queue is empty
    queue.complete(job.id) / queue.fail(job.id, "reason")
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from sqlalchemy import func, select, update

from mediaproof.models import ScanQueueJob, now_utc

logger = logging.getLogger(__name__)

WAITING = "waiting"
ACTIVE = "active"
COMPLETED = "completed"
FAILED = "failed"


class ScanQueue:

    def __init__(self, db, name: str = "scanQueue"):
        self._db = db
        self.name = name
        self._signal = threading.Event()

    @property
    def session(self):
        return self._db.session

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    def enqueue(
        self,
        *,
        scan_id: str,
        owner_id: str,
        media_kind: str = "image",
        staged_media_path: Optional[str] = None,
        source_url: Optional[str] = None,
        commit: bool = True,
    ) -> ScanQueueJob:
        if bool(staged_media_path) == bool(source_url):
            raise ValueError("a queued scan needs exactly one of staged_media_path or source_url")

        job = ScanQueueJob(
            queue_name=self.name,
            scan_id=scan_id,
            owner_id=owner_id,
            media_kind=media_kind,
            staged_media_path=staged_media_path,
            source_url=source_url,
            state=WAITING,
        )
        self.session.add(job)
        if commit:
            self.session.commit()
            self.notify()
        return job

    def notify(self) -> None:
        """Wake idle workers. Call after the enqueuing transaction commits."""
        self._signal.set()

    def wait(self, timeout: float) -> None:
        self._signal.wait(timeout)
        self._signal.clear()

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    def claim_next(self) -> Optional[ScanQueueJob]:
        """Atomically take the oldest waiting job, or None if there is none."""
        while True:
            job_id = self.session.execute(
                select(ScanQueueJob.id)
                .where(ScanQueueJob.queue_name == self.name, ScanQueueJob.state == WAITING)
                .order_by(ScanQueueJob.id)
                .limit(1)
            ).scalar()
            if job_id is None:
                self.session.rollback()
                return None

            claimed = self.session.execute(
                update(ScanQueueJob)
                .where(ScanQueueJob.id == job_id, ScanQueueJob.state == WAITING)
                .values(
                    state=ACTIVE,
                    started_at=now_utc(),
                    attempts=ScanQueueJob.attempts + 1,
                )
            )
            if claimed.rowcount == 1:
                self.session.commit()
                return self.session.get(ScanQueueJob, job_id)

            # Another worker got there first: try the next one
            self.session.rollback()

    def complete(self, job_id: int) -> None:
        self._finish(job_id, COMPLETED, None)

    def fail(self, job_id: int, message: str) -> None:
        self._finish(job_id, FAILED, (message or "failed")[:500])

    def _finish(self, job_id: int, state: str, message: Optional[str]) -> None:
        self.session.execute(
            update(ScanQueueJob)
            .where(ScanQueueJob.id == job_id)
            .values(state=state, error_message=message, finished_at=now_utc())
        )
        self.session.commit()

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def stale_jobs(self, older_than_seconds: float, *, now: Optional[datetime] = None) -> List[ScanQueueJob]:
        """Active jobs whose worker has been silent for too long."""
        cutoff = (now or now_utc()) - timedelta(seconds=older_than_seconds)
        return (
            ScanQueueJob.query
            .filter(
                ScanQueueJob.queue_name == self.name,
                ScanQueueJob.state == ACTIVE,
                ScanQueueJob.started_at <= cutoff,
            )
            .order_by(ScanQueueJob.id)
            .all()
        )

    def counts(self) -> Dict[str, int]:
        rows = self.session.execute(
            select(ScanQueueJob.state, func.count(ScanQueueJob.id))
            .where(ScanQueueJob.queue_name == self.name)
            .group_by(ScanQueueJob.state)
        ).all()
        counts = {WAITING: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0}
        counts.update({state: n for state, n in rows})
        return counts

    def waiting_for(self, owner_id: str) -> int:
        """Jobs of one owner not yet picked up by a worker."""
        return self.session.execute(
            select(func.count(ScanQueueJob.id))
            .where(
                ScanQueueJob.queue_name == self.name,
                ScanQueueJob.owner_id == owner_id,
                ScanQueueJob.state == WAITING,
            )
        ).scalar() or 0
