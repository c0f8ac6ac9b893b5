# mediaproof/scan_queue/worker.py
"""
Fixed-size background worker pool for the scan queue.

Each worker thread loops:

    claim job ─► reserve 1 credit ─► detect ─► record verdict ─► delete staged media
                      │                 │
                      │                 └─ DetectionError: record ERROR, release credit
                      └─ no credit: record ERROR, detector never called

Jobs are attempted once. A failed job is marked failed and is not requeued.
Errors in one job never stop the worker; each job runs in a fresh app
context so its database session is discarded afterwards.

Usage:
    pool = ScanWorkerPool(app, queue, client, ledger, concurrency=2)
    pool.start()            # daemon threads
    pool.process_next()     # or drive it by hand (tests, one-off scripts)
    pool.stop()
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from sqlalchemy import select

from mediaproof.detection.base import MediaSource
from mediaproof.errors import DetectionError, InsufficientCredit
from mediaproof.extensions import db
from mediaproof.models import ERROR, ScanQueueJob, ScanRecord
from mediaproof.scan_queue.staging import discard_staged
from mediaproof.scans.records import complete_scan, fail_scan, mark_processing

logger = logging.getLogger(__name__)


class ScanWorkerPool:

    def __init__(self, app, queue, client, ledger, *, concurrency: int = 2, poll_interval: float = 1.0):
        if concurrency <= 0:
            raise ValueError("concurrency must be a positive integer")
        self.app = app
        self.queue = queue
        self.client = client
        self.ledger = ledger
        self.concurrency = concurrency
        self.poll_interval = poll_interval

        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(target=self._loop, name=f"scan-worker-{i + 1}", daemon=True)
            for i in range(self.concurrency)
        ]
        for t in self._threads:
            t.start()
        logger.info(
            f"Scan worker pool started: {self.concurrency} worker(s) on queue '{self.queue.name}'"
        )

    def stop(self, timeout: float = 10.0) -> None:
        self._stop.set()
        self.queue.notify()
        for t in self._threads:
            t.join(timeout)
        self._threads = []
        logger.info("Scan worker pool stopped")

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                with self.app.app_context():
                    handled = self.process_next()
            except Exception:
                # Keep the worker alive; the job itself has already been marked
                logger.exception("Scan worker iteration failed")
                handled = False
            if not handled and not self._stop.is_set():
                self.queue.wait(self.poll_interval)

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    def process_next(self) -> bool:
        """Claim and run one job. Returns False when the queue was empty."""
        job = self.queue.claim_next()
        if job is None:
            return False
        self.run_job(job)
        return True

    def drain(self, limit: Optional[int] = None) -> int:
        """Run jobs in the calling thread until the queue is empty."""
        done = 0
        while limit is None or done < limit:
            if not self.process_next():
                break
            done += 1
        return done

    def run_job(self, job: ScanQueueJob) -> None:
        job_id = job.id
        scan_id = job.scan_id
        owner_id = job.owner_id
        staged_path = job.staged_media_path
        source_url = job.source_url
        media_kind = job.media_kind
        debited = False

        logger.info(f"Scan job {job_id} started for scan {scan_id}")
        try:
            record = ScanRecord.query.filter_by(scan_id=scan_id).first()
            if record is None or record.is_terminal:
                logger.warning(f"Scan job {job_id}: record {scan_id} missing or already terminal")
                self.queue.fail(job_id, "scan record missing or already terminal")
                return

            mark_processing(scan_id)

            try:
                self.ledger.try_debit(owner_id, reference=scan_id)
                debited = True
            except InsufficientCredit as e:
                db.session.rollback()
                fail_scan(scan_id, e.message)
                self.queue.fail(job_id, e.message)
                return

            try:
                result = self.client.detect(
                    MediaSource(path=staged_path, url=source_url),
                    media_kind,
                )
            except DetectionError as e:
                logger.warning(f"Scan job {job_id} detection failed: {e}")
                fail_scan(scan_id, str(e), commit=False)
                self._release_credit(scan_id, owner_id)
                db.session.commit()
                debited = False
                self.queue.fail(job_id, str(e))
                return

            if not complete_scan(scan_id, result, commit=False):
                # The reaper failed the record while detection was running
                self._release_credit(scan_id, owner_id)
                db.session.commit()
                debited = False
                self.queue.fail(job_id, "scan record failed before the verdict arrived")
                return

            db.session.commit()
            debited = False  # the credit now pays for a finished scan
            self.queue.complete(job_id)
            logger.info(f"Scan job {job_id} completed: {scan_id} → {result.state}")

        except Exception as e:
            logger.exception(f"Scan job {job_id} crashed")
            db.session.rollback()
            try:
                fail_scan(scan_id, f"Internal error: {str(e)[:200]}", commit=False)
                if debited:
                    self._release_credit(scan_id, owner_id)
                db.session.commit()
                self.queue.fail(job_id, str(e))
            except Exception:
                db.session.rollback()
                logger.exception(f"Scan job {job_id}: could not record failure")

        finally:
            discard_staged(staged_path)

    def _release_credit(self, scan_id: str, owner_id: str) -> int:
        """
        Refund whatever is still debited for a scan that ended in ERROR.

        Reads the ledger instead of assuming one credit: the stale-job reaper
        may already have refunded it, and a record that holds a verdict keeps
        its debit. Runs inside the caller's transaction.
        """
        state = db.session.execute(
            select(ScanRecord.state).where(ScanRecord.scan_id == scan_id)
        ).scalar()
        if state != ERROR:
            return 0
        owed = self.ledger.outstanding_debit(scan_id)
        if owed:
            self.ledger.refund(owner_id, owed, reference=scan_id, commit=False)
        return owed
