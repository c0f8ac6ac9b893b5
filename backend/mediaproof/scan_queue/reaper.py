# mediaproof/scan_queue/reaper.py
"""
Stale job reaper.

A job stays 'active' forever if its worker process dies mid-detection. The
reaper, run periodically by the background scheduler, fails such jobs, moves
their records to ERROR, releases any credit still reserved for them and
removes their staged media.

A worker can die after the verdict was committed but before the job row was
closed. Such a record keeps its verdict and its debit; only the job row is
closed (as completed).
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from mediaproof.extensions import db
from mediaproof.models import ERROR, ScanRecord
from mediaproof.scan_queue.staging import discard_staged
from mediaproof.scans.records import fail_scan

logger = logging.getLogger(__name__)


def reap_stale_jobs(queue, ledger, stale_after_seconds: float) -> int:
    """Close every active job older than stale_after_seconds. Returns the count."""
    stale = queue.stale_jobs(stale_after_seconds)
    if not stale:
        return 0

    logger.warning(f"Reaping {len(stale)} stale scan job(s) on queue '{queue.name}'")

    reaped = 0
    for job in stale:
        job_id, scan_id, owner_id = job.id, job.scan_id, job.owner_id
        staged_path = job.staged_media_path
        try:
            if fail_scan(scan_id, "Scan worker stopped before finishing", commit=False):
                owed = ledger.outstanding_debit(scan_id)
                if owed:
                    ledger.refund(owner_id, owed, reference=scan_id, commit=False)
                db.session.commit()
                queue.fail(job_id, "stale: worker stopped before finishing")
            else:
                db.session.rollback()
                state = db.session.execute(
                    select(ScanRecord.state).where(ScanRecord.scan_id == scan_id)
                ).scalar()
                if state in (None, ERROR):
                    queue.fail(job_id, "stale: scan record already failed")
                else:
                    logger.info(f"Stale job {job_id}: scan {scan_id} already finished as {state}")
                    queue.complete(job_id)
            reaped += 1
        except Exception as e:
            # One bad row must not block the rest
            db.session.rollback()
            logger.error(f"Failed to reap scan job {job_id}: {e}")
            continue
        discard_staged(staged_path)

    return reaped
