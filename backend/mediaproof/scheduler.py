# mediaproof/scheduler.py
"""
Background Scheduler for the Scan Queue
────────────────────────────────────────
Uses APScheduler to reap stale queue jobs: jobs left 'active' by a worker
that died mid-detection are failed, their records moved to ERROR and any
credit still reserved for them released.

Setup in the app factory (__init__.py):
    from mediaproof.scheduler import init_scheduler
    init_scheduler(app)
"""
from __future__ import annotations

import logging
import os

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

logger = logging.getLogger("scheduler")

_scheduler: BackgroundScheduler | None = None


def reap_stale(app) -> int:
    """One reaper pass inside an app context. Returns the number reaped."""
    with app.app_context():
        from mediaproof.extensions import get_ledger, get_scan_queue
        from mediaproof.scan_queue.reaper import reap_stale_jobs

        count = reap_stale_jobs(
            get_scan_queue(),
            get_ledger(),
            app.config["SCAN_QUEUE_STALE_AFTER"],
        )
        if count:
            logger.info("Reaped %d stale scan job(s)", count)
        return count


def init_scheduler(app):
    """Initialize and start the background scheduler."""
    global _scheduler

    if os.environ.get("FLASK_NO_SCHEDULER"):
        logger.info("Scheduler disabled via FLASK_NO_SCHEDULER")
        return

    if _scheduler is not None:
        logger.info("Scheduler already running")
        return

    stale_after = app.config["SCAN_QUEUE_STALE_AFTER"]
    # Check a few times per stale window, but not more than once a minute
    interval = max(60, int(stale_after // 4))

    _scheduler = BackgroundScheduler(daemon=True)
    _scheduler.add_job(
        func=lambda: reap_stale(app),
        trigger=IntervalTrigger(seconds=interval),
        id="scan_queue_reaper",
        name="Fail stale scan queue jobs",
        replace_existing=True,
        max_instances=1,
    )

    _scheduler.start()
    logger.info(f"Background scheduler started (reaping every {interval}s)")


def shutdown_scheduler():
    """Gracefully stop the scheduler."""
    global _scheduler
    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Scheduler stopped")
