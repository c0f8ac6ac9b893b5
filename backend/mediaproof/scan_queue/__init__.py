# mediaproof/scan_queue/__init__.py
"""
Scan job queue: decouples media upload from detection.

Components:
    jobs.py    : durable named queue (scan_queue_job table)
    worker.py  : fixed-size worker pool that consumes the queue
    staging.py : on-disk staging of uploaded media for queued jobs
    reaper.py  : fails jobs whose worker died mid-flight

Worker startup:
    The app factory starts the pool when WORKERS_ENABLED is true, or run
    backend/worker.py as a dedicated process.
"""

from mediaproof.scan_queue.jobs import ScanQueue
from mediaproof.scan_queue.worker import ScanWorkerPool

__all__ = ["ScanQueue", "ScanWorkerPool"]
