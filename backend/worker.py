#!/usr/bin/env python3
"""
worker.py

Runs the scan queue worker pool and the stale-job reaper as a dedicated
process, so web processes can run with WORKERS_ENABLED=false.

Usage:
    python worker.py

Run from backend/ (where mediaproof/ lives). Stops on SIGINT / SIGTERM.
"""

import sys
import os
import logging
import signal
import threading

# Ensure the app is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# The factory must not start a second pool; this script starts its own
os.environ["WORKERS_ENABLED"] = "false"

from mediaproof import create_app
from mediaproof.scheduler import init_scheduler, shutdown_scheduler

logger = logging.getLogger("worker")


def main():
    app = create_app()
    pool = app.extensions["mediaproof.workers"]

    stop = threading.Event()

    def _shutdown(signum, _frame):
        logger.info("Received signal %d, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pool.start()
    init_scheduler(app)

    while not stop.wait(1.0):
        pass

    shutdown_scheduler()
    pool.stop()


if __name__ == "__main__":
    main()
