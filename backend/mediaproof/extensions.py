# mediaproof/extensions.py
from __future__ import annotations

from flask import current_app
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

db = SQLAlchemy()

@event.listens_for(Engine, "connect")
def set_sqlite_pragma(dbapi_connection, _connection_record):
    # PRAGMA is SQLite-only: skip for PostgreSQL
    module_name = type(dbapi_connection).__module__
    if "sqlite" in module_name.lower():
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


def init_extensions(app, *, detection_provider=None, http_session=None):
    """
    Bind the database and build the long-lived service objects.

    Everything is constructed once per app and stored in ``app.extensions``;
    request handlers and workers fetch them through the accessors below
    instead of reaching for module globals.
    """
    from mediaproof.credits.ledger import CreditLedger
    from mediaproof.detection.client import DetectionClient
    from mediaproof.detection.providers import build_provider
    from mediaproof.payments.webhook import WebhookReconciler
    from mediaproof.scan_queue.jobs import ScanQueue
    from mediaproof.scan_queue.worker import ScanWorkerPool

    db.init_app(app)

    cfg = app.config
    ledger = CreditLedger(db)
    provider = detection_provider or build_provider(cfg, session=http_session)
    client = DetectionClient(
        provider,
        session=http_session,
        fetch_timeout=cfg["MEDIA_FETCH_TIMEOUT"],
        max_media_bytes=cfg["MAX_MEDIA_BYTES"],
    )
    queue = ScanQueue(db, name=cfg["SCAN_QUEUE_NAME"])

    app.extensions["mediaproof.ledger"] = ledger
    app.extensions["mediaproof.detection"] = client
    app.extensions["mediaproof.queue"] = queue
    app.extensions["mediaproof.workers"] = ScanWorkerPool(
        app,
        queue,
        client,
        ledger,
        concurrency=cfg["SCAN_QUEUE_CONCURRENCY"],
        poll_interval=cfg["SCAN_QUEUE_POLL_INTERVAL"],
    )
    app.extensions["mediaproof.webhook"] = WebhookReconciler(
        db,
        ledger,
        secret=cfg.get("PAYSTACK_SECRET_KEY"),
    )


# ────────────────────────────────────────────────────────────
# Accessors
# ────────────────────────────────────────────────────────────

def get_ledger():
    return current_app.extensions["mediaproof.ledger"]


def get_detection_client():
    return current_app.extensions["mediaproof.detection"]


def get_scan_queue():
    return current_app.extensions["mediaproof.queue"]


def get_worker_pool():
    return current_app.extensions["mediaproof.workers"]


def get_webhook_reconciler():
    return current_app.extensions["mediaproof.webhook"]
