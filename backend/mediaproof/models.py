from __future__ import annotations

from datetime import datetime, timezone
from .extensions import db


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Scan states
QUEUED = "QUEUED"
PROCESSING = "PROCESSING"
AUTHENTIC = "AUTHENTIC"
SUSPICIOUS = "SUSPICIOUS"
DEEPFAKE = "DEEPFAKE"
ERROR = "ERROR"

PENDING_STATES = (QUEUED, PROCESSING)
TERMINAL_STATES = (AUTHENTIC, SUSPICIOUS, DEEPFAKE, ERROR)

MEDIA_KINDS = ("image", "video", "audio")


class User(db.Model):
    """
    Account mirrored from the identity provider. Doubles as the credit
    account: ``credits`` is only ever changed through CreditLedger.
    """
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    owner_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    email = db.Column(db.String(255), nullable=True, index=True)
    full_name = db.Column(db.String(255), nullable=True)
    image_url = db.Column(db.String(1000), nullable=True)

    credits = db.Column(db.Integer, nullable=False, default=0)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)

    __table_args__ = (
        db.CheckConstraint("credits >= 0", name="ck_user_credits_non_negative"),
    )


class CreditEntry(db.Model):
    """Append-only history of balance movements."""
    __tablename__ = "credit_entry"

    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    owner_id = db.Column(db.String(128), nullable=False, index=True)

    # Kind: scan, refund, purchase, signup
    kind = db.Column(db.String(30), nullable=False)
    delta = db.Column(db.Integer, nullable=False)      # negative for debits
    balance_after = db.Column(db.Integer, nullable=True)

    # scan_id for scan/refund, payment reference for purchase
    reference = db.Column(db.String(255), nullable=True, index=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)


class ScanRecord(db.Model):
    __tablename__ = "scan_record"

    id = db.Column(db.Integer, primary_key=True)
    scan_id = db.Column(db.String(128), nullable=False, unique=True, index=True)
    owner_id = db.Column(db.String(128), nullable=False, index=True)

    file_name = db.Column(db.String(500), nullable=False)
    media_kind = db.Column(db.String(10), nullable=False, default="image")

    # QUEUED, PROCESSING → AUTHENTIC | SUSPICIOUS | DEEPFAKE | ERROR
    state = db.Column(db.String(20), nullable=False, default=QUEUED)

    # Set only in non-ERROR terminal states
    confidence_score = db.Column(db.Integer, nullable=True)
    model_breakdown = db.Column(db.JSON, nullable=True)

    source_url = db.Column(db.String(2000), nullable=True)
    inline_media_ref = db.Column(db.String(100), nullable=True)

    provider_request_id = db.Column(db.String(255), nullable=True)
    provider_result = db.Column(db.JSON, nullable=True)
    error_message = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)
    completed_at = db.Column(db.DateTime, nullable=True)

    __table_args__ = (
        db.Index("ix_scan_record_owner_created", "owner_id", "created_at"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES


class Payment(db.Model):
    __tablename__ = "payment"

    id = db.Column(db.Integer, primary_key=True)
    reference = db.Column(db.String(255), nullable=False, unique=True, index=True)

    owner_id = db.Column(db.String(128), nullable=True, index=True)
    email = db.Column(db.String(255), nullable=True)

    amount = db.Column(db.Integer, nullable=False, default=0)  # minor units, as reported
    currency = db.Column(db.String(10), nullable=False, default="USD")
    credits = db.Column(db.Integer, nullable=False, default=0)

    status = db.Column(db.String(50), nullable=True)
    # True once credits have been applied: the only "already handled" flag
    processed = db.Column(db.Boolean, nullable=False, default=False)
    processed_at = db.Column(db.DateTime, nullable=True)

    raw = db.Column(db.JSON, nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    updated_at = db.Column(db.DateTime, nullable=False, default=now_utc, onupdate=now_utc)


class ScanQueueJob(db.Model):
    """Durable entry in a named scan queue."""
    __tablename__ = "scan_queue_job"

    id = db.Column(db.Integer, primary_key=True)
    queue_name = db.Column(db.String(100), nullable=False, index=True)

    scan_id = db.Column(db.String(128), nullable=False, index=True)
    owner_id = db.Column(db.String(128), nullable=False)
    media_kind = db.Column(db.String(10), nullable=False, default="image")

    # Exactly one of these is set
    staged_media_path = db.Column(db.String(1000), nullable=True)
    source_url = db.Column(db.String(2000), nullable=True)

    # waiting → active → completed | failed
    state = db.Column(db.String(20), nullable=False, default="waiting", index=True)
    attempts = db.Column(db.Integer, nullable=False, default=0)
    error_message = db.Column(db.String(500), nullable=True)

    created_at = db.Column(db.DateTime, nullable=False, default=now_utc)
    started_at = db.Column(db.DateTime, nullable=True)
    finished_at = db.Column(db.DateTime, nullable=True)
