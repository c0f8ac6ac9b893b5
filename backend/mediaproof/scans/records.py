# mediaproof/scans/records.py
"""
ScanRecord state transitions.

A record leaves QUEUED/PROCESSING exactly once. Each transition is a
conditional UPDATE on the pending states, so a second writer (a late worker,
the stale-job reaper) sees rowcount 0 and changes nothing.
"""

from __future__ import annotations

import logging

from sqlalchemy import update

from mediaproof.detection.base import NormalizedResult
from mediaproof.extensions import db
from mediaproof.models import ERROR, PENDING_STATES, PROCESSING, QUEUED, ScanRecord, now_utc

logger = logging.getLogger(__name__)


def _transition(scan_id: str, from_states, values: dict, commit: bool) -> bool:
    result = db.session.execute(
        update(ScanRecord)
        .where(ScanRecord.scan_id == scan_id, ScanRecord.state.in_(from_states))
        .values(updated_at=now_utc(), **values)
    )
    if commit:
        db.session.commit()
    return result.rowcount == 1


def mark_processing(scan_id: str, *, commit: bool = True) -> bool:
    return _transition(scan_id, (QUEUED,), {"state": PROCESSING}, commit)


def complete_scan(scan_id: str, result: NormalizedResult, *, commit: bool = True) -> bool:
    """Move a pending record to the verdict's terminal state."""
    changed = _transition(
        scan_id,
        PENDING_STATES,
        {
            "state": result.state,
            "confidence_score": result.confidence_score,
            "model_breakdown": result.breakdown(),
            "provider_request_id": result.request_id,
            "provider_result": result.raw,
            "error_message": None,
            "completed_at": now_utc(),
        },
        commit,
    )
    if not changed:
        logger.warning(f"Scan {scan_id} was already terminal; result {result.request_id} dropped")
    return changed


def fail_scan(scan_id: str, message: str, *, commit: bool = True) -> bool:
    """Move a pending record to ERROR. No confidence score is kept."""
    changed = _transition(
        scan_id,
        PENDING_STATES,
        {
            "state": ERROR,
            "confidence_score": None,
            "error_message": (message or "Detection failed")[:500],
            "completed_at": now_utc(),
        },
        commit,
    )
    if not changed:
        logger.warning(f"Scan {scan_id} was already terminal; failure '{message}' not recorded")
    return changed


def record_to_ui(r: ScanRecord) -> dict:
    return {
        "scanId": r.scan_id,
        "fileName": r.file_name,
        "mediaKind": r.media_kind,
        "state": r.state,
        "confidenceScore": r.confidence_score,
        "modelBreakdown": r.model_breakdown or [],
        "sourceUrl": r.source_url,
        "inlineMediaRef": r.inline_media_ref,
        "error": r.error_message,
        "createdAt": r.created_at.isoformat() + "Z" if r.created_at else None,
        "completedAt": r.completed_at.isoformat() + "Z" if r.completed_at else None,
    }
