# =============================================================================
# File: mediaproof/scans/routes.py
# Description: Scan submission and lookup.
#   - POST /scans: single JSON descriptor, JSON batch {files: [...]}, or a
#     multipart upload (field "file"). mode=queued hands the item to the
#     scan queue and answers 202.
#   - GET /scans/<scan_id>: owner-scoped lookup, 404 for foreign scans.
# =============================================================================

from __future__ import annotations

import logging

from flask import Blueprint, current_app, jsonify, request

from mediaproof.auth.decorators import current_owner_id, require_auth
from mediaproof.errors import DetectionError, ValidationError
from mediaproof.extensions import get_detection_client, get_ledger, get_scan_queue
from mediaproof.models import ScanRecord
from mediaproof.scans.records import record_to_ui
from mediaproof.scans.service import ScanDescriptor, ScanService, parse_descriptor, parse_media_kind

logger = logging.getLogger(__name__)

scans_bp = Blueprint("scans", __name__, url_prefix="/scans")


def _service() -> ScanService:
    cfg = current_app.config
    return ScanService(
        get_ledger(),
        get_detection_client(),
        get_scan_queue(),
        staging_dir=cfg["SCAN_STAGING_DIR"],
        bulk_max_parallel=cfg["BULK_MAX_PARALLEL"],
        refund_on_failure=cfg["SCAN_REFUND_ON_FAILURE"],
    )


def _descriptor_from_upload() -> ScanDescriptor:
    f = request.files.get("file")
    if f is None:
        raise ValidationError("No media provided")
    data = f.read()
    if not data:
        raise ValidationError("No media provided")
    form = request.form
    return ScanDescriptor(
        file_name=(form.get("fileName") or f.filename or "unknown")[:500],
        media_kind=parse_media_kind(form.get("mediaKind") or form.get("fileType") or f.mimetype),
        data=data,
        scan_id=(form.get("scanId") or "").strip() or None,
    )


def _bulk_result_to_ui(r) -> dict:
    return {
        "inputRef": r.input_ref,
        "scan": record_to_ui(r.record) if r.record is not None else None,
        "error": r.error,
    }


@scans_bp.post("")
@require_auth
def create_scan():
    owner_id = current_owner_id()
    svc = _service()

    if request.files:
        desc = _descriptor_from_upload()
        mode = request.form.get("mode")
    else:
        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            raise ValidationError("Request body must be a JSON object")

        if "files" in body:
            results = svc.create_bulk(owner_id, body.get("files"))
            return jsonify(
                scans=[record_to_ui(r.record) for r in results if r.record is not None],
                results=[_bulk_result_to_ui(r) for r in results],
            ), 201

        desc = parse_descriptor(body)
        mode = body.get("mode")

    if (mode or "").lower() == "queued":
        record = svc.create_queued(owner_id, desc)
        return jsonify(record_to_ui(record)), 202

    try:
        record = svc.create_sync(owner_id, desc)
    except DetectionError as e:
        failed = ScanRecord.query.filter_by(scan_id=getattr(e, "scan_id", None)).first()
        return jsonify(
            error=e.label,
            message=e.message,
            scan=record_to_ui(failed) if failed else None,
        ), e.http_status

    return jsonify(record_to_ui(record)), 201


@scans_bp.get("/<scan_id>")
@require_auth
def get_scan(scan_id: str):
    record = _service().get_scan(current_owner_id(), scan_id)
    return jsonify(record_to_ui(record)), 200
