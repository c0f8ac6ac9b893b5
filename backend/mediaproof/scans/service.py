# =============================================================================
# File: mediaproof/scans/service.py
# Description: Scan creation for the three submission modes.
#
#   sync   : debit 1 credit, create PROCESSING record, detect inline,
#             record verdict. DetectionError leaves the record in ERROR.
#   queued : require one credit per waiting job plus this one, stage media,
#             create QUEUED record and a queue job in one commit. The
#             worker reserves the credit later.
#   bulk   : items beyond the current balance are rejected up front, the
#             rest are detected in parallel; each success is debited and
#             persisted on its own.
#
# A zero balance is rejected with InsufficientCredit in every mode before
# any record exists or the detector is called.
# =============================================================================

from __future__ import annotations

import base64
import binascii
import hashlib
import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from mediaproof.detection.base import MediaSource, NormalizedResult
from mediaproof.detection.bulk import BulkItem, BulkItemResult, verify_bulk
from mediaproof.detection.client import media_suffix
from mediaproof.errors import DetectionError, DuplicateScan, InsufficientCredit, ScanNotFound, ValidationError
from mediaproof.extensions import db
from mediaproof.models import MEDIA_KINDS, PROCESSING, QUEUED, ScanRecord, now_utc
from mediaproof.scan_queue.staging import discard_staged, stage_media
from mediaproof.scans.records import complete_scan, fail_scan

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = "base64,"


# ---------------------------------------------------------------------------
# Request parsing
# ---------------------------------------------------------------------------

@dataclass
class ScanDescriptor:
    file_name: str
    media_kind: str = "image"
    data: Optional[bytes] = None
    url: Optional[str] = None
    scan_id: Optional[str] = None

    def source(self) -> MediaSource:
        return MediaSource(data=self.data, url=self.url, file_name=self.file_name)

    @property
    def inline_media_ref(self) -> Optional[str]:
        if self.data is None:
            return None
        return "sha256:" + hashlib.sha256(self.data).hexdigest()


def parse_media_kind(value: Any) -> str:
    """Accept 'image' as well as a MIME type like 'image/png'."""
    if not value:
        return "image"
    kind = str(value).strip().lower().split("/", 1)[0]
    if kind not in MEDIA_KINDS:
        raise ValidationError(f"Unsupported media kind: {value}")
    return kind


def decode_inline(value: str) -> bytes:
    """Decode base64, tolerating a leading data: URL header."""
    text = value.strip()
    if text.startswith("data:") and DATA_URL_PREFIX in text:
        text = text.split(DATA_URL_PREFIX, 1)[1]
    try:
        return base64.b64decode(text, validate=True)
    except (binascii.Error, ValueError):
        raise ValidationError("Inline media is not valid base64")


def parse_descriptor(body: Dict[str, Any]) -> ScanDescriptor:
    if not isinstance(body, dict):
        raise ValidationError("Media descriptor must be an object")

    url = body.get("url") or body.get("sourceUrl") or body.get("fileUrl") or body.get("imageUrl")
    inline = body.get("base64") or body.get("inlineBytes")

    if not url and not inline:
        raise ValidationError("No media provided")
    if url and inline:
        raise ValidationError("Provide either inline media or a URL, not both")
    if url and not isinstance(url, str):
        raise ValidationError("url must be a string")
    if inline and not isinstance(inline, str):
        raise ValidationError("base64 must be a string")

    data = decode_inline(inline) if inline else None
    if data is not None and not data:
        raise ValidationError("No media provided")

    file_name = body.get("fileName")
    if not file_name and url:
        file_name = os.path.basename(urlparse(url).path)

    scan_id = body.get("scanId")
    if scan_id is not None and (not isinstance(scan_id, str) or not scan_id.strip()):
        raise ValidationError("scanId must be a non-empty string")

    return ScanDescriptor(
        file_name=(file_name or "unknown")[:500],
        media_kind=parse_media_kind(body.get("mediaKind") or body.get("fileType")),
        data=data,
        url=url.strip() if url else None,
        scan_id=scan_id.strip() if scan_id else None,
    )


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------

class ScanService:

    def __init__(
        self,
        ledger,
        client,
        queue,
        *,
        staging_dir: str,
        bulk_max_parallel: int = 3,
        refund_on_failure: bool = False,
    ):
        self.ledger = ledger
        self.client = client
        self.queue = queue
        self.staging_dir = staging_dir
        self.bulk_max_parallel = bulk_max_parallel
        self.refund_on_failure = refund_on_failure

    # ── reads ────────────────────────────────────────────────

    def get_scan(self, owner_id: str, scan_id: str) -> ScanRecord:
        record = ScanRecord.query.filter_by(scan_id=scan_id, owner_id=owner_id).first()
        if record is None:
            raise ScanNotFound("Scan not found")
        return record

    # ── helpers ──────────────────────────────────────────────

    def _require_credit(self, owner_id: str) -> None:
        if not self.ledger.has_credit(owner_id):
            raise InsufficientCredit(owner_id)

    def _claim_scan_id(self, desc: ScanDescriptor) -> str:
        if desc.scan_id:
            if ScanRecord.query.filter_by(scan_id=desc.scan_id).first() is not None:
                raise DuplicateScan(f"Scan {desc.scan_id} already exists")
            return desc.scan_id
        return f"scan-{uuid4().hex}"

    @staticmethod
    def _new_record(owner_id: str, scan_id: str, desc: ScanDescriptor, state: str) -> ScanRecord:
        return ScanRecord(
            scan_id=scan_id,
            owner_id=owner_id,
            file_name=desc.file_name,
            media_kind=desc.media_kind,
            state=state,
            source_url=desc.url,
            inline_media_ref=desc.inline_media_ref,
        )

    # ── sync ─────────────────────────────────────────────────

    def create_sync(self, owner_id: str, desc: ScanDescriptor) -> ScanRecord:
        self._require_credit(owner_id)
        scan_id = self._claim_scan_id(desc)

        # Debit and record land in one commit
        try:
            self.ledger.try_debit(owner_id, reference=scan_id, commit=False)
            db.session.add(self._new_record(owner_id, scan_id, desc, PROCESSING))
            db.session.commit()
        except InsufficientCredit:
            db.session.rollback()
            raise
        except IntegrityError:
            db.session.rollback()
            raise DuplicateScan(f"Scan {scan_id} already exists")

        logger.info(f"Scan {scan_id} started for {owner_id} ({desc.media_kind})")

        try:
            result = self.client.detect(desc.source(), desc.media_kind)
            complete_scan(scan_id, result)
        except DetectionError as e:
            logger.warning(f"Scan {scan_id} detection failed: {e}")
            fail_scan(scan_id, e.message, commit=False)
            if self.refund_on_failure:
                self.ledger.refund(owner_id, reference=scan_id, commit=False)
            db.session.commit()
            e.scan_id = scan_id
            raise
        except Exception as e:
            # Internal fault: the record still ends in ERROR and the credit goes back
            logger.exception(f"Scan {scan_id} crashed")
            db.session.rollback()
            if fail_scan(scan_id, f"Internal error: {str(e)[:200]}", commit=False):
                self.ledger.refund(owner_id, reference=scan_id, commit=False)
            db.session.commit()
            raise

        return ScanRecord.query.filter_by(scan_id=scan_id).first()

    # ── queued ───────────────────────────────────────────────

    def create_queued(self, owner_id: str, desc: ScanDescriptor) -> ScanRecord:
        # Every job still waiting needs a credit of its own
        waiting = self.queue.waiting_for(owner_id)
        if not self.ledger.has_credit(owner_id, waiting + 1):
            raise InsufficientCredit(owner_id)
        scan_id = self._claim_scan_id(desc)

        staged_path = None
        if desc.data is not None:
            staged_path = stage_media(
                self.staging_dir,
                scan_id,
                desc.data,
                media_suffix(desc.file_name, desc.media_kind),
            )

        record = self._new_record(owner_id, scan_id, desc, QUEUED)
        try:
            db.session.add(record)
            self.queue.enqueue(
                scan_id=scan_id,
                owner_id=owner_id,
                media_kind=desc.media_kind,
                staged_media_path=staged_path,
                source_url=None if staged_path else desc.url,
                commit=False,
            )
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            discard_staged(staged_path)
            raise DuplicateScan(f"Scan {scan_id} already exists")
        except Exception:
            db.session.rollback()
            discard_staged(staged_path)
            raise

        self.queue.notify()
        logger.info(f"Scan {scan_id} queued on '{self.queue.name}' for {owner_id}")
        return record

    # ── bulk ─────────────────────────────────────────────────

    def create_bulk(self, owner_id: str, raw_items: List[Any]) -> List[BulkItemResult]:
        """
        One BulkItemResult per input item, in input order. Successful items
        carry the persisted record; every other item carries an error.
        """
        if not isinstance(raw_items, list) or not raw_items:
            raise ValidationError("files must be a non-empty list")

        balance = self.ledger.balance(owner_id) or 0
        if balance < 1:
            raise InsufficientCredit(owner_id)

        slots: List[Optional[BulkItemResult]] = [None] * len(raw_items)
        runnable: List[tuple] = []
        taken_ids = set()

        for idx, raw in enumerate(raw_items):
            try:
                desc = parse_descriptor(raw)
            except ValidationError as e:
                ref = raw.get("fileName") if isinstance(raw, dict) else None
                slots[idx] = BulkItemResult(
                    item=BulkItem(source=MediaSource(), file_name=ref or f"item-{idx}"),
                    error=e.message,
                )
                continue

            item = BulkItem(
                source=desc.source(),
                media_kind=desc.media_kind,
                file_name=desc.file_name,
                scan_id=desc.scan_id or f"scan-{uuid4().hex}",
            )
            if item.scan_id in taken_ids:
                slots[idx] = BulkItemResult(item=item, error=f"Duplicate scanId {item.scan_id}")
            elif len(runnable) >= balance:
                slots[idx] = BulkItemResult(item=item, error=InsufficientCredit(owner_id).message)
            else:
                taken_ids.add(item.scan_id)
                runnable.append((idx, item, desc))

        logger.info(
            f"Bulk scan for {owner_id}: {len(raw_items)} item(s), "
            f"{len(runnable)} within balance {balance}"
        )

        results = verify_bulk(
            [item for _, item, _ in runnable],
            self.bulk_max_parallel,
            lambda it: self.client.detect(it.source, it.media_kind),
        )

        for (idx, item, desc), res in zip(runnable, results):
            if res.ok:
                self._persist_bulk_success(owner_id, desc, res)
            slots[idx] = res

        return slots

    def _persist_bulk_success(self, owner_id: str, desc: ScanDescriptor, res: BulkItemResult) -> None:
        scan_id = res.item.scan_id
        try:
            self.ledger.try_debit(owner_id, reference=scan_id, commit=False)
            record = _terminal_record(owner_id, scan_id, desc, res.result)
            db.session.add(record)
            db.session.commit()
            res.record = record
        except InsufficientCredit as e:
            # Balance spent by a concurrent request while detection ran
            db.session.rollback()
            res.error = e.message
        except IntegrityError:
            db.session.rollback()
            res.error = f"Scan {scan_id} already exists"


def _terminal_record(owner_id: str, scan_id: str, desc: ScanDescriptor, result: NormalizedResult) -> ScanRecord:
    record = ScanService._new_record(owner_id, scan_id, desc, result.state)
    record.confidence_score = result.confidence_score
    record.model_breakdown = result.breakdown()
    record.provider_request_id = result.request_id
    record.provider_result = result.raw
    record.completed_at = now_utc()
    return record
