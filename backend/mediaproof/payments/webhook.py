# =============================================================================
# File: mediaproof/payments/webhook.py
# Description: Payment webhook reconciliation.
#
#   verify HMAC ─► parse ─► extract ─► dedupe ─► status gate ─► find payer ─► credit
#
# A payment reference is credited at most once. Payment.processed is the only
# "already applied" flag; it flips false → true with a conditional UPDATE in
# the same commit as the ledger credit, so a redelivered event racing the
# first one cannot credit twice.
#
# Successful payments that cannot be matched to a user (or carry no credits)
# stay processed=false and are logged as a reconciliation gap. They can be
# applied later with retry_unprocessed() / backend/reconcile_payments.py.
# =============================================================================

from __future__ import annotations

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError

from mediaproof.errors import AuthenticationError, ConfigurationError, ValidationError
from mediaproof.models import Payment, User, now_utc
from mediaproof.payments.extraction import PaymentFields, extract_payment_fields

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Paystack-Signature"

# Outcome actions
IGNORED = "ignored"          # no data in the event
DUPLICATE = "duplicate"      # reference already credited
RECORDED = "recorded"        # non-success status, stored for audit
UNMATCHED = "unmatched"      # success, but no payer or no credits
CREDITED = "credited"


@dataclass
class WebhookOutcome:
    action: str
    reference: Optional[str] = None
    credited: int = 0


class WebhookReconciler:

    def __init__(self, db, ledger, secret: Optional[str]):
        self._db = db
        self.ledger = ledger
        self.secret = secret

    @property
    def session(self):
        return self._db.session

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def verify_signature(self, raw_body: bytes, signature: Optional[str]) -> None:
        if not self.secret:
            logger.error("Webhook received but PAYSTACK_SECRET_KEY is not configured")
            raise ConfigurationError("Server misconfigured")
        if not signature:
            raise AuthenticationError("Missing signature")

        expected = hmac.new(self.secret.encode("utf-8"), raw_body, hashlib.sha512).hexdigest()
        # Compare bytes: compare_digest rejects non-ASCII str
        received = signature.strip().lower().encode("utf-8", "replace")
        if not hmac.compare_digest(expected.encode("ascii"), received):
            logger.warning("Rejected webhook with invalid signature")
            raise AuthenticationError("Invalid signature")

    def handle(self, raw_body: bytes, signature: Optional[str]) -> WebhookOutcome:
        self.verify_signature(raw_body, signature)

        try:
            event = json.loads(raw_body)
        except ValueError:
            raise ValidationError("Webhook body is not valid JSON")
        if not isinstance(event, dict):
            raise ValidationError("Webhook body must be a JSON object")

        data = event.get("data")
        if not isinstance(data, dict) or not data:
            return WebhookOutcome(IGNORED)

        fields = extract_payment_fields(data)
        if not fields.reference:
            logger.error(f"Webhook event {event.get('event')!r} missing reference")
            raise ValidationError("Missing payment reference")

        try:
            return self.reconcile(fields, data)
        except IntegrityError:
            # A concurrent delivery inserted the same reference first
            self.session.rollback()
            logger.info(f"Payment {fields.reference} inserted concurrently; retrying once")
            try:
                return self.reconcile(fields, data)
            except Exception:
                self.session.rollback()
                raise
        except Exception:
            self.session.rollback()
            raise

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, fields: PaymentFields, data: Dict[str, Any]) -> WebhookOutcome:
        ref = fields.reference
        existing = Payment.query.filter_by(reference=ref).first()
        if existing is not None and existing.processed:
            logger.info(f"Payment {ref} already processed")
            return WebhookOutcome(DUPLICATE, ref)

        payment = self._upsert(existing, fields, data)

        if not fields.is_success:
            self.session.commit()
            logger.info(f"Payment {ref} recorded with status {fields.status!r}; no credit")
            return WebhookOutcome(RECORDED, ref)

        self.session.flush()
        user = self._resolve_payer(fields.owner_id, fields.email)
        if user is None or fields.credits <= 0:
            self.session.commit()
            logger.warning(
                f"Reconciliation gap for payment {ref}: "
                f"user={'found' if user else 'not found'} credits={fields.credits} "
                f"owner_id={fields.owner_id} email={fields.email}"
            )
            return WebhookOutcome(UNMATCHED, ref)

        return self._apply_credit(payment.reference, user.owner_id, fields.credits)

    def _upsert(self, existing: Optional[Payment], fields: PaymentFields, data: Dict[str, Any]) -> Payment:
        payment = existing or Payment(reference=fields.reference, processed=False)
        payment.status = fields.status
        payment.amount = fields.amount
        payment.currency = fields.currency
        payment.credits = fields.credits
        payment.raw = data
        if fields.owner_id:
            payment.owner_id = fields.owner_id
        if fields.email:
            payment.email = fields.email
        if existing is None:
            self.session.add(payment)
        return payment

    def _resolve_payer(self, owner_id: Optional[str], email: Optional[str]) -> Optional[User]:
        user = None
        if owner_id:
            user = User.query.filter_by(owner_id=owner_id).first()
        if user is None and email:
            user = User.query.filter(func.lower(User.email) == email.lower()).first()
        return user

    def _apply_credit(self, reference: str, owner_id: str, credits: int) -> WebhookOutcome:
        claimed = self.session.execute(
            update(Payment)
            .where(Payment.reference == reference, Payment.processed.is_(False))
            .values(processed=True, processed_at=now_utc(), owner_id=owner_id, updated_at=now_utc())
        )
        if claimed.rowcount != 1:
            self.session.rollback()
            logger.info(f"Payment {reference} claimed by a concurrent delivery")
            return WebhookOutcome(DUPLICATE, reference)

        balance = self.ledger.credit(owner_id, credits, kind="purchase", reference=reference, commit=False)
        self.session.commit()
        logger.info(f"Payment {reference}: credited {credits} to {owner_id} (balance {balance})")
        return WebhookOutcome(CREDITED, reference, credited=credits)

    # ------------------------------------------------------------------
    # Manual reconciliation
    # ------------------------------------------------------------------

    def retry_unprocessed(self, commit: bool = True) -> List[WebhookOutcome]:
        """
        Re-run payer matching for successful payments still unprocessed.

        With commit=False nothing is written; the outcomes say what would
        happen.
        """
        pending = (
            Payment.query
            .filter(Payment.processed.is_(False), func.lower(Payment.status) == "success")
            .order_by(Payment.id)
            .all()
        )

        outcomes: List[WebhookOutcome] = []
        for p in pending:
            ref, credits = p.reference, p.credits or 0
            user = self._resolve_payer(p.owner_id, p.email)
            if user is None or credits <= 0:
                outcomes.append(WebhookOutcome(UNMATCHED, ref))
                continue
            if not commit:
                outcomes.append(WebhookOutcome(CREDITED, ref, credited=credits))
                continue
            try:
                outcomes.append(self._apply_credit(ref, user.owner_id, credits))
            except Exception as e:
                self.session.rollback()
                logger.error(f"Failed to reconcile payment {ref}: {e}")
                outcomes.append(WebhookOutcome(UNMATCHED, ref))
        return outcomes
