# =============================================================================
# File: mediaproof/payments/extraction.py
# Description: Field extraction for payment provider webhook events.
#
# Depending on the event type, Paystack puts transaction fields either on
# `data` directly or under `data.transaction`. Every field is looked up with
# an ordered list of key paths; the first non-empty value wins.
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mediaproof.utils.payload import as_int, first_present

logger = logging.getLogger(__name__)

DEFAULT_CURRENCY = "USD"

# Rules against `data`
STATUS_PATHS = (("status",), ("transaction", "status"))
REFERENCE_PATHS = (("reference",), ("transaction", "reference"))
AMOUNT_PATHS = (("amount",), ("transaction", "amount"))
CURRENCY_PATHS = (("currency",), ("transaction", "currency"))
METADATA_PATHS = (("metadata",), ("transaction", "metadata"))
EMAIL_PATHS = (("customer", "email"), ("customer_email",), ("transaction", "customer", "email"))

# Rules against the resolved metadata object
OWNER_ID_PATHS = (("ownerId",), ("owner_id",), ("clerkId",))
METADATA_EMAIL_PATHS = (("email",),)
CREDITS_PATHS = (("credits",),)


@dataclass
class PaymentFields:
    reference: Optional[str]
    status: Optional[str]
    amount: int
    currency: str
    owner_id: Optional[str]
    email: Optional[str]
    credits: int

    @property
    def is_success(self) -> bool:
        return str(self.status or "").strip().lower() == "success"


def _metadata(data: Dict[str, Any]) -> Dict[str, Any]:
    meta = first_present(data, METADATA_PATHS)
    # Paystack echoes custom metadata back as a JSON string in some flows
    if isinstance(meta, str):
        try:
            meta = json.loads(meta)
        except ValueError:
            logger.warning("Payment metadata is a string but not JSON; ignoring it")
            return {}
    return meta if isinstance(meta, dict) else {}


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def extract_payment_fields(data: Dict[str, Any]) -> PaymentFields:
    meta = _metadata(data)

    email = _text(first_present(data, EMAIL_PATHS)) or _text(first_present(meta, METADATA_EMAIL_PATHS))

    return PaymentFields(
        reference=_text(first_present(data, REFERENCE_PATHS)),
        status=_text(first_present(data, STATUS_PATHS)),
        amount=as_int(first_present(data, AMOUNT_PATHS)),
        currency=(_text(first_present(data, CURRENCY_PATHS)) or DEFAULT_CURRENCY).upper(),
        owner_id=_text(first_present(meta, OWNER_ID_PATHS)),
        email=email.lower() if email else None,
        credits=as_int(first_present(meta, CREDITS_PATHS)),
    )
