# mediaproof/payments/routes.py
from __future__ import annotations

from flask import Blueprint, jsonify, request

from mediaproof.extensions import get_webhook_reconciler
from mediaproof.payments.webhook import SIGNATURE_HEADER

payments_bp = Blueprint("payments", __name__, url_prefix="/payments")


@payments_bp.post("/webhook")
def paystack_webhook():
    """
    Paystack webhook. No bearer auth; the HMAC signature is the credential.
    Errors propagate to the app's MediaProofError handler (401/400/500).
    """
    raw_body = request.get_data(cache=False)
    outcome = get_webhook_reconciler().handle(raw_body, request.headers.get(SIGNATURE_HEADER))
    return jsonify(ok=True, status=outcome.action), 200
