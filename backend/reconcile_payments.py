#!/usr/bin/env python3
"""
reconcile_payments.py

Applies successful payments that the webhook could not match to a user
(payer unknown at the time, or credits missing from the metadata). Each
payment still marked processed=false is matched again by owner id, then by
e-mail, and credited at most once.

Usage:
    # Dry run (shows what would be credited, no changes):
    python reconcile_payments.py

    # Actually credit:
    python reconcile_payments.py --commit

Run from backend/ (where mediaproof/ lives).
"""

import sys
import os

# Ensure the app is importable
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

os.environ.setdefault("WORKERS_ENABLED", "false")

from mediaproof import create_app
from mediaproof.extensions import get_webhook_reconciler
from mediaproof.payments.webhook import CREDITED


def reconcile(commit=False):
    app = create_app()

    with app.app_context():
        outcomes = get_webhook_reconciler().retry_unprocessed(commit=commit)

        if not outcomes:
            print("No unprocessed successful payments. Nothing to reconcile.")
            return

        credited = [o for o in outcomes if o.action == CREDITED]
        unmatched = [o for o in outcomes if o.action != CREDITED]

        verb = "Credited" if commit else "Would credit"
        for o in credited:
            print(f"  {verb} {o.credited} credit(s) for payment {o.reference}")
        for o in unmatched:
            print(f"  Still unmatched: {o.reference}")

        print(
            f"\n{len(outcomes)} payment(s) checked: "
            f"{len(credited)} {'credited' if commit else 'creditable'}, {len(unmatched)} unmatched."
        )
        if not commit and credited:
            print("Dry run. Re-run with --commit to apply.")


if __name__ == "__main__":
    reconcile(commit="--commit" in sys.argv)
