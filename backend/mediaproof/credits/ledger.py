# mediaproof/credits/ledger.py
"""
Credit Ledger: per-user balance mutations.

Every debit and credit is a single conditional UPDATE executed by the
database, never a read followed by a write:

    debit:  UPDATE user SET credits = credits - n
            WHERE owner_id = :owner AND credits >= n
    credit: UPDATE user SET credits = credits + n
            WHERE owner_id = :owner

A debit that matches no row either hit an unknown owner or a balance below n;
both are reported as InsufficientCredit and nothing changes. Each movement
also appends a CreditEntry in the same transaction.

Usage:
    ledger = CreditLedger(db)
    ledger.try_debit(owner_id, reference=scan_id)
    ledger.credit(owner_id, 50, kind="purchase", reference=payment_ref)
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import func, select, update

from mediaproof.errors import InsufficientCredit
from mediaproof.models import CreditEntry, User

logger = logging.getLogger(__name__)


class CreditLedger:

    def __init__(self, db):
        self._db = db

    @property
    def session(self):
        return self._db.session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def balance(self, owner_id: str) -> Optional[int]:
        """Current balance, or None if the owner has no account."""
        return self.session.execute(
            select(User.credits).where(User.owner_id == owner_id)
        ).scalar()

    def has_credit(self, owner_id: str, n: int = 1) -> bool:
        current = self.balance(owner_id)
        return current is not None and current >= n

    def outstanding_debit(self, reference: str) -> int:
        """Credits debited for a scan and not refunded yet."""
        net = self.session.execute(
            select(func.coalesce(func.sum(CreditEntry.delta), 0))
            .where(CreditEntry.reference == reference, CreditEntry.kind.in_(("scan", "refund")))
        ).scalar()
        return max(0, -int(net or 0))

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def try_debit(
        self,
        owner_id: str,
        n: int = 1,
        *,
        reference: str | None = None,
        kind: str = "scan",
        commit: bool = True,
    ) -> bool:
        """
        Take n credits from owner_id, or raise InsufficientCredit.

        The balance check and the decrement are the same statement, so two
        concurrent debits against a last remaining credit cannot both succeed.
        """
        if n <= 0:
            raise ValueError("debit amount must be positive")

        result = self.session.execute(
            update(User)
            .where(User.owner_id == owner_id, User.credits >= n)
            .values(credits=User.credits - n)
        )
        if result.rowcount != 1:
            logger.info("Debit of %d refused for %s: insufficient credit", n, owner_id)
            raise InsufficientCredit(owner_id, n)

        self._append(owner_id, -n, kind, reference)
        if commit:
            self.session.commit()
        return True

    def credit(
        self,
        owner_id: str,
        n: int,
        *,
        kind: str = "purchase",
        reference: str | None = None,
        commit: bool = True,
    ) -> int:
        """Add n credits to owner_id. Returns the new balance."""
        if n <= 0:
            raise ValueError("credit amount must be positive")

        result = self.session.execute(
            update(User)
            .where(User.owner_id == owner_id)
            .values(credits=User.credits + n)
        )
        if result.rowcount != 1:
            raise LookupError(f"no credit account for owner {owner_id!r}")

        balance_after = self._append(owner_id, n, kind, reference)
        if commit:
            self.session.commit()
        return balance_after

    def refund(self, owner_id: str, n: int = 1, *, reference: str | None = None, commit: bool = True) -> int:
        """Give back a debit whose scan never produced a result."""
        logger.info("Refunding %d credit(s) to %s for %s", n, owner_id, reference)
        return self.credit(owner_id, n, kind="refund", reference=reference, commit=commit)

    def _append(self, owner_id: str, delta: int, kind: str, reference: str | None) -> int:
        balance_after = self.balance(owner_id)
        self.session.add(
            CreditEntry(
                owner_id=owner_id,
                kind=kind,
                delta=delta,
                balance_after=balance_after,
                reference=reference,
            )
        )
        return balance_after
