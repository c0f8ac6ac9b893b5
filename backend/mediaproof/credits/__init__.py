from mediaproof.credits.ledger import CreditLedger

__all__ = ["CreditLedger"]
