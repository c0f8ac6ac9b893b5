from mediaproof.payments.extraction import PaymentFields, extract_payment_fields
from mediaproof.payments.webhook import WebhookOutcome, WebhookReconciler

__all__ = ["PaymentFields", "WebhookOutcome", "WebhookReconciler", "extract_payment_fields"]
