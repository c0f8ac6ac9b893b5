# mediaproof/errors.py
"""
Exception taxonomy shared by the scan, credit and payment paths.

Every error carries the HTTP status the app factory's error handler answers
with, so services can raise without knowing about Flask.
"""

from __future__ import annotations


class MediaProofError(Exception):
    """Base class for all domain errors."""

    http_status = 500
    label = "Internal server error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.label)
        self.message = message or self.label


class ConfigurationError(MediaProofError):
    """A required secret or setting is missing on the server."""

    http_status = 500
    label = "Server misconfigured"


class AuthenticationError(MediaProofError):
    """Webhook signature missing or invalid."""

    http_status = 401
    label = "Unauthorized"


class ValidationError(MediaProofError):
    """Missing media, missing reference, malformed payload."""

    http_status = 400
    label = "Bad request"


class InsufficientCredit(MediaProofError):
    http_status = 402
    label = "Insufficient credits"

    def __init__(self, owner_id: str, required: int = 1, message: str = ""):
        super().__init__(message or f"Insufficient credits: {required} required")
        self.owner_id = owner_id
        self.required = required


class DetectionError(MediaProofError):
    """Detection provider, media fetch or timeout failure."""

    http_status = 502
    label = "Detection failed"


class ScanNotFound(MediaProofError):
    http_status = 404
    label = "Not found"


class DuplicateScan(MediaProofError):
    http_status = 409
    label = "Conflict"
