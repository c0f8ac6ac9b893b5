# mediaproof/detection/__init__.py
"""
Detection pipeline.

    DetectionClient  : one detector call, temp-file staging, normalization
    verify_bulk      : bounded fan-out of DetectionClient calls
    providers        : HTTP detector and the local mock
"""

from mediaproof.detection.base import MediaSource, ModelResult, NormalizedResult, map_status
from mediaproof.detection.bulk import BulkItem, BulkItemResult, verify_bulk
from mediaproof.detection.client import DetectionClient

__all__ = [
    "BulkItem",
    "BulkItemResult",
    "DetectionClient",
    "MediaSource",
    "ModelResult",
    "NormalizedResult",
    "map_status",
    "verify_bulk",
]
