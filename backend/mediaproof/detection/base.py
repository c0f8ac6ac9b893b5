# mediaproof/detection/base.py
"""
Data structures shared by the detection pipeline.

    MediaSource ──► DetectionClient ──► provider.submit() ──► raw dict
                                                        │
                                   normalize_response() ◄┘
                                                        │
                                                NormalizedResult

Providers return whatever their API returns. normalize_response() is the
only place that knows the possible field names, and it either produces a
complete NormalizedResult or raises DetectionError.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from mediaproof.errors import DetectionError
from mediaproof.models import AUTHENTIC, DEEPFAKE, SUSPICIOUS
from mediaproof.utils.payload import first_present

# Provider statuses that mean "still working"
PENDING_PROVIDER_STATUSES = {"ANALYZING", "PROCESSING", "PENDING", "QUEUED", "UPLOADED"}

DEEPFAKE_THRESHOLD = 0.5


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class MediaSource:
    """
    What to analyze. Exactly one of data, url or path must be set.

    path is media already staged on disk by the scan queue; the client reads
    it in place and leaves deleting it to the owner of the job.
    """
    data: Optional[bytes] = None
    url: Optional[str] = None
    path: Optional[str] = None
    file_name: Optional[str] = None

    def validate(self) -> None:
        given = [x for x in (self.data, self.url, self.path) if x]
        if not given:
            raise DetectionError("No media provided")
        if len(given) > 1:
            raise DetectionError("Provide exactly one of inline bytes, a URL or a staged path")


@dataclass
class ModelResult:
    name: str
    status: str
    score: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "modelName": self.name,
            "modelStatus": self.status,
            "modelScore": self.score,
        }


@dataclass
class NormalizedResult:
    """
    Detector output in our own terms.

    Fields:
        request_id:      Provider job identifier (always present)
        provider_status: Status string as reported, upper-cased
        overall_score:   Manipulation likelihood in [0, 1]
        models:          Per-model breakdown, provider order preserved
        raw:             Untouched provider payload, kept for audit
    """
    request_id: str
    provider_status: str
    overall_score: float
    models: List[ModelResult] = field(default_factory=list)
    raw: Dict[str, Any] = field(default_factory=dict)

    @property
    def state(self) -> str:
        return map_status(self.provider_status, self.overall_score)

    @property
    def confidence_score(self) -> int:
        return confidence_from_score(self.overall_score)

    def breakdown(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.models]


# ---------------------------------------------------------------------------
# Status mapping
# ---------------------------------------------------------------------------

def map_status(provider_status: str | None, overall_score: float) -> str:
    """
    Provider verdict → ScanRecord state.

        AUTHENTIC                  → AUTHENTIC (any score)
        MANIPULATED, score >= 0.5  → DEEPFAKE
        MANIPULATED, score <  0.5  → SUSPICIOUS
        anything else              → SUSPICIOUS
    """
    status = (provider_status or "").strip().upper()
    if status == "AUTHENTIC":
        return AUTHENTIC
    if status == "MANIPULATED":
        return DEEPFAKE if overall_score >= DEEPFAKE_THRESHOLD else SUSPICIOUS
    return SUSPICIOUS


def confidence_from_score(overall_score: float) -> int:
    """0–1 score → 0–100 integer, halves rounded up."""
    return int(math.floor(overall_score * 100 + 0.5))


# ---------------------------------------------------------------------------
# Response normalization
# ---------------------------------------------------------------------------

# Ordered lookup paths, first match wins.
REQUEST_ID_PATHS: Sequence[Tuple[str, ...]] = (
    ("id",),
    ("requestId",),
    ("request_id",),
)
STATUS_PATHS: Sequence[Tuple[str, ...]] = (
    ("status",),
    ("resultsSummary", "status"),
)
SCORE_PATHS: Sequence[Tuple[str, ...]] = (
    ("score",),
    ("finalScore",),
    ("resultsSummary", "metadata", "finalScore"),
)
MODEL_NAME_PATHS: Sequence[Tuple[str, ...]] = (("name",), ("modelName",))
MODEL_SCORE_PATHS: Sequence[Tuple[str, ...]] = (("score",), ("finalScore",))


def _as_unit_score(value: Any) -> float:
    """
    Clamp a provider score to [0, 1].

    Missing or non-numeric scores count as 0.
    """
    if isinstance(value, bool):
        return 0.0
    try:
        score = float(value)
    except (TypeError, ValueError):
        return 0.0
    if math.isnan(score):
        return 0.0
    return min(max(score, 0.0), 1.0)


def normalize_response(raw: Dict[str, Any]) -> NormalizedResult:
    """
    Map a raw provider payload to a NormalizedResult.

    Fails closed: a payload without a recognizable job identifier raises
    DetectionError rather than producing a half-filled result.
    """
    if not isinstance(raw, dict):
        raise DetectionError("Detection provider returned an unexpected payload")

    request_id = first_present(raw, REQUEST_ID_PATHS)
    if request_id in (None, ""):
        raise DetectionError("Detection provider did not return a job ID")

    status = str(first_present(raw, STATUS_PATHS) or "").strip().upper()
    score = _as_unit_score(first_present(raw, SCORE_PATHS))

    raw_models = raw.get("models")
    if not isinstance(raw_models, list):
        raw_models = []

    models: List[ModelResult] = []
    for m in raw_models:
        if not isinstance(m, dict):
            continue
        models.append(ModelResult(
            name=str(first_present(m, MODEL_NAME_PATHS) or "unknown"),
            status=str(m.get("status") or "UNKNOWN").upper(),
            score=_as_unit_score(first_present(m, MODEL_SCORE_PATHS)),
        ))

    return NormalizedResult(
        request_id=str(request_id),
        provider_status=status,
        overall_score=score,
        models=models,
        raw=raw,
    )
