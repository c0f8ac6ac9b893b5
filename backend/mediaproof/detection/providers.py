# mediaproof/detection/providers.py
"""
Detection providers: the only code that talks to the external detector.

A provider takes a file on local disk and returns the provider's raw JSON
once the analysis is finished. It does not interpret the verdict; that is
normalize_response()'s job.

HttpDetectionProvider:
    POST {DETECTION_API_URL}/detect          multipart upload, X-API-KEY header
    GET  {DETECTION_API_URL}/results/{id}    polled until status is final

    The whole exchange (upload + polling) is bounded by DETECTION_TIMEOUT so a
    detector that never answers cannot hold a worker forever.

MockDetectionProvider:
    Fixed AUTHENTIC result, enabled with DETECTION_MOCK=true for local dev.
"""

from __future__ import annotations

import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import requests

from mediaproof.detection.base import (
    PENDING_PROVIDER_STATUSES,
    REQUEST_ID_PATHS,
    STATUS_PATHS,
)
from mediaproof.errors import DetectionError
from mediaproof.utils.payload import first_present

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10


class BaseDetectionProvider(ABC):
    """Contract every detection backend implements."""

    name: str = "base"

    @abstractmethod
    def submit(self, file_path: str, media_kind: str) -> Dict[str, Any]:
        """
        Analyze the file and return the provider's final raw payload.

        Raises DetectionError on any transport, HTTP or timeout failure.
        """


class HttpDetectionProvider(BaseDetectionProvider):

    name = "http"

    def __init__(
        self,
        *,
        base_url: Optional[str],
        api_key: Optional[str],
        timeout: float = 120,
        poll_interval: float = 2.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.api_key = api_key
        self.timeout = float(timeout)
        self.poll_interval = float(poll_interval)
        self.session = session or requests.Session()

    def submit(self, file_path: str, media_kind: str) -> Dict[str, Any]:
        if not self.api_key:
            raise DetectionError("DETECTION_API_KEY not set")
        if not self.base_url:
            raise DetectionError("DETECTION_API_URL not set")

        deadline = time.monotonic() + self.timeout
        headers = {"X-API-KEY": self.api_key, "Accept": "application/json"}

        with open(file_path, "rb") as fh:
            payload = self._request(
                "POST",
                f"{self.base_url}/detect",
                deadline,
                headers=headers,
                files={"file": (os.path.basename(file_path), fh)},
                data={"type": media_kind},
            )

        # Poll until the provider reports a final verdict
        while self._is_pending(payload):
            request_id = first_present(payload, REQUEST_ID_PATHS)
            if not request_id:
                raise DetectionError("Detection provider did not return a job ID")

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise DetectionError(
                    f"Detection timed out after {self.timeout:g}s (job {request_id})"
                )
            time.sleep(min(self.poll_interval, remaining))

            payload = self._request(
                "GET",
                f"{self.base_url}/results/{request_id}",
                deadline,
                headers=headers,
            )

        return payload

    @staticmethod
    def _is_pending(payload: Dict[str, Any]) -> bool:
        status = str(first_present(payload, STATUS_PATHS) or "").upper()
        return status in PENDING_PROVIDER_STATUSES

    def _request(self, method: str, url: str, deadline: float, **kwargs) -> Dict[str, Any]:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise DetectionError(f"Detection timed out after {self.timeout:g}s")

        try:
            resp = self.session.request(
                method,
                url,
                timeout=(min(CONNECT_TIMEOUT, remaining), remaining),
                **kwargs,
            )
        except requests.Timeout:
            raise DetectionError(f"Detection timed out after {self.timeout:g}s")
        except requests.RequestException as e:
            raise DetectionError(f"Detection request failed: {str(e)[:200]}")

        if not 200 <= resp.status_code < 300:
            raise DetectionError(
                f"Detection provider returned {resp.status_code}: {resp.text[:200]}"
            )

        try:
            body = resp.json()
        except ValueError:
            raise DetectionError("Detection provider returned invalid JSON")
        if not isinstance(body, dict):
            raise DetectionError("Detection provider returned an unexpected payload")
        return body


class MockDetectionProvider(BaseDetectionProvider):

    name = "mock"

    def submit(self, file_path: str, media_kind: str) -> Dict[str, Any]:
        logger.debug(f"Mock detection for {file_path} ({media_kind})")
        return {
            "requestId": "mock-job",
            "status": "AUTHENTIC",
            "score": 0.42,
            "models": [
                {"name": "rd-context-img", "status": "AUTHENTIC", "score": 0.07},
                {"name": "rd-img-ensemble", "status": "AUTHENTIC", "score": 0.364},
            ],
        }


def build_provider(config, session: Optional[requests.Session] = None) -> BaseDetectionProvider:
    """Pick the provider from app config."""
    if config.get("DETECTION_MOCK"):
        logger.warning("DETECTION_MOCK is on: all scans return a canned result")
        return MockDetectionProvider()

    return HttpDetectionProvider(
        base_url=config.get("DETECTION_API_URL"),
        api_key=config.get("DETECTION_API_KEY"),
        timeout=config.get("DETECTION_TIMEOUT", 120),
        poll_interval=config.get("DETECTION_POLL_INTERVAL", 2.0),
        session=session,
    )
