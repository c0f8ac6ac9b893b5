# mediaproof/detection/client.py
"""
Detection Client: one detector call for one media item.

    client = DetectionClient(provider)
    result = client.detect(MediaSource(url="https://…/photo.jpg"), "image")
    result.state             # AUTHENTIC | SUSPICIOUS | DEEPFAKE
    result.confidence_score  # 0–100

Inline bytes and fetched URLs are written to a temp file for the provider
and the temp file is removed on every exit path. Errors are raised as
DetectionError; deciding what to do about them is the caller's business.
"""

from __future__ import annotations

import logging
import os
import tempfile
from typing import Optional
from urllib.parse import urlparse

import requests

from mediaproof.detection.base import MediaSource, NormalizedResult, normalize_response
from mediaproof.detection.providers import BaseDetectionProvider
from mediaproof.errors import DetectionError

logger = logging.getLogger(__name__)

DEFAULT_SUFFIX = {
    "image": ".png",
    "video": ".mp4",
    "audio": ".wav",
}

FETCH_CHUNK = 64 * 1024


class DetectionClient:

    def __init__(
        self,
        provider: BaseDetectionProvider,
        *,
        session: Optional[requests.Session] = None,
        fetch_timeout: float = 30,
        max_media_bytes: int = 50 * 1024 * 1024,
    ):
        self.provider = provider
        self.session = session or requests.Session()
        self.fetch_timeout = fetch_timeout
        self.max_media_bytes = max_media_bytes

    def detect(self, source: MediaSource, media_kind: str = "image") -> NormalizedResult:
        source.validate()

        tmp_path: Optional[str] = None
        try:
            if source.path:
                if not os.path.isfile(source.path):
                    raise DetectionError(f"Staged media not found: {source.path}")
                file_path = source.path
            else:
                if source.url:
                    data = self._fetch(source.url)
                    suffix = media_suffix(urlparse(source.url).path, media_kind)
                else:
                    data = source.data
                    suffix = media_suffix(source.file_name, media_kind)
                if len(data) > self.max_media_bytes:
                    raise DetectionError("Media exceeds the maximum allowed size")
                tmp_path = _stage(data, suffix)
                file_path = tmp_path

            logger.info(f"Calling {self.provider.name} detector for {file_path} ({media_kind})")
            raw = self.provider.submit(file_path, media_kind)
            result = normalize_response(raw)
            logger.info(
                f"Detection job {result.request_id} finished: "
                f"{result.provider_status or 'UNKNOWN'} score={result.overall_score}"
            )
            return result

        except DetectionError:
            raise
        except OSError as e:
            raise DetectionError(f"Could not stage media for detection: {e}")

        finally:
            if tmp_path:
                try:
                    os.unlink(tmp_path)
                except FileNotFoundError:
                    pass
                except OSError as e:
                    logger.warning(f"Failed to clean up temp media {tmp_path}: {e}")

    def _fetch(self, url: str) -> bytes:
        """Download remote media, bounded by size and time."""
        try:
            resp = self.session.get(url, timeout=self.fetch_timeout, stream=True)
        except requests.Timeout:
            raise DetectionError(f"Timed out fetching media from {url}")
        except requests.RequestException as e:
            raise DetectionError(f"Failed to fetch URL: {str(e)[:200]}")

        try:
            if not 200 <= resp.status_code < 300:
                raise DetectionError(f"Failed to fetch URL: {resp.status_code}")

            chunks = []
            total = 0
            for chunk in resp.iter_content(FETCH_CHUNK):
                if not chunk:
                    continue
                total += len(chunk)
                if total > self.max_media_bytes:
                    raise DetectionError("Media exceeds the maximum allowed size")
                chunks.append(chunk)
            return b"".join(chunks)
        except requests.RequestException as e:
            raise DetectionError(f"Failed to fetch URL: {str(e)[:200]}")
        finally:
            resp.close()


def media_suffix(name: Optional[str], media_kind: str) -> str:
    ext = os.path.splitext(name or "")[1].lower()
    if ext and len(ext) <= 6:
        return ext
    return DEFAULT_SUFFIX.get(media_kind, ".bin")


def _stage(data: bytes, suffix: str) -> str:
    tmp = tempfile.NamedTemporaryFile(prefix="mp-upload-", suffix=suffix, delete=False)
    try:
        with tmp:
            tmp.write(data)
    except OSError:
        os.unlink(tmp.name)
        raise
    return tmp.name
