# mediaproof/scan_queue/staging.py
from __future__ import annotations

import logging
import os
from typing import Optional

logger = logging.getLogger(__name__)


def stage_media(staging_dir: str, scan_id: str, data: bytes, suffix: str) -> str:
    """Write uploaded bytes where a queue worker can pick them up."""
    os.makedirs(staging_dir, exist_ok=True)
    safe_id = "".join(c if c.isalnum() or c in "-_" else "_" for c in scan_id)
    path = os.path.join(staging_dir, f"{safe_id}{suffix}")
    with open(path, "wb") as fh:
        fh.write(data)
    return path


def discard_staged(path: Optional[str]) -> None:
    """Delete staged media; a missing file is not an error."""
    if not path:
        return
    try:
        os.unlink(path)
        logger.debug(f"Removed staged media {path}")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove staged media {path}: {e}")
