# mediaproof/detection/bulk.py
"""
Bulk Verification Orchestrator.

Runs many detections over a bounded worker pool:

    1. Every item goes into one shared FIFO work queue
    2. min(max_parallel, len(items)) workers each pull and process items
       until the queue is empty
    3. A failing item is recorded on its own BulkItemResult; sibling workers
       keep going and the batch is never aborted

The result list has exactly one entry per input, in input order.
Persisting records and debiting credits is left to the caller.
"""

from __future__ import annotations

import logging
import queue
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from mediaproof.detection.base import MediaSource, NormalizedResult

logger = logging.getLogger(__name__)


@dataclass
class BulkItem:
    source: MediaSource
    media_kind: str = "image"
    file_name: Optional[str] = None
    scan_id: Optional[str] = None

    @property
    def input_ref(self) -> str:
        return self.file_name or self.source.url or self.source.file_name or "inline"


@dataclass
class BulkItemResult:
    item: BulkItem
    result: Optional[NormalizedResult] = None
    error: Optional[str] = None
    # Filled in by the scan service once the result is persisted
    record: Optional[object] = None

    @property
    def input_ref(self) -> str:
        return self.item.input_ref

    @property
    def ok(self) -> bool:
        return self.error is None and self.result is not None


def verify_bulk(
    items: Sequence[BulkItem],
    max_parallel: int,
    detect: Callable[[BulkItem], NormalizedResult],
) -> List[BulkItemResult]:
    """
    Detect every item with at most max_parallel calls in flight.

    Raises ValueError for max_parallel <= 0 before any work starts.
    """
    if max_parallel <= 0:
        raise ValueError("max_parallel must be a positive integer")
    if not items:
        return []

    work: "queue.Queue[tuple[int, BulkItem]]" = queue.Queue()
    for idx, item in enumerate(items):
        work.put((idx, item))

    slots: List[Optional[BulkItemResult]] = [None] * len(items)

    def _worker() -> int:
        handled = 0
        while True:
            try:
                idx, item = work.get_nowait()
            except queue.Empty:
                return handled
            try:
                slots[idx] = BulkItemResult(item=item, result=detect(item))
            except Exception as e:
                logger.warning(f"Bulk item {item.input_ref} failed: {e}")
                slots[idx] = BulkItemResult(item=item, error=str(e) or "Verification failed")
            handled += 1

    n_workers = min(max_parallel, len(items))
    with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="bulk-verify") as executor:
        futures = [executor.submit(_worker) for _ in range(n_workers)]
        handled = sum(f.result() for f in futures)

    failed = sum(1 for r in slots if r is not None and r.error)
    logger.info(
        "Bulk verification: %d item(s), %d worker(s), %d failed",
        handled, n_workers, failed,
    )
    return [r for r in slots if r is not None]
