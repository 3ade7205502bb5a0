"""
Run progress counters and the event stream delivered to the caller.

Events are plain dicts with a ``type`` key (and a ``value`` where one applies),
passed to a single progress callable. Workers report from several threads, so
all counter updates and deliveries happen under one lock.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, asdict
from typing import Callable, Optional

FETCHING_META = "fetching-meta"
CHUNKS_TOTAL = "chunks-total"
CHUNK_DOWNLOADED = "chunk-downloaded"
RESOURCE_TOTAL_INCREMENT = "resource-total-increment"
RESOURCE_DOWNLOADED_INCREMENT = "resource-downloaded-increment"
RATE_LIMIT = "rate-limit"


@dataclass
class RunProgress:
    chunks_total: Optional[int] = None
    chunks_downloaded: int = 0
    resources_total: int = 0
    resources_downloaded: int = 0
    rate_limit_remaining: int = 0


class ProgressReporter:
    def __init__(self, callback: Optional[Callable[[dict], None]] = None):
        self.callback = callback
        self.progress = RunProgress()
        self.logger = logging.getLogger(__name__)
        self._lock = threading.Lock()

    def _emit(self, event: dict) -> None:
        if self.callback:
            self.callback(event)

    def fetching_meta(self) -> None:
        with self._lock:
            self._emit({"type": FETCHING_META})

    def chunks_total(self, total: int) -> None:
        with self._lock:
            if self.progress.chunks_total is not None:
                self.logger.debug("chunks-total already reported, ignoring repeat")
                return
            self.progress.chunks_total = total
            self._emit({"type": CHUNKS_TOTAL, "value": total})

    def chunk_downloaded(self) -> None:
        with self._lock:
            if self.progress.chunks_total is None:
                raise RuntimeError("chunk-downloaded reported before chunks-total")
            self.progress.chunks_downloaded += 1
            self._emit({"type": CHUNK_DOWNLOADED})

    def resource_discovered(self) -> None:
        with self._lock:
            self.progress.resources_total += 1
            self._emit({"type": RESOURCE_TOTAL_INCREMENT})

    def resource_downloaded(self) -> None:
        with self._lock:
            self.progress.resources_downloaded += 1
            self._emit({"type": RESOURCE_DOWNLOADED_INCREMENT})

    def rate_limit(self, seconds_remaining: int) -> None:
        with self._lock:
            self.progress.rate_limit_remaining = seconds_remaining
            self._emit({"type": RATE_LIMIT, "value": seconds_remaining})

    def snapshot(self) -> dict:
        with self._lock:
            return asdict(self.progress)
