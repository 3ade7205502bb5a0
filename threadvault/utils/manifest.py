"""
Resource ledger for an archive bundle.

Append-only JSON Lines file with one record per resource outcome, so later
runs (and people) can see which media was archived and which links were dead
when the bundle was last updated.
"""

import json
import os
import threading
import time
from dataclasses import dataclass, asdict
from typing import Optional, Dict, Any, Iterable


DEFAULT_MANIFEST_NAME = "manifest.jsonl"


@dataclass
class ResourceRecord:
    source_url: str
    local_path: str
    kind: str
    status: str  # downloaded|reused|failed
    error: Optional[str] = None
    recorded_at: float = 0.0


class ResourceLedger:
    def __init__(self, resources_dir: str):
        self.resources_dir = resources_dir
        self.path = os.path.join(self.resources_dir, DEFAULT_MANIFEST_NAME)
        self._lock = threading.Lock()

    def append(self, rec: ResourceRecord) -> None:
        """Raises OSError when the ledger cannot be written."""
        if not rec.recorded_at:
            rec.recorded_at = time.time()
        line = json.dumps(asdict(rec), ensure_ascii=False) + "\n"
        with self._lock:
            os.makedirs(self.resources_dir, exist_ok=True)
            with open(self.path, 'a', encoding='utf-8') as f:
                f.write(line)

    def iter_records(self) -> Iterable[Dict[str, Any]]:
        if not os.path.exists(self.path):
            return
        with open(self.path, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    yield json.loads(line)
                except ValueError:
                    # A run killed mid-write leaves a torn last line
                    continue

    def latest_status(self) -> Dict[str, str]:
        """Latest status per source URL."""
        latest = {}
        for rec in self.iter_records():
            url = rec.get('source_url')
            if url:
                latest[url] = rec.get('status')
        return latest

    def failed_urls(self) -> set:
        return {url for url, status in self.latest_status().items() if status == 'failed'}
