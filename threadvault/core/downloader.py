"""
Resource downloader with run-wide de-duplication.

Each resource URL is downloaded at most once per run no matter how many posts
reference it or how many workers discover it at the same time: the first
discovery inserts a future into the seen-map under a lock before any work is
queued, and every later discovery waits on that same future.
"""

from __future__ import annotations

import logging
import os
import tempfile
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, Iterable, List, Optional

import requests

from .client import ForumClient
from .errors import AuthError, WriteError
from .models import ResourceRef, ResourceResult
from .progress import ProgressReporter
from .resources import MISSING_PLACEHOLDER
from threadvault.utils.manifest import ResourceLedger, ResourceRecord


DEFAULT_MAX_WORKERS = 4
DEFAULT_MAX_RETRIES = 3
PERMANENT_STATUSES = {404, 410}


class ResourceDownloader:
    def __init__(self,
                 client: ForumClient,
                 bundle_root: str,
                 reporter: ProgressReporter,
                 ledger: Optional[ResourceLedger] = None,
                 max_workers: int = DEFAULT_MAX_WORKERS,
                 max_retries: int = DEFAULT_MAX_RETRIES,
                 retry_delay: float = 1.0,
                 reuse_existing: bool = True,
                 error_tracker=None,
                 sleep: Callable[[float], object] = time.sleep):
        self.client = client
        self.bundle_root = bundle_root
        self.reporter = reporter
        self.ledger = ledger
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.reuse_existing = reuse_existing
        self.error_tracker = error_tracker
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._seen: Dict[str, Future] = {}
        self._lock = threading.Lock()
        self._failures: List[ResourceResult] = []
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers),
                                            thread_name_prefix="threadvault-download")

    @property
    def failures(self) -> List[ResourceResult]:
        with self._lock:
            return list(self._failures)

    @property
    def seen_count(self) -> int:
        with self._lock:
            return len(self._seen)

    def submit(self, ref: ResourceRef) -> Future:
        """Queue ``ref`` unless its URL was already seen this run; return its future."""
        with self._lock:
            existing = self._seen.get(ref.source_url)
            if existing is not None:
                return existing
            future: Future = Future()
            self._seen[ref.source_url] = future

        self.reporter.resource_discovered()
        self._executor.submit(self._run, ref, future)
        return future

    def fetch_all(self, refs: Iterable[ResourceRef]) -> Dict[str, ResourceResult]:
        """
        Download (or join the pending download of) every ref and wait for all.

        Soft failures come back as results pointing at the placeholder. Fatal
        errors (filesystem, cancellation, auth on the API) are raised after
        every queued download has settled.
        """
        futures = {}
        for ref in refs:
            if ref.source_url not in futures:
                futures[ref.source_url] = self.submit(ref)
        if not futures:
            return {}

        wait(list(futures.values()))
        results = {}
        for url, future in futures.items():
            error = future.exception()
            if error is not None:
                raise error
            results[url] = future.result()
        return results

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending, cancel_futures=not wait_for_pending)

    def _run(self, ref: ResourceRef, future: Future) -> None:
        try:
            result = self._download(ref)
        except BaseException as e:
            future.set_exception(e)
            return
        future.set_result(result)
        self.reporter.resource_downloaded()

    def _download(self, ref: ResourceRef) -> ResourceResult:
        final_path = os.path.join(self.bundle_root, ref.local_path)

        if self.reuse_existing:
            existing = self._existing_copy(ref, final_path)
            if existing:
                self.logger.debug(f"Reusing archived resource {existing} for {ref.source_url}")
                self._record(ref, existing, 'reused')
                return ResourceResult(ref=ref, local_path=existing, ok=True, reused=True)

        last_error = None
        for attempt in range(self.max_retries + 1):
            if attempt > 0:
                delay = self.retry_delay * (2 ** (attempt - 1))
                self.logger.info(f"Retry {attempt} for {ref.source_url} after {delay:.1f}s delay")
                self._sleep(delay)
            try:
                local_path = self._fetch_to_file(ref, final_path)
                self._record(ref, local_path, 'downloaded')
                return ResourceResult(ref=ref, local_path=local_path, ok=True)
            except AuthError as e:
                # Upload hosts answer 403 for missing objects
                last_error = e.message
                break
            except requests.HTTPError as e:
                status = e.response.status_code if e.response is not None else None
                last_error = f"HTTP {status}"
                self.logger.warning(f"HTTP {status} for {ref.source_url} (attempt {attempt + 1})")
                if status in PERMANENT_STATUSES:
                    break
            except requests.RequestException as e:
                last_error = str(e) or type(e).__name__
                self.logger.warning(f"Request error for {ref.source_url} (attempt {attempt + 1}): {last_error}")

        self.logger.warning(f"Giving up on resource {ref.source_url}: {last_error}")
        result = ResourceResult(ref=ref, local_path=MISSING_PLACEHOLDER, ok=False, error=last_error)
        with self._lock:
            self._failures.append(result)
        self._record(ref, MISSING_PLACEHOLDER, 'failed', last_error)
        if self.error_tracker:
            self.error_tracker.log_warning(f"Resource download failed: {last_error}",
                                           context=ref.kind, url=ref.source_url)
        return result

    def _existing_copy(self, ref: ResourceRef, final_path: str) -> Optional[str]:
        candidates = [(final_path, ref.local_path)]
        if ref.kind == 'avatar':
            candidates.append((os.path.splitext(final_path)[0] + '.svg',
                               os.path.splitext(ref.local_path)[0] + '.svg'))
        for abs_path, rel_path in candidates:
            if os.path.isfile(abs_path) and os.path.getsize(abs_path) > 0:
                return rel_path
        return None

    def _fetch_to_file(self, ref: ResourceRef, final_path: str) -> str:
        """
        Stream into a temp file beside the target, then rename into place, so
        a bundle never references a half-written file.
        """
        resources_dir = os.path.dirname(final_path)
        try:
            os.makedirs(resources_dir, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(prefix='.', suffix='.part', dir=resources_dir)
        except OSError as e:
            raise WriteError(f"Cannot create file in {resources_dir}: {e}", path=resources_dir)

        target, rel_path = final_path, ref.local_path
        try:
            with os.fdopen(fd, 'wb') as f:
                headers = self.client.stream_to(ref.source_url, f)
            content_type = ''
            for key, value in headers.items():
                if key.lower() == 'content-type':
                    content_type = value.lower()
            if ref.kind == 'avatar' and 'svg' in content_type and not target.endswith('.svg'):
                target = os.path.splitext(final_path)[0] + '.svg'
                rel_path = os.path.splitext(ref.local_path)[0] + '.svg'
            os.replace(tmp_path, target)
        except requests.RequestException:
            self._discard(tmp_path)
            raise
        except OSError as e:
            self._discard(tmp_path)
            raise WriteError(f"Cannot write resource {target}: {e}", path=target)
        except BaseException:
            self._discard(tmp_path)
            raise
        return rel_path

    def _record(self, ref: ResourceRef, local_path: str, status: str, error: Optional[str] = None) -> None:
        if not self.ledger:
            return
        try:
            self.ledger.append(ResourceRecord(source_url=ref.source_url, local_path=local_path,
                                              kind=ref.kind, status=status, error=error))
        except OSError as e:
            raise WriteError(f"Cannot write resource ledger: {e}", path=self.ledger.path)

    def _discard(self, tmp_path: str) -> None:
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as e:
            self.logger.warning(f"Failed to remove partial file {tmp_path}: {e}")
