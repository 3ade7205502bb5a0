"""
ThreadVault Orchestrator: runs one archive of one thread end to end.

Metadata is resolved first; posts are then fetched chunk by chunk in post id
order, and for every chunk the embedded resources are downloaded, the content
rewritten to the local copies, identities masked if asked, and the posts
written to the bundle. Pages are rendered from the bundle at the end.
"""

from __future__ import annotations

import os
import time
import logging
import threading
from dataclasses import dataclass, replace
from typing import Callable, Optional, List, Dict, Any, Tuple

from .client import ForumClient
from .downloader import ResourceDownloader
from .errors import ArchiveError, CancelledError
from .fetcher import ChunkFetcher, PostBuilder, DEFAULT_CHUNK_SIZE
from .logger import create_error_tracker
from .masking import IdentityMasker
from .metadata import MetadataResolver
from .models import Post, PostChunk, ResourceRef, ThreadMeta
from .progress import ProgressReporter
from .resources import MISSING_PLACEHOLDER, ResourceCollector, ResourceRewriter
from threadvault.utils.file_manager import BundleWriter, TargetState, classify_target, DEFAULT_PAGE_SIZE
from threadvault.utils.manifest import ResourceLedger
from threadvault.utils.rate_limiter import TokenBucket, BackoffController, DEFAULT_RETRY_AFTER
from threadvault.utils.validators import validate_base_url


ENV_BASE_URL = "THREADVAULT_BASE_URL"
ENV_TOKEN = "THREADVAULT_TOKEN"


@dataclass
class RunConfig:
    base_url: str
    token: str = ""
    chunk_size: int = DEFAULT_CHUNK_SIZE
    page_size: int = DEFAULT_PAGE_SIZE
    max_workers: int = 4
    max_connections: int = 4
    max_retries: int = 3
    retry_delay: float = 1.0
    request_timeout: float = 10.0
    rate_per_sec: float = 5.0  # 0 disables pacing
    burst: int = 4
    default_retry_after: Optional[int] = DEFAULT_RETRY_AFTER  # None = fail on unusable Retry-After
    avatar_size: int = 48
    log_dir: str = "logs"

    @classmethod
    def from_env(cls, **overrides) -> "RunConfig":
        """Build a config from THREADVAULT_BASE_URL / THREADVAULT_TOKEN, explicit values winning."""
        values = {
            'base_url': os.environ.get(ENV_BASE_URL, ''),
            'token': os.environ.get(ENV_TOKEN, ''),
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**values)


class ArchiveController:
    def __init__(self,
                 config: RunConfig,
                 session=None,
                 sleep: Callable[[float], object] = time.sleep,
                 logger: Optional[logging.Logger] = None):
        ok, base_url, err = validate_base_url(config.base_url)
        if not ok:
            raise ValueError(f"Invalid forum URL '{config.base_url}': {err}")
        self.config = config
        self.base_url = base_url
        self.logger = logger or logging.getLogger(__name__)
        self.error_tracker = create_error_tracker('controller')
        self._sleep = sleep
        self._stop_event = threading.Event()
        self._progress: Optional[Callable[[dict], None]] = None
        self.reporter = ProgressReporter(self._deliver)

        self.backoff = BackoffController(on_tick=self._on_tick,
                                         default_retry_after=config.default_retry_after,
                                         sleep=sleep,
                                         cancel_event=self._stop_event)
        bucket = TokenBucket(rate_per_sec=config.rate_per_sec, burst=config.burst) if config.rate_per_sec > 0 else None
        self.client = ForumClient(base_url,
                                  config.token,
                                  backoff=self.backoff,
                                  bucket=bucket,
                                  session=session,
                                  timeout=config.request_timeout,
                                  max_connections=config.max_connections,
                                  cancel_event=self._stop_event)

    def stop(self):
        """Request cooperative cancellation; the run raises CancelledError at its next step."""
        self._stop_event.set()

    def close(self):
        self.client.close()

    def validate_token(self) -> bool:
        return self.client.validate_token()

    def _deliver(self, event: dict):
        if self._progress:
            self._progress(event)

    def _on_tick(self, seconds_remaining: int):
        self.reporter.rate_limit(seconds_remaining)

    def _start(self, progress: Optional[Callable[[dict], None]]):
        # Fresh counters per call so chunks-total is reported once per run
        self._progress = progress
        self.reporter = ProgressReporter(self._deliver)

    def _check_stopped(self):
        if self._stop_event.is_set():
            raise CancelledError("Archive run cancelled")

    def resolve_metadata(self, thread_id, progress: Optional[Callable[[dict], None]] = None) -> ThreadMeta:
        self._start(progress)
        self.reporter.fetching_meta()
        try:
            return MetadataResolver(self.client).resolve(thread_id)
        except ArchiveError as e:
            self.error_tracker.log_error(e, context='metadata')
            raise

    def run(self,
            meta: ThreadMeta,
            target_path: str,
            mask_users: bool = False,
            progress: Optional[Callable[[dict], None]] = None) -> Dict[str, Any]:
        """
        Archive ``meta`` into ``target_path``, merging into a prior bundle of
        the same thread if one is there.

        Returns:
            Run statistics

        Raises:
            ArchiveError subclasses for every fatal condition
        """
        self._start(progress)
        stats = {"posts": 0, "chunks": 0, "resources": 0, "soft_failures": 0,
                 "updated": False, "path": str(target_path)}

        state = classify_target(target_path, meta.id)
        stats["updated"] = state is TargetState.PRIOR_BUNDLE
        self.logger.info(f"Archiving thread {meta.id} '{meta.title}' into {target_path} "
                         f"({'update' if stats['updated'] else 'fresh'}, masked={mask_users})")

        writer = BundleWriter(target_path)
        downloader = None
        masker = IdentityMasker() if mask_users else None
        # The summary quotes the first post; a masked bundle gets it once its names are known
        bundle_meta = replace(meta, description="") if masker else meta
        try:
            self._check_stopped()
            writer.prepare()
            writer.write_metadata(bundle_meta, masked=mask_users)

            ledger = ResourceLedger(str(writer.resources_dir))
            if stats["updated"]:
                unavailable = ledger.failed_urls()
                if unavailable:
                    self.logger.info(f"{len(unavailable)} resource(s) were unavailable last time, retrying them")

            collector = ResourceCollector(self.base_url)
            rewriter = ResourceRewriter(collector)
            builder = PostBuilder(self.client)
            if meta.post_ids:
                builder.load_custom_emojis()
            downloader = ResourceDownloader(self.client,
                                            str(writer.root),
                                            self.reporter,
                                            ledger=ledger,
                                            max_workers=self.config.max_workers,
                                            max_retries=self.config.max_retries,
                                            retry_delay=self.config.retry_delay,
                                            error_tracker=self.error_tracker,
                                            sleep=self._sleep)
            fetcher = ChunkFetcher(self.client, self.reporter, chunk_size=self.config.chunk_size)

            for chunk in fetcher.iter_chunks(meta):
                self._check_stopped()
                written = self._process_chunk(chunk, builder, collector, rewriter, downloader, masker, writer)
                stats["posts"] += written
                stats["chunks"] += 1
                if masker and stats["chunks"] == 1 and meta.description:
                    bundle_meta = replace(meta, description=masker.mask_text(meta.description))
                    writer.write_metadata(bundle_meta, masked=True)

            self._check_stopped()
            writer.render_pages(bundle_meta, page_size=self.config.page_size)
        except ArchiveError as e:
            self.error_tracker.log_error(e, context='archive')
            raise
        finally:
            if downloader is not None:
                downloader.shutdown(wait_for_pending=not self._stop_event.is_set())
                stats["resources"] = downloader.seen_count
                stats["soft_failures"] = len(downloader.failures)

        progress = self.reporter.snapshot()
        self.logger.info(f"Archived {stats['posts']} posts in {progress['chunks_downloaded']} chunk(s) and "
                         f"{progress['resources_downloaded']}/{progress['resources_total']} resources "
                         f"({stats['soft_failures']} unavailable) into {target_path}")
        return stats

    def _process_chunk(self, chunk: PostChunk, builder: PostBuilder, collector: ResourceCollector,
                       rewriter: ResourceRewriter, downloader: ResourceDownloader,
                       masker: Optional[IdentityMasker], writer: BundleWriter) -> int:
        entries: List[Tuple[Post, Optional[str], List[Optional[str]]]] = []
        refs: List[ResourceRef] = []

        for raw in chunk.posts:
            post = builder.build(raw)
            if masker:
                # Masked bundles never request real avatars, quoted ones included
                post.content = IdentityMasker.strip_avatars(post.content)
            refs.extend(collector.collect(post.content))

            avatar_url = None if masker else collector.normalize(self._avatar_url(raw))
            if avatar_url:
                refs.append(collector.ref(avatar_url, 'avatar'))

            emoji_urls = []
            for emoji in post.emojis:
                url = collector.normalize(builder.emoji_url(emoji.get('emoji', '')))
                if url:
                    refs.append(collector.ref(url, 'emoji'))
                emoji_urls.append(url)
            entries.append((post, avatar_url, emoji_urls))

        # Every reference of the chunk is settled before any of its posts is written
        results = downloader.fetch_all(refs)
        mapping = {url: result.local_path for url, result in results.items()}

        for post, avatar_url, emoji_urls in entries:
            post.content = rewriter.rewrite(post.content, mapping)
            if avatar_url:
                post.avatar = mapping.get(avatar_url, MISSING_PLACEHOLDER)
            for emoji, url in zip(post.emojis, emoji_urls):
                emoji['image'] = mapping.get(url, MISSING_PLACEHOLDER) if url else None
            if masker:
                post = masker.mask_post(post)
            writer.write_post(post)
        return len(entries)

    def _avatar_url(self, raw: Dict[str, Any]) -> Optional[str]:
        template = raw.get('avatar_template')
        if not template:
            return None
        return template.replace('{size}', str(self.config.avatar_size))
