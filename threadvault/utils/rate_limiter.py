"""
Request pacing and server-driven backoff.

TokenBucket keeps the average request rate polite even with several workers.
BackoffController handles the server's throttling signal (HTTP 429): it works
out how long to wait, counts down once per second through a callback, and
holds every worker of the run until the countdown reaches zero.
"""

from __future__ import annotations

import json
import logging
import math
import random
import threading
import time
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Callable, Optional

from threadvault.core.errors import ProtocolError


DEFAULT_RETRY_AFTER = 30


class TokenBucket:
    def __init__(self, rate_per_sec: float = 5.0, burst: int = 4, jitter_ms: int = 0):
        """
        Args:
            rate_per_sec: average tokens per second (5.0 = one token every 200ms)
            burst: bucket capacity
            jitter_ms: random jitter added after acquire to avoid lockstep
        """
        self.rate = rate_per_sec
        self.capacity = burst
        self.tokens = burst
        self.last = time.monotonic()
        self.lock = threading.Lock()
        self.jitter_ms = jitter_ms

    def acquire(self, weight: int = 1):
        weight = min(weight, self.capacity)
        while True:
            with self.lock:
                now = time.monotonic()
                elapsed = now - self.last
                self.tokens = min(self.capacity, self.tokens + elapsed * self.rate)
                self.last = now
                if self.tokens >= weight:
                    self.tokens -= weight
                    break
                needed = weight - self.tokens
                wait = max(needed / self.rate, 0.01)
            time.sleep(wait)

        if self.jitter_ms > 0:
            time.sleep(random.uniform(0, self.jitter_ms) / 1000.0)


class BackoffController:
    """
    Shared suspend state for one archive run.

    The first worker to hit a throttling signal owns the countdown; any other
    worker that hits one meanwhile joins the wait (raising the remaining time
    if its signal asks for longer), and workers about to send a request block
    in wait_until_clear(). Nobody proceeds before the countdown has emitted 0.
    """

    def __init__(self,
                 on_tick: Optional[Callable[[int], None]] = None,
                 default_retry_after: Optional[int] = DEFAULT_RETRY_AFTER,
                 sleep: Callable[[float], object] = time.sleep,
                 cancel_event: Optional[threading.Event] = None):
        self.on_tick = on_tick
        self.default_retry_after = default_retry_after
        self.logger = logging.getLogger(__name__)
        self._sleep = sleep
        self._cancel_event = cancel_event
        self._cond = threading.Condition()
        self._remaining = 0
        self._counting = False
        self._raised = False
        self.signals = 0

    @property
    def seconds_remaining(self) -> int:
        with self._cond:
            return self._remaining

    @property
    def suspended(self) -> bool:
        with self._cond:
            return self._counting

    def retry_after(self, response) -> int:
        """
        Work out the wait demanded by a throttling response.

        Looks at the Retry-After header (delta-seconds or HTTP-date), then at
        the ``extras.wait_seconds`` field Discourse puts in 429 bodies.
        """
        header = response.headers.get('Retry-After') or response.headers.get('retry-after')
        seconds = _parse_retry_after_header(header) if header else None

        if seconds is None:
            seconds = _parse_wait_seconds_body(getattr(response, 'text', '') or '')

        if seconds is not None:
            return seconds

        if self.default_retry_after is None:
            raise ProtocolError("Throttled without a usable Retry-After value",
                                raw_payload=(getattr(response, 'text', '') or '')[:2000])

        self.logger.warning(f"Throttled without a usable Retry-After value, "
                            f"waiting the default {self.default_retry_after}s")
        return self.default_retry_after

    def suspend(self, seconds: int) -> None:
        """Block the calling worker, and with it the whole run, for ``seconds``."""
        seconds = max(int(seconds), 0)
        with self._cond:
            self.signals += 1
            if self._counting:
                if seconds > self._remaining:
                    self._remaining = seconds
                    self._raised = True
                while self._counting:
                    self._cond.wait()
                return
            self._counting = True
            self._remaining = seconds

        self.logger.info(f"Rate limited by server, pausing for {seconds}s")
        try:
            while True:
                with self._cond:
                    current = self._remaining
                if self.on_tick:
                    self.on_tick(current)
                if current <= 0:
                    break
                self._sleep(1)
                if self._cancel_event is not None and self._cancel_event.is_set():
                    break
                with self._cond:
                    if self._raised:
                        # A longer signal arrived mid-countdown; restart from it.
                        self._raised = False
                    else:
                        self._remaining -= 1
        finally:
            with self._cond:
                self._remaining = 0
                self._counting = False
                self._cond.notify_all()
        self.logger.info("Rate limit wait finished, resuming")

    def wait_until_clear(self) -> None:
        with self._cond:
            while self._counting:
                self._cond.wait()


def _parse_retry_after_header(value: str) -> Optional[int]:
    value = value.strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        if seconds < 0 or math.isnan(seconds) or math.isinf(seconds):
            return None
        return int(math.ceil(seconds))
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if when is None:
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    delta = (when - datetime.now(timezone.utc)).total_seconds()
    return max(int(math.ceil(delta)), 0)


def _parse_wait_seconds_body(text: str) -> Optional[int]:
    if not text:
        return None
    try:
        body = json.loads(text)
    except ValueError:
        return None
    if not isinstance(body, dict):
        return None
    extras = body.get('extras') or {}
    wait = extras.get('wait_seconds') if isinstance(extras, dict) else None
    if isinstance(wait, (int, float)) and not isinstance(wait, bool) and wait >= 0:
        return int(math.ceil(wait))
    return None
