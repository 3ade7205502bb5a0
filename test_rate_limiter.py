#!/usr/bin/env python3
"""
Tests for request pacing and throttling backoff, without real waiting.
"""

import threading
import time
from email.utils import format_datetime
from datetime import datetime, timedelta, timezone

import pytest

from conftest import FakeResponse, no_sleep
from threadvault.core.errors import ProtocolError
from threadvault.utils.rate_limiter import BackoffController, TokenBucket


def test_retry_after_header_seconds():
    backoff = BackoffController(sleep=no_sleep)
    assert backoff.retry_after(FakeResponse(429, headers={"Retry-After": "5"})) == 5
    assert backoff.retry_after(FakeResponse(429, headers={"retry-after": "2.2"})) == 3


def test_retry_after_http_date():
    backoff = BackoffController(sleep=no_sleep)
    when = datetime.now(timezone.utc) + timedelta(seconds=120)
    seconds = backoff.retry_after(FakeResponse(429, headers={"Retry-After": format_datetime(when, usegmt=True)}))
    assert 100 <= seconds <= 121


def test_retry_after_from_discourse_body():
    backoff = BackoffController(sleep=no_sleep)
    response = FakeResponse(429, json_data={"errors": ["slow down"], "extras": {"wait_seconds": 7}})
    assert backoff.retry_after(response) == 7


def test_retry_after_falls_back_to_default():
    backoff = BackoffController(sleep=no_sleep, default_retry_after=30)
    assert backoff.retry_after(FakeResponse(429, text="Too Many Requests")) == 30
    assert backoff.retry_after(FakeResponse(429, headers={"Retry-After": "soon"})) == 30


def test_retry_after_without_default_is_protocol_error():
    backoff = BackoffController(sleep=no_sleep, default_retry_after=None)
    with pytest.raises(ProtocolError) as info:
        backoff.retry_after(FakeResponse(429, text="Too Many Requests"))
    assert info.value.raw_payload == "Too Many Requests"


def test_suspend_counts_down_to_zero():
    ticks, slept = [], []
    backoff = BackoffController(on_tick=ticks.append, sleep=slept.append)
    backoff.suspend(5)
    assert ticks == [5, 4, 3, 2, 1, 0]
    assert slept == [1, 1, 1, 1, 1]
    assert not backoff.suspended
    assert backoff.seconds_remaining == 0


def test_suspend_zero_still_reports_zero():
    ticks = []
    backoff = BackoffController(on_tick=ticks.append, sleep=no_sleep)
    backoff.suspend(0)
    assert ticks == [0]


def test_other_workers_wait_until_countdown_finishes():
    order = []
    lock = threading.Lock()
    started = threading.Event()

    def tick(n):
        with lock:
            order.append(n)
        started.set()

    backoff = BackoffController(on_tick=tick, sleep=lambda s: time.sleep(0.02))
    owner = threading.Thread(target=backoff.suspend, args=(3,))
    owner.start()
    assert started.wait(2)

    def waiter():
        backoff.wait_until_clear()
        with lock:
            order.append("clear")

    workers = [threading.Thread(target=waiter) for _ in range(3)]
    for w in workers:
        w.start()
    owner.join(5)
    for w in workers:
        w.join(5)

    assert order[:4] == [3, 2, 1, 0]
    assert order[4:] == ["clear", "clear", "clear"]


def test_longer_signal_restarts_countdown():
    ticks = []
    backoff = BackoffController(on_tick=ticks.append)
    joined = []

    def sleep(seconds):
        if not joined:
            t = threading.Thread(target=backoff.suspend, args=(5,))
            joined.append(t)
            t.start()
            deadline = time.time() + 2
            while backoff.signals < 2 and time.time() < deadline:
                time.sleep(0.005)

    backoff._sleep = sleep
    backoff.suspend(2)
    joined[0].join(2)

    assert ticks == [2, 5, 4, 3, 2, 1, 0]
    assert backoff.signals == 2


def test_cancellation_interrupts_countdown():
    ticks = []
    cancel = threading.Event()
    backoff = BackoffController(on_tick=ticks.append, sleep=lambda s: cancel.set(), cancel_event=cancel)
    backoff.suspend(10)
    assert ticks == [10]
    assert not backoff.suspended


def test_token_bucket_allows_burst():
    bucket = TokenBucket(rate_per_sec=1.0, burst=4)
    start = time.monotonic()
    for _ in range(4):
        bucket.acquire()
    assert time.monotonic() - start < 0.5


if __name__ == "__main__":
    test_suspend_counts_down_to_zero()
    test_retry_after_header_seconds()
    print("✓ rate limiter tests passed")
