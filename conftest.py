"""
Shared test fakes: an in-process stand-in for requests.Session serving a
small Discourse forum, and a recorder for progress events.
"""

import json
import threading
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import pytest
import requests

from threadvault.core.controller import RunConfig


BASE_URL = "https://forum.example.org"


class FakeResponse:
    def __init__(self, status_code: int = 200, json_data: Any = None, text: Optional[str] = None,
                 content: bytes = b"", headers: Optional[Dict[str, str]] = None):
        self.status_code = status_code
        if text is None:
            text = json.dumps(json_data) if json_data is not None else content.decode('utf-8', 'ignore')
        self.text = text
        self.content = content or text.encode('utf-8')
        self.headers = dict(headers or {})
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)

    def iter_content(self, chunk_size: int = 1):
        for i in range(0, len(self.content), chunk_size):
            yield self.content[i:i + chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """
    Routes GET requests to canned responses.

    A route is keyed by full URL or by path and maps to a FakeResponse, a list
    of FakeResponses served in turn (the last one repeats), or a callable
    ``(url, params) -> FakeResponse``. Unknown URLs answer 404.
    """

    def __init__(self):
        self.headers: Dict[str, str] = {}
        self.routes: Dict[str, Any] = {}
        self.prefixes: Dict[str, Any] = {}
        self.calls: List[tuple] = []
        self.request_headers: List[tuple] = []
        self.closed = False
        self._lock = threading.Lock()

    def route(self, key: str, handler):
        if isinstance(handler, dict):
            handler = FakeResponse(json_data=handler)
        self.routes[key] = handler

    def route_prefix(self, prefix: str, handler):
        """Serve every path starting with ``prefix``."""
        self.prefixes[prefix] = handler

    def _lookup(self, url: str):
        handler = self.routes.get(url)
        if handler is None:
            handler = self.routes.get(urlparse(url).path)
        if handler is None:
            path = urlparse(url).path
            for prefix, candidate in self.prefixes.items():
                if path.startswith(prefix):
                    return candidate
        return handler

    def get(self, url, params=None, headers=None, timeout=None, stream=False):
        with self._lock:
            self.calls.append((url, params))
            self.request_headers.append((url, headers))
            handler = self._lookup(url)
            if isinstance(handler, list):
                handler = handler.pop(0) if len(handler) > 1 else handler[0]
        if handler is None:
            return FakeResponse(404, text="not found")
        if callable(handler):
            return handler(url, params)
        return handler

    def calls_to(self, fragment: str) -> List[tuple]:
        with self._lock:
            return [c for c in self.calls if fragment in c[0]]

    def close(self):
        self.closed = True


class EventLog:
    """Progress callback that records every event."""

    def __init__(self):
        self.events: List[dict] = []
        self._lock = threading.Lock()

    def __call__(self, event: dict):
        with self._lock:
            self.events.append(dict(event))

    def types(self) -> List[str]:
        return [e["type"] for e in self.events]

    def values(self, event_type: str) -> List[Any]:
        return [e.get("value") for e in self.events if e["type"] == event_type]

    def count(self, event_type: str) -> int:
        return sum(1 for e in self.events if e["type"] == event_type)


def post_record(post_id: int, number: int, username: str = "alice", name: str = "Alice",
                user_id: int = 1, cooked: str = "<p>hello</p>", **extra) -> Dict[str, Any]:
    record = {
        "id": post_id,
        "post_number": number,
        "user_id": user_id,
        "username": username,
        "name": name,
        "created_at": f"2024-01-01T00:{number % 60:02d}:00.000Z",
        "cooked": cooked,
        "avatar_template": f"/user_avatar/forum.example.org/{username}/{{size}}/1_2.png",
        "actions_summary": [],
    }
    record.update(extra)
    return record


class FakeForum:
    """A Discourse forum with one thread, installed into a FakeSession."""

    def __init__(self, session: FakeSession, thread_id: int = 42, title: str = "Test thread",
                 posts: Optional[List[Dict[str, Any]]] = None, category_id: Optional[int] = None,
                 tags=()):
        self.session = session
        self.thread_id = thread_id
        self.title = title
        self.posts = list(posts or [])
        self.category_id = category_id
        self.tags = list(tags)
        self.chunk_failures: Dict[int, FakeResponse] = {}
        session.route(f"/t/{thread_id}.json", self._topic)
        session.route(f"/t/{thread_id}/posts.json", self._posts)
        session.route("/emojis.json", {})
        session.route_prefix("/user_avatar/", lambda url, params: FakeResponse(
            content=b"PNG-avatar", headers={"Content-Type": "image/png"}))
        session.route_prefix("/images/emoji/", lambda url, params: FakeResponse(
            content=b"PNG-emoji", headers={"Content-Type": "image/png"}))

    def _topic(self, url, params):
        return FakeResponse(json_data={
            "id": self.thread_id,
            "title": self.title,
            "category_id": self.category_id,
            "tags": self.tags,
            "post_stream": {
                "stream": [p["id"] for p in self.posts],
                "posts": self.posts[:1],
            },
        })

    def _posts(self, url, params):
        ids = [int(value) for key, value in params or [] if key == "post_ids[]"]
        first = ids[0] if ids else None
        if first in self.chunk_failures:
            return self.chunk_failures[first]
        by_id = {p["id"]: p for p in self.posts}
        return FakeResponse(json_data={"post_stream": {"posts": [by_id[i] for i in ids if i in by_id]}})


def no_sleep(seconds):
    return None


@pytest.fixture
def session():
    return FakeSession()


@pytest.fixture
def events():
    return EventLog()


@pytest.fixture
def config():
    return RunConfig(base_url=BASE_URL, token="test-token", rate_per_sec=0, retry_delay=0.0,
                     default_retry_after=30)

