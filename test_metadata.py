#!/usr/bin/env python3
"""
Tests for thread metadata resolution.
"""

import pytest

from conftest import BASE_URL, FakeForum, FakeResponse, no_sleep, post_record
from threadvault.core.client import ForumClient
from threadvault.core.errors import AuthError, NotFoundError, ProtocolError
from threadvault.core.metadata import MetadataResolver, summarize
from threadvault.utils.rate_limiter import BackoffController


def make_resolver(session):
    client = ForumClient(BASE_URL, "tok", backoff=BackoffController(sleep=no_sleep), session=session)
    return MetadataResolver(client)


def test_resolve_thread(session):
    posts = [post_record(10, 1, cooked="<p>First   post\n<b>body</b></p>"), post_record(11, 2), post_record(12, 3)]
    FakeForum(session, thread_id=42, title="Hello world", posts=posts,
              tags=["python", {"name": "archive"}, "python"])

    meta = make_resolver(session).resolve(42)

    assert meta.id == 42
    assert meta.title == "Hello world"
    assert meta.description == "First post body"
    assert meta.post_ids == (10, 11, 12)
    assert meta.tags == ("python", "archive")
    assert meta.categories == ()


def test_categories_are_root_first(session):
    FakeForum(session, thread_id=42, posts=[post_record(1, 1)], category_id=5)
    session.route("/c/5/show.json", {"category": {"name": "Child", "color": "0088CC", "parent_category_id": 1}})
    session.route("/c/1/show.json", {"category": {"name": "Root", "color": "F1592A"}})

    meta = make_resolver(session).resolve(42)

    assert [c.name for c in meta.categories] == ["Root", "Child"]
    assert meta.categories[1].color == "0088CC"


def test_thread_url_is_accepted(session):
    FakeForum(session, thread_id=42, posts=[post_record(1, 1)])
    meta = make_resolver(session).resolve("https://forum.example.org/t/some-topic/42")
    assert meta.id == 42


@pytest.mark.parametrize("bad", [0, -3, "abc", ""])
def test_invalid_thread_id(session, bad):
    with pytest.raises(ValueError):
        make_resolver(session).resolve(bad)
    assert session.calls == []


def test_missing_thread(session):
    with pytest.raises(NotFoundError):
        make_resolver(session).resolve(404)


def test_rejected_token(session):
    session.route("/t/42.json", FakeResponse(403, text="denied"))
    with pytest.raises(AuthError):
        make_resolver(session).resolve(42)


def test_missing_fields_are_protocol_errors(session):
    session.route("/t/42.json", {"id": 42, "post_stream": {"stream": [1]}})
    with pytest.raises(ProtocolError) as info:
        make_resolver(session).resolve(42)
    assert "title" in info.value.message
    assert info.value.raw_payload


def test_missing_stream_is_protocol_error(session):
    session.route("/t/42.json", {"id": 42, "title": "x", "post_stream": {"posts": []}})
    with pytest.raises(ProtocolError):
        make_resolver(session).resolve(42)


def test_server_error_is_protocol_error(session):
    session.route("/t/42.json", FakeResponse(502, text="bad gateway"))
    with pytest.raises(ProtocolError):
        make_resolver(session).resolve(42)


def test_resolve_is_repeatable(session):
    FakeForum(session, thread_id=42, posts=[post_record(i, i) for i in range(1, 6)])
    resolver = make_resolver(session)
    assert resolver.resolve(42) == resolver.resolve(42)


def test_summarize():
    assert summarize("") == ""
    assert summarize("<p>a</p>\n<p>b  c</p>") == "a b c"
