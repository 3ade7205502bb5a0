#!/usr/bin/env python3
"""
Tests for the on-disk bundle: target classification, atomic writes and
page rendering.
"""

import json

import pytest

from threadvault.core.errors import WriteError
from threadvault.core.models import Category, Post, ThreadMeta
from threadvault.core.resources import AVATAR_PLACEHOLDER, MISSING_PLACEHOLDER
from threadvault.utils.file_manager import (
    BundleWriter, TargetState, classify_target, page_filename, subdirectory_for,
)


def make_meta(thread_id=42, post_count=3):
    return ThreadMeta(id=thread_id, title="Bundle <test>", description="About things",
                      categories=(Category("Root", "F1592A"), Category("Child")),
                      tags=("python",), post_ids=tuple(range(1, post_count + 1)))


def make_post(post_id, content="<p>hello</p>"):
    return Post(id=post_id, number=post_id, user_id=1, name="Alice", username="alice",
                created_at="2024-01-01T00:00:00Z", content=content,
                emojis=[{"emoji": "heart", "image": "resources/x_heart.png", "count": 2}])


def test_classify_missing_and_empty(tmp_path):
    assert classify_target(tmp_path / "nowhere", 42) is TargetState.EMPTY
    assert classify_target(tmp_path, 42) is TargetState.EMPTY


def test_classify_non_bundle(tmp_path):
    (tmp_path / "notes.txt").write_text("unrelated")
    assert classify_target(tmp_path, 42) is TargetState.NON_BUNDLE


def test_classify_prior_bundle(tmp_path):
    BundleWriter(tmp_path).write_metadata(make_meta(42))
    assert classify_target(tmp_path, 42) is TargetState.PRIOR_BUNDLE
    assert classify_target(tmp_path, 7) is TargetState.NON_BUNDLE


def test_classify_corrupt_metadata(tmp_path):
    (tmp_path / "metadata.json").write_text("{not json")
    assert classify_target(tmp_path, 42) is TargetState.NON_BUNDLE


def test_classify_file_target(tmp_path):
    target = tmp_path / "file.txt"
    target.write_text("x")
    assert classify_target(target, 42) is TargetState.NON_BUNDLE


def test_subdirectory_for(tmp_path):
    assert subdirectory_for(tmp_path, "Q&A: what? / why") == str(tmp_path / "Q&A what  why")
    assert subdirectory_for(tmp_path, "...", 42) == str(tmp_path / "thread-42")


def test_prepare_creates_layout(tmp_path):
    writer = BundleWriter(tmp_path / "bundle")
    writer.prepare()
    root = tmp_path / "bundle"
    assert (root / "posts").is_dir()
    assert (root / "resources").is_dir()
    assert (root / MISSING_PLACEHOLDER).read_text().startswith("<svg")
    assert (root / AVATAR_PLACEHOLDER).read_text().startswith("<svg")


def test_metadata_file(tmp_path):
    writer = BundleWriter(tmp_path)
    writer.write_metadata(make_meta(), masked=True)
    data = json.loads((tmp_path / "metadata.json").read_text(encoding="utf-8"))
    assert data["thread"]["id"] == 42
    assert data["thread"]["categories"][0] == {"name": "Root", "color": "F1592A"}
    assert data["masked"] is True
    assert ThreadMeta.from_dict(data["thread"]) == make_meta()


def test_repeated_writes_are_identical(tmp_path):
    writer = BundleWriter(tmp_path)
    writer.write_metadata(make_meta())
    writer.write_post(make_post(1))
    first = [(tmp_path / "metadata.json").read_bytes(), (tmp_path / "posts" / "1.json").read_bytes()]
    writer.write_metadata(make_meta())
    writer.write_post(make_post(1))
    second = [(tmp_path / "metadata.json").read_bytes(), (tmp_path / "posts" / "1.json").read_bytes()]
    assert first == second


def test_posts_merge_and_load_in_order(tmp_path):
    writer = BundleWriter(tmp_path)
    writer.prepare()
    for post_id in (3, 1, 2):
        writer.write_post(make_post(post_id))
    writer.write_post(make_post(2, content="<p>edited</p>"))

    posts = writer.load_posts()
    assert [p.id for p in posts] == [1, 2, 3]
    assert posts[1].content == "<p>edited</p>"
    assert not list((tmp_path / "posts").glob("*.part"))


def test_render_pages(tmp_path):
    writer = BundleWriter(tmp_path)
    writer.prepare()
    for post_id in range(1, 46):
        writer.write_post(make_post(post_id))

    pages = writer.render_pages(make_meta(post_count=45), page_size=20)

    assert [p.rsplit("/", 1)[-1] for p in pages] == ["index.html", "2.html", "3.html"]
    index = (tmp_path / "index.html").read_text(encoding="utf-8")
    assert "Bundle &lt;test&gt;" in index
    assert 'href="2.html"' in index
    assert "Previous" not in index
    assert index.count('class="post"') == 20
    assert 'src="resources/x_heart.png"' in index
    last = (tmp_path / "3.html").read_text(encoding="utf-8")
    assert 'href="2.html"' in last
    assert "Next" not in last
    assert last.count('class="post"') == 5


def test_render_empty_thread(tmp_path):
    writer = BundleWriter(tmp_path)
    writer.prepare()
    pages = writer.render_pages(make_meta(post_count=0))
    assert len(pages) == 1
    assert (tmp_path / "index.html").exists()


def test_page_filename():
    assert page_filename(1) == "index.html"
    assert page_filename(4) == "4.html"


def test_write_error_carries_path(tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("x")
    writer = BundleWriter(blocker / "bundle")
    with pytest.raises(WriteError) as info:
        writer.prepare()
    assert "blocker" in info.value.path
