#!/usr/bin/env python3
"""
Tests for the command surface and the command-line front end.
"""

import pytest

from conftest import BASE_URL, FakeForum, FakeResponse, no_sleep, post_record
from threadvault import cli, commands
from threadvault.core.controller import ArchiveController
from threadvault.core.errors import AuthError, NotFoundError
from threadvault.core.logger import create_error_tracker, initialize_logging
from threadvault.utils.file_manager import BundleWriter, TargetState


def test_resolve_metadata(config, session, events):
    FakeForum(session, posts=[post_record(1, 1)])
    meta = commands.resolve_metadata(config, 42, session=session, progress=events)
    assert meta.id == 42
    assert events.events == [{"type": "fetching-meta"}]
    assert session.closed


def test_resolve_metadata_errors(config, session):
    with pytest.raises(NotFoundError):
        commands.resolve_metadata(config, 9, session=session)
    session.route("/t/9.json", FakeResponse(401, text="expired"))
    with pytest.raises(AuthError):
        commands.resolve_metadata(config, 9, session=session)


def test_run_archive_ok(config, session, tmp_path):
    FakeForum(session, posts=[post_record(1, 1), post_record(2, 2)])
    meta = commands.resolve_metadata(config, 42, session=session)
    result = commands.run_archive(config, meta, str(tmp_path / "out"), session=session)
    assert result.ok
    assert result.kind == "ok"
    assert result.posts == 2
    assert result.path == str(tmp_path / "out")


def test_run_archive_turns_errors_into_result(config, session, tmp_path):
    forum = FakeForum(session, posts=[post_record(1, 1)])
    meta = commands.resolve_metadata(config, 42, session=session)
    forum.chunk_failures[1] = FakeResponse(401, text="expired")
    result = commands.run_archive(config, meta, str(tmp_path / "out"), session=session)
    assert not result.ok
    assert result.kind == "auth"
    assert result.to_dict()["message"]


def test_validate_token(config, session):
    session.route("/session/current.json", {"current_user": {"id": 1}})
    assert commands.validate_token(config, session=session)


def test_sanitize_and_targets(tmp_path):
    assert commands.sanitize("a/b") == "ab"
    assert commands.classify_target(str(tmp_path), 1) is TargetState.EMPTY
    assert commands.subdirectory_for(str(tmp_path), "T?") == str(tmp_path / "T")


def test_cli_target_resolution(tmp_path):
    meta = type("Meta", (), {"id": 42, "title": "My thread"})()
    assert cli.resolve_target(str(tmp_path), meta, True) == str(tmp_path)

    (tmp_path / "other.txt").write_text("x")
    assert cli.resolve_target(str(tmp_path), meta, True) == str(tmp_path / "My thread")
    assert cli.resolve_target(str(tmp_path), meta, False) == str(tmp_path)


def test_cli_prior_bundle_is_updated_in_place(tmp_path):
    from threadvault.core.models import ThreadMeta
    meta = ThreadMeta(id=42, title="My thread", description="")
    BundleWriter(tmp_path).write_metadata(meta)
    assert cli.resolve_target(str(tmp_path), meta, True) == str(tmp_path)


def test_cli_parser():
    args = cli.build_parser().parse_args(["archive", "--topic-id", "42", "--save-to", "out", "--anonymous"])
    assert args.command == "archive"
    assert args.topic_id == "42"
    assert args.anonymous
    assert args.create_subdir
    args = cli.build_parser().parse_args(["archive", "--url", "https://f.org/t/x/1", "--save-to", "o",
                                          "--no-create-subdir"])
    assert not args.create_subdir


def test_cli_rejects_bad_topic(tmp_path):
    code = cli.main(["--base-url", "https://forum.example.org", "--log-dir", str(tmp_path / "logs"),
                     "archive", "--topic-id", "abc", "--save-to", str(tmp_path / "out")])
    assert code == 2


def test_cli_reports_unavailable_resources(tmp_path, monkeypatch, session):
    FakeForum(session, posts=[post_record(1, 1, cooked='<p><img src="/uploads/gone.png"></p>')])
    monkeypatch.setattr(cli, "ArchiveController",
                        lambda config: ArchiveController(config, session=session, sleep=no_sleep))
    code = cli.main(["--base-url", BASE_URL, "--token", "t", "--log-dir", str(tmp_path / "logs"),
                     "archive", "--topic-id", "42", "--save-to", str(tmp_path / "out")])
    assert code == 0
    report = (tmp_path / "logs" / "thread_42_errors.txt").read_text(encoding="utf-8")
    assert "Fatal errors: 0" in report
    assert "/uploads/gone.png" in report


def test_error_tracker(tmp_path):
    initialize_logging(str(tmp_path / "logs"))
    tracker = create_error_tracker("test")
    tracker.log_warning("Resource download failed: HTTP 404", context="image", url="https://x.org/a.png")
    try:
        raise NotFoundError("Thread 9 not found")
    except NotFoundError as e:
        error_id = tracker.log_error(e, context="metadata")
    summary = tracker.get_error_summary()
    assert error_id.startswith("ERR_")
    assert summary["total_errors"] == 1
    assert summary["total_warnings"] == 1
    assert summary["recent_errors"][0]["kind"] == "not_found"
    report = tmp_path / "report.txt"
    tracker.save_error_report(str(report))
    assert "Thread 9 not found" in report.read_text(encoding="utf-8")
