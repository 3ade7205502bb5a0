"""Command-line front end for ThreadVault."""

import argparse
import logging
import os
import sys
from typing import Optional, List

from threadvault import __version__
from threadvault import commands
from threadvault.core.controller import ArchiveController, RunConfig
from threadvault.core.errors import ArchiveError
from threadvault.core.logger import initialize_logging
from threadvault.core.progress import (
    CHUNKS_TOTAL, CHUNK_DOWNLOADED, FETCHING_META, RATE_LIMIT,
    RESOURCE_DOWNLOADED_INCREMENT, RESOURCE_TOTAL_INCREMENT,
)
from threadvault.utils.file_manager import TargetState
from threadvault.utils.validators import parse_thread_id

logger = logging.getLogger("threadvault.cli")

EXIT_CODES = {
    "auth": 3,
    "not_found": 4,
    "protocol": 5,
    "fetch": 6,
    "write": 7,
    "cancelled": 130,
}


class ProgressPrinter:
    """Turns the run's event stream into log lines."""

    def __init__(self):
        self.chunks_total = 0
        self.chunks_done = 0
        self.resources_total = 0
        self.resources_done = 0

    def __call__(self, event: dict):
        kind = event.get("type")
        if kind == FETCHING_META:
            logger.info("Fetching thread metadata...")
        elif kind == CHUNKS_TOTAL:
            self.chunks_total = event["value"]
            logger.info(f"{self.chunks_total} chunk(s) to fetch")
        elif kind == CHUNK_DOWNLOADED:
            self.chunks_done += 1
            logger.info(f"Chunk {self.chunks_done}/{self.chunks_total} downloaded")
        elif kind == RESOURCE_TOTAL_INCREMENT:
            self.resources_total += 1
        elif kind == RESOURCE_DOWNLOADED_INCREMENT:
            self.resources_done += 1
            if self.resources_done == self.resources_total:
                logger.info(f"Resources {self.resources_done}/{self.resources_total}")
        elif kind == RATE_LIMIT:
            value = event["value"]
            if value == 0:
                logger.info("Rate limit lifted, resuming")
            elif value % 10 == 0 or value <= 3:
                logger.info(f"Rate limited, resuming in {value}s")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="threadvault", description="Archive a forum thread for offline viewing")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--base-url", help="Forum root URL (default: $THREADVAULT_BASE_URL)")
    parser.add_argument("--token", help="User API key (default: $THREADVAULT_TOKEN)")
    parser.add_argument("--log-dir", default="logs", help="Directory for log files (default: logs)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show debug output on the console")

    sub = parser.add_subparsers(dest="command", required=True)

    archive = sub.add_parser("archive", help="Archive one thread")
    target = archive.add_mutually_exclusive_group(required=True)
    target.add_argument("--topic-id", help="Thread id")
    target.add_argument("--url", help="Thread URL, e.g. https://forum.example.org/t/slug/123")
    archive.add_argument("--save-to", required=True, help="Target directory")
    archive.add_argument("--anonymous", action="store_true", help="Replace user names with pseudonyms")
    archive.add_argument("--create-subdir", dest="create_subdir", action="store_true", default=True,
                         help="Write into a child directory named after the thread when the target "
                              "holds unrelated files (default)")
    archive.add_argument("--no-create-subdir", dest="create_subdir", action="store_false",
                         help="Write directly into a non-empty target directory")
    archive.add_argument("--chunk-size", type=int, default=None, help="Posts per request (default: 400)")
    archive.add_argument("--workers", type=int, default=None, help="Concurrent downloads (default: 4)")

    sub.add_parser("check-token", help="Check that the API token is accepted")
    return parser


def resolve_target(save_to: str, meta, create_subdir: bool) -> str:
    """Apply the target classification without prompting."""
    state = commands.classify_target(save_to, meta.id)
    if state is TargetState.NON_BUNDLE and create_subdir:
        target = commands.subdirectory_for(save_to, meta.title, meta.id)
        logger.info(f"{save_to} holds other files, archiving into {target}")
        return target
    if state is TargetState.PRIOR_BUNDLE:
        logger.info(f"{save_to} holds an earlier archive of this thread, updating it")
    return save_to


def cmd_archive(args, config: RunConfig) -> int:
    raw_id = args.topic_id if args.topic_id is not None else args.url
    ok, thread_id, err = parse_thread_id(raw_id)
    if not ok:
        logger.error(err)
        return 2

    printer = ProgressPrinter()
    controller = ArchiveController(config)
    try:
        try:
            meta = controller.resolve_metadata(thread_id, progress=printer)
        except ArchiveError as e:
            logger.error(f"{e.kind}: {e.message}")
            return EXIT_CODES.get(e.kind, 1)

        target = resolve_target(args.save_to, meta, args.create_subdir)
        result = commands.run_archive(config, meta, target, mask_users=args.anonymous,
                                      progress=printer, controller=controller)
    except KeyboardInterrupt:
        controller.stop()
        logger.error("Interrupted")
        return EXIT_CODES["cancelled"]
    finally:
        controller.close()

    if not result.ok or result.soft_failures:
        report = os.path.join(config.log_dir, f"thread_{thread_id}_errors.txt")
        summary = controller.error_tracker.get_error_summary()
        logger.warning(f"{summary['total_errors']} error(s) and {summary['total_warnings']} "
                       f"unavailable resource(s) or other warning(s), details in {report}")
        controller.error_tracker.save_error_report(report)
    if not result.ok:
        logger.error(f"{result.kind}: {result.message}")
        return EXIT_CODES.get(result.kind, 1)
    logger.info(result.message)
    return 0


def cmd_check_token(args, config: RunConfig) -> int:
    if commands.validate_token(config):
        logger.info("Token accepted")
        return 0
    logger.error("Token rejected")
    return EXIT_CODES["auth"]


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    initialize_logging(args.log_dir, logging.DEBUG if args.verbose else logging.INFO)

    overrides = {"base_url": args.base_url, "token": args.token, "log_dir": args.log_dir}
    if getattr(args, "chunk_size", None):
        overrides["chunk_size"] = args.chunk_size
    if getattr(args, "workers", None):
        overrides["max_workers"] = args.workers
    config = RunConfig.from_env(**overrides)

    try:
        if args.command == "archive":
            return cmd_archive(args, config)
        return cmd_check_token(args, config)
    except ValueError as e:
        logger.error(str(e))
        return 2


if __name__ == "__main__":
    sys.exit(main())
