"""
Command surface for shells (GUI, CLI) driving the archive engine.

Every fatal condition of a run comes back as one ArchiveResult instead of an
exception, so a shell can render it without knowing the error types.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Callable, Optional

from threadvault.core.controller import ArchiveController, RunConfig
from threadvault.core.errors import ArchiveError
from threadvault.core.models import ThreadMeta
from threadvault.utils import file_manager
from threadvault.utils.file_manager import TargetState
from threadvault.utils import validators


logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    ok: bool
    kind: str
    message: str
    path: str
    soft_failures: int = 0
    posts: int = 0
    updated: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


def resolve_metadata(config: RunConfig, thread_id, session=None,
                     progress: Optional[Callable[[dict], None]] = None) -> ThreadMeta:
    """
    Resolve thread metadata.

    Raises:
        AuthError, NotFoundError, ProtocolError, ValueError for a bad id
    """
    controller = ArchiveController(config, session=session)
    try:
        return controller.resolve_metadata(thread_id, progress=progress)
    finally:
        controller.close()


def run_archive(config: RunConfig,
                meta: ThreadMeta,
                target_path: str,
                mask_users: bool = False,
                progress: Optional[Callable[[dict], None]] = None,
                session=None,
                controller: Optional[ArchiveController] = None) -> ArchiveResult:
    """
    Archive a resolved thread into ``target_path``.

    Long-running; emits progress events for its whole duration. Pass an
    existing ``controller`` to be able to stop() the run from another thread.
    """
    owns_controller = controller is None
    if owns_controller:
        controller = ArchiveController(config, session=session)
    try:
        stats = controller.run(meta, target_path, mask_users=mask_users, progress=progress)
    except ArchiveError as e:
        logger.error(f"Archive of thread {meta.id} failed ({e.kind}): {e.message}")
        return ArchiveResult(ok=False, kind=e.kind, message=e.message, path=str(target_path))
    finally:
        if owns_controller:
            controller.close()

    message = f"Archived {stats['posts']} posts into {stats['path']}"
    if stats['soft_failures']:
        message += f" ({stats['soft_failures']} resources unavailable)"
    return ArchiveResult(ok=True, kind="ok", message=message, path=stats['path'],
                         soft_failures=stats['soft_failures'], posts=stats['posts'],
                         updated=stats['updated'])


def sanitize(text: str) -> str:
    """Filename-safe form of ``text``."""
    return validators.sanitize(text)


def classify_target(path: str, thread_id: int) -> TargetState:
    return file_manager.classify_target(path, thread_id)


def subdirectory_for(path: str, title: str, thread_id: Optional[int] = None) -> str:
    return file_manager.subdirectory_for(path, title, thread_id)


def validate_token(config: RunConfig, session=None) -> bool:
    controller = ArchiveController(config, session=session)
    try:
        return controller.validate_token()
    finally:
        controller.close()
