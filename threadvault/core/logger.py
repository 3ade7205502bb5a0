"""
Logging and Error Tracking

Central logging setup for ThreadVault (rotating debug and error logs plus
console output) and the ErrorTracker that keeps the soft failures (dead media
links) and fatal errors of an archive run for the end-of-run report.
"""

import logging
import logging.handlers
import os
import sys
import threading
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional, Dict, Any, List


APP_NAME = "threadvault"

FILE_FORMAT = logging.Formatter(
    '%(asctime)s | %(name)s | %(levelname)s | %(threadName)s | %(funcName)s:%(lineno)d | %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
CONSOLE_FORMAT = logging.Formatter('%(asctime)s | %(levelname)s | %(message)s', datefmt='%H:%M:%S')


class ThreadVaultLogger:
    """
    Owns the handlers of the ``threadvault`` logger.

    Package modules log through logging.getLogger(__name__) and inherit these
    handlers; nothing below the package root adds its own.
    """

    def __init__(self, log_dir: str = "logs", app_name: str = APP_NAME):
        self.log_dir = Path(log_dir)
        self.app_name = app_name
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.root = logging.getLogger(app_name)

    def _rotating(self, filename: str, level: int, max_mb: int, backups: int) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=max_mb * 1024 * 1024,
            backupCount=backups,
            encoding='utf-8'
        )
        handler.setLevel(level)
        handler.setFormatter(FILE_FORMAT)
        return handler

    def setup_logger(self, console_level: int = logging.INFO) -> logging.Logger:
        """
        Attach file and console handlers once; later calls only adjust the
        console level.
        """
        self.root.setLevel(logging.DEBUG)
        consoles = [h for h in self.root.handlers
                    if isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)]
        if self.root.handlers:
            for handler in consoles:
                handler.setLevel(console_level)
            return self.root

        console = logging.StreamHandler(sys.stderr)
        console.setLevel(console_level)
        console.setFormatter(CONSOLE_FORMAT)

        self.root.addHandler(self._rotating(f"{self.app_name}.log", logging.DEBUG, 10, 5))
        self.root.addHandler(self._rotating(f"{self.app_name}_errors.log", logging.ERROR, 5, 3))
        self.root.addHandler(console)
        return self.root

    def get_logger(self, name: str) -> logging.Logger:
        return logging.getLogger(f"{self.app_name}.{name}")

    def log_system_info(self):
        from threadvault import __version__

        logger = self.get_logger('system')
        logger.debug(f"ThreadVault {__version__} on Python {sys.version.split()[0]} ({sys.platform})")
        logger.debug(f"Working directory: {os.getcwd()}; logs in {self.log_dir.absolute()}")


@dataclass
class TrackedIssue:
    id: str
    severity: str                 # 'error' | 'warning'
    message: str
    kind: Optional[str] = None    # ArchiveError.kind, or the resource kind for warnings
    url: Optional[str] = None
    context: Optional[str] = None
    details: str = ""
    timestamp: datetime = field(default_factory=datetime.now)


class ErrorTracker:
    """
    Collects the issues of one run.

    Download workers report soft failures concurrently, so the lists are
    guarded by a lock.
    """

    def __init__(self, logger: logging.Logger):
        self.logger = logger
        self.errors: List[TrackedIssue] = []
        self.warnings: List[TrackedIssue] = []
        self._lock = threading.Lock()

    def _next_id(self, prefix: str, bucket: List[TrackedIssue]) -> str:
        return f"{prefix}_{datetime.now():%Y%m%d_%H%M%S}_{len(bucket):03d}"

    def log_error(self, error: Exception, context: str = None, url: str = None) -> str:
        """Record a fatal error and log it, with the traceback at DEBUG."""
        details = ''.join(traceback.format_exception(type(error), error, error.__traceback__))
        with self._lock:
            issue = TrackedIssue(id=self._next_id("ERR", self.errors), severity='error',
                                 message=f"{type(error).__name__}: {error}",
                                 kind=getattr(error, 'kind', None), url=url, context=context,
                                 details=details)
            self.errors.append(issue)

        self.logger.error(self._describe(issue))
        self.logger.debug(f"[{issue.id}] Traceback:\n{details}")
        return issue.id

    def log_warning(self, message: str, context: str = None, url: str = None) -> str:
        """Record a non-fatal problem, e.g. a resource replaced by the placeholder."""
        with self._lock:
            issue = TrackedIssue(id=self._next_id("WARN", self.warnings), severity='warning',
                                 message=message, kind=context, url=url, context=context)
            self.warnings.append(issue)

        self.logger.warning(self._describe(issue))
        return issue.id

    def _describe(self, issue: TrackedIssue) -> str:
        text = f"[{issue.id}] {issue.message}"
        if issue.context:
            text += f" (Context: {issue.context})"
        if issue.url:
            text += f" (URL: {issue.url})"
        return text

    def get_error_summary(self) -> Dict[str, Any]:
        with self._lock:
            kinds: Dict[str, int] = {}
            for issue in self.errors:
                kinds[issue.kind or 'unknown'] = kinds.get(issue.kind or 'unknown', 0) + 1
            return {
                'total_errors': len(self.errors),
                'total_warnings': len(self.warnings),
                'error_kinds': kinds,
                'recent_errors': [vars(i) for i in self.errors[-5:]],
                'recent_warnings': [vars(i) for i in self.warnings[-5:]],
            }

    def save_error_report(self, output_path: str):
        """
        Write a plain-text report of the run's issues. A report that cannot be
        written is logged, never raised.
        """
        with self._lock:
            issues = list(self.errors) + list(self.warnings)
        lines = [
            "THREADVAULT RUN REPORT",
            "=" * 50,
            f"Generated: {datetime.now():%Y-%m-%d %H:%M:%S}",
            f"Fatal errors: {len(self.errors)}",
            f"Unavailable resources and other warnings: {len(self.warnings)}",
            "",
        ]
        for issue in issues:
            lines.append(f"[{issue.id}] {issue.timestamp:%Y-%m-%d %H:%M:%S} {issue.severity.upper()}")
            lines.append(f"  {issue.message}")
            if issue.url:
                lines.append(f"  URL: {issue.url}")
            if issue.context:
                lines.append(f"  Context: {issue.context}")
            if issue.details:
                lines.extend("  " + line for line in issue.details.rstrip().splitlines())
            lines.append("-" * 50)

        try:
            Path(output_path).parent.mkdir(parents=True, exist_ok=True)
            with open(output_path, 'w', encoding='utf-8') as f:
                f.write("\n".join(lines) + "\n")
            self.logger.info(f"Run report saved to: {output_path}")
        except OSError as e:
            self.logger.error(f"Failed to save run report: {e}")


# Global logger instance
_logger_instance: Optional[ThreadVaultLogger] = None


def get_logger(name: str = None) -> logging.Logger:
    """Logger under the package namespace; handlers come from initialize_logging()."""
    if _logger_instance is not None and name:
        return _logger_instance.get_logger(name)
    return logging.getLogger(f"{APP_NAME}.{name}" if name else APP_NAME)


def initialize_logging(log_dir: str = "logs", level: int = logging.INFO) -> ThreadVaultLogger:
    global _logger_instance
    _logger_instance = ThreadVaultLogger(log_dir)
    _logger_instance.setup_logger(level)
    _logger_instance.log_system_info()
    return _logger_instance


def create_error_tracker(logger_name: str = None) -> ErrorTracker:
    return ErrorTracker(get_logger(logger_name))
