"""
Validation and Naming Utilities

This module validates user input (forum base URLs, thread ids and thread
URLs), normalizes resource URLs for de-duplication, and derives the stable,
filesystem-safe names used inside an archive bundle.
"""

import hashlib
import os
import re
import unicodedata
from urllib.parse import urlparse, urlunparse, urljoin, unquote
from typing import Tuple, Optional
import logging


MAX_NAME_BYTES = 255
RESOURCE_DIGEST_LENGTH = 10

_RESERVED_CHARS = re.compile(r'[/\?<>\\:\*\|"]')
_CONTROL_CHARS = re.compile(r'[\x00-\x1f\x80-\x9f]')
_WINDOWS_RESERVED = re.compile(r'^(con|prn|aux|nul|com[0-9]|lpt[0-9])(\..*)?$', re.I)
_THREAD_PATH = re.compile(r'/t/(?:[^/]*[^/\d][^/]*/)?(\d+)(?:/\d+)?/?$')


class URLValidator:
    """
    Validates forum URLs and extracts thread identifiers.
    """

    def __init__(self):
        self.logger = logging.getLogger(__name__)

        self.domain_pattern = re.compile(
            r'^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$'
        )

    def validate_base_url(self, url: str) -> Tuple[bool, str, str]:
        """
        Validate and normalize a forum base URL.

        Args:
            url: The forum root, with or without scheme

        Returns:
            Tuple of (is_valid, normalized_url, error_message)
        """
        if not url or not isinstance(url, str):
            return False, "", "URL cannot be empty"

        url = url.strip()
        parsed = urlparse(url)
        if parsed.scheme:
            if parsed.scheme not in ['http', 'https']:
                return False, "", "URL must use HTTP or HTTPS protocol"
        else:
            parsed = urlparse('https://' + url)

        if not parsed.netloc:
            return False, "", "URL must have a valid domain"

        domain = parsed.hostname or ''
        if not self.domain_pattern.match(domain):
            return False, "", "Invalid domain format"

        path = parsed.path.rstrip('/')
        normalized = urlunparse((parsed.scheme.lower(), parsed.netloc.lower(), path, '', '', ''))
        return True, normalized, ""

    def parse_thread_id(self, text) -> Tuple[bool, int, str]:
        """
        Extract a thread id from a bare number or a thread URL.

        Accepts "123", "https://forum/t/123", "https://forum/t/some-slug/123"
        and the same with a trailing post number.

        Returns:
            Tuple of (is_valid, thread_id, error_message)
        """
        if isinstance(text, bool):
            return False, 0, "Thread id must be a positive integer"
        if isinstance(text, int):
            if text > 0:
                return True, text, ""
            return False, 0, "Thread id must be a positive integer"
        if not text or not isinstance(text, str):
            return False, 0, "Thread id cannot be empty"

        text = text.strip()
        if text.isdigit():
            thread_id = int(text)
            if thread_id > 0:
                return True, thread_id, ""
            return False, 0, "Thread id must be a positive integer"

        parsed = urlparse(text)
        match = _THREAD_PATH.search(parsed.path)
        if not match:
            return False, 0, f"Not a thread URL: {text}"
        thread_id = int(match.group(1))
        if thread_id <= 0:
            return False, 0, "Thread id must be a positive integer"
        return True, thread_id, ""


_singleton_validator: Optional[URLValidator] = None


def get_validator() -> URLValidator:
    """Return a singleton URLValidator instance."""
    global _singleton_validator
    if _singleton_validator is None:
        _singleton_validator = URLValidator()
    return _singleton_validator


def validate_base_url(url: str) -> Tuple[bool, str, str]:
    return get_validator().validate_base_url(url)


def parse_thread_id(text) -> Tuple[bool, int, str]:
    return get_validator().parse_thread_id(text)


def normalize_resource_url(raw: str, base_url: str) -> Optional[str]:
    """
    Canonical absolute form of a resource reference, used as its identity.

    - protocol-relative and root-relative references are resolved against base_url
    - scheme and host are lowercased, default ports and fragments dropped
    Returns None for references that cannot be downloaded (data:, mailto:, ...).
    """
    if not raw or not isinstance(raw, str):
        return None
    raw = raw.strip()
    if not raw or raw.startswith('#'):
        return None
    lowered = raw.lower()
    if lowered.startswith(('data:', 'mailto:', 'javascript:', 'blob:', 'tel:')):
        return None

    if raw.startswith('//'):
        raw = 'https:' + raw
    absolute = urljoin(base_url.rstrip('/') + '/', raw)
    parsed = urlparse(absolute)
    if parsed.scheme not in ('http', 'https') or not parsed.netloc:
        return None

    host = parsed.netloc.lower()
    if host.endswith(':80') and parsed.scheme == 'http':
        host = host[:-3]
    if host.endswith(':443') and parsed.scheme == 'https':
        host = host[:-4]
    return urlunparse((parsed.scheme.lower(), host, parsed.path or '/', parsed.params, parsed.query, ''))


def url_extension(url: str) -> str:
    """Lowercased file extension of the URL path, without the dot."""
    path = urlparse(url).path
    name = path.rsplit('/', 1)[-1]
    if '.' not in name:
        return ''
    return name.rsplit('.', 1)[-1].lower()


def resource_filename(url: str) -> str:
    """
    Stable local file name for a resource URL.

    A short digest of the full URL keeps names unique (query strings and
    identically named files from different paths), while the original base
    name keeps them recognisable.
    """
    digest = hashlib.sha1(url.encode('utf-8')).hexdigest()[:RESOURCE_DIGEST_LENGTH]
    parsed = urlparse(url)
    base = unquote(parsed.path.rstrip('/').rsplit('/', 1)[-1])

    # Split before trimming so long names keep their extension
    stem, ext = os.path.splitext(base)
    ext = sanitize(ext)
    stem = sanitize(stem)[:120 - len(ext)]
    max_stem_bytes = MAX_NAME_BYTES - RESOURCE_DIGEST_LENGTH - 1 - len(ext.encode('utf-8'))
    stem = stem.encode('utf-8')[:max_stem_bytes].decode('utf-8', errors='ignore').rstrip('. ')
    return f"{digest}_{stem or 'resource'}{ext}"


def sanitize(text: str) -> str:
    """
    Make arbitrary text safe to use as a single file or directory name.

    Removes path separators, reserved and control characters, Windows device
    names and trailing dots/spaces, and truncates to 255 UTF-8 bytes.
    """
    if not isinstance(text, str):
        text = str(text)
    text = unicodedata.normalize('NFC', text)
    text = _RESERVED_CHARS.sub('', text)
    text = _CONTROL_CHARS.sub('', text)
    if text in ('.', '..'):
        return ''
    if _WINDOWS_RESERVED.match(text):
        return ''
    text = text.rstrip('. ')

    encoded = text.encode('utf-8')
    if len(encoded) > MAX_NAME_BYTES:
        text = encoded[:MAX_NAME_BYTES].decode('utf-8', errors='ignore').rstrip('. ')
    return text
