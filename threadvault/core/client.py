"""
Forum HTTP Client Module

Single choke point for every outbound request of an archive run. It attaches
the API token, keeps the request rate polite, waits out server throttling and
classifies authentication failures before callers ever see a response.
"""

import json
import logging
import threading
from typing import Optional, Dict, Any, BinaryIO
from urllib.parse import urljoin, urlparse

import requests

from threadvault import __version__
from threadvault.core.errors import AuthError, CancelledError, ProtocolError
from threadvault.utils.rate_limiter import TokenBucket, BackoffController


DEFAULT_TIMEOUT = 10.0
DEFAULT_MAX_CONNECTIONS = 4


class ForumClient:
    """
    Authenticated, rate-limit-aware access to a Discourse forum.

    Every request goes through the same steps:
    - stop early if the run was cancelled
    - wait while the run is suspended by a throttling signal
    - take a connection slot and a token from the bucket
    - on HTTP 429, suspend the run for the server's wait and resend
    """

    def __init__(self,
                 base_url: str,
                 token: str,
                 backoff: Optional[BackoffController] = None,
                 bucket: Optional[TokenBucket] = None,
                 session: Optional[requests.Session] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 max_connections: int = DEFAULT_MAX_CONNECTIONS,
                 cancel_event: Optional[threading.Event] = None):
        """
        Args:
            base_url: Forum root, e.g. "https://forum.example.org"
            token: User API key sent in the User-Api-Key header
            backoff: Shared suspend state for the run
            bucket: Steady-rate limiter; None disables pacing
            session: Pre-built session (tests inject a fake)
            timeout: Per-request timeout in seconds
            max_connections: Concurrent requests allowed at once
            cancel_event: Set to abandon the run at the next request
        """
        self.base_url = base_url.rstrip('/') + '/'
        self.host = urlparse(self.base_url).netloc.lower()
        self.timeout = timeout
        self.backoff = backoff or BackoffController()
        self.bucket = bucket
        self.cancel_event = cancel_event or threading.Event()
        self.logger = logging.getLogger(__name__)
        self._conn_sem = threading.BoundedSemaphore(max(1, max_connections))

        self.session = session or requests.Session()
        self.session.headers.update({
            'User-Agent': f'ThreadVault/{__version__} (Forum Thread Archiver)',
            'Accept': 'application/json, */*;q=0.8',
        })
        if token:
            self.session.headers['User-Api-Key'] = token

    def url_for(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            return path
        return urljoin(self.base_url, path.lstrip('/'))

    def request(self, url: str, params: Optional[Any] = None, stream: bool = False) -> requests.Response:
        """
        Send a GET request, waiting out throttling as often as the server asks.

        Returns the response for any status other than 429/401/403; callers
        decide what other error statuses mean for them.

        Raises:
            CancelledError: The run was stopped
            AuthError: The server rejected the token
            ProtocolError: Throttled without a usable wait and no default configured
            requests.RequestException: Transport failures and timeouts
        """
        url = self.url_for(url)
        while True:
            self._check_cancelled()
            self.backoff.wait_until_clear()
            self._check_cancelled()

            with self._conn_sem:
                if self.bucket:
                    self.bucket.acquire()
                self.logger.debug(f"GET {url}")
                # The API key only goes to the forum itself, never to media hosts
                headers = None if urlparse(url).netloc.lower() == self.host else {'User-Api-Key': None}
                response = self.session.get(url, params=params, headers=headers,
                                            timeout=self.timeout, stream=stream)

            if response.status_code == 429:
                seconds = self.backoff.retry_after(response)
                response.close()
                self.backoff.suspend(seconds)
                continue

            if response.status_code in (401, 403):
                response.close()
                raise AuthError(f"Access denied by server (HTTP {response.status_code}) for {url}; "
                                f"the token may be invalid or expired")
            return response

    def get_json(self, path: str, params: Optional[Any] = None) -> Dict[str, Any]:
        """
        Fetch and decode a JSON document.

        Raises:
            requests.HTTPError: Non-success status other than 401/403/429
            ProtocolError: Body is not a JSON object
        """
        response = self.request(path, params=params)
        response.raise_for_status()
        raw = response.text
        try:
            data = json.loads(raw)
        except ValueError as e:
            self.logger.error(f"Malformed JSON from {self.url_for(path)}: {e}; payload: {raw[:500]!r}")
            raise ProtocolError(f"Malformed JSON response from {self.url_for(path)}", raw_payload=raw)
        if not isinstance(data, dict):
            self.logger.error(f"Unexpected JSON from {self.url_for(path)}: {raw[:500]!r}")
            raise ProtocolError(f"Expected a JSON object from {self.url_for(path)}", raw_payload=raw)
        return data

    def stream_to(self, url: str, dest: BinaryIO, chunk_size: int = 64 * 1024) -> Dict[str, str]:
        """
        Download ``url`` into an open binary file.

        Returns the response headers so callers can look at the content type.
        """
        response = self.request(url, stream=True)
        try:
            response.raise_for_status()
            for block in response.iter_content(chunk_size=chunk_size):
                if self.cancel_event.is_set():
                    raise CancelledError("Archive run cancelled during download")
                if block:
                    dest.write(block)
            return dict(response.headers)
        finally:
            response.close()

    def validate_token(self) -> bool:
        """Check the token against the current-session endpoint."""
        try:
            response = self.request('/session/current.json')
        except AuthError:
            return False
        except requests.RequestException as e:
            self.logger.warning(f"Token check failed: {e}")
            return False
        ok = response.ok
        response.close()
        return ok

    def _check_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise CancelledError("Archive run cancelled")

    def close(self):
        """Close the HTTP session."""
        self.session.close()
        self.logger.debug("Forum client session closed")
