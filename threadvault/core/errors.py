"""
Error taxonomy for archive runs.

Every fatal condition surfaces as an ArchiveError subclass carrying a short
``kind`` string and a human readable message, so the caller can render a
single terminal result without inspecting exception types.
"""

from typing import Optional


class ArchiveError(Exception):
    """Base class for all fatal archive errors."""

    kind = "archive"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'kind': self.kind, 'message': self.message}


class AuthError(ArchiveError):
    """The API token is missing, invalid or expired. Re-authenticate and retry."""

    kind = "auth"


class NotFoundError(ArchiveError):
    """The thread identifier does not resolve."""

    kind = "not_found"


class ProtocolError(ArchiveError):
    """The server answered with something we cannot interpret."""

    kind = "protocol"

    def __init__(self, message: str, raw_payload: Optional[str] = None):
        super().__init__(message)
        self.raw_payload = raw_payload


class FetchError(ArchiveError):
    """A post chunk could not be fetched for a reason other than throttling."""

    kind = "fetch"

    def __init__(self, message: str, chunk_index: int, last_success_index: Optional[int] = None):
        super().__init__(message)
        self.chunk_index = chunk_index
        # Index of the last chunk fetched successfully, or None if none was.
        self.last_success_index = last_success_index

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update(chunk_index=self.chunk_index, last_success_index=self.last_success_index)
        return data


class WriteError(ArchiveError):
    """A filesystem operation on the bundle failed."""

    kind = "write"

    def __init__(self, message: str, path: str):
        super().__init__(message)
        self.path = path

    def to_dict(self) -> dict:
        data = super().to_dict()
        data['path'] = self.path
        return data


class CancelledError(ArchiveError):
    kind = "cancelled"
