"""Error types raised by the processing pipeline, the backup codec and remote sync."""
from typing import Optional


class PixelLiteError(Exception):
    """Base class for all application errors."""


class DecodeError(PixelLiteError):
    """Input bytes could not be decoded as an image."""


class EncodeError(PixelLiteError):
    """An image could not be encoded into the requested container."""


class RecordLockedError(PixelLiteError):
    """The record was committed to history and can no longer be reprocessed."""


class ArchiveFormatError(PixelLiteError):
    """Backup archive is missing its manifest or the manifest is unreadable."""


class AIServiceError(PixelLiteError):
    """The AI relay failed or returned no usable result."""


class RemoteProtocolError(PixelLiteError):
    """Base class for failures talking to the remote backup store."""


class RemoteNetworkError(RemoteProtocolError):
    """The request never produced an HTTP response (DNS, connection, timeout)."""


class RemoteStatusError(RemoteProtocolError):
    """The remote store answered with an unexpected status code."""

    def __init__(self, method: str, url: str, status: int, body_excerpt: str = ""):
        self.method = method
        self.url = url
        self.status = status
        self.body_excerpt = body_excerpt
        message = f"{method} {url} failed with status {status}"
        if body_excerpt:
            message = f"{message}: {body_excerpt}"
        super().__init__(message)


class MalformedResponseError(RemoteProtocolError):
    """The remote store answered with a body that could not be parsed."""


class BackupDeleteError(RemoteProtocolError):
    """One or more deletes in a batch failed for a reason other than not-found."""

    def __init__(self, failures: dict[str, Exception], total: int):
        self.failures = failures
        self.total = total
        super().__init__(f"{len(failures)} of {total} backup deletes failed")

    @property
    def failure_count(self) -> int:
        return len(self.failures)


def excerpt(body: Optional[bytes], limit: int = 200) -> str:
    """First `limit` characters of a response body, decoded leniently."""
    if not body:
        return ""
    text = body.decode("utf-8", errors="replace").strip()
    return text[:limit]
