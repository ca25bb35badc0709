"""Exception hierarchy for the acquisition pipeline."""

from __future__ import annotations


class ArchiverError(Exception):
    """Base class for every error raised by the archiver."""


class TransientNetworkError(ArchiverError):
    """A fetch or transfer failed in a way that may succeed on retry."""

    def __init__(self, url: str, reason: object = None) -> None:
        self.url = url
        self.reason = reason
        super().__init__(f"{url}: {reason}" if reason else url)


class NotFoundError(ArchiverError):
    """The remote resource is gone while the site itself is up."""

    def __init__(self, url: str) -> None:
        self.url = url
        super().__init__(f"Not found: {url}")


class SiteDownError(ArchiverError):
    """The remote site is judged unreachable; all acquisition must stop."""


class ValidationError(ArchiverError, ValueError):
    """Malformed input handed to the store."""


class FilesystemError(ArchiverError, OSError):
    """A local file operation failed for one item."""

    def __init__(self, path: object, reason: object = None) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"{path}: {reason}" if reason else str(path))
