"""Exception types raised while synchronizing and reading content bundles."""

from __future__ import annotations


class BundleError(Exception):
    """Base class for all bundle synchronization and lookup errors."""


class TransportError(BundleError):
    """Raised when an HTTP request fails at the network or protocol level.

    Attributes:
        url: The URL that was requested
        status_code: HTTP status code when the server answered, else None
    """

    def __init__(
        self,
        message: str,
        *,
        url: str | None = None,
        status_code: int | None = None,
    ):
        self.url = url
        self.status_code = status_code
        super().__init__(message)


class InvalidDataReturned(BundleError):
    """The server returned a response that could not be parsed into useful data."""


class DownloadCancelled(BundleError):
    """Raised when a download is cancelled before it completes."""


class ArchiveError(BundleError):
    """Raised when a bundle archive cannot be read or unpacked."""


class DecompressionError(ArchiveError):
    """The archive bytes are not a valid gzip stream."""


class ExtractionError(ArchiveError):
    """The decompressed payload is not a valid or safe tar archive."""


class ManifestParseError(BundleError):
    """The bundle manifest is not a JSON array of nodes."""


class FilesystemError(BundleError):
    """A file could not be moved or written into its cache location."""


class BundleUnavailableError(BundleError):
    """The bundle directory is being replaced and cannot be read."""
