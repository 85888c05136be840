"""Core functionality for dms_tools.

This module provides the bundle pipeline and its supporting pieces:
- Configuration management
- Type definitions and errors
- Metadata client, archive fetcher and archive codec
- Bundle synchronizer and persisted state
- Content tree and path resolution
"""

from dms_tools.core.errors import (
    ArchiveError,
    BundleError,
    BundleUnavailableError,
    DecompressionError,
    DownloadCancelled,
    ExtractionError,
    FilesystemError,
    InvalidDataReturned,
    ManifestParseError,
    TransportError,
)
from dms_tools.core.types import BundleInfo, DirectoryNode, FileDescriptor

__all__ = [
    # Types
    "BundleInfo",
    "DirectoryNode",
    "FileDescriptor",
    # Errors
    "BundleError",
    "TransportError",
    "InvalidDataReturned",
    "DownloadCancelled",
    "ArchiveError",
    "DecompressionError",
    "ExtractionError",
    "ManifestParseError",
    "FilesystemError",
    "BundleUnavailableError",
]
