"""DMS Tools - synchronize and read published content bundles.

This package downloads the content bundle a project publishes on the
DMS publishing service, keeps it installed locally, and provides lookup
over the directory tree described by the bundle's manifest.

Key modules:
- core: Bundle synchronization, content tree, path resolution, configuration
- commands: CLI command implementations
"""

__version__ = "0.1.0"
__author__ = "DMS Tools Team"

# Re-export commonly used types
from dms_tools.core.types import (
    BundleInfo,
    DirectoryNode,
    FileDescriptor,
)

__all__ = [
    "__version__",
    "__author__",
    "BundleInfo",
    "DirectoryNode",
    "FileDescriptor",
]
