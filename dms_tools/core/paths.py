"""Resolution of bundle content paths and cached documents to local files."""

from __future__ import annotations

import errno
import os
import shutil
from pathlib import Path

import structlog

from dms_tools.core.errors import FilesystemError, InvalidDataReturned
from dms_tools.core.transport import HTTPTransport, ProgressCallback
from dms_tools.core.tree import ReadGate
from dms_tools.core.utils import last_path_segment

logger = structlog.get_logger()


class PathResolver:
    """Maps content paths and document URLs to files on disk.

    Only paths to files that exist are returned; nothing is fabricated.
    Bundle lookups wait on the read gate while a replace is in progress.
    """

    def __init__(
        self,
        bundle_dir: Path,
        documents_dir: Path,
        transport: HTTPTransport | None = None,
        gate: ReadGate | None = None,
    ):
        self.bundle_dir = bundle_dir
        self.documents_dir = documents_dir
        self.transport = transport
        self.gate = gate or ReadGate()

    def _existing_under(self, root: Path, relative: Path) -> Path | None:
        if relative.is_absolute():
            return None

        candidate = (root / relative).resolve()
        base = root.resolve()
        if base not in candidate.parents:
            return None
        return candidate if candidate.exists() else None

    def resolve_bundle_path(self, relative_path: str) -> Path | None:
        """Absolute path of a content path from a node, if the file exists."""
        self.gate.wait()
        return self._existing_under(self.bundle_dir, Path(relative_path))

    def resolve_resource(
        self,
        name: str,
        extension: str,
        subdirectory: str | None = None,
    ) -> Path | None:
        """Absolute path of a named bundle resource such as the manifest.

        Example:
            resolver.resolve_resource("structure", "json")
        """
        self.gate.wait()
        filename = f"{name}.{extension.lstrip('.')}" if extension else name
        relative = Path(subdirectory) / filename if subdirectory else Path(filename)
        return self._existing_under(self.bundle_dir, relative)

    def document_path(self, remote_url: str) -> Path | None:
        """Where a document from remote_url is stored, whether or not it exists."""
        name = last_path_segment(remote_url)
        if name is None:
            return None
        return self.documents_dir / name

    def resolve_document(self, remote_url: str) -> Path | None:
        """Local copy of a previously downloaded document, if present."""
        path = self.document_path(remote_url)
        if path is None or not path.is_file():
            return None
        return path

    def download_document(
        self,
        remote_url: str,
        on_progress: ProgressCallback | None = None,
    ) -> Path:
        """Download a document into the documents cache.

        An existing file with the same name is overwritten.

        Returns:
            Path of the cached document

        Raises:
            InvalidDataReturned: If the URL has no file name to store it under
            TransportError: If the download fails
            FilesystemError: If the file cannot be moved into the cache
        """
        if self.transport is None:
            raise RuntimeError("PathResolver has no transport for downloads")

        target = self.document_path(remote_url)
        if target is None:
            raise InvalidDataReturned(f"No file name in document URL: {remote_url}")

        tmp_path = self.transport.download_file(remote_url, on_progress=on_progress)
        staged = target.with_name(f".{target.name}.part")
        try:
            self.documents_dir.mkdir(parents=True, exist_ok=True)
            try:
                os.replace(tmp_path, target)
            except OSError as e:
                if e.errno != errno.EXDEV:
                    raise
                # Across filesystems: copy beside the target, then rename over it
                shutil.copyfile(tmp_path, staged)
                os.replace(staged, target)
                tmp_path.unlink(missing_ok=True)
        except OSError as e:
            tmp_path.unlink(missing_ok=True)
            staged.unlink(missing_ok=True)
            logger.error("document_store_failed", url=remote_url, path=str(target), error=str(e))
            raise FilesystemError(f"Failed to store document at {target}: {e}") from e

        logger.info("document_downloaded", url=remote_url, path=str(target))
        return target
