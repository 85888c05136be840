"""Gzip/tar bundle archive handling with a staged directory replace.

A bundle archive is a gzip-compressed tar file. Installing one never
touches the live bundle directory until the new content has been fully
extracted and validated:

    <parent>/
    ├── CIEBundle/                  # live bundle
    └── .CIEBundle-staging-XXXX/    # created per replace, removed afterwards
        ├── data.tar                # decompressed payload
        ├── bundle/                 # extraction target, renamed to CIEBundle/
        └── previous/               # old live bundle after the swap
"""

from __future__ import annotations

import gzip
import os
import shutil
import sys
import tarfile
import tempfile
import zlib
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog

from dms_tools.core.errors import ArchiveError, DecompressionError, ExtractionError

logger = structlog.get_logger()

TAR_NAME = "data.tar"


@dataclass
class ReplaceReport:
    """Result of a successful bundle replace.

    Attributes:
        destination: The live bundle directory
        file_count: Number of regular files in the new bundle
        stale_paths: Leftovers (old bundle, temp tar) that could not be removed
    """

    destination: Path
    file_count: int = 0
    stale_paths: list[Path] = field(default_factory=list)

    @property
    def clean(self) -> bool:
        return not self.stale_paths


def _rmtree(path: Path, on_error: Callable[[Any, str, BaseException], None]) -> None:
    if sys.version_info >= (3, 12):
        shutil.rmtree(path, onexc=on_error)
    else:
        shutil.rmtree(
            path, onerror=lambda func, failed_path, exc_info: on_error(func, failed_path, exc_info[1])
        )


def _remove_tree(path: Path) -> list[Path]:
    """Delete a file or directory tree, collecting paths that could not be removed."""
    failed: list[Path] = []

    def on_error(func, failed_path, exc: BaseException) -> None:
        logger.warning("remove_failed", path=str(failed_path), error=str(exc))
        failed.append(Path(failed_path))

    if path.is_dir() and not path.is_symlink():
        _rmtree(path, on_error)
    else:
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            on_error(None, path, e)
    return failed


def clear_directory(directory: Path) -> list[Path]:
    """Remove every entry under a directory, recursively and best-effort.

    A failure on one entry does not stop the others.

    Returns:
        Paths that could not be removed
    """
    if not directory.is_dir():
        return []

    failed: list[Path] = []
    try:
        entries = list(directory.iterdir())
    except OSError as e:
        logger.warning("list_directory_failed", path=str(directory), error=str(e))
        return [directory]

    for entry in entries:
        failed.extend(_remove_tree(entry))
    if entries:
        logger.info("directory_cleared", path=str(directory), entries=len(entries), failed=len(failed))
    return failed


class ArchiveCodec:
    """Decompresses and extracts bundle archives."""

    def gunzip(self, data: bytes) -> bytes:
        """Decompress a gzip byte stream.

        Raises:
            DecompressionError: If data is not valid gzip
        """
        try:
            return gzip.decompress(data)
        except (OSError, EOFError, zlib.error) as e:
            raise DecompressionError(f"Archive is not a valid gzip stream: {e}") from e

    def extract_tar(self, tar_path: Path, destination: Path) -> int:
        """Extract a tar file into a directory.

        Members that would land outside the destination, absolute paths and
        links pointing outside it are rejected.

        Returns:
            Number of regular files extracted

        Raises:
            ExtractionError: If the tar file is invalid or unsafe
        """
        destination.mkdir(parents=True, exist_ok=True)
        root = destination.resolve()

        try:
            with tarfile.open(tar_path, "r:") as tar:
                members = tar.getmembers()
                for member in members:
                    target = (root / member.name).resolve()
                    if target != root and root not in target.parents:
                        raise ExtractionError(f"Unsafe member in archive: {member.name}")
                tar.extractall(destination, members=members, filter="data")
        except ExtractionError:
            raise
        except (tarfile.TarError, OSError) as e:
            raise ExtractionError(f"Failed to extract {tar_path.name}: {e}") from e

        return sum(1 for member in members if member.isfile())

    def replace_bundle_directory(
        self,
        archive_file: Path,
        destination_dir: Path,
        validate: Callable[[Path], None] | None = None,
    ) -> ReplaceReport:
        """Replace a bundle directory with the contents of an archive.

        The archive is unpacked into a staging directory beside the
        destination and swapped in by rename only once extraction and
        validation have succeeded. On any failure the live bundle is left
        as it was.

        Args:
            archive_file: Downloaded gzip-compressed tar file
            destination_dir: Live bundle directory
            validate: Optional check run on the staged directory; raising
                aborts the replace

        Returns:
            Report of the replace, including leftovers that could not be removed

        Raises:
            ArchiveError: If the archive cannot be read
            DecompressionError: If the archive is not gzip
            ExtractionError: If the payload is not a valid tar archive
        """
        try:
            data = archive_file.read_bytes()
        except OSError as e:
            raise ArchiveError(f"Failed to read archive {archive_file}: {e}") from e

        payload = self.gunzip(data)
        del data

        destination_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = Path(
            tempfile.mkdtemp(prefix=f".{destination_dir.name}-staging-", dir=destination_dir.parent)
        )
        staged_bundle = staging / "bundle"
        previous = staging / "previous"

        try:
            tar_path = staging / TAR_NAME
            try:
                tar_path.write_bytes(payload)
            except OSError as e:
                raise ArchiveError(f"Failed to write {tar_path}: {e}") from e
            del payload

            file_count = self.extract_tar(tar_path, staged_bundle)
            if validate is not None:
                validate(staged_bundle)

            self._swap(staged_bundle, destination_dir, previous)
        except BaseException:
            if previous.exists() and not destination_dir.exists():
                for entry in staging.iterdir():
                    if entry != previous:
                        _remove_tree(entry)
            else:
                _remove_tree(staging)
            raise

        report = ReplaceReport(destination=destination_dir, file_count=file_count)
        report.stale_paths = _remove_tree(staging)
        logger.info(
            "bundle_replaced",
            path=str(destination_dir),
            files=file_count,
            stale=len(report.stale_paths),
        )
        return report

    def _swap(self, staged: Path, destination: Path, previous: Path) -> None:
        had_previous = destination.exists()
        if had_previous:
            try:
                os.replace(destination, previous)
            except OSError as e:
                raise ArchiveError(f"Failed to move old bundle aside: {e}") from e

        try:
            os.replace(staged, destination)
        except OSError as e:
            if had_previous:
                try:
                    os.replace(previous, destination)
                except OSError as restore_error:
                    logger.error(
                        "bundle_restore_failed", previous=str(previous), error=str(restore_error)
                    )
                    raise ArchiveError(
                        f"Failed to move new bundle into place: {e}; "
                        f"old bundle left at {previous}"
                    ) from e
            raise ArchiveError(f"Failed to move new bundle into place: {e}") from e
