"""Bundle synchronization: metadata check, download and replace."""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

import structlog

from dms_tools.core.archive import ArchiveCodec, clear_directory
from dms_tools.core.errors import (
    BundleError,
    DownloadCancelled,
    InvalidDataReturned,
    ManifestParseError,
)
from dms_tools.core.fetcher import ArchiveFetcher
from dms_tools.core.metadata import BundleMetadataClient
from dms_tools.core.state import CacheStore
from dms_tools.core.transport import ProgressCallback
from dms_tools.core.tree import DEFAULT_MANIFEST, ContentTree, parse_manifest
from dms_tools.core.types import BundleInfo

logger = structlog.get_logger()

_directory_locks: dict[Path, threading.Lock] = {}
_directory_locks_guard = threading.Lock()


def directory_lock(bundle_dir: Path) -> threading.Lock:
    """Process-wide lock for a bundle directory, shared by every synchronizer."""
    key = bundle_dir.resolve()
    with _directory_locks_guard:
        lock = _directory_locks.get(key)
        if lock is None:
            lock = _directory_locks[key] = threading.Lock()
        return lock


class SyncState(StrEnum):
    """Synchronizer activity."""
    IDLE = "idle"
    CHECKING_METADATA = "checking_metadata"
    DOWNLOADING = "downloading"
    REPLACING = "replacing"


class SyncOutcome(StrEnum):
    """Terminal outcome of a sync."""
    UP_TO_DATE = "up_to_date"
    UPDATED = "updated"
    FAILED = "failed"


@dataclass
class SyncResult:
    """Result of a single sync.

    Attributes:
        outcome: What happened
        bundle_info: Latest bundle information, when it could be fetched
        error: Cause of a FAILED outcome
        stale_paths: Leftovers of an UPDATED replace that could not be removed
    """

    outcome: SyncOutcome
    bundle_info: BundleInfo | None = None
    error: BundleError | None = None
    stale_paths: list[Path] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.outcome != SyncOutcome.FAILED

    @property
    def reason(self) -> str | None:
        if self.error is None:
            return None
        return f"{type(self.error).__name__}: {self.error}"


class BundleSynchronizer:
    """Keeps a local bundle directory in line with the latest publish.

    Only one sync or clear runs at a time per bundle directory; concurrent
    callers block on the directory's lock, across synchronizers. ``submit`` runs syncs on a dedicated worker thread.
    No retries are attempted.
    """

    def __init__(
        self,
        metadata_client: BundleMetadataClient,
        fetcher: ArchiveFetcher,
        codec: ArchiveCodec,
        cache: CacheStore,
        bundle_dir: Path,
        tree: ContentTree | None = None,
        manifest_name: str = DEFAULT_MANIFEST,
    ):
        self.metadata_client = metadata_client
        self.fetcher = fetcher
        self.codec = codec
        self.cache = cache
        self.bundle_dir = bundle_dir
        self.tree = tree if tree is not None else ContentTree()
        self.manifest_name = manifest_name

        self._lock = directory_lock(bundle_dir)
        self._state = SyncState.IDLE
        self._executor: ThreadPoolExecutor | None = None

    @property
    def state(self) -> SyncState:
        return self._state

    def _set_state(self, state: SyncState) -> None:
        self._state = state
        logger.debug("sync_state", state=state.value)

    def _validate_manifest(self, staged_dir: Path) -> None:
        manifest = staged_dir / self.manifest_name
        if not manifest.is_file():
            raise ManifestParseError(f"Bundle has no {self.manifest_name}")
        parse_manifest(manifest.read_bytes())

    def _failed(self, error: BundleError, info: BundleInfo | None = None) -> SyncResult:
        logger.error("sync_failed", error=str(error), type=type(error).__name__)
        return SyncResult(SyncOutcome.FAILED, bundle_info=info, error=error)

    def sync(
        self,
        project_id: str,
        language: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> SyncResult:
        """Bring the local bundle up to date.

        Args:
            project_id: Project whose bundle to sync
            language: Bundle language, server default when None
            on_progress: Download progress callback (bytes_done, bytes_total)
            cancel_event: Cancels the download when set

        Returns:
            UP_TO_DATE, UPDATED or FAILED with the cause
        """
        with self._lock:
            try:
                return self._sync(project_id, language, on_progress, cancel_event)
            finally:
                self._set_state(SyncState.IDLE)

    def _sync(
        self,
        project_id: str,
        language: str | None,
        on_progress: ProgressCallback | None,
        cancel_event: threading.Event | None,
    ) -> SyncResult:
        log = logger.bind(project=project_id, language=language)

        self._set_state(SyncState.CHECKING_METADATA)
        try:
            info = self.metadata_client.get_latest_bundle_info(project_id, language)
        except BundleError as e:
            return self._failed(e)

        remote_timestamp = info.publish_timestamp
        if remote_timestamp is None:
            return self._failed(InvalidDataReturned("Latest bundle has no publish date"), info)
        if info.download_url is None:
            return self._failed(InvalidDataReturned("Latest bundle has no download URL"), info)

        current = self.cache.current_bundle_timestamp
        if remote_timestamp <= current:
            log.info("bundle_up_to_date", identifier=info.identifier, timestamp=current)
            return SyncResult(SyncOutcome.UP_TO_DATE, bundle_info=info)

        self._set_state(SyncState.DOWNLOADING)
        try:
            archive = self.fetcher.download_archive(
                info.download_url, on_progress=on_progress, cancel_event=cancel_event
            )
        except BundleError as e:
            return self._failed(e, info)

        try:
            if cancel_event is not None and cancel_event.is_set():
                return self._failed(DownloadCancelled("Sync cancelled before replace"), info)

            self._set_state(SyncState.REPLACING)
            with self.tree.gate.closed():
                report = self.codec.replace_bundle_directory(
                    archive, self.bundle_dir, validate=self._validate_manifest
                )
                try:
                    self.cache.record_bundle(info)
                except OSError as e:
                    log.error("cache_write_failed", error=str(e))
                self.tree.reload(self.bundle_dir, self.manifest_name)
        except BundleError as e:
            return self._failed(e, info)
        finally:
            try:
                archive.unlink(missing_ok=True)
            except OSError as e:
                log.warning("archive_cleanup_failed", path=str(archive), error=str(e))

        log.info(
            "bundle_updated",
            identifier=info.identifier,
            timestamp=remote_timestamp,
            files=report.file_count,
            stale=len(report.stale_paths),
        )
        return SyncResult(
            SyncOutcome.UPDATED, bundle_info=info, stale_paths=list(report.stale_paths)
        )

    def clear_bundle(self) -> list[Path]:
        """Delete the installed bundle and reset the cached state.

        Returns:
            Paths that could not be removed
        """
        with self._lock, self.tree.gate.closed():
            failed = clear_directory(self.bundle_dir)
            try:
                self.cache.clear()
            except OSError as e:
                logger.error("cache_write_failed", error=str(e))
            self.tree.reload(self.bundle_dir, self.manifest_name)
        logger.info("bundle_cleared", path=str(self.bundle_dir), failed=len(failed))
        return failed

    def submit(
        self,
        project_id: str,
        language: str | None = None,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Future[SyncResult]:
        """Run ``sync`` on the synchronizer's worker thread."""
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="bundle-sync")
        return self._executor.submit(self.sync, project_id, language, on_progress, cancel_event)

    def close(self) -> None:
        """Wait for queued syncs and stop the worker."""
        if self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None

    def __enter__(self) -> BundleSynchronizer:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
