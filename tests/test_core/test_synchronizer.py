"""Tests for synchronizer.py module."""

import errno
import json
import threading
from unittest.mock import Mock, patch

import pytest

from dms_tools.core.archive import ArchiveCodec
from dms_tools.core.errors import (
    BundleUnavailableError,
    DecompressionError,
    DownloadCancelled,
    InvalidDataReturned,
    ManifestParseError,
    TransportError,
)
from dms_tools.core.fetcher import ArchiveFetcher
from dms_tools.core.metadata import BundleMetadataClient
from dms_tools.core.state import CacheStore, MemoryStore
from dms_tools.core.synchronizer import BundleSynchronizer, SyncOutcome, SyncResult, SyncState
from dms_tools.core.tree import ContentTree, ReadGate

METADATA_PATH = "/api/projects/42/publishes/latest"
ARCHIVE_PATH = "/bundles/bundle-42.tar.gz"


def _files_under(directory):
    return sorted(
        path.relative_to(directory).as_posix() for path in directory.rglob("*") if path.is_file()
    )


@pytest.fixture
def bundle_dir(temp_dir):
    return temp_dir / "data" / "CIEBundle"


@pytest.fixture
def synchronizer(transport, cache, bundle_dir):
    tree = ContentTree(gate=ReadGate(timeout=1.0))
    sync = BundleSynchronizer(
        BundleMetadataClient(transport),
        ArchiveFetcher(transport),
        ArchiveCodec(),
        cache,
        bundle_dir,
        tree=tree,
    )
    yield sync
    sync.close()


class TestSyncResult:
    """Test SyncResult class."""

    def test_ok(self):
        assert SyncResult(SyncOutcome.UPDATED).ok
        assert SyncResult(SyncOutcome.UP_TO_DATE).ok
        assert not SyncResult(SyncOutcome.FAILED).ok

    def test_reason(self):
        assert SyncResult(SyncOutcome.UPDATED).reason is None
        result = SyncResult(SyncOutcome.FAILED, error=InvalidDataReturned("no data"))
        assert result.reason == "InvalidDataReturned: no data"


class TestBundleSynchronizer:
    """Test BundleSynchronizer class."""

    def test_first_sync_installs_bundle(self, synchronizer, published_bundle, bundle_dir, cache):
        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert result.error is None
        assert result.stale_paths == []
        assert result.bundle_info.identifier == "bundle-42"
        assert _files_under(bundle_dir) == ["pages/b.md", "structure.json"]
        assert cache.current_bundle_timestamp == result.bundle_info.publish_timestamp
        assert cache.cached_bundle_info == result.bundle_info
        assert synchronizer.state == SyncState.IDLE

    def test_tree_reloaded_after_update(self, synchronizer, published_bundle):
        assert synchronizer.tree.find(2) is None

        synchronizer.sync("42")

        node = synchronizer.tree.find(2)
        assert node is not None
        assert node.title == "B"

    def test_second_sync_is_up_to_date(self, synchronizer, published_bundle):
        """Unchanged publish date: one metadata call, no download."""
        synchronizer.sync("42")
        published_bundle.requests.clear()

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UP_TO_DATE
        assert len(published_bundle.calls(METADATA_PATH)) == 1
        assert published_bundle.calls(ARCHIVE_PATH) == []

    def test_older_remote_is_up_to_date(self, synchronizer, published_bundle, cache):
        cache.current_bundle_timestamp = 4102444800.0  # 2100-01-01
        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UP_TO_DATE
        assert published_bundle.calls(ARCHIVE_PATH) == []

    def test_newer_publish_replaces_bundle(
        self, synchronizer, published_bundle, bundle_dir, make_archive, make_payload
    ):
        synchronizer.sync("42")

        published_bundle.add_json(
            METADATA_PATH,
            make_payload(identifier="bundle-43", publish_date="2018-01-01T00:00:00.000+0000"),
        )
        published_bundle.add_bytes(
            ARCHIVE_PATH,
            make_archive({"structure.json": json.dumps([{"id": 7, "title": "New"}]), "new.md": "new"}),
        )

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert _files_under(bundle_dir) == ["new.md", "structure.json"]
        assert synchronizer.tree.find(2) is None
        assert synchronizer.tree.find(7).title == "New"
        assert synchronizer.cache.cached_bundle_info.identifier == "bundle-43"

    def test_language_forwarded(self, synchronizer, published_bundle):
        synchronizer.sync("42", language="de")
        assert published_bundle.calls(METADATA_PATH)[0].url.params["language"] == "de"

    def test_metadata_transport_failure(self, synchronizer, server, cache):
        server.add_json(METADATA_PATH, {}, status_code=500)

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, TransportError)
        assert result.bundle_info is None
        assert cache.current_bundle_timestamp == 0

    def test_missing_data_object(self, synchronizer, server):
        server.add_json(METADATA_PATH, {"message": "ok"})

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, InvalidDataReturned)

    @pytest.mark.parametrize("missing", ["publish_date", "download_url"])
    def test_incomplete_bundle_info(self, synchronizer, server, make_payload, missing):
        server.add_json(METADATA_PATH, make_payload(**{missing: None}))

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, InvalidDataReturned)
        assert result.bundle_info is not None
        assert server.calls(ARCHIVE_PATH) == []

    def test_download_failure_keeps_state(self, synchronizer, server, make_payload, cache, bundle_dir):
        server.add_json(METADATA_PATH, make_payload())

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, TransportError)
        assert cache.current_bundle_timestamp == 0
        assert not bundle_dir.exists()

    def test_corrupt_archive_keeps_old_bundle(self, synchronizer, published_bundle, bundle_dir, cache, make_payload):
        synchronizer.sync("42")
        installed = cache.current_bundle_timestamp

        published_bundle.add_json(METADATA_PATH, make_payload(publish_date="2018-01-01T00:00:00.000+0000"))
        published_bundle.add_bytes(ARCHIVE_PATH, b"corrupt")

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, DecompressionError)
        assert _files_under(bundle_dir) == ["pages/b.md", "structure.json"]
        assert cache.current_bundle_timestamp == installed
        assert synchronizer.tree.find(2) is not None
        assert synchronizer.tree.gate.is_open

    def test_archive_without_manifest_rejected(self, synchronizer, server, make_payload, make_archive, bundle_dir):
        server.add_json(METADATA_PATH, make_payload())
        server.add_bytes(ARCHIVE_PATH, make_archive({"readme.txt": "no manifest"}))

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, ManifestParseError)
        assert not bundle_dir.exists()

    def test_malformed_manifest_rejected(self, synchronizer, server, make_payload, make_archive, bundle_dir):
        server.add_json(METADATA_PATH, make_payload())
        server.add_bytes(ARCHIVE_PATH, make_archive({"structure.json": '{"id": 1}'}))

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, ManifestParseError)

    def test_downloaded_archive_removed(self, synchronizer, published_bundle, temp_dir):
        synchronizer.sync("42")
        assert list((temp_dir / "downloads").iterdir()) == []

    def test_cancelled_before_download(self, synchronizer, published_bundle, cache):
        cancel = threading.Event()
        cancel.set()

        result = synchronizer.sync("42", cancel_event=cancel)

        assert result.outcome == SyncOutcome.FAILED
        assert isinstance(result.error, DownloadCancelled)
        assert cache.current_bundle_timestamp == 0

    def test_progress_reported(self, synchronizer, published_bundle, sample_archive):
        progress = []

        synchronizer.sync("42", on_progress=lambda done, total: progress.append((done, total)))

        assert progress[-1] == (len(sample_archive), len(sample_archive))

    def test_stale_paths_reported(self, synchronizer, published_bundle, bundle_dir):
        bundle_dir.mkdir(parents=True)
        (bundle_dir / "old.txt").write_text("old")

        def fail_rmtree(path, on_error):
            on_error(None, str(path), PermissionError("busy"))

        with patch("dms_tools.core.archive._rmtree", side_effect=fail_rmtree):
            result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert len(result.stale_paths) == 1
        assert _files_under(bundle_dir) == ["pages/b.md", "structure.json"]

    def test_gate_closed_during_replace(self, transport, cache, bundle_dir, published_bundle):
        """Lookups are refused while the bundle directory is swapped."""
        gate = ReadGate(timeout=0)
        tree = ContentTree(gate=gate)
        codec = ArchiveCodec()
        observed = []
        real_replace = codec.replace_bundle_directory

        def observing_replace(*args, **kwargs):
            observed.append(gate.is_open)
            with pytest.raises(BundleUnavailableError):
                tree.find(1)
            return real_replace(*args, **kwargs)

        codec.replace_bundle_directory = observing_replace
        sync = BundleSynchronizer(
            BundleMetadataClient(transport), ArchiveFetcher(transport), codec, cache, bundle_dir, tree=tree
        )

        result = sync.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert observed == [False]
        assert gate.is_open

    def test_submit_runs_on_worker(self, synchronizer, published_bundle):
        future = synchronizer.submit("42")
        result = future.result(timeout=10)

        assert result.outcome == SyncOutcome.UPDATED

    def test_syncs_are_serialized(self, cache, bundle_dir):
        """Concurrent syncs never overlap."""
        active = []
        overlaps = []
        lock = threading.Lock()

        def slow_metadata(project_id, language=None):
            with lock:
                active.append(project_id)
                if len(active) > 1:
                    overlaps.append(list(active))
            threading.Event().wait(0.05)
            with lock:
                active.remove(project_id)
            raise InvalidDataReturned("nothing published")

        metadata_client = Mock(spec=BundleMetadataClient)
        metadata_client.get_latest_bundle_info.side_effect = slow_metadata
        sync = BundleSynchronizer(metadata_client, Mock(), ArchiveCodec(), cache, bundle_dir)

        threads = [threading.Thread(target=sync.sync, args=(str(i),)) for i in range(3)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert overlaps == []
        assert metadata_client.get_latest_bundle_info.call_count == 3

    def test_cache_write_failure_still_updates(self, transport, bundle_dir, published_bundle):
        class FullDiskStore(MemoryStore):
            def set(self, key, value):
                raise OSError(errno.ENOSPC, "No space left on device")

        tree = ContentTree(gate=ReadGate(timeout=1.0))
        sync = BundleSynchronizer(
            BundleMetadataClient(transport),
            ArchiveFetcher(transport),
            ArchiveCodec(),
            CacheStore(FullDiskStore()),
            bundle_dir,
            tree=tree,
        )

        result = sync.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert _files_under(bundle_dir) == ["pages/b.md", "structure.json"]
        assert tree.loaded
        assert tree.find(2).title == "B"
        assert sync.state == SyncState.IDLE

    def test_syncs_serialized_across_synchronizers(self, cache, bundle_dir):
        """Synchronizers for the same directory share one lock."""
        active = []
        overlaps = []
        lock = threading.Lock()

        def slow_metadata(project_id, language=None):
            with lock:
                active.append(project_id)
                if len(active) > 1:
                    overlaps.append(list(active))
            threading.Event().wait(0.05)
            with lock:
                active.remove(project_id)
            raise InvalidDataReturned("nothing published")

        syncs = []
        for _ in range(2):
            metadata_client = Mock(spec=BundleMetadataClient)
            metadata_client.get_latest_bundle_info.side_effect = slow_metadata
            syncs.append(BundleSynchronizer(metadata_client, Mock(), ArchiveCodec(), cache, bundle_dir))

        threads = [
            threading.Thread(target=sync.sync, args=(str(i),)) for i, sync in enumerate(syncs * 2)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert overlaps == []
        assert syncs[0]._lock is syncs[1]._lock

    def test_clear_bundle(self, synchronizer, published_bundle, bundle_dir, cache):
        synchronizer.sync("42")

        failed = synchronizer.clear_bundle()

        assert failed == []
        assert bundle_dir.is_dir()
        assert list(bundle_dir.iterdir()) == []
        assert cache.current_bundle_timestamp == 0
        assert cache.cached_bundle_info is None
        assert synchronizer.tree.find(1) is None
        assert not synchronizer.tree.loaded

    def test_sync_after_clear_downloads_again(self, synchronizer, published_bundle):
        synchronizer.sync("42")
        synchronizer.clear_bundle()
        published_bundle.requests.clear()

        result = synchronizer.sync("42")

        assert result.outcome == SyncOutcome.UPDATED
        assert len(published_bundle.calls(ARCHIVE_PATH)) == 1

    def test_unexpected_errors_propagate(self, cache, bundle_dir):
        metadata_client = Mock(spec=BundleMetadataClient)
        metadata_client.get_latest_bundle_info.side_effect = KeyError("bug")
        sync = BundleSynchronizer(metadata_client, Mock(), ArchiveCodec(), cache, bundle_dir)

        with pytest.raises(KeyError):
            sync.sync("42")
        assert sync.state == SyncState.IDLE
