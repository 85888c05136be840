"""Content manager wiring the bundle components together."""

from __future__ import annotations

from pathlib import Path

import httpx
import structlog

from dms_tools.core.archive import ArchiveCodec
from dms_tools.core.config import AppConfig
from dms_tools.core.errors import ManifestParseError
from dms_tools.core.fetcher import ArchiveFetcher
from dms_tools.core.metadata import BundleMetadataClient
from dms_tools.core.paths import PathResolver
from dms_tools.core.state import CacheStore, JSONFileStore, KeyValueStore
from dms_tools.core.synchronizer import BundleSynchronizer
from dms_tools.core.transport import HTTPTransport
from dms_tools.core.tree import ContentTree, ReadGate

logger = structlog.get_logger()


class ContentManager:
    """Owns the bundle directory, documents cache and persisted state.

    Every component shares one transport and one read gate, so lookups
    through ``tree`` and ``resolver`` wait while ``synchronizer`` replaces
    the bundle. An installed manifest that fails to parse leaves ``tree``
    empty and unloaded, so the bundle can still be synced or cleared.
    """

    def __init__(
        self,
        config: AppConfig | None = None,
        store: KeyValueStore | None = None,
        client: httpx.Client | None = None,
    ):
        """Initialize content manager.

        Args:
            config: Application configuration
            store: State store, a JSON file in the data directory when None
            client: Optional preconfigured httpx client
        """
        self.config = config or AppConfig()
        self.bundle_dir = self.config.bundle_dir
        self.documents_dir = self.config.documents_dir
        self.bundle_dir.mkdir(parents=True, exist_ok=True)
        self.documents_dir.mkdir(parents=True, exist_ok=True)

        self.transport = HTTPTransport(self.config.api, client=client)
        self.cache = CacheStore(store if store is not None else JSONFileStore(self.config.state_file))
        self.gate = ReadGate(timeout=self.config.gate_timeout)

        try:
            self.tree = ContentTree.from_bundle(
                self.bundle_dir, self.config.manifest_name, gate=self.gate
            )
        except ManifestParseError as e:
            logger.warning("manifest_invalid", path=str(self.bundle_dir), error=str(e))
            self.tree = ContentTree(gate=self.gate)
        self.resolver = PathResolver(
            self.bundle_dir, self.documents_dir, transport=self.transport, gate=self.gate
        )
        self.metadata_client = BundleMetadataClient(self.transport)
        self.synchronizer = BundleSynchronizer(
            self.metadata_client,
            ArchiveFetcher(self.transport),
            ArchiveCodec(),
            self.cache,
            self.bundle_dir,
            tree=self.tree,
            manifest_name=self.config.manifest_name,
        )

    def clear_bundle(self) -> list[Path]:
        """Delete the installed bundle and forget its state.

        Returns:
            Paths that could not be removed
        """
        return self.synchronizer.clear_bundle()

    def close(self) -> None:
        self.synchronizer.close()
        self.transport.close()

    def __enter__(self) -> ContentManager:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()
