"""Content tree built from a bundle's structure manifest."""

from __future__ import annotations

import json
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from pathlib import Path

import structlog

from dms_tools.core.errors import BundleUnavailableError, ManifestParseError
from dms_tools.core.types import DirectoryNode

logger = structlog.get_logger()

DEFAULT_MANIFEST = "structure.json"


class ReadGate:
    """Read-availability flag for the bundle directory.

    Closed while the bundle is being replaced; readers wait for it to
    reopen up to a timeout.
    """

    def __init__(self, timeout: float = 30.0) -> None:
        self.timeout = timeout
        self._open = threading.Event()
        self._open.set()

    @property
    def is_open(self) -> bool:
        return self._open.is_set()

    def wait(self) -> None:
        """Block until the gate is open.

        Raises:
            BundleUnavailableError: If it is still closed after the timeout
        """
        if not self._open.wait(self.timeout):
            raise BundleUnavailableError("Bundle is being replaced")

    @contextmanager
    def closed(self) -> Iterator[None]:
        """Keep the gate closed for the duration of the block."""
        self._open.clear()
        try:
            yield
        finally:
            self._open.set()


def parse_manifest(manifest_bytes: bytes | str) -> list[DirectoryNode]:
    """Parse a manifest into its top-level nodes.

    Entries that are not objects or lack an integer ``id`` are dropped
    along with their subtree.

    Raises:
        ManifestParseError: If the document is not a JSON array
    """
    try:
        document = json.loads(manifest_bytes)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise ManifestParseError(f"Manifest is not valid JSON: {e}") from e

    if not isinstance(document, list):
        raise ManifestParseError(
            f"Manifest root must be an array, got {type(document).__name__}"
        )

    nodes = [node for node in (DirectoryNode.from_dict(item) for item in document) if node is not None]
    logger.debug("manifest_parsed", entries=len(document), roots=len(nodes))
    return nodes


def iter_nodes(nodes: Iterable[DirectoryNode]) -> Iterator[DirectoryNode]:
    """Walk a forest depth-first in pre-order.

    Each node is yielded before its children, and its whole subtree before
    its next sibling. Iterative, so depth is not limited by recursion.
    """
    stack: list[Iterator[DirectoryNode]] = [iter(nodes)]
    while stack:
        node = next(stack[-1], None)
        if node is None:
            stack.pop()
            continue
        yield node
        if node.children:
            stack.append(iter(node.children))


def find_node(identifier: int, nodes: Iterable[DirectoryNode]) -> DirectoryNode | None:
    """Find a node by identifier.

    With duplicate identifiers the first node in pre-order wins.
    """
    for node in iter_nodes(nodes):
        if node.identifier == identifier:
            return node
    return None


class ContentTree:
    """The node tree of the installed bundle.

    The tree is replaced wholesale by ``reload``; nodes are never mutated.
    """

    def __init__(
        self,
        nodes: list[DirectoryNode] | None = None,
        gate: ReadGate | None = None,
    ) -> None:
        self.gate = gate or ReadGate()
        self._nodes: list[DirectoryNode] = list(nodes or [])
        self.loaded = nodes is not None
        self._warn_duplicates()

    @classmethod
    def from_bundle(
        cls,
        bundle_dir: Path,
        manifest_name: str = DEFAULT_MANIFEST,
        gate: ReadGate | None = None,
    ) -> ContentTree:
        """Load the tree from a bundle directory.

        A missing manifest gives an empty tree with ``loaded`` False.
        """
        tree = cls(gate=gate)
        tree.reload(bundle_dir, manifest_name)
        return tree

    def reload(self, bundle_dir: Path, manifest_name: str = DEFAULT_MANIFEST) -> None:
        """Rebuild the tree from the manifest in bundle_dir.

        Raises:
            ManifestParseError: If the manifest exists but is malformed
        """
        manifest = bundle_dir / manifest_name
        if not manifest.is_file():
            logger.info("manifest_missing", path=str(manifest))
            self._nodes = []
            self.loaded = False
            return

        self._nodes = parse_manifest(manifest.read_bytes())
        self.loaded = True
        self._warn_duplicates()
        logger.info("content_tree_loaded", path=str(manifest), roots=len(self._nodes))

    @property
    def nodes(self) -> list[DirectoryNode]:
        self.gate.wait()
        return list(self._nodes)

    def walk(self) -> Iterator[DirectoryNode]:
        """All nodes in pre-order."""
        self.gate.wait()
        return iter_nodes(list(self._nodes))

    def find(self, identifier: int) -> DirectoryNode | None:
        self.gate.wait()
        return find_node(identifier, self._nodes)

    def critical_nodes(self) -> list[DirectoryNode]:
        """Nodes flagged as part of the critical path, in pre-order."""
        return [node for node in self.walk() if node.critical]

    def _duplicates(self) -> set[int]:
        counts = Counter(node.identifier for node in iter_nodes(self._nodes))
        return {identifier for identifier, count in counts.items() if count > 1}

    def duplicate_identifiers(self) -> set[int]:
        self.gate.wait()
        return self._duplicates()

    def _warn_duplicates(self) -> None:
        duplicates = self._duplicates()
        if duplicates:
            logger.warning("manifest_duplicate_ids", ids=sorted(duplicates))

    @property
    def node_count(self) -> int:
        self.gate.wait()
        return sum(1 for _ in iter_nodes(self._nodes))
