"""Persisted bundle state.

The synchronizer records which bundle is installed through a small
key/value store. ``JSONFileStore`` keeps the values in one JSON file written
atomically (temp file + os.replace); ``MemoryStore`` is the in-process
variant used by tests and short-lived tools.
"""

from __future__ import annotations

import json
import os
import threading
from pathlib import Path
from typing import Any, Protocol

import structlog
from pydantic import ValidationError

from dms_tools.core.types import BundleInfo

logger = structlog.get_logger()


class KeyValueStore(Protocol):
    """Minimal persisted key/value interface."""

    def get(self, key: str, default: Any = None) -> Any:
        ...

    def set(self, key: str, value: Any) -> None:
        ...

    def clear(self, key: str | None = None) -> None:
        ...


class MemoryStore:
    """Key/value store held in memory."""

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._values: dict[str, Any] = dict(initial or {})
        self._lock = threading.Lock()

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._values.clear()
            else:
                self._values.pop(key, None)


class JSONFileStore:
    """Key/value store persisted as a JSON object on disk.

    Values must be JSON serializable. An unreadable or corrupt file is
    treated as empty and replaced on the next write.

    Args:
        path: Location of the JSON file
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._values: dict[str, Any] = self._load()

    def _load(self) -> dict[str, Any]:
        if not self.path.exists():
            return {}

        try:
            loaded: Any = json.loads(self.path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning("state_load_failed", path=str(self.path), error=str(e))
            return {}

        if not isinstance(loaded, dict):
            logger.warning("state_invalid_format", type=type(loaded).__name__)
            return {}
        return loaded

    def _save(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(self._values, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)

    def get(self, key: str, default: Any = None) -> Any:
        with self._lock:
            return self._values.get(key, default)

    def set(self, key: str, value: Any) -> None:
        with self._lock:
            self._values[key] = value
            self._save()

    def clear(self, key: str | None = None) -> None:
        with self._lock:
            if key is None:
                self._values.clear()
            else:
                self._values.pop(key, None)
            self._save()


class CacheStore:
    """Typed view over the bundle state keys.

    ``current_bundle_timestamp`` is 0 when no bundle has been installed.
    """

    CURRENT_BUNDLE_TIMESTAMP = "CurrentBundleTimestamp"
    CACHED_BUNDLE_INFO = "CachedBundleInfo"

    def __init__(self, store: KeyValueStore) -> None:
        self.store = store

    @property
    def current_bundle_timestamp(self) -> float:
        value = self.store.get(self.CURRENT_BUNDLE_TIMESTAMP, 0)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return 0.0
        return float(value)

    @current_bundle_timestamp.setter
    def current_bundle_timestamp(self, value: float) -> None:
        self.store.set(self.CURRENT_BUNDLE_TIMESTAMP, float(value))

    @property
    def cached_bundle_info(self) -> BundleInfo | None:
        raw = self.store.get(self.CACHED_BUNDLE_INFO)
        if raw is None:
            return None
        try:
            return BundleInfo.from_json(raw)
        except (ValidationError, ValueError, TypeError) as e:
            logger.warning("cached_bundle_info_invalid", error=str(e))
            return None

    @cached_bundle_info.setter
    def cached_bundle_info(self, info: BundleInfo | None) -> None:
        if info is None:
            self.store.clear(self.CACHED_BUNDLE_INFO)
        else:
            self.store.set(self.CACHED_BUNDLE_INFO, info.to_json())

    def record_bundle(self, info: BundleInfo) -> None:
        """Record a successfully installed bundle."""
        self.current_bundle_timestamp = info.publish_timestamp or 0.0
        self.cached_bundle_info = info
        logger.debug(
            "bundle_state_recorded",
            identifier=info.identifier,
            timestamp=self.current_bundle_timestamp,
        )

    def clear(self) -> None:
        """Forget the installed bundle."""
        self.store.clear(self.CURRENT_BUNDLE_TIMESTAMP)
        self.store.clear(self.CACHED_BUNDLE_INFO)
