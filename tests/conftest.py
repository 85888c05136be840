"""Pytest configuration and shared fixtures for dms_tools tests."""

import gzip
import io
import json
import tarfile
import tempfile
from collections.abc import Callable, Generator
from pathlib import Path
from typing import Any
from unittest.mock import Mock

import httpx
import pytest

from dms_tools.core.config import APIConfig, AppConfig
from dms_tools.core.state import CacheStore, MemoryStore
from dms_tools.core.transport import HTTPTransport

BASE_URL = "https://dms.test/api/"
ARCHIVE_URL = "https://files.dms.test/bundles/bundle-42.tar.gz"
PUBLISH_DATE = "2017-10-17T09:30:00.000+0000"

SAMPLE_MANIFEST: list[dict[str, Any]] = [
    {
        "id": 1,
        "title": "A",
        "order": 0,
        "directories": [
            {"id": 2, "parentId": 1, "title": "B", "content": "pages/b.md"},
        ],
    },
]


def build_archive(files: dict[str, bytes | str]) -> bytes:
    """Build a gzip-compressed tar archive from a mapping of member names to contents."""
    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w") as tar:
        for name, content in files.items():
            data = content.encode() if isinstance(content, str) else content
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return gzip.compress(buffer.getvalue())


def bundle_files(manifest: Any = None) -> dict[str, bytes | str]:
    """Member mapping for a bundle with a structure.json manifest."""
    files: dict[str, bytes | str] = {
        "structure.json": json.dumps(SAMPLE_MANIFEST if manifest is None else manifest),
        "pages/b.md": "# B",
    }
    return files


def latest_publish_payload(
    identifier: str = "bundle-42",
    publish_date: str | None = PUBLISH_DATE,
    download_url: str | None = ARCHIVE_URL,
    languages: list[str] | None = None,
) -> dict[str, Any]:
    """A "latest publish" response body."""
    data: dict[str, Any] = {"id": identifier}
    if publish_date is not None:
        data["publish_date"] = publish_date
    if download_url is not None:
        data["download_url"] = download_url
    if languages is not None:
        data["languages"] = languages
    return {"data": data}


class FakeServer:
    """Routes httpx requests for an httpx.MockTransport and records them."""

    def __init__(self) -> None:
        self.routes: dict[str, Callable[[httpx.Request], httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def add_json(self, path: str, payload: Any, status_code: int = 200) -> None:
        self.routes[path] = lambda request: httpx.Response(status_code, json=payload)

    def add_bytes(self, path: str, content: bytes, status_code: int = 200) -> None:
        self.routes[path] = lambda request: httpx.Response(status_code, content=content)

    def add_redirect(self, path: str, location: str) -> None:
        self.routes[path] = lambda request: httpx.Response(302, headers={"Location": location})

    def calls(self, path: str) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path == path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, json={"error": "not found"})
        return route(request)

    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler), follow_redirects=True)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def server() -> FakeServer:
    """Fake publishing service."""
    return FakeServer()


@pytest.fixture
def api_config() -> APIConfig:
    """API configuration pointing at the fake server."""
    return APIConfig(base_url=BASE_URL, timeout=5.0)


@pytest.fixture
def transport(server: FakeServer, api_config: APIConfig, temp_dir: Path) -> Generator[HTTPTransport, None, None]:
    """HTTP transport backed by the fake server."""
    downloads = temp_dir / "downloads"
    downloads.mkdir()
    with HTTPTransport(api_config, client=server.client(), temp_dir=downloads) as transport:
        yield transport


@pytest.fixture
def app_config(temp_dir: Path, api_config: APIConfig) -> AppConfig:
    """Application configuration rooted in the temporary directory."""
    return AppConfig(
        config_dir=temp_dir / "config",
        data_dir=temp_dir / "data",
        api=api_config,
        gate_timeout=1.0,
    )


@pytest.fixture
def cache() -> CacheStore:
    """Bundle state held in memory."""
    return CacheStore(MemoryStore())


@pytest.fixture
def sample_archive() -> bytes:
    """Bundle archive with the sample manifest."""
    return build_archive(bundle_files())


@pytest.fixture
def mock_console() -> Mock:
    """Create standardized mock Rich console for CLI testing.

    Printed output is tracked in printed_lines with Rich markup removed.
    """
    import re
    import sys

    console = Mock()
    console.printed_lines = []

    def track_print(text="", **kwargs):
        clean_text = re.sub(r'\[/?[^\]]*\]', '', str(text))
        console.printed_lines.append(clean_text)
        # Also print to actual stdout so Click can capture it
        print(clean_text, file=sys.stdout)

    console.print.side_effect = track_print
    return console


# Pytest configuration
def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest settings."""
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with '-m \"not slow\"')"
    )
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    """Modify test collection to add markers automatically."""
    for item in items:
        # Add unit marker to all tests by default
        if not any(marker.name in ['integration', 'slow'] for marker in item.iter_markers()):
            item.add_marker(pytest.mark.unit)


# Builder fixtures


@pytest.fixture
def make_archive() -> Callable[[dict[str, bytes | str]], bytes]:
    """Factory building gzip-compressed tar archives."""
    return build_archive


@pytest.fixture
def make_payload() -> Callable[..., dict[str, Any]]:
    """Factory building "latest publish" response bodies."""
    return latest_publish_payload


@pytest.fixture
def archive_url() -> str:
    return ARCHIVE_URL


@pytest.fixture
def sample_manifest() -> list[dict[str, Any]]:
    return json.loads(json.dumps(SAMPLE_MANIFEST))


@pytest.fixture
def published_bundle(server: FakeServer, sample_archive: bytes) -> FakeServer:
    """Fake server publishing the sample bundle for project 42."""
    server.add_json("/api/projects/42/publishes/latest", latest_publish_payload())
    server.add_bytes("/bundles/bundle-42.tar.gz", sample_archive)
    return server
