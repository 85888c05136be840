"""HTTP transport for the publishing service."""

from __future__ import annotations

import os
import tempfile
import threading
from collections.abc import Callable
from pathlib import Path
from typing import Any

import httpx
import structlog

from dms_tools.core.config import APIConfig
from dms_tools.core.errors import DownloadCancelled, TransportError

logger = structlog.get_logger()

ProgressCallback = Callable[[int, int], None]


class HTTPTransport:
    """Thin httpx wrapper providing JSON GET and streamed file downloads.

    Relative paths are resolved against ``APIConfig.base_url``; absolute
    URLs are used as-is. Redirects are followed by the client. Errors are
    never retried here.
    """

    def __init__(
        self,
        config: APIConfig | None = None,
        client: httpx.Client | None = None,
        temp_dir: Path | None = None,
    ):
        """Initialize transport.

        Args:
            config: Optional API configuration
            client: Preconfigured httpx client, created lazily when None
            temp_dir: Directory for downloaded files, system default when None
        """
        self.config = config or APIConfig()
        self.temp_dir = temp_dir
        self._client = client

    @property
    def client(self) -> httpx.Client:
        """Get or create sync HTTP client."""
        if self._client is None:
            self._client = httpx.Client(
                timeout=self.config.timeout,
                verify=self.config.verify_ssl,
                follow_redirects=True,
                headers={"User-Agent": self.config.user_agent},
            )
        return self._client

    def build_url(self, path: str) -> str:
        """Resolve a request path against the base URL."""
        if path.startswith(("http://", "https://")):
            return path
        return str(httpx.URL(self.config.base_url).join(path.lstrip("/")))

    def get_json(self, path: str, params: dict[str, str] | None = None) -> Any:
        """GET a path and decode the JSON body.

        Raises:
            TransportError: On connection failures and non-2xx responses
            ValueError: If the body is not valid JSON
        """
        url = self.build_url(path)
        try:
            response = self.client.get(url, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error("http_get_failed", url=url, status=e.response.status_code)
            raise TransportError(
                f"GET {url} returned {e.response.status_code}",
                url=url,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("http_get_failed", url=url, error=str(e))
            raise TransportError(f"GET {url} failed: {e}", url=url) from e

        logger.debug("http_get", url=url, status=response.status_code, size=len(response.content))
        return response.json()

    def download_file(
        self,
        url: str,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        """Stream a URL into a temporary file.

        Args:
            url: Path or absolute URL to download
            on_progress: Called with (bytes_done, bytes_total) after each chunk;
                bytes_total is 0 when the server sends no length
            cancel_event: Aborts the download when set

        Returns:
            Path to the complete, closed file. The caller deletes it.

        Raises:
            TransportError: On connection failures and non-2xx responses
            DownloadCancelled: If cancel_event was set before completion
        """
        url = self.build_url(url)
        fd, name = tempfile.mkstemp(prefix="dms-download-", suffix=".part", dir=self.temp_dir)
        tmp_path = Path(name)
        completed = False

        try:
            with os.fdopen(fd, "wb") as f:
                with self.client.stream("GET", url) as response:
                    response.raise_for_status()

                    total = int(response.headers.get("content-length", 0) or 0)
                    done = 0
                    for chunk in response.iter_bytes(self.config.chunk_size):
                        if cancel_event is not None and cancel_event.is_set():
                            raise DownloadCancelled(f"Download of {url} was cancelled")
                        f.write(chunk)
                        done += len(chunk)
                        if on_progress:
                            on_progress(done, total)

            if cancel_event is not None and cancel_event.is_set():
                raise DownloadCancelled(f"Download of {url} was cancelled")

            completed = True
            logger.debug("download_complete", url=url, size=done, path=str(tmp_path))
            return tmp_path

        except httpx.HTTPStatusError as e:
            logger.error("download_failed", url=url, status=e.response.status_code)
            raise TransportError(
                f"GET {url} returned {e.response.status_code}",
                url=url,
                status_code=e.response.status_code,
            ) from e
        except httpx.HTTPError as e:
            logger.error("download_failed", url=url, error=str(e))
            raise TransportError(f"Download of {url} failed: {e}", url=url) from e
        finally:
            if not completed:
                tmp_path.unlink(missing_ok=True)

    def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            self._client.close()
            self._client = None

    def __enter__(self) -> HTTPTransport:
        """Context manager entry."""
        return self

    def __exit__(self, *args: object) -> None:
        """Context manager exit."""
        self.close()
