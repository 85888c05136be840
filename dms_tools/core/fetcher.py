"""Bundle archive download."""

from __future__ import annotations

import threading
from pathlib import Path

import structlog

from dms_tools.core.transport import HTTPTransport, ProgressCallback
from dms_tools.core.utils import format_size

logger = structlog.get_logger()


class ArchiveFetcher:
    """Downloads bundle archives to temporary files.

    Redirect handling belongs to the transport; errors are surfaced as-is.
    """

    def __init__(self, transport: HTTPTransport):
        self.transport = transport

    def download_archive(
        self,
        url: str,
        on_progress: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
    ) -> Path:
        """Download an archive.

        Args:
            url: Archive URL, possibly redirecting
            on_progress: Called with (bytes_done, bytes_total)
            cancel_event: Aborts the download when set

        Returns:
            Path to the downloaded file; the caller owns deleting it
        """
        logger.info("archive_download_started", url=url)
        path = self.transport.download_file(url, on_progress=on_progress, cancel_event=cancel_event)
        logger.info("archive_downloaded", url=url, size=format_size(path.stat().st_size))
        return path
