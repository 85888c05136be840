"""Shared utilities for dms-tools."""

from __future__ import annotations

from datetime import datetime
from pathlib import PurePosixPath

import httpx

PUBLISH_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S.%f%z"


def format_size(size: float | None) -> str:
    """Format a byte count for display.

    Attachment sizes arrive as JSON numbers, so floats are accepted.

    Example:
        >>> format_size(1536)
        '1.5 KB'
        >>> format_size(None)
        'unknown'
    """
    if size is None:
        return "unknown"
    if size < 0:
        return "0 B"

    value = float(size)
    for unit in ["B", "KB", "MB", "GB"]:
        if value < 1024.0:
            return f"{int(value)} B" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


def parse_url(value: object) -> str | None:
    """Parse a string into a normalized URL.

    Args:
        value: Raw value taken from a JSON document

    Returns:
        The URL as a string, or None if value is not a string or is not a URL
    """
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return str(httpx.URL(value.strip()))
    except (httpx.InvalidURL, TypeError):
        return None


def parse_publish_date(value: object) -> datetime | None:
    """Parse a publish date in the server's fixed format.

    The server sends ``yyyy-MM-dd'T'HH:mm:ss.SSSZ``, for example
    ``2017-10-17T09:30:00.000+0000``.

    Returns:
        Timezone-aware datetime, or None if value does not match the format
    """
    if not isinstance(value, str):
        return None
    try:
        return datetime.strptime(value, PUBLISH_DATE_FORMAT)
    except ValueError:
        return None


def last_path_segment(url: str) -> str | None:
    """Get the final path segment of a URL.

    Example:
        >>> last_path_segment("https://example.com/files/guide.pdf?x=1")
        'guide.pdf'
    """
    try:
        path = httpx.URL(url).path
    except (httpx.InvalidURL, TypeError):
        return None

    name = PurePosixPath(path).name
    if not name or name in {".", ".."}:
        return None
    return name
