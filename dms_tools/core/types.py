"""Core type definitions for dms_tools."""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from pydantic import BaseModel, ConfigDict, Field

from dms_tools.core.utils import parse_publish_date, parse_url

logger = structlog.get_logger()


def _is_int(value: Any) -> bool:
    # JSON booleans decode to bool, which is an int subclass
    return isinstance(value, int) and not isinstance(value, bool)


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _optional_str(value: Any) -> str | None:
    return value if isinstance(value, str) else None


class BundleInfo(BaseModel):
    """Information about the latest publish of a bundle on the server."""

    identifier: str | None = Field(None, description="Bundle identifier")
    publish_date: datetime | None = Field(None, description="When the bundle was published")
    download_url: str | None = Field(None, description="Archive URL, may redirect")
    available_languages: tuple[str, ...] | None = Field(
        None, description="Language codes the bundle is available in"
    )

    model_config = ConfigDict(frozen=True)

    @property
    def publish_timestamp(self) -> float | None:
        """Publish date as POSIX seconds."""
        if self.publish_date is None:
            return None
        return self.publish_date.timestamp()

    @classmethod
    def from_response(cls, payload: Any) -> BundleInfo | None:
        """Build from a "latest publish" response body.

        Every field inside ``data`` is optional; fields with the wrong type
        or an unparsable value are left unset.

        Args:
            payload: Decoded JSON response

        Returns:
            The bundle information, or None if the response has no ``data`` object
        """
        if not isinstance(payload, dict):
            return None

        data = payload.get("data")
        if not isinstance(data, dict):
            return None

        languages = data.get("languages")
        if not isinstance(languages, list) or not all(isinstance(code, str) for code in languages):
            languages = None

        return cls(
            identifier=_optional_str(data.get("id")),
            publish_date=parse_publish_date(data.get("publish_date")),
            download_url=parse_url(data.get("download_url")),
            available_languages=tuple(languages) if languages is not None else None,
        )

    def to_json(self) -> str:
        """Serialize for the cache store."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, raw: str | bytes) -> BundleInfo:
        """Deserialize a value written by ``to_json``."""
        return cls.model_validate_json(raw)


class FileDescriptor(BaseModel):
    """A file attached to a directory node, available at a remote URL."""

    title: str | None = Field(None, description="Display name")
    url: str | None = Field(None, description="Remote URL of the file")
    mime: str | None = Field(None, description="MIME type")
    size: float | None = Field(None, description="Size in bytes")
    description: str | None = Field(None, description="Description shown before download")

    model_config = ConfigDict(frozen=True)

    @property
    def downloadable(self) -> bool:
        return self.url is not None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FileDescriptor:
        size = data.get("size")
        return cls(
            title=_optional_str(data.get("title")),
            url=parse_url(data.get("url")),
            mime=_optional_str(data.get("mime")),
            size=float(size) if _is_number(size) else None,
            description=_optional_str(data.get("description")),
        )


class DirectoryNode(BaseModel):
    """A node of the content tree.

    Nodes own their children; there are no parent references beyond the
    ``parent_identifier`` value copied from the manifest.
    """

    identifier: int = Field(..., description="Identifier, unique within a tree")
    parent_identifier: int | None = Field(None, description="Identifier of the parent node")
    order: int = Field(0, description="Display position among siblings")
    title: str | None = Field(None, description="Node title")
    content: str | None = Field(None, description="Markdown or a bundle-relative path")
    metadata: dict[str, Any] | None = Field(None, description="Additional node information")
    children: tuple[DirectoryNode, ...] | None = Field(None, description="Child nodes")
    attachments: tuple[FileDescriptor, ...] | None = Field(None, description="Attached files")
    critical: bool = Field(False, description="Part of the critical path")

    model_config = ConfigDict(frozen=True)

    @classmethod
    def from_dict(cls, data: Any) -> DirectoryNode | None:
        """Decode one manifest entry and its subtree.

        Returns:
            The node, or None when the entry is not an object or has no
            integer ``id``. Invalid children are dropped individually.
        """
        if not isinstance(data, dict):
            return None

        identifier = data.get("id")
        if not _is_int(identifier):
            logger.debug("manifest_node_dropped", id=identifier, title=data.get("title"))
            return None

        children = None
        raw_children = data.get("directories")
        if isinstance(raw_children, list):
            decoded = (cls.from_dict(child) for child in raw_children)
            children = tuple(child for child in decoded if child is not None)

        attachments = None
        raw_attachments = data.get("attachments")
        if isinstance(raw_attachments, list):
            attachments = tuple(
                FileDescriptor.from_dict(item) for item in raw_attachments if isinstance(item, dict)
            )

        parent = data.get("parentId")
        order = data.get("order")
        metadata = data.get("metadata")
        critical = data.get("critical")

        return cls(
            identifier=identifier,
            parent_identifier=parent if _is_int(parent) else None,
            order=order if _is_int(order) else 0,
            title=_optional_str(data.get("title")),
            content=_optional_str(data.get("content")),
            metadata=metadata if isinstance(metadata, dict) else None,
            children=children,
            attachments=attachments,
            critical=critical if isinstance(critical, bool) else False,
        )

    def sorted_children(self) -> list[DirectoryNode]:
        """Children ordered by their ``order`` value, manifest order breaking ties."""
        return sorted(self.children or (), key=lambda node: node.order)


DirectoryNode.model_rebuild()
