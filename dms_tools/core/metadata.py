"""Client for the "latest publish" endpoint of the publishing service."""

from __future__ import annotations

from urllib.parse import quote

import structlog

from dms_tools.core.errors import InvalidDataReturned
from dms_tools.core.transport import HTTPTransport
from dms_tools.core.types import BundleInfo

logger = structlog.get_logger()


class BundleMetadataClient:
    """Fetches information about the latest published bundle of a project."""

    def __init__(self, transport: HTTPTransport):
        self.transport = transport

    def _build_path(self, project_id: str) -> str:
        return f"projects/{quote(str(project_id), safe='')}/publishes/latest"

    def get_latest_bundle_info(self, project_id: str, language: str | None = None) -> BundleInfo:
        """Get information about the latest bundle for a project.

        Args:
            project_id: Project to look up
            language: Language code; the server default is used when None

        Returns:
            Parsed bundle information. Individual fields may be None.

        Raises:
            TransportError: If the request fails
            InvalidDataReturned: If the response has no ``data`` object
        """
        params = {"language": language} if language else None
        path = self._build_path(project_id)

        try:
            payload = self.transport.get_json(path, params=params)
        except ValueError as e:
            logger.error("bundle_info_not_json", project=project_id, error=str(e))
            raise InvalidDataReturned(f"Response for project {project_id} is not JSON") from e

        info = BundleInfo.from_response(payload)
        if info is None:
            logger.error("bundle_info_invalid", project=project_id)
            raise InvalidDataReturned(f"Response for project {project_id} has no data object")

        logger.info(
            "bundle_info_fetched",
            project=project_id,
            language=language,
            identifier=info.identifier,
            published=info.publish_date.isoformat() if info.publish_date else None,
        )
        return info
