"""Remote gallery API client.

This client extends BaseAPIClient with the read contract of the gallery
API: the category/procedure sidebar, paginated case-ID listings per
procedure, full case payloads, and view tracking. Every call runs under the
configured tenacity retry policy.
"""

from typing import Any

import httpx

from gallery_sync.client.base_client import BaseAPIClient
from gallery_sync.client.exceptions import (
    APIError,
    ConfigurationError,
    GallerySyncError,
    NotFoundError,
)
from gallery_sync.config import GalleryConfig, LoggingConfig, RetryConfig
from gallery_sync.utils.logging import get_logger
from gallery_sync.utils.retry import call_with_retry, retry_api_call_short

logger = get_logger(__name__)

SIDEBAR_ENDPOINT = "/api/plugin/combine/sidebar"
CASES_ENDPOINT = "/api/plugin/combine/cases"
CASE_DETAIL_ENDPOINT = "/api/plugin/combine/cases/{case_id}"
VIEWS_ENDPOINT = "/api/plugin/views"
TEST_ENDPOINT = "/test"


def _extract_case_ids(items: list[Any]) -> list[int]:
    """Normalize a case listing whose items are ints or {"id": ...} objects."""
    ids: list[int] = []
    for item in items:
        raw = item.get("id") if isinstance(item, dict) else item
        try:
            case_id = int(raw)
        except (TypeError, ValueError):
            continue
        if case_id > 0:
            ids.append(case_id)
    return ids


class GalleryClient(BaseAPIClient):
    """Client for the remote gallery API."""

    def __init__(
        self,
        config: GalleryConfig,
        retry: RetryConfig | None = None,
        logging_config: LoggingConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize gallery client.

        Args:
            config: Gallery API configuration
            retry: Retry policy for remote calls
            logging_config: Payload logging settings
            transport: Optional httpx transport (used by tests)

        Raises:
            ConfigurationError: If the API URL is not set
        """
        if not config.url:
            raise ConfigurationError("Gallery API URL is not configured")

        logging_config = logging_config or LoggingConfig()
        super().__init__(
            base_url=config.url,
            token=config.token,
            verify_ssl=config.verify_ssl,
            timeout=config.timeout,
            rate_limit=config.rate_limit,
            max_connections=config.max_connections,
            max_keepalive_connections=config.max_keepalive_connections,
            log_payloads=logging_config.log_payloads,
            max_payload_size=logging_config.max_payload_size,
            transport=transport,
        )
        self.config = config
        self.retry = retry or RetryConfig()

    def _base_payload(self, token: str) -> dict[str, Any]:
        return {
            "apiTokens": [token],
            "websitePropertyIds": [int(self.config.property_id)]
            if str(self.config.property_id).isdigit()
            else [self.config.property_id],
        }

    async def fetch_categories(self, token: str) -> list[dict[str, Any]]:
        """Fetch the category/procedure sidebar.

        Args:
            token: Gallery API token

        Returns:
            List of category dicts, each with nested procedures

        Raises:
            APIError: If the response is not a successful sidebar payload
        """
        response = await call_with_retry(
            self.post, SIDEBAR_ENDPOINT, json_data={"apiTokens": [token]}, policy=self.retry
        )

        if not response.get("success") or not isinstance(response.get("data"), list):
            raise APIError(message="Invalid sidebar response from gallery API")

        categories = response["data"]
        logger.info("categories_fetched", count=len(categories))
        return categories

    async def fetch_case_ids(self, token: str, procedure_id: int, page: int) -> dict[str, Any]:
        """Fetch one page of case IDs for a procedure.

        Args:
            token: Gallery API token
            procedure_id: Remote procedure ID
            page: 1-based page number

        Returns:
            {"ids": [...], "has_more": bool}; an empty page means no more pages
        """
        payload = self._base_payload(token)
        payload["procedureIds"] = [procedure_id]
        payload["count"] = page

        response = await call_with_retry(
            self.post, CASES_ENDPOINT, json_data=payload, policy=self.retry
        )

        data = response.get("data") or []
        ids = _extract_case_ids(data if isinstance(data, list) else [])

        logger.debug("case_ids_page_fetched", procedure_id=procedure_id, page=page, count=len(ids))
        return {"ids": ids, "has_more": bool(ids)}

    async def fetch_case(
        self, token: str, case_id: int, procedure_id: int | None = None
    ) -> dict[str, Any]:
        """Fetch the full payload of one case.

        Args:
            token: Gallery API token
            case_id: Remote case ID
            procedure_id: Procedure the case was listed under

        Returns:
            Case payload dict

        Raises:
            NotFoundError: If the API returns no case data
        """
        payload = self._base_payload(token)
        if procedure_id:
            payload["procedureIds"] = [procedure_id]

        response = await call_with_retry(
            self.post,
            CASE_DETAIL_ENDPOINT.format(case_id=case_id),
            json_data=payload,
            policy=self.retry,
        )

        data = response.get("data")
        if isinstance(data, list):
            data = data[0] if data else None
        if not isinstance(data, dict):
            raise NotFoundError(message=f"No data returned for case {case_id}")

        return data

    async def track_view(self, token: str, case_id: int) -> None:
        """Record a case view with the gallery API.

        Args:
            token: Gallery API token
            case_id: Remote case ID
        """
        params: dict[str, Any] = {"apiToken": token}
        if case_id > 0:
            params["caseId"] = case_id

        await call_with_retry(self.get, VIEWS_ENDPOINT, params=params, policy=self.retry)
        logger.info("case_view_tracked", case_id=case_id)

    async def test_connection(self) -> bool:
        """Check the API with a real round trip.

        Returns:
            True if the test endpoint answered 200
        """
        try:
            await self._send("GET", TEST_ENDPOINT, timeout=10.0)
            return True
        except GallerySyncError as e:
            logger.warning("api_connection_test_failed", url=self.base_url, error=str(e))
            return False

    @retry_api_call_short
    async def download_image(self, url: str) -> bytes:
        """Download an image referenced by a case payload.

        Args:
            url: Absolute image URL

        Returns:
            Image bytes
        """
        return await self.get_bytes(url)
