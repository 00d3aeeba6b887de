"""Base HTTP client for Gallery Sync.

This module provides a base async HTTP client with connection pooling,
rate limiting, error mapping, and request logging.
"""

import asyncio
import time
from typing import Any
from urllib.parse import urljoin

import httpx

from gallery_sync.client.exceptions import (
    APIError,
    AuthenticationError,
    AuthorizationError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from gallery_sync.utils.logging import (
    get_logger,
    log_api_request,
    sanitize_payload,
    should_log_payloads,
    truncate_payload,
)

logger = get_logger(__name__)


class BaseAPIClient:
    """Base async HTTP client with rate limiting and error mapping.

    This client provides:
    - Connection pooling
    - Rate limiting
    - Request/response logging
    - Mapping of HTTP error statuses to exception types
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        verify_ssl: bool = True,
        timeout: int = 30,
        rate_limit: int = 10,
        max_connections: int = 20,
        max_keepalive_connections: int = 10,
        log_payloads: bool = False,
        max_payload_size: int = 10000,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize base API client.

        Args:
            base_url: Base URL for API requests
            token: Authentication token
            verify_ssl: Whether to verify SSL certificates
            timeout: Request timeout in seconds
            rate_limit: Maximum requests per second (0 disables limiting)
            max_connections: Maximum number of connections in pool
            max_keepalive_connections: Maximum keep-alive connections
            log_payloads: Enable request/response payload logging at DEBUG level
            max_payload_size: Maximum payload size (chars) to log before truncation
            transport: Optional httpx transport (used by tests)
        """
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.verify_ssl = verify_ssl

        self.log_payloads = log_payloads
        self.max_payload_size = max_payload_size

        self.rate_limit = rate_limit
        self._rate_limit_lock = asyncio.Lock()
        self._last_request_time: float = 0
        self._min_request_interval = 1.0 / rate_limit if rate_limit > 0 else 0

        self.client = httpx.AsyncClient(
            headers=self._build_headers(),
            timeout=httpx.Timeout(timeout, connect=10.0),
            limits=httpx.Limits(
                max_connections=max_connections,
                max_keepalive_connections=max_keepalive_connections,
            ),
            verify=verify_ssl,
            follow_redirects=True,
            transport=transport,
        )

        logger.info(
            "client_initialized",
            base_url=self.base_url,
            rate_limit=rate_limit,
            max_connections=max_connections,
        )

    def _build_headers(self) -> dict[str, str]:
        """Build HTTP headers shared by every request.

        The bearer token is not among them; see ``_auth_headers``.

        Returns:
            Dictionary of HTTP headers
        """
        return {
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _auth_headers(self, url: str) -> dict[str, str]:
        """Bearer header for requests to the API origin.

        Image URLs in case payloads can point at any host; those requests
        are sent without credentials.
        """
        target = httpx.URL(url)
        api = httpx.URL(self.base_url)
        same_origin = (target.scheme, target.host, target.port) == (api.scheme, api.host, api.port)
        if self.token and same_origin:
            return {"Authorization": f"Bearer {self.token}"}
        return {}

    def _build_url(self, endpoint: str) -> str:
        """Build full URL from endpoint.

        Absolute URLs (image locations, for example) are returned unchanged.

        Args:
            endpoint: API endpoint path or absolute URL

        Returns:
            Full URL
        """
        if endpoint.startswith(("http://", "https://")):
            return endpoint
        return urljoin(f"{self.base_url}/", endpoint.lstrip("/"))

    async def _rate_limit_wait(self) -> None:
        """Implement rate limiting by waiting if necessary."""
        if self._min_request_interval > 0:
            async with self._rate_limit_lock:
                now = time.time()
                time_since_last = now - self._last_request_time

                if time_since_last < self._min_request_interval:
                    await asyncio.sleep(self._min_request_interval - time_since_last)

                self._last_request_time = time.time()

    def _handle_error_response(self, response: httpx.Response) -> None:
        """Handle error responses by raising appropriate exceptions.

        Args:
            response: HTTP response object

        Raises:
            AuthenticationError: For 401 responses
            AuthorizationError: For 403 responses
            NotFoundError: For 404 responses
            RateLimitError: For 429 responses
            ServerError: For 5xx responses
            APIError: For other error responses
        """
        status_code = response.status_code

        try:
            error_data = response.json()
        except ValueError:
            error_data = {"detail": response.text}

        if isinstance(error_data, dict):
            error_message = error_data.get("detail", error_data.get("message", "Unknown error"))
        else:
            error_message = str(error_data) if error_data else "Unknown error"
            error_data = {"detail": error_message}

        if status_code == 401:
            raise AuthenticationError(
                message="Authentication failed", status_code=status_code, response=error_data
            )
        elif status_code == 403:
            raise AuthorizationError(
                message="Authorization failed", status_code=status_code, response=error_data
            )
        elif status_code == 404:
            raise NotFoundError(
                message="Resource not found", status_code=status_code, response=error_data
            )
        elif status_code == 429:
            retry_after = response.headers.get("Retry-After")
            raise RateLimitError(
                message="Rate limit exceeded",
                status_code=status_code,
                response=error_data,
                retry_after=int(retry_after) if retry_after and retry_after.isdigit() else None,
            )
        elif 500 <= status_code < 600:
            raise ServerError(
                message=f"Server error: {error_message}",
                status_code=status_code,
                response=error_data,
            )
        else:
            raise APIError(
                message=f"API error: {error_message}",
                status_code=status_code,
                response=error_data,
            )

    async def _send(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        """Send a request and raise mapped exceptions for error statuses."""
        url = self._build_url(endpoint)
        headers = {**self._auth_headers(url), **kwargs.pop("headers", {})}

        await self._rate_limit_wait()

        if should_log_payloads(logger, self.log_payloads) and json_data is not None:
            logger.debug(
                "api_request_payload",
                method=method,
                url=url,
                payload=truncate_payload(sanitize_payload(json_data), self.max_payload_size),
            )

        start_time = time.time()

        try:
            response = await self.client.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=headers,
                **kwargs,
            )
        except httpx.TimeoutException as e:
            logger.error("timeout_error", method=method, url=url, error=str(e))
            raise NetworkError(f"Request timeout: {str(e)}") from e
        except httpx.TransportError as e:
            logger.error("network_error", method=method, url=url, error=str(e))
            raise NetworkError(f"Network error: {str(e)}") from e

        log_api_request(
            logger,
            method=method,
            url=url,
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
        )

        if response.status_code >= 400:
            self._handle_error_response(response)

        return response

    async def request(
        self,
        method: str,
        endpoint: str,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make an HTTP request with rate limiting and error handling.

        Args:
            method: HTTP method (GET, POST, etc.)
            endpoint: API endpoint path
            params: Query parameters
            json_data: JSON request body
            **kwargs: Additional arguments passed to httpx

        Returns:
            Response JSON data

        Raises:
            NetworkError: For network-related errors
            Various APIError subclasses: For API errors
        """
        response = await self._send(method, endpoint, params=params, json_data=json_data, **kwargs)

        if not response.content:
            return {}

        try:
            data = response.json()
        except ValueError as e:
            raise APIError(
                message="Invalid JSON in response",
                status_code=response.status_code,
            ) from e

        if should_log_payloads(logger, self.log_payloads):
            logger.debug(
                "api_response_payload",
                method=method,
                endpoint=endpoint,
                status_code=response.status_code,
                payload=truncate_payload(sanitize_payload(data), self.max_payload_size),
            )

        return data if isinstance(data, dict) else {"data": data}

    async def get(
        self, endpoint: str, params: dict[str, Any] | None = None, **kwargs: Any
    ) -> dict[str, Any]:
        """Make a GET request.

        Args:
            endpoint: API endpoint path
            params: Query parameters
            **kwargs: Additional arguments

        Returns:
            Response JSON data
        """
        return await self.request("GET", endpoint, params=params, **kwargs)

    async def post(
        self,
        endpoint: str,
        json_data: dict[str, Any] | None = None,
        params: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> dict[str, Any]:
        """Make a POST request.

        Args:
            endpoint: API endpoint path
            json_data: JSON request body
            params: Query parameters
            **kwargs: Additional arguments

        Returns:
            Response JSON data
        """
        return await self.request("POST", endpoint, params=params, json_data=json_data, **kwargs)

    async def get_bytes(self, url: str) -> bytes:
        """Fetch a binary resource such as an image.

        Args:
            url: Absolute URL or endpoint path

        Returns:
            Response body
        """
        response = await self._send("GET", url)
        return response.content

    async def close(self) -> None:
        """Close the HTTP client and clean up resources."""
        await self.client.aclose()
        logger.info("client_closed", base_url=self.base_url)

    async def __aenter__(self) -> "BaseAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Async context manager exit."""
        await self.close()
