"""Readwise Reader API client.

Every outbound call goes through one rate limiter and one retry loop:
https://readwise.io/reader_api
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx

from shared.config import get_readwise_config
from shared.exceptions import (
    UpstreamError, TransientUpstreamError, PermanentUpstreamError
)
from shared.models import DocumentPage
from services.readwise_client.rate_limit import RateLimiter, next_retry_delay

logger = logging.getLogger(__name__)


class ReadwiseClient:
    """Rate-limited client for the Readwise Reader document API."""

    def __init__(
        self,
        api_token: str,
        api_base: Optional[str] = None,
        min_request_interval: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        """
        Initialize the Readwise client.

        Args:
            api_token: Readwise access token
            api_base: API root URL, defaults to READWISE_API_BASE
            min_request_interval: Seconds between request starts, defaults to
                                  READWISE_MIN_REQUEST_INTERVAL
            timeout: Per-request timeout in seconds
            transport: Optional httpx transport (used by tests)
        """
        config = get_readwise_config()
        self.api_base = (api_base or config["api_base"]).rstrip("/")
        self.rate_limiter = RateLimiter(
            min_interval=min_request_interval if min_request_interval is not None
            else config["min_request_interval"]
        )
        self._http = httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"Token {api_token}",
                "Content-Type": "application/json",
            },
            timeout=timeout if timeout is not None else config["timeout"],
            transport=transport
        )

    async def __aenter__(self) -> "ReadwiseClient":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP connection pool."""
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        """
        Send one logical request, retrying per the policy table.

        429 responses are retried for as long as the provider keeps
        throttling; 500 responses up to three times with exponential
        backoff. Every attempt passes through the rate limiter.

        Returns:
            The final response, successful or not
        """
        attempts: Dict[int, int] = {}

        while True:
            await self.rate_limiter.acquire()
            response = await self._http.request(method, path, **kwargs)

            delay = next_retry_delay(response, attempts, self.rate_limiter.min_interval)
            if delay is None:
                return response

            logger.warning(
                f"Readwise returned {response.status_code} for {method} {path}, "
                f"retrying in {delay:.1f}s (attempt {attempts[response.status_code]})"
            )
            await asyncio.sleep(delay)

    async def _send(self, method: str, path: str, action: str, **kwargs) -> httpx.Response:
        """Send a request and raise an UpstreamError for anything but success."""
        try:
            response = await self._request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"Transport error trying to {action}: {e}")
            raise TransientUpstreamError(f"Failed to {action}: {e}") from e

        if not response.is_success:
            raise _error_for(response, action)

        return response

    async def validate_token(self) -> bool:
        """
        Validate the API token.

        Returns:
            True if the token is valid; False on rejection or any failure
        """
        try:
            response = await self._request("GET", "/v2/auth/")
        except Exception as e:
            logger.warning(f"Token validation failed: {e}")
            return False

        return response.status_code == 204

    async def fetch_page(
        self,
        cursor: Optional[str] = None,
        updated_after: Optional[datetime] = None,
        location: Optional[str] = None,
        category: Optional[str] = None
    ) -> DocumentPage:
        """
        Fetch one page of documents.

        Args:
            cursor: Opaque page cursor from the previous page, None for the first
            updated_after: Only return documents updated after this instant
            location: Optional location filter
            category: Optional category filter

        Returns:
            DocumentPage with raw results and the next cursor (None when done)

        Raises:
            UpstreamError: If the API answers with a non-success status
        """
        params: Dict[str, str] = {}
        if updated_after:
            params["updatedAfter"] = to_iso8601(updated_after)
        if location:
            params["location"] = location
        if category:
            params["category"] = category
        if cursor:
            params["pageCursor"] = cursor

        response = await self._send("GET", "/v3/list/", "fetch documents", params=params)
        data = _json_body(response, "fetch documents")

        return DocumentPage(
            results=data.get("results") or [],
            next_cursor=data.get("nextPageCursor") or None,
            count=data.get("count")
        )

    async def fetch_document(self, readwise_id: str) -> Optional[Dict[str, Any]]:
        """
        Fetch a single document by ID.

        Returns:
            The raw document or None if it does not exist
        """
        response = await self._send(
            "GET", "/v3/list/", "fetch document", params={"id": readwise_id}
        )
        results = _json_body(response, "fetch document").get("results") or []
        return results[0] if results else None

    async def update_document(self, readwise_id: str, patch: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply a partial update (location, tags, seen, ...) to one document.

        Args:
            readwise_id: Upstream document ID
            patch: Mutable fields to change

        Returns:
            The API acknowledgement ({id, url}), empty for 204 responses

        Raises:
            UpstreamError: If the API answers with a non-success status
        """
        response = await self._send(
            "PATCH", f"/v3/update/{readwise_id}/", "update document", json=patch
        )
        if response.status_code == 204 or not response.content:
            return {}
        return _json_body(response, "update document")

    async def archive_document(self, readwise_id: str) -> Dict[str, Any]:
        """Move one document to the archive location."""
        return await self.update_document(readwise_id, {"location": "archive"})


def to_iso8601(value: datetime) -> str:
    """Format a timestamp for the API; naive values are taken as UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def _error_for(response: httpx.Response, action: str) -> UpstreamError:
    message = f"Failed to {action}: {response.status_code} {response.reason_phrase}"
    logger.error(message)
    if response.status_code >= 500:
        return TransientUpstreamError(message, status_code=response.status_code)
    return PermanentUpstreamError(message, status_code=response.status_code)


def _json_body(response: httpx.Response, action: str) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError as e:
        raise PermanentUpstreamError(
            f"Failed to {action}: response is not valid JSON",
            status_code=response.status_code
        ) from e

    if not isinstance(data, dict):
        raise PermanentUpstreamError(
            f"Failed to {action}: unexpected response shape",
            status_code=response.status_code
        )
    return data


def create_readwise_client(api_token: str, **kwargs) -> ReadwiseClient:
    """Create a Readwise client from a token."""
    return ReadwiseClient(api_token, **kwargs)


class ReadwiseClientCache:
    """
    Keeps one client per token alive so admission spacing spans callers.

    The sync engine and the archive executor share one cache per process,
    which makes them share a single rate limiter. A client replaced after a
    token change may still be serving an in-flight batch, so it is retired
    rather than closed, and only closed by ``aclose``.
    """

    def __init__(self, client_factory: Callable[[str], ReadwiseClient] = create_readwise_client):
        self._client_factory = client_factory
        self._client: Optional[ReadwiseClient] = None
        self._token: Optional[str] = None
        self._retired: List[ReadwiseClient] = []
        self._lock = asyncio.Lock()

    async def get(self, api_token: str) -> ReadwiseClient:
        """Return the client for a token, replacing the cached one if the token changed."""
        async with self._lock:
            if self._client is not None and self._token == api_token:
                return self._client

            if self._client is not None:
                logger.info("API token changed, retiring the cached Readwise client")
                self._retired.append(self._client)
            self._client = self._client_factory(api_token)
            self._token = api_token
            return self._client

    async def aclose(self) -> None:
        """Close the cached client and every retired one."""
        async with self._lock:
            clients = self._retired + ([self._client] if self._client is not None else [])
            self._retired = []
            self._client = None
            self._token = None

        for client in clients:
            await client.aclose()
