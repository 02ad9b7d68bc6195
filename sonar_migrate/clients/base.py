"""Base client with error mapping, pagination and the remote-call policy."""

from collections.abc import AsyncIterator
from typing import Any

import httpx
import structlog

from sonar_migrate.errors import (
    APIError,
    AuthenticationError,
    ClientError,
    NetworkError,
    NotFoundError,
    RateLimitError,
    ServerError,
)
from sonar_migrate.resilience import RemoteCallPolicy

logger = structlog.get_logger(__name__)

DEFAULT_PAGE_SIZE = 100
# Sonar search endpoints refuse to page past 10k results
MAX_SEARCH_RESULTS = 10_000


def _error_message(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        return None
    if isinstance(payload, dict):
        errors = payload.get("errors") or []
        if errors and isinstance(errors[0], dict):
            return errors[0].get("msg")
        return payload.get("message")
    return None


class BaseAPIClient:
    """Shared HTTP plumbing for the SonarQube and SonarCloud web APIs.

    Every request runs through a :class:`RemoteCallPolicy`; POST requests
    count as writes and are throttled, GET requests are not.
    """

    service_name = "API"

    def __init__(
        self,
        base_url: str,
        token: str,
        policy: RemoteCallPolicy | None = None,
        timeout_seconds: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: Server URL.
            token: User token, sent as the basic-auth user name.
            policy: Retry and throttle policy; a default policy when omitted.
            timeout_seconds: Request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.base_url = str(base_url).rstrip("/")
        self.policy = policy or RemoteCallPolicy()
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            auth=(token, ""),
            timeout=httpx.Timeout(timeout_seconds),
            headers={"Accept": "application/json"},
            follow_redirects=True,
            transport=transport,
        )
        self._request_count = 0
        self._logger = logger.bind(
            client_type=self.__class__.__name__, base_url=self.base_url
        )

    async def __aenter__(self) -> "BaseAPIClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    def _raise_for_status(self, response: httpx.Response, path: str) -> None:
        if response.is_success:
            return

        status = response.status_code
        detail = _error_message(response)
        message = f"{self.service_name} API error ({status})"
        if detail:
            message = f"{message}: {detail}"
        kwargs = {
            "status_code": status,
            "response_text": response.text,
            "endpoint": path,
        }

        if status in (401, 403):
            raise AuthenticationError(
                f"Authentication failed for {self.service_name}: {detail or 'invalid credentials'}",
                **kwargs,
            )
        if status == 404:
            raise NotFoundError(message, **kwargs)
        if status in (429, 503):
            raise RateLimitError(
                message, retry_after=self._get_retry_after(response), **kwargs
            )
        if 400 <= status < 500:
            raise ClientError(message, **kwargs)
        if 500 <= status < 600:
            raise ServerError(message, **kwargs)
        raise APIError(f"Unexpected status code: {status}", **kwargs)

    def _get_retry_after(self, response: httpx.Response) -> int | None:
        retry_after = response.headers.get("Retry-After")
        if retry_after:
            try:
                return int(retry_after)
            except ValueError:
                pass
        return None

    async def _make_request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> httpx.Response:
        self._request_count += 1
        request_id = f"req_{self._request_count}"
        self._logger.debug(
            "Making API request", request_id=request_id, method=method, path=path
        )
        try:
            response = await self._client.request(
                method, path, params=params, data=data, files=files
            )
        except httpx.RequestError as e:
            self._logger.error(
                "Network error during API request", request_id=request_id, error=str(e)
            )
            raise NetworkError(
                f"Cannot connect to {self.service_name} server at {self.base_url}: {e}",
                endpoint=path,
            ) from e

        self._logger.debug(
            "API request completed",
            request_id=request_id,
            status_code=response.status_code,
        )
        self._raise_for_status(response, path)
        return response

    @staticmethod
    def _json(response: httpx.Response) -> dict[str, Any]:
        if not response.content:
            return {}
        payload = response.json()
        return payload if isinstance(payload, dict) else {"data": payload}

    async def get(self, path: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        """GET a JSON document. Never throttled."""
        response = await self.policy.call(
            f"GET {path}", lambda: self._make_request("GET", path, params=params)
        )
        return self._json(response)

    async def get_text(self, path: str, params: dict[str, Any] | None = None) -> str:
        response = await self.policy.call(
            f"GET {path}", lambda: self._make_request("GET", path, params=params)
        )
        return response.text

    async def post(
        self,
        path: str,
        data: dict[str, Any] | None = None,
        files: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """POST form parameters. Throttled as a write."""
        response = await self.policy.call(
            f"POST {path}",
            lambda: self._make_request("POST", path, data=data, files=files),
            write=True,
        )
        return self._json(response)

    async def iter_pages(
        self,
        path: str,
        items_key: str,
        params: dict[str, Any] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        max_results: int = MAX_SEARCH_RESULTS,
    ) -> AsyncIterator[list[dict[str, Any]]]:
        """Yield the pages of a paged search endpoint, lazily.

        Each call starts again from the first page, so the sequence can be
        restarted by iterating a fresh call. Iteration stops at the last page
        reported by the server, on an empty page, or at ``max_results``.
        """
        page = 1
        fetched = 0
        while True:
            query = {**(params or {}), "p": page, "ps": page_size}
            payload = await self.get(path, query)
            items = payload.get(items_key) or []
            if not items:
                return
            yield items

            fetched += len(items)
            paging = payload.get("paging") or {}
            total = paging.get("total", payload.get("total"))
            if total is not None and fetched >= int(total):
                return
            if len(items) < page_size or fetched >= max_results:
                return
            page += 1

    async def fetch_all(
        self,
        path: str,
        items_key: str,
        params: dict[str, Any] | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> list[dict[str, Any]]:
        """Collect every item of a paged search endpoint."""
        items: list[dict[str, Any]] = []
        async for page in self.iter_pages(path, items_key, params, page_size):
            items.extend(page)
        return items
