"""HTTP client for the backend REST API.

Provides the transport used by every SDK module with:
- Connection pooling (one ``httpx.AsyncClient`` per SDK client)
- Per-request ``Authorization`` header injection
- Retry with exponential backoff for idempotent GET requests
- Request/response logging
- Decoding of the backend's error body into ``InsforgeHttpException``
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

import httpx

from insforge._version import __version__
from insforge.core.exceptions import InsforgeHttpException, InsforgeNetworkException
from insforge.utils.retry import RetryError, RetryStrategy

logger = logging.getLogger(__name__)

USER_AGENT = f"insforge-python/{__version__}"

TokenProvider = Callable[[], str | None]

_RETRYABLE = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
)


class InsforgeHttpClient:
    """HTTP client for the backend REST API.

    Example:
        ```python
        http = InsforgeHttpClient(
            base_url="https://myapp.insforge.app",
            anon_key="anon-key",
            token_provider=lambda: session.access_token,
        )
        channels = await http.get("/api/realtime/channels")
        ```
    """

    def __init__(
        self,
        base_url: str,
        anon_key: str = "",
        token_provider: TokenProvider | None = None,
        timeout: float = 30.0,
        max_retries: int = 3,
        headers: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize HTTP client.

        Args:
            base_url: Backend base URL.
            anon_key: Anonymous key used when no session token is available.
            token_provider: Returns the current access token, or None.
            timeout: Request timeout in seconds.
            max_retries: Maximum attempts for idempotent requests.
            headers: Default headers to include in all requests.
            transport: Optional httpx transport (tests inject ``httpx.MockTransport``).
        """
        self.base_url = base_url.rstrip("/")
        self.anon_key = anon_key
        self.token_provider = token_provider
        self.timeout = timeout
        self._retry = RetryStrategy(max_attempts=max_retries, exceptions=_RETRYABLE)

        default_headers = {
            "Content-Type": "application/json",
            "User-Agent": USER_AGENT,
        }
        default_headers.update(headers or {})

        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout),
            headers=default_headers,
            transport=transport,
            limits=httpx.Limits(
                max_keepalive_connections=20,
                max_connections=100,
            ),
        )

    async def close(self) -> None:
        """Close the HTTP client and release connections."""
        await self.client.aclose()

    async def __aenter__(self) -> InsforgeHttpClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def current_token(self) -> str:
        """Resolve the bearer token: session token first, anon key last."""
        token = self.token_provider() if self.token_provider else None
        return token or self.anon_key

    async def request(
        self,
        method: str,
        path: str,
        params: dict[str, Any] | None = None,
        json: Any = None,
        headers: dict[str, str] | None = None,
    ) -> httpx.Response:
        """Send one request and return the raw response.

        Raises:
            InsforgeNetworkException: When the request could not be completed.
        """
        request_headers = dict(headers or {})
        if not any(key.lower() == "authorization" for key in request_headers):
            token = self.current_token()
            if token:
                request_headers["Authorization"] = f"Bearer {token}"

        logger.debug(
            f"{method} request to {self.base_url}{path}",
            extra={"method": method, "path": path, "params": params},
        )

        try:
            if method == "GET":
                response = await self._retry.run(
                    self.client.request,
                    method,
                    path,
                    params=params,
                    headers=request_headers,
                )
            else:
                response = await self.client.request(
                    method, path, params=params, json=json, headers=request_headers
                )
        except RetryError as e:
            raise InsforgeNetworkException(
                f"{method} {path} failed: {e.last_exception}",
                extra={"attempts": e.attempts},
            ) from e
        except httpx.HTTPError as e:
            raise InsforgeNetworkException(f"{method} {path} failed: {e}") from e

        logger.debug(
            f"{method} response from {self.base_url}{path}",
            extra={
                "method": method,
                "path": path,
                "status_code": response.status_code,
            },
        )
        return response

    async def get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        """GET ``path`` and return the decoded JSON body."""
        return self.handle_response(await self.request("GET", path, params=params))

    async def post(self, path: str, json: Any = None) -> Any:
        """POST ``json`` to ``path`` and return the decoded JSON body."""
        return self.handle_response(await self.request("POST", path, json=json))

    async def put(self, path: str, json: Any = None) -> Any:
        """PUT ``json`` to ``path`` and return the decoded JSON body."""
        return self.handle_response(await self.request("PUT", path, json=json))

    async def delete(self, path: str) -> Any:
        """DELETE ``path`` and return the decoded JSON body, if any."""
        return self.handle_response(await self.request("DELETE", path))

    @staticmethod
    def handle_response(response: httpx.Response) -> Any:
        """Decode a successful response or raise the backend's error.

        Returns:
            Decoded JSON, or None for 204 and empty bodies.

        Raises:
            InsforgeHttpException: On non-2xx responses.
        """
        if not response.is_success:
            raise _http_error(response)

        if response.status_code == 204 or not response.content:
            return None
        return response.json()


def _http_error(response: httpx.Response) -> InsforgeHttpException:
    """Build an exception from the backend's ``{error, message, statusCode}`` body."""
    body = response.text
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict) and "message" in data:
        return InsforgeHttpException(
            status_code=int(data.get("statusCode", response.status_code)),
            error=data.get("error"),
            message=str(data["message"]),
            next_actions=data.get("nextActions"),
        )

    return InsforgeHttpException(
        status_code=response.status_code,
        error="UNKNOWN_ERROR",
        message=body or response.reason_phrase,
    )
