"""HTTP transport for the backend REST API."""

from insforge.infra.http.client import USER_AGENT, InsforgeHttpClient, TokenProvider

__all__ = [
    "USER_AGENT",
    "InsforgeHttpClient",
    "TokenProvider",
]
