"""Utilities for creating the HTTP clients used by the HAAPI flow."""

from typing import Any, Protocol

import httpx

__all__ = ["HAAPI_MEDIA_TYPE", "REQUEST_TIMEOUT", "HaapiHttpClientFactory", "create_haapi_http_client"]

HAAPI_MEDIA_TYPE = "application/vnd.auth+json"

# Applies to connect, read, write and pool acquisition alike
REQUEST_TIMEOUT = 20.0


class HaapiHttpClientFactory(Protocol):
    def __call__(
        self,
        headers: dict[str, str] | None = None,
        timeout: httpx.Timeout | None = None,
        verify: bool = True,
    ) -> httpx.AsyncClient: ...


def create_haapi_http_client(
    headers: dict[str, str] | None = None,
    timeout: httpx.Timeout | None = None,
    verify: bool = True,
) -> httpx.AsyncClient:
    """Create a standardized httpx AsyncClient for talking to a HAAPI server.

    HTTP redirects are never followed by the transport: in a hypermedia flow a
    redirect is a step the controller decides about.

    Args:
        headers: Optional headers to include with all requests.
        timeout: Request timeout as httpx.Timeout object. Defaults to 20 seconds.
        verify: Whether to verify TLS certificates.

    Returns:
        Configured httpx.AsyncClient instance.
    """
    kwargs: dict[str, Any] = {
        "follow_redirects": False,
        "timeout": timeout if timeout is not None else httpx.Timeout(REQUEST_TIMEOUT),
        "verify": verify,
        "headers": {"Accept": HAAPI_MEDIA_TYPE, **(headers or {})},
    }
    return httpx.AsyncClient(**kwargs)
