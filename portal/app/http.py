"""
Shared outbound HTTP client.

One ``httpx.AsyncClient`` is created at startup and used for metadata,
token and downstream API calls. TLS is pinned to version 1.2 or higher.
"""

import ssl

import httpx

from .config import Settings


USER_AGENT = "identity-portal/1.0"


def create_ssl_context() -> ssl.SSLContext:
    context = ssl.create_default_context()
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def create_http_client(settings: Settings) -> httpx.AsyncClient:
    """
    Create the shared HTTP client.

    Args:
        settings: Application settings (timeout)

    Returns:
        AsyncClient with TLS 1.2+, a User-Agent header and default timeout
    """
    return httpx.AsyncClient(
        verify=create_ssl_context(),
        timeout=httpx.Timeout(settings.HTTP_TIMEOUT_SECONDS),
        headers={"User-Agent": USER_AGENT},
    )
