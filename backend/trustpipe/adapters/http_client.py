"""Shared httpx client factory for outbound calls.

Every adapter that talks HTTP (market data, website and social-profile
probes) builds its client here so the external-call timeout
and identifying headers stay consistent.

Usage:
    from trustpipe.adapters.http_client import create_http_client

    async with create_http_client(json_accept=True) as client:
        response = await client.get(url)
"""

from typing import Optional

import httpx

from trustpipe.config import get_settings


def get_default_headers(
    user_agent: Optional[str] = None,
    json_accept: bool = False,
) -> dict[str, str]:
    """Headers sent with every outbound request."""
    return {
        "User-Agent": user_agent or get_settings().probe_user_agent,
        "Accept": "application/json" if json_accept else "text/html,application/xhtml+xml,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.5",
    }


def create_http_client(
    timeout: Optional[float] = None,
    follow_redirects: bool = True,
    user_agent: Optional[str] = None,
    json_accept: bool = False,
    headers: Optional[dict[str, str]] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> httpx.AsyncClient:
    """Create an AsyncClient with the external-call timeout.

    Args:
        timeout: Request timeout in seconds. Defaults to
            settings.external_call_timeout_seconds.
        follow_redirects: Whether to follow HTTP redirects.
        user_agent: Custom user agent. Defaults to settings.probe_user_agent.
        json_accept: Ask for JSON responses.
        headers: Extra headers merged over the defaults.
        transport: Custom transport (tests pass an httpx.MockTransport).
    """
    default_timeout = timeout if timeout is not None else get_settings().external_call_timeout_seconds
    default_headers = get_default_headers(user_agent=user_agent, json_accept=json_accept)
    if headers:
        default_headers.update(headers)

    return httpx.AsyncClient(
        timeout=default_timeout,
        follow_redirects=follow_redirects,
        headers=default_headers,
        transport=transport,
    )


class ManagedHttpClient:
    """Lazily created client reused across calls of a long-lived adapter."""

    def __init__(
        self,
        timeout: Optional[float] = None,
        json_accept: bool = False,
        user_agent: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._timeout = timeout
        self._json_accept = json_accept
        self._user_agent = user_agent
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = create_http_client(
                timeout=self._timeout,
                json_accept=self._json_accept,
                user_agent=self._user_agent,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client if it exists."""
        if self._client:
            await self._client.aclose()
            self._client = None
