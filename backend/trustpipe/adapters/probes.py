"""Reachability probes for company websites and social profiles."""

import asyncio
from typing import Optional, Protocol

import httpx
import structlog

from trustpipe.adapters.http_client import ManagedHttpClient

logger = structlog.get_logger()


class Prober(Protocol):
    async def is_reachable(self, url: str) -> bool: ...


class HttpProber:
    """GET a URL and report whether it answered with a non-error status.

    Network failures are an answer ("unreachable"), not an exception.
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self._http = ManagedHttpClient(transport=transport)

    async def is_reachable(self, url: str) -> bool:
        client = await self._http.get_client()
        try:
            response = await client.get(url)
        except httpx.HTTPError as e:
            logger.debug("Probe failed", url=url, error=str(e))
            return False
        return response.status_code < 400

    async def close(self) -> None:
        await self._http.close()


def website_url(domain: Optional[str], website: Optional[str]) -> Optional[str]:
    """``https://{domain}``, falling back to the stored website."""
    if domain:
        domain = domain.strip().rstrip("/")
        if domain.startswith(("http://", "https://")):
            return domain
        return f"https://{domain}"
    return website or None


async def probe_website(prober: Prober, domain: Optional[str], website: Optional[str]) -> dict:
    url = website_url(domain, website)
    if not url:
        return {"passed": False, "confidence": 0.4, "details": "No website or domain on file"}
    if await prober.is_reachable(url):
        return {"passed": True, "confidence": 0.8, "details": f"Website {url} is accessible"}
    return {"passed": False, "confidence": 0.4, "details": f"Website {url} is inaccessible"}


async def probe_social_profiles(prober: Prober, profiles: list[str]) -> dict:
    results = await asyncio.gather(*(prober.is_reachable(url) for url in profiles))
    reachable = sum(1 for ok in results if ok)
    return {
        "passed": reachable > 0,
        "confidence": reachable / max(len(profiles), 1),
        "details": f"Valid profiles: {reachable}/{len(profiles)}",
    }
