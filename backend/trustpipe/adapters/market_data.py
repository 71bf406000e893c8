"""Market-Data Service client for salary statistics."""

from typing import Optional, Protocol

import httpx
import structlog

from trustpipe.adapters.http_client import ManagedHttpClient
from trustpipe.config import get_settings
from trustpipe.engines.cache import VerificationCache, subject_key
from trustpipe.engines.policy import MARKET_SALARY_NAMESPACE, MARKET_SALARY_TTL

logger = structlog.get_logger()

LIVE_CONFIDENCE = 0.9
FALLBACK_CONFIDENCE = 0.5

# Served whenever the provider is unreachable or answers garbage
FALLBACK_STATS = {
    "min": 70000,
    "max": 120000,
    "median": 95000,
    "currency": "USD",
    "source": "fallback",
}


def market_data_from(raw: dict, confidence: float) -> dict:
    return {
        "min_salary": raw["min"],
        "max_salary": raw["max"],
        "median_salary": raw["median"],
        "currency": raw.get("currency") or "USD",
        "data_source": raw.get("source") or "market_api",
        "confidence": confidence,
    }


def fallback_market_data() -> dict:
    return market_data_from(FALLBACK_STATS, FALLBACK_CONFIDENCE)


class MarketDataService(Protocol):
    async def get_salary_stats(
        self, title: str, location: Optional[str], experience: Optional[str]
    ) -> dict: ...


class HttpMarketDataService:
    """Salary statistics over HTTP with a deterministic fallback.

    Never raises for provider failures: the fallback stats are returned
    with a lower confidence instead.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or get_settings().market_data_url
        self._http = ManagedHttpClient(json_accept=True, transport=transport)
        self.calls = 0

    async def get_salary_stats(
        self, title: str, location: Optional[str], experience: Optional[str]
    ) -> dict:
        self.calls += 1
        client = await self._http.get_client()
        params = {"title": title, "location": location or "", "experience": experience or ""}
        try:
            response = await client.get(self.base_url, params=params)
            response.raise_for_status()
            payload = response.json()
            return market_data_from(payload, LIVE_CONFIDENCE)
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            logger.warning("Market data unavailable, using fallback", title=title, location=location, error=str(e))
            return fallback_market_data()

    async def close(self) -> None:
        await self._http.close()


class CachedMarketData:
    """Read-through cache in front of a MarketDataService.

    Keyed by ``market_salary:{title}:{location}:{experience}`` for one day.
    """

    def __init__(self, service: MarketDataService, cache: VerificationCache):
        self.service = service
        self.cache = cache

    async def get_salary_stats(
        self, title: str, location: Optional[str], experience: Optional[str]
    ) -> dict:
        key = subject_key(title, location, experience)
        cached = await self.cache.get(MARKET_SALARY_NAMESPACE, key)
        if cached is not None:
            return cached
        stats = await self.service.get_salary_stats(title, location, experience)
        await self.cache.set(MARKET_SALARY_NAMESPACE, key, stats, ttl=MARKET_SALARY_TTL)
        return stats
