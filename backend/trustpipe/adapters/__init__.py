"""Narrow interfaces to external collaborators."""

from trustpipe.adapters.market_data import CachedMarketData, HttpMarketDataService, MarketDataService
from trustpipe.adapters.oracle import OpenAIOracle, ReasoningAdapter, TextOracle
from trustpipe.adapters.probes import HttpProber, Prober
from trustpipe.adapters.subjects import InMemorySubjectStore, SqlSubjectStore, SubjectStore

__all__ = [
    "CachedMarketData",
    "HttpMarketDataService",
    "MarketDataService",
    "OpenAIOracle",
    "ReasoningAdapter",
    "TextOracle",
    "HttpProber",
    "Prober",
    "InMemorySubjectStore",
    "SqlSubjectStore",
    "SubjectStore",
]
