"""Worker entrypoint: wires collaborators and runs the consumer pool.

Run with ``python -m trustpipe.workers.main``. Maintenance actors run in a
separate Dramatiq worker: ``dramatiq trustpipe.workers.tasks``.
"""

import asyncio
import signal
from dataclasses import dataclass
from typing import Optional

import structlog
from redis.asyncio import Redis

from trustpipe.adapters.market_data import CachedMarketData, HttpMarketDataService
from trustpipe.adapters.oracle import OpenAIOracle, ReasoningAdapter
from trustpipe.adapters.probes import HttpProber
from trustpipe.adapters.subjects import InMemorySubjectStore, SqlSubjectStore
from trustpipe.config import Settings, get_settings
from trustpipe.db.session import dispose_engine, get_session_factory
from trustpipe.engines.cache import VerificationCache
from trustpipe.engines.locks import SubjectLock
from trustpipe.engines.policy import ScoringPolicy
from trustpipe.engines.repository import get_repository
from trustpipe.engines.retry import RetryPolicy, SystemClock
from trustpipe.strategies import StrategyContext, build_registry
from trustpipe.telemetry import configure_logging, init_sentry
from trustpipe.workers.consumer import ConsumerPool
from trustpipe.workers.dispatcher import TaskDispatcher
from trustpipe.workers.metrics import metrics
from trustpipe.workers.queue import RedisStreamPublisher
from trustpipe.workers.scheduler import setup_scheduler, shutdown_scheduler

logger = structlog.get_logger()


@dataclass
class Runtime:
    redis: Redis
    dispatcher: TaskDispatcher
    pool: ConsumerPool
    market_service: HttpMarketDataService
    prober: HttpProber

    async def close(self) -> None:
        await self.market_service.close()
        await self.prober.close()
        await self.redis.aclose()
        await dispose_engine()


def build_runtime(settings: Optional[Settings] = None) -> Runtime:
    settings = settings or get_settings()
    clock = SystemClock()
    redis = Redis.from_url(
        str(settings.redis_url),
        decode_responses=True,
        socket_timeout=settings.external_call_timeout_seconds + settings.fetch_block_ms / 1000,
    )
    cache = VerificationCache(redis)

    session_factory = get_session_factory()
    if session_factory is None:
        logger.warning("No database configured; subjects and records are held in memory")
        subjects = InMemorySubjectStore()
    else:
        subjects = SqlSubjectStore(session_factory)

    market_service = HttpMarketDataService()
    prober = HttpProber()
    lock = None
    if settings.subject_locks_enabled:
        lock = SubjectLock(
            redis,
            ttl_seconds=settings.subject_lock_ttl_seconds,
            wait_seconds=settings.subject_lock_wait_seconds,
            poll_seconds=settings.subject_lock_poll_seconds,
            clock=clock,
        )

    context = StrategyContext(
        cache=cache,
        repository=get_repository(),
        subjects=subjects,
        reasoning=ReasoningAdapter(OpenAIOracle()),
        market=CachedMarketData(market_service, cache),
        prober=prober,
        clock=clock,
        policy=ScoringPolicy.from_settings(settings),
        lock=lock,
    )
    dispatcher = TaskDispatcher(
        build_registry(context),
        RedisStreamPublisher(redis),
        cache,
        retry_policy=RetryPolicy.from_settings(settings),
        clock=clock,
        settings=settings,
        metrics=metrics,
    )
    pool = ConsumerPool(redis, dispatcher, settings=settings, clock=clock)
    return Runtime(redis, dispatcher, pool, market_service, prober)


async def shutdown(runtime: Runtime, settings: Settings) -> None:
    """Drain the consumers, flush counters and release every client."""
    try:
        await runtime.pool.drain(settings.drain_timeout_seconds)
        shutdown_scheduler()
        await metrics.flush(get_session_factory())
    finally:
        await runtime.close()
        logger.info("Trust pipeline worker stopped")


async def run_worker(settings: Optional[Settings] = None) -> None:
    settings = settings or get_settings()
    runtime = build_runtime(settings)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, runtime.pool.stop)

    setup_scheduler()
    runtime.pool.start()
    logger.info(
        "Trust pipeline worker running",
        environment=settings.environment,
        partitions=settings.task_partitions,
        group=settings.consumer_group,
    )
    try:
        await runtime.pool.wait()
    finally:
        await shutdown(runtime, settings)


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    init_sentry(settings)
    asyncio.run(run_worker(settings))


if __name__ == "__main__":
    main()
