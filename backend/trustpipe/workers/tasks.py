"""Background maintenance tasks using Dramatiq."""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

import dramatiq
from dramatiq.brokers.redis import RedisBroker
import structlog

from trustpipe.config import get_settings
from trustpipe.db.session import create_engine, create_session_factory
from trustpipe.engines.policy import CURRENT_SCHEMA_VERSION
from trustpipe.engines.repository import RecordRepository, SqlRecordRepository, get_repository

settings = get_settings()
logger = structlog.get_logger()

T = TypeVar("T")

# Configure Redis broker
redis_broker = RedisBroker(url=str(settings.redis_url))
dramatiq.set_broker(redis_broker)


def run_async(coro):
    """Helper to run async functions in sync context."""
    loop = asyncio.new_event_loop()
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()


# ============================================
# RECORD MAINTENANCE
# ============================================


async def purge_expired_records(
    repository: Optional[RecordRepository] = None,
    now: Optional[datetime] = None,
) -> int:
    """Physically delete records whose expiry has passed."""
    repository = repository or get_repository()
    now = now or datetime.now(timezone.utc)
    purged = await repository.purge_expired(now)
    logger.info("Expired verification records purged", purged=purged)
    return purged


async def migrate_records_schema(
    old_version: int,
    new_version: int,
    repository: Optional[RecordRepository] = None,
) -> dict:
    repository = repository or get_repository()
    result = await repository.migrate_schema(old_version, new_version)
    logger.info("Verification records migrated", old_version=old_version, new_version=new_version, **result)
    return result


async def report_spam_records(
    threshold: float = 0.8,
    limit: int = 100,
    repository: Optional[RecordRepository] = None,
) -> list[dict]:
    """Summarise current high-confidence spam records for moderators."""
    repository = repository or get_repository()
    records = await repository.find_spam_records(threshold, limit)
    summary = [
        {"record_id": r.id, "job_id": r.job_id, "spam_score": r.spam_score, "checked_at": r.checked_at}
        for r in records
    ]
    logger.info("Spam records report", threshold=threshold, count=len(summary))
    return summary


async def _with_actor_repository(work: Callable[[RecordRepository], Awaitable[T]]) -> T:
    """Run ``work`` against a repository owned by this actor call.

    Every actor call runs on its own event loop (and Dramatiq runs several
    in parallel threads), so the engine is created here and disposed before
    the loop closes instead of coming from the process-wide cache.
    """
    engine = create_engine(settings)
    if engine is None:
        return await work(get_repository())
    try:
        return await work(SqlRecordRepository(create_session_factory(engine)))
    finally:
        await engine.dispose()


@dramatiq.actor(max_retries=2, min_backoff=60000)
def purge_expired_records_task():
    """Delete expired verification records."""
    logger.info("Starting purge task")
    run_async(_with_actor_repository(lambda repository: purge_expired_records(repository)))
    logger.info("Purge task complete")


@dramatiq.actor(max_retries=1)
def migrate_records_schema_task(old_version: int = 1, new_version: int = CURRENT_SCHEMA_VERSION):
    """Backfill expiry on legacy records and bump their schema version."""
    logger.info("Starting schema migration task", old_version=old_version, new_version=new_version)
    run_async(_with_actor_repository(
        lambda repository: migrate_records_schema(old_version, new_version, repository)
    ))
    logger.info("Schema migration task complete")


@dramatiq.actor(max_retries=1)
def report_spam_records_task(threshold: float = 0.8, limit: int = 100):
    """Log the current spam records above ``threshold``."""
    run_async(_with_actor_repository(
        lambda repository: report_spam_records(threshold, limit, repository)
    ))
