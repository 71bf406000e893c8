"""Periodic jobs using APScheduler."""

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger
import structlog

from trustpipe.config import get_settings
from trustpipe.db.session import get_session_factory
from trustpipe.workers.metrics import metrics

logger = structlog.get_logger()

scheduler = AsyncIOScheduler()


def setup_scheduler() -> AsyncIOScheduler:
    """Register the pipeline's periodic jobs and start the scheduler."""
    settings = get_settings()

    # Import tasks here to avoid connecting the broker on module import
    from trustpipe.workers.tasks import (
        migrate_records_schema_task,
        purge_expired_records_task,
        report_spam_records_task,
    )

    # Expired record purge - Every hour
    scheduler.add_job(
        lambda: purge_expired_records_task.send(),
        trigger=IntervalTrigger(hours=1),
        id="purge_expired_records",
        name="Records: Purge expired (hourly)",
        replace_existing=True,
    )

    # Legacy schema migration - Daily at 3:30 AM UTC (idempotent)
    scheduler.add_job(
        lambda: migrate_records_schema_task.send(),
        trigger=CronTrigger(hour=3, minute=30),
        id="migrate_records_schema",
        name="Records: Schema migration (daily)",
        replace_existing=True,
    )

    # Spam report - Daily at 7 AM UTC
    scheduler.add_job(
        lambda: report_spam_records_task.send(),
        trigger=CronTrigger(hour=7, minute=0),
        id="report_spam_records",
        name="Records: Spam report (daily)",
        replace_existing=True,
    )

    # Counters live in this process, so flush here rather than via the broker
    scheduler.add_job(
        metrics.flush,
        args=[get_session_factory()],
        trigger=IntervalTrigger(seconds=settings.metrics_flush_interval_seconds),
        id="flush_metrics",
        name="Metrics: Flush counters",
        replace_existing=True,
    )

    scheduler.start()
    logger.info("Scheduler started", jobs=len(scheduler.get_jobs()))
    return scheduler


def shutdown_scheduler() -> None:
    if scheduler.running:
        scheduler.shutdown(wait=False)
        logger.info("Scheduler stopped")
