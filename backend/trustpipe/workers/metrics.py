"""In-process counters for the pipeline, flushed to the metrics table."""

from collections import Counter
from typing import Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustpipe.db.models import Metric

logger = structlog.get_logger()

LabelKey = tuple[tuple[str, str], ...]


class MetricsRegistry:
    """Labelled counters.

    Names used by the dispatcher:
    - ``tasks_attempted`` / ``tasks_succeeded`` / ``tasks_failed`` (type)
    - ``tasks_retried`` (type, kind)
    - ``task_errors`` (type, kind)
    - ``tasks_dead_lettered`` (type, reason)

    And by the Redis helpers:
    - ``cache_errors`` (operation)
    - ``lock_errors`` (operation)

    Counters are only touched from the worker's event loop.
    """

    def __init__(self) -> None:
        self._counters: Counter[tuple[str, LabelKey]] = Counter()

    def increment(self, name: str, value: float = 1, **labels: str) -> None:
        key = (name, tuple(sorted((k, str(v)) for k, v in labels.items())))
        self._counters[key] += value

    def get(self, name: str, **labels: str) -> float:
        key = (name, tuple(sorted((k, str(v)) for k, v in labels.items())))
        return self._counters.get(key, 0)

    def total(self, name: str) -> float:
        return sum(value for (metric, _), value in self._counters.items() if metric == name)

    def snapshot(self, reset: bool = False) -> list[dict]:
        rows = [
            {"name": name, "value": value, "labels": dict(labels)}
            for (name, labels), value in sorted(self._counters.items())
        ]
        if reset:
            self._counters.clear()
        return rows

    async def flush(self, session_factory: Optional[async_sessionmaker[AsyncSession]]) -> int:
        """Write and reset the counters. Without a database, log them instead."""
        rows = self.snapshot(reset=True)
        if not rows:
            return 0
        if session_factory is None:
            logger.info("Pipeline metrics", metrics=rows)
            return len(rows)
        try:
            async with session_factory() as session:
                async with session.begin():
                    for row in rows:
                        await record_metric(session, row["name"], row["value"], row["labels"])
        except Exception as e:
            # Put the counts back so the next flush retries them
            for row in rows:
                self.increment(row["name"], row["value"], **row["labels"])
            logger.error("Metrics flush failed", error=str(e), metrics=len(rows))
            raise
        logger.debug("Metrics flushed", metrics=len(rows))
        return len(rows)


async def record_metric(
    session: AsyncSession,
    name: str,
    value: float,
    labels: Optional[dict] = None,
) -> None:
    """Record a metric value."""
    session.add(Metric(name=name, value=value, labels=labels))
    await session.flush()


metrics = MetricsRegistry()
