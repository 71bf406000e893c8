"""Partitioned consumer pool.

One ``PartitionWorker`` per stream: sequential within a partition, parallel
across partitions. Messages are acknowledged only after the dispatcher has
published their outcome.
"""

import asyncio
from typing import Any, Optional

import structlog
from redis.asyncio import Redis
from redis.exceptions import RedisError

from trustpipe.config import Settings, get_settings
from trustpipe.engines.retry import Clock, SystemClock
from trustpipe.workers.dispatcher import TaskDispatcher
from trustpipe.workers.queue import RedisStreamQueue, stream_name

logger = structlog.get_logger()


class PartitionWorker:
    def __init__(
        self,
        queue: RedisStreamQueue,
        dispatcher: TaskDispatcher,
        batch_size: int = 10,
        block_ms: int = 2000,
        max_backoff_seconds: float = 15.0,
        clock: Optional[Clock] = None,
    ):
        self.queue = queue
        self.dispatcher = dispatcher
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.max_backoff_seconds = max_backoff_seconds
        self.clock = clock or SystemClock()
        self.processed = 0
        self._failures = 0
        # Re-read our unacknowledged entries before taking new ones
        self._replay_pending = True

    async def run(self, stop: asyncio.Event) -> None:
        logger.info("Partition worker started", stream=self.queue.stream)
        group_ready = False
        while not stop.is_set():
            try:
                if not group_ready:
                    await self.queue.ensure_group()
                    group_ready = True
                entries = await self.queue.read(
                    self.batch_size, self.block_ms, pending=self._replay_pending
                )
            except (RedisError, OSError) as e:
                await self._backoff("read", e)
                continue

            if self._replay_pending and not entries:
                self._replay_pending = False
                continue

            for entry_id, body in entries:
                if not await self._process(entry_id, body):
                    break
                if stop.is_set():
                    break
        logger.info("Partition worker stopped", stream=self.queue.stream, processed=self.processed)

    async def _process(self, entry_id: str, body: Any) -> bool:
        """Dispatch and ack one entry. False stops the batch to keep order."""
        try:
            await self.dispatcher.handle(body, self.queue.stream)
            await self.queue.ack(entry_id)
        except (RedisError, OSError) as e:
            # Outcome not published or not acked: stays pending, replayed next
            self._replay_pending = True
            await self._backoff("dispatch", e, entry_id=entry_id)
            return False
        self.processed += 1
        self._failures = 0
        return True

    async def _backoff(self, stage: str, error: Exception, **context) -> None:
        self._failures += 1
        delay = min(2 ** (self._failures - 1), self.max_backoff_seconds)
        logger.warning(
            "Partition worker backing off",
            stream=self.queue.stream,
            stage=stage,
            delay_seconds=delay,
            error=str(error),
            **context,
        )
        await self.clock.sleep(delay)


class ConsumerPool:
    """Runs one PartitionWorker per task stream and drains them on shutdown."""

    def __init__(
        self,
        redis: Redis,
        dispatcher: TaskDispatcher,
        settings: Optional[Settings] = None,
        clock: Optional[Clock] = None,
    ):
        self.settings = settings or get_settings()
        self._stop = asyncio.Event()
        self._tasks: list[asyncio.Task] = []
        self.workers = [
            PartitionWorker(
                RedisStreamQueue(
                    redis,
                    stream_name(self.settings.task_stream_prefix, partition),
                    self.settings.consumer_group,
                    self.settings.consumer_name,
                ),
                dispatcher,
                batch_size=self.settings.fetch_batch_size,
                block_ms=self.settings.fetch_block_ms,
                max_backoff_seconds=self.settings.max_backoff_seconds,
                clock=clock,
            )
            for partition in range(self.settings.task_partitions)
        ]

    def start(self) -> None:
        self._tasks = [
            asyncio.create_task(worker.run(self._stop), name=f"partition-{worker.queue.stream}")
            for worker in self.workers
        ]
        logger.info("Consumer pool started", partitions=len(self._tasks))

    def stop(self) -> None:
        """Stop taking new messages; in-flight ones finish."""
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def wait(self) -> None:
        if self._tasks:
            await asyncio.gather(*self._tasks)

    async def drain(self, timeout: Optional[float] = None) -> int:
        """Stop and wait up to ``timeout``; cancel what is still running.

        Returns the number of workers that had to be cancelled. Their
        current entries stay pending and are redelivered on restart.
        """
        self.stop()
        if not self._tasks:
            return 0
        timeout = self.settings.drain_timeout_seconds if timeout is None else timeout
        _done, pending = await asyncio.wait(self._tasks, timeout=timeout)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
            logger.warning("Drain timed out, cancelled partition workers", cancelled=len(pending))
        logger.info("Consumer pool drained", processed=sum(w.processed for w in self.workers))
        return len(pending)
