"""Partitioned task queue and topic publisher on Redis Streams.

Tasks live in ``{prefix}:{n}`` streams; the partition is a stable crc32 of
the subject id so every task about one subject lands in the same ordered
stream. Consumers read through a consumer group, which gives at-least-once
delivery: an entry stays pending until acknowledged.
"""

import json
import zlib
from typing import Any, Optional
from uuid import uuid4

import structlog
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from trustpipe.config import Settings, get_settings
from trustpipe.engines.policy import TaskType

logger = structlog.get_logger()

DATA_FIELD = "data"
# Keys that identify the subject of a task, most specific first
SUBJECT_KEYS = ("companyId", "company_id", "jobId", "job_id", "userId", "user_id")


def partition_for(subject_id: str, partitions: int) -> int:
    return zlib.crc32(subject_id.encode("utf-8")) % partitions


def stream_name(prefix: str, partition: int) -> str:
    return f"{prefix}:{partition}"


def subject_of(payload: dict, request_id: str) -> str:
    for key in SUBJECT_KEYS:
        value = payload.get(key)
        if value:
            return str(value)
    return request_id


def encode(message: Any) -> dict[str, str]:
    return {DATA_FIELD: json.dumps(message, default=str)}


def decode(fields: Optional[dict]) -> Any:
    """Parsed message body; the raw string when it is not valid JSON."""
    if not fields or DATA_FIELD not in fields:
        return fields
    raw = fields[DATA_FIELD]
    try:
        return json.loads(raw)
    except ValueError:
        return raw


class RedisStreamPublisher:
    """Publishes result and dead-letter messages to topic streams."""

    def __init__(self, redis: Redis, maxlen: Optional[int] = 100_000):
        self.redis = redis
        self.maxlen = maxlen

    async def publish(self, topic: str, message: dict) -> str:
        entry_id = await self.redis.xadd(topic, encode(message), maxlen=self.maxlen, approximate=True)
        logger.debug("Published message", topic=topic, entry_id=entry_id)
        return entry_id


class RedisStreamQueue:
    """One partition stream read through a consumer group."""

    def __init__(self, redis: Redis, stream: str, group: str, consumer: str):
        self.redis = redis
        self.stream = stream
        self.group = group
        self.consumer = consumer

    async def ensure_group(self) -> None:
        try:
            await self.redis.xgroup_create(self.stream, self.group, id="0", mkstream=True)
            logger.info("Created consumer group", stream=self.stream, group=self.group)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def read(self, count: int, block_ms: Optional[int] = None, pending: bool = False) -> list[tuple[str, Any]]:
        """Read new entries, or this consumer's unacknowledged ones when ``pending``."""
        response = await self.redis.xreadgroup(
            self.group,
            self.consumer,
            {self.stream: "0" if pending else ">"},
            count=count,
            block=None if pending else block_ms,
        )
        entries = []
        for _stream, items in response or []:
            for entry_id, fields in items:
                entries.append((entry_id, decode(fields)))
        return entries

    async def ack(self, entry_id: str) -> None:
        await self.redis.xack(self.stream, self.group, entry_id)


async def enqueue_task(
    redis: Redis,
    task_type: TaskType,
    payload: dict,
    request_id: Optional[str] = None,
    settings: Optional[Settings] = None,
) -> str:
    """Producer helper: put a task on its subject's partition. Returns the request id."""
    settings = settings or get_settings()
    request_id = request_id or str(uuid4())
    partition = partition_for(subject_of(payload, request_id), settings.task_partitions)
    stream = stream_name(settings.task_stream_prefix, partition)
    message = {"type": TaskType(task_type).value, "payload": payload, "requestId": request_id}
    await redis.xadd(stream, encode(message))
    logger.info("Task enqueued", type=message["type"], request_id=request_id, stream=stream)
    return request_id
