"""Routes task messages to strategies and publishes the outcome.

Per message: validate, resolve the handler, run it under the retry policy,
then publish exactly one of a result, a failure result (subject not found)
or a dead letter. The caller acknowledges the message after ``handle``
returns; ``handle`` only raises when publishing itself fails, so the message
stays pending and is redelivered.
"""

import time
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import structlog
from pydantic import ValidationError as SchemaError

from trustpipe.config import Settings, get_settings
from trustpipe.engines.cache import VerificationCache
from trustpipe.engines.policy import (
    REQUEST_STATUS_NAMESPACE,
    REQUEST_STATUS_TTL,
    TaskType,
    resolve_task_type,
    result_topics,
)
from trustpipe.engines.retry import Clock, RetryPolicy, SystemClock, retry_async
from trustpipe.errors import NotFoundError, TrustPipelineError
from trustpipe.strategies.base import TaskHandler
from trustpipe.workers.messages import DeadLetterMessage, ResultMessage, TaskMessage
from trustpipe.workers.metrics import MetricsRegistry
from trustpipe.workers.metrics import metrics as default_metrics
from trustpipe.workers.queue import RedisStreamPublisher

logger = structlog.get_logger()

# Stored request status -> what pollers are told
PUBLIC_STATUS = {
    "processing": "pending",
    "completed": "completed",
    "failed": "unavailable",
}


@dataclass
class DispatchOutcome:
    request_id: Optional[str]
    type: Optional[str]
    outcome: str  # completed, failed, dead_lettered
    attempts: int = 0
    retries: int = 0
    error: Optional[str] = None


class TaskDispatcher:
    def __init__(
        self,
        registry: Mapping[TaskType, TaskHandler],
        publisher: RedisStreamPublisher,
        cache: VerificationCache,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Optional[Clock] = None,
        settings: Optional[Settings] = None,
        metrics: Optional[MetricsRegistry] = None,
    ):
        self.registry = registry
        self.publisher = publisher
        self.cache = cache
        self.settings = settings or get_settings()
        self.retry_policy = retry_policy or RetryPolicy.from_settings(self.settings)
        self.clock = clock or SystemClock()
        self.metrics = metrics or default_metrics
        self.topics = result_topics(self.settings)

    async def handle(self, raw: Any, topic: str) -> DispatchOutcome:
        started = time.monotonic()

        try:
            message = TaskMessage.model_validate(raw)
        except SchemaError as e:
            fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()} - {""})
            fields = fields or ["message body"]
            outcome = await self._dead_letter(
                topic, raw, f"Invalid task message: missing or malformed {', '.join(fields)}",
                kind="validation", type_name=None, request_id=_request_id_of(raw),
            )
            return self._log(outcome, started)

        task_type = resolve_task_type(message.type)
        handler = self.registry.get(task_type) if task_type else None
        if handler is None:
            outcome = await self._dead_letter(
                topic, raw, f"Unknown task type: {message.type}",
                kind="unknown_type", type_name=message.type, request_id=message.request_id,
            )
            return self._log(outcome, started)

        await self._set_status(message.request_id, "processing", task_type)
        outcome = await self._execute(topic, raw, message, task_type, handler)
        return self._log(outcome, started)

    async def _execute(
        self,
        topic: str,
        raw: Any,
        message: TaskMessage,
        task_type: TaskType,
        handler: TaskHandler,
    ) -> DispatchOutcome:
        type_name = task_type.value
        attempts = 0
        retries = 0

        async def attempt() -> dict:
            nonlocal attempts
            attempts += 1
            self.metrics.increment("tasks_attempted", type=type_name)
            return await handler.handle(message.payload, message.request_id)

        def on_retry(attempt_number: int, exc: BaseException, delay: float) -> None:
            nonlocal retries
            retries += 1
            kind = getattr(exc, "kind", "internal")
            self.metrics.increment("tasks_retried", type=type_name, kind=kind)
            logger.warning(
                "Retrying task",
                request_id=message.request_id,
                type=type_name,
                attempt=attempt_number,
                delay_seconds=delay,
                kind=kind,
                error=str(exc),
            )

        try:
            result = await retry_async(attempt, self.retry_policy, self.clock, on_retry)
        except NotFoundError as e:
            self.metrics.increment("task_errors", type=type_name, kind=e.kind)
            self.metrics.increment("tasks_failed", type=type_name)
            await self.publisher.publish(
                self.topics[task_type],
                ResultMessage(
                    type=message.type,
                    payload={"status": "failed", "reason": "not_found", "error": str(e)},
                    request_id=message.request_id,
                ).to_wire(),
            )
            await self._set_status(message.request_id, "failed", task_type)
            return DispatchOutcome(message.request_id, type_name, "failed", attempts, retries, str(e))
        except TrustPipelineError as e:
            self.metrics.increment("task_errors", type=type_name, kind=e.kind)
            outcome = await self._dead_letter(
                topic, raw, str(e), kind=e.kind, type_name=type_name,
                request_id=message.request_id, attempts=attempts,
            )
            outcome.retries = retries
            return outcome
        except Exception as e:
            logger.exception("Unexpected task failure", request_id=message.request_id, type=type_name)
            self.metrics.increment("task_errors", type=type_name, kind="internal")
            outcome = await self._dead_letter(
                topic, raw, f"{type(e).__name__}: {e}", kind="internal", type_name=type_name,
                request_id=message.request_id, attempts=attempts,
            )
            outcome.retries = retries
            return outcome

        await self.publisher.publish(
            self.topics[task_type],
            ResultMessage(type=message.type, payload=result, request_id=message.request_id).to_wire(),
        )
        self.metrics.increment("tasks_succeeded", type=type_name)
        await self._set_status(message.request_id, "completed", task_type)
        return DispatchOutcome(message.request_id, type_name, "completed", attempts, retries)

    async def _dead_letter(
        self,
        topic: str,
        raw: Any,
        error: str,
        *,
        kind: str,
        type_name: Optional[str],
        request_id: Optional[str],
        attempts: int = 0,
    ) -> DispatchOutcome:
        letter = DeadLetterMessage(topic=topic, message=raw, error=error, kind=kind, attempts=attempts)
        await self.publisher.publish(self.settings.dead_letter_topic, letter.to_wire())
        self.metrics.increment("tasks_dead_lettered", type=type_name or "unknown", reason=kind)
        if request_id:
            await self._set_status(request_id, "failed", None)
        return DispatchOutcome(request_id, type_name, "dead_lettered", attempts, 0, error)

    async def _set_status(self, request_id: str, status: str, task_type: Optional[TaskType]) -> None:
        await self.cache.set(
            REQUEST_STATUS_NAMESPACE,
            request_id,
            {
                "status": status,
                "type": task_type.value if task_type else None,
                "updated_at": self.clock.now().isoformat(),
            },
            ttl=REQUEST_STATUS_TTL,
        )

    async def get_request_status(self, request_id: str) -> dict:
        """Generic status for pollers: pending, completed or unavailable."""
        stored = await self.cache.get(REQUEST_STATUS_NAMESPACE, request_id)
        status = PUBLIC_STATUS.get((stored or {}).get("status"), "pending")
        return {"request_id": request_id, "status": status}

    def _log(self, outcome: DispatchOutcome, started: float) -> DispatchOutcome:
        log = logger.info if outcome.outcome == "completed" else logger.warning
        log(
            "Task processed",
            request_id=outcome.request_id,
            type=outcome.type,
            outcome=outcome.outcome,
            attempts=outcome.attempts,
            retries=outcome.retries,
            duration_ms=round((time.monotonic() - started) * 1000, 1),
            error=outcome.error,
        )
        return outcome


def _request_id_of(raw: Any) -> Optional[str]:
    if isinstance(raw, dict):
        value = raw.get("requestId") or raw.get("request_id")
        return str(value) if value else None
    return None
