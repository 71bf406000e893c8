import asyncio

from structlog.testing import capture_logs

from conftest import FakePublisher, make_job
from trustpipe.adapters.subjects import InMemorySubjectStore
from trustpipe.engines.policy import TaskType
from trustpipe.errors import NotFoundError, PersistenceError, TransientExternalError
from trustpipe.strategies.registry import PassthroughHandler, build_registry
from trustpipe.workers.dispatcher import TaskDispatcher
from trustpipe.workers.metrics import MetricsRegistry

TOPIC = "quality_tasks:3"


class ScriptedHandler:
    """Raises the queued errors in order, then returns ``result``."""

    def __init__(self, *errors, result=None):
        self.errors = list(errors)
        self.result = result or {"ok": True}
        self.calls = 0

    async def handle(self, payload: dict, request_id: str) -> dict:
        self.calls += 1
        if self.errors:
            raise self.errors.pop(0)
        return self.result


def _dispatcher(cache, clock, settings, handler=None, registry=None):
    publisher = FakePublisher()
    dispatcher = TaskDispatcher(
        registry if registry is not None else {TaskType.SPAM_CHECK: handler},
        publisher,
        cache,
        clock=clock,
        settings=settings,
        metrics=MetricsRegistry(),
    )
    return dispatcher, publisher


def _task(type="spam_check", request_id="req-1", **payload):
    return {"type": type, "payload": payload or {"job_id": "job-1"}, "requestId": request_id}


def test_transient_failures_are_retried_then_published(cache, clock, settings) -> None:
    handler = ScriptedHandler(TransientExternalError("timeout"), TransientExternalError("timeout"))
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    with capture_logs() as logs:
        outcome = asyncio.run(dispatcher.handle(_task(), TOPIC))

    assert outcome.outcome == "completed"
    assert (outcome.attempts, outcome.retries) == (3, 2)
    assert publisher.on("quality_results") == [{"type": "spam_check", "payload": {"ok": True}, "requestId": "req-1"}]
    assert publisher.on("quality_dead_letters") == []
    assert clock.sleeps == [1.0, 2.0]
    assert [e["attempt"] for e in logs if e["event"] == "Retrying task"] == [1, 2]
    processed = [e for e in logs if e["event"] == "Task processed"]
    assert len(processed) == 1
    assert processed[0]["outcome"] == "completed"
    assert dispatcher.metrics.total("tasks_retried") == 2
    assert dispatcher.metrics.total("tasks_succeeded") == 1


def test_unknown_type_is_dead_lettered_without_attempts(cache, clock, settings) -> None:
    handler = ScriptedHandler()
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    outcome = asyncio.run(dispatcher.handle(_task(type="astrology"), TOPIC))

    [letter] = publisher.on("quality_dead_letters")
    assert outcome.outcome == "dead_lettered"
    assert letter["error"] == "Unknown task type: astrology"
    assert letter["kind"] == "unknown_type"
    assert letter["attempts"] == 0
    assert letter["topic"] == TOPIC
    assert letter["message"]["type"] == "astrology"
    assert "failedAt" in letter
    assert handler.calls == 0
    assert publisher.on("quality_results") == []


def test_message_without_request_id_is_dead_lettered(cache, clock, settings) -> None:
    dispatcher, publisher = _dispatcher(cache, clock, settings, ScriptedHandler())

    asyncio.run(dispatcher.handle({"type": "spam_check", "payload": {"job_id": "job-1"}}, TOPIC))
    asyncio.run(dispatcher.handle("not even json", TOPIC))

    letters = publisher.on("quality_dead_letters")
    assert [letter["kind"] for letter in letters] == ["validation", "validation"]
    assert "requestId" in letters[0]["error"]
    assert letters[1]["message"] == "not even json"


def test_missing_subject_publishes_failure_result(cache, clock, settings) -> None:
    handler = ScriptedHandler(NotFoundError("Job job-1 not found"))
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    outcome = asyncio.run(dispatcher.handle(_task(), TOPIC))

    assert outcome.outcome == "failed"
    assert publisher.on("quality_results") == [{
        "type": "spam_check",
        "payload": {"status": "failed", "reason": "not_found", "error": "Job job-1 not found"},
        "requestId": "req-1",
    }]
    assert handler.calls == 1
    assert clock.sleeps == []


def test_exhausted_retries_dead_letter_with_attempt_count(cache, clock, settings) -> None:
    handler = ScriptedHandler(*(TransientExternalError("oracle down") for _ in range(5)))
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    outcome = asyncio.run(dispatcher.handle(_task(), TOPIC))

    [letter] = publisher.on("quality_dead_letters")
    assert outcome.outcome == "dead_lettered"
    assert letter["attempts"] == 3
    assert letter["kind"] == "transient_external"
    assert letter["error"] == "oracle down"
    assert handler.calls == 3
    assert publisher.on("quality_results") == []


def test_persistence_errors_are_not_retried(cache, clock, settings) -> None:
    handler = ScriptedHandler(PersistenceError("disk full"))
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    asyncio.run(dispatcher.handle(_task(), TOPIC))

    [letter] = publisher.on("quality_dead_letters")
    assert letter["kind"] == "persistence"
    assert letter["attempts"] == 1
    assert clock.sleeps == []


def test_unexpected_errors_are_dead_lettered(cache, clock, settings) -> None:
    handler = ScriptedHandler(KeyError("boom"))
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    asyncio.run(dispatcher.handle(_task(), TOPIC))

    [letter] = publisher.on("quality_dead_letters")
    assert letter["kind"] == "internal"
    assert letter["error"].startswith("KeyError")


def test_request_status_lifecycle(cache, clock, settings) -> None:
    handler = ScriptedHandler()
    failing = ScriptedHandler(PersistenceError("disk full"))
    dispatcher, _ = _dispatcher(
        cache, clock, settings,
        registry={TaskType.SPAM_CHECK: handler, TaskType.DUPLICATE_CHECK: failing},
    )

    before = asyncio.run(dispatcher.get_request_status("req-1"))
    asyncio.run(dispatcher.handle(_task(request_id="req-1"), TOPIC))
    asyncio.run(dispatcher.handle(_task(type="duplicate_check", request_id="req-2"), TOPIC))

    assert before == {"request_id": "req-1", "status": "pending"}
    assert asyncio.run(dispatcher.get_request_status("req-1"))["status"] == "completed"
    assert asyncio.run(dispatcher.get_request_status("req-2"))["status"] == "unavailable"


def test_legacy_tags_route_to_canonical_handlers(cache, clock, settings) -> None:
    handler = ScriptedHandler()
    dispatcher, publisher = _dispatcher(cache, clock, settings, handler)

    outcome = asyncio.run(dispatcher.handle(_task(type="spam_detection"), TOPIC))

    assert outcome.type == "spam_check"
    assert handler.calls == 1
    assert publisher.on("quality_results")[0]["type"] == "spam_detection"


def test_generic_quality_tasks_are_echoed(cache, clock, settings) -> None:
    dispatcher, publisher = _dispatcher(
        cache, clock, settings, registry={TaskType.QUALITY_TASKS: PassthroughHandler()}
    )

    asyncio.run(dispatcher.handle(_task(type="quality_tasks", note="hello"), TOPIC))

    assert publisher.on("quality_results")[0]["payload"] == {"result": "processed", "data": {"note": "hello"}}


def test_full_registry_end_to_end(make_context, cache, clock, settings) -> None:
    subjects = InMemorySubjectStore(jobs=[make_job()])
    registry = build_registry(make_context(subjects=subjects))
    dispatcher, publisher = _dispatcher(cache, clock, settings, registry=registry)

    asyncio.run(dispatcher.handle(_task(type="job_quality", jobId="job-1"), TOPIC))
    asyncio.run(dispatcher.handle(_task(type="quality_assessment", request_id="req-2", job_id="nope"), TOPIC))

    results = publisher.on("quality_results")
    assert results[0]["payload"]["score"] == subjects.jobs["job-1"].quality_score
    assert results[1]["payload"]["reason"] == "not_found"
