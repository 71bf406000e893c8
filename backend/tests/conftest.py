import asyncio
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError

from trustpipe.adapters.oracle import ReasoningAdapter
from trustpipe.adapters.subjects import CompanySubject, InMemorySubjectStore, JobSubject
from trustpipe.config import Settings
from trustpipe.engines.cache import VerificationCache
from trustpipe.engines.policy import ScoringPolicy
from trustpipe.engines.repository import InMemoryRecordRepository
from trustpipe.strategies.base import StrategyContext

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = NOW):
        self.current = now
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        return self.current

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.current += timedelta(seconds=seconds)


class FakeRedis:
    """Just enough of redis.asyncio.Redis for the cache, locks and streams."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, Optional[int]] = {}
        self.streams: dict[str, list[tuple[str, dict]]] = {}
        self.groups: dict[tuple[str, str], dict] = {}
        self._seq = 0

    async def get(self, key):
        return self.store.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.store:
            return None
        self.store[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def eval(self, script, numkeys, key, token):
        if self.store.get(key) == token:
            del self.store[key]
            return 1
        return 0

    async def xadd(self, name, fields, maxlen=None, approximate=True):
        self._seq += 1
        entry_id = f"{self._seq}-0"
        self.streams.setdefault(name, []).append((entry_id, dict(fields)))
        return entry_id

    async def xgroup_create(self, name, groupname, id="0", mkstream=False):
        if (name, groupname) in self.groups:
            raise ResponseError("BUSYGROUP Consumer Group name already exists")
        self.streams.setdefault(name, [])
        self.groups[(name, groupname)] = {"delivered": 0, "pending": {}}

    async def xreadgroup(self, groupname, consumername, streams, count=None, block=None, noack=False):
        response = []
        for name, last_id in streams.items():
            group = self.groups[(name, groupname)]
            pending = group["pending"].setdefault(consumername, [])
            entries = self.streams.get(name, [])
            if last_id == "0":
                items = [e for e in entries if e[0] in pending][:count]
            else:
                items = entries[group["delivered"]:][:count]
                group["delivered"] += len(items)
                pending.extend(entry_id for entry_id, _ in items)
            if items:
                response.append([name, items])
        if not response:
            await asyncio.sleep(0)
        return response

    async def xack(self, name, groupname, *ids):
        group = self.groups[(name, groupname)]
        for pending in group["pending"].values():
            for entry_id in ids:
                if entry_id in pending:
                    pending.remove(entry_id)
        return len(ids)

    def messages(self, stream: str) -> list[Any]:
        return [json.loads(fields["data"]) for _, fields in self.streams.get(stream, [])]


class BrokenRedis:
    """Every call fails as if the server were down."""

    def __getattr__(self, name):
        async def fail(*args, **kwargs):
            raise RedisConnectionError("Connection refused")

        return fail


class FakeOracle:
    """Deterministic oracle answering by question kind."""

    def __init__(self, registered: bool = True, salary_valid: bool = True, raw: Optional[list[str]] = None):
        self.registered = registered
        self.salary_valid = salary_valid
        self.raw = list(raw or [])
        self.prompts: list[str] = []

    async def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.raw:
            return self.raw.pop(0)
        if "registered business" in prompt:
            return json.dumps({"passed": self.registered, "confidence": 0.9, "details": "Registry match"})
        return json.dumps({
            "is_valid": self.salary_valid,
            "confidence": 0.85,
            "comparison": {"position": "within range"},
            "reasons": ["Close to market median"],
        })


class FakeProber:
    def __init__(self, reachable: Optional[set[str]] = None):
        self.reachable = reachable or set()
        self.calls: list[str] = []

    async def is_reachable(self, url: str) -> bool:
        self.calls.append(url)
        return url in self.reachable


class FakeMarketService:
    def __init__(self, stats: Optional[dict] = None):
        self.stats = stats or {
            "min_salary": 70000,
            "max_salary": 120000,
            "median_salary": 95000,
            "currency": "USD",
            "data_source": "market_api",
            "confidence": 0.9,
        }
        self.calls = 0

    async def get_salary_stats(self, title, location, experience):
        self.calls += 1
        return dict(self.stats)


class FakePublisher:
    def __init__(self):
        self.published: list[tuple[str, dict]] = []

    async def publish(self, topic: str, message: dict) -> str:
        self.published.append((topic, message))
        return f"{len(self.published)}-0"

    def on(self, topic: str) -> list[dict]:
        return [message for t, message in self.published if t == topic]


def make_company(**overrides) -> CompanySubject:
    values = {
        "id": "co-1",
        "name": "Acme Robotics",
        "domain": "acme.example",
        "website": "https://acme.example",
        "address": "1 Main St, Springfield",
        "description": "Industrial robots",
        "social_profiles": [],
        "employee_count": 50,
    }
    values.update(overrides)
    return CompanySubject(**values)


GOOD_DESCRIPTION = (
    "We are hiring a backend engineer to own our billing platform. "
    "Responsibilities include designing services and mentoring peers. "
    "Requirements: 5 years of experience with Python and strong SQL skills. "
    "Qualifications: a track record of shipping reliable systems at scale."
)


def make_job(**overrides) -> JobSubject:
    values = {
        "id": "job-1",
        "title": "Backend Engineer",
        "company_id": "co-1",
        "description": GOOD_DESCRIPTION,
        "location": "Remote",
        "experience_level": "senior",
        "skills": ["python", "sql"],
        "min_salary": 90000,
        "max_salary": 110000,
        "salary_currency": "USD",
        "contact_email": "jobs@acme.example",
        "apply_link": "https://acme.example/apply",
    }
    values.update(overrides)
    return JobSubject(**values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def cache(redis) -> VerificationCache:
    return VerificationCache(redis)


@pytest.fixture
def repository() -> InMemoryRecordRepository:
    return InMemoryRecordRepository()


@pytest.fixture
def settings() -> Settings:
    return Settings(_env_file=None)


@pytest.fixture
def policy(settings) -> ScoringPolicy:
    return ScoringPolicy.from_settings(settings)


@pytest.fixture
def make_context(cache, repository, clock, policy):
    def build(
        subjects: Optional[InMemorySubjectStore] = None,
        oracle: Optional[FakeOracle] = None,
        prober: Optional[FakeProber] = None,
        market=None,
        lock=None,
    ) -> StrategyContext:
        return StrategyContext(
            cache=cache,
            repository=repository,
            subjects=subjects or InMemorySubjectStore(),
            reasoning=ReasoningAdapter(oracle or FakeOracle()),
            market=market or FakeMarketService(),
            prober=prober or FakeProber(),
            clock=clock,
            policy=policy,
            lock=lock,
        )

    return build
