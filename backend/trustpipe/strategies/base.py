"""Shared plumbing for verification strategies.

A strategy turns one task payload into a result dict. ``run`` wraps the
strategy-specific ``compute`` with the read-through cache and, for the
expensive strategies, a per-subject advisory lock.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Optional, Protocol

import structlog
from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as SchemaError

from trustpipe.adapters.market_data import MarketDataService
from trustpipe.adapters.oracle import ReasoningAdapter
from trustpipe.adapters.probes import Prober
from trustpipe.adapters.subjects import SubjectStore
from trustpipe.engines.cache import VerificationCache
from trustpipe.engines.locks import SubjectLock
from trustpipe.engines.policy import ScoringPolicy, VerificationType
from trustpipe.engines.records import VerificationRecord
from trustpipe.engines.repository import RecordRepository
from trustpipe.engines.retry import Clock
from trustpipe.errors import ValidationError

logger = structlog.get_logger()


@dataclass
class StrategyContext:
    """Collaborators handed to every strategy."""

    cache: VerificationCache
    repository: RecordRepository
    subjects: SubjectStore
    reasoning: ReasoningAdapter
    market: MarketDataService
    prober: Prober
    clock: Clock
    policy: ScoringPolicy
    lock: Optional[SubjectLock] = None


class TaskHandler(Protocol):
    async def handle(self, payload: dict, request_id: str) -> dict: ...


# ============================================
# PAYLOADS
# ============================================


class TaskPayload(BaseModel):
    """Common payload fields. Producers send camelCase or snake_case ids."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    force: bool = False


class CompanyPayload(TaskPayload):
    company_id: str = Field(validation_alias=AliasChoices("company_id", "companyId"), min_length=1)
    verified_by: Optional[str] = Field(default=None, validation_alias=AliasChoices("verified_by", "verifiedBy"))


class JobPayload(TaskPayload):
    job_id: str = Field(validation_alias=AliasChoices("job_id", "jobId"), min_length=1)


class SalaryData(BaseModel):
    model_config = ConfigDict(extra="ignore")

    amount: float = Field(ge=0)
    currency: str = "USD"
    period: str = "yearly"


class SalaryPayload(JobPayload):
    salary_data: Optional[SalaryData] = Field(
        default=None, validation_alias=AliasChoices("salary_data", "salaryData")
    )


class ApplicationPayload(JobPayload):
    user_id: str = Field(validation_alias=AliasChoices("user_id", "userId"), min_length=1)


def parse_payload(model: type[BaseModel], payload: Any) -> Any:
    """Validate a raw payload, raising the pipeline's ValidationError."""
    if not isinstance(payload, dict):
        raise ValidationError("Task payload must be an object")
    try:
        return model.model_validate(payload)
    except SchemaError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise ValidationError(f"Invalid {model.__name__}: {', '.join(fields)}", details={"fields": fields}) from e


# ============================================
# STRATEGY BASE
# ============================================


class VerificationStrategy:
    """Base class: cache lookup, optional lock, compute, cache store."""

    verification_type: ClassVar[VerificationType]
    payload_model: ClassVar[type[TaskPayload]] = TaskPayload
    uses_lock: ClassVar[bool] = False

    def __init__(self, context: StrategyContext):
        self.ctx = context

    def subject_key(self, payload: Any) -> str:
        raise NotImplementedError

    async def compute(self, payload: Any, request_id: str) -> dict:
        raise NotImplementedError

    async def handle(self, payload: dict, request_id: str) -> dict:
        parsed = parse_payload(self.payload_model, payload)
        key = self.subject_key(parsed)

        if not parsed.force:
            cached = await self._cached(key, request_id)
            if cached is not None:
                return cached

        if self.uses_lock and self.ctx.lock is not None:
            async with self.ctx.lock.hold(f"{self.verification_type.value}:{key}"):
                # Another worker may have finished while we waited
                if not parsed.force:
                    cached = await self._cached(key, request_id)
                    if cached is not None:
                        return cached
                return await self._compute_and_store(parsed, key, request_id)
        return await self._compute_and_store(parsed, key, request_id)

    async def _cached(self, key: str, request_id: str) -> Optional[dict]:
        cached = await self.ctx.cache.get(self.verification_type, key)
        if cached is not None:
            logger.info(
                "Verification cache hit",
                type=self.verification_type.value,
                subject=key,
                request_id=request_id,
            )
        return cached

    async def _compute_and_store(self, payload: Any, key: str, request_id: str) -> dict:
        result = await self.compute(payload, request_id)
        await self.ctx.cache.set(self.verification_type, key, result)
        return result

    def now(self) -> datetime:
        return self.ctx.clock.now()

    async def persist(self, record: VerificationRecord, request_id: str) -> VerificationRecord:
        record.metadata = {"source": "worker", "request_id": request_id}
        return await self.ctx.repository.create(record)
