"""Salary verification against market statistics."""

import structlog

from trustpipe.adapters.subjects import JobSubject
from trustpipe.engines.cache import subject_key
from trustpipe.engines.policy import RecordStatus, VerificationType
from trustpipe.engines.records import build_record, is_salary_below_market
from trustpipe.errors import NotFoundError, ValidationError
from trustpipe.strategies.base import SalaryPayload, VerificationStrategy

logger = structlog.get_logger()


def salary_from_job(job: JobSubject) -> dict:
    """Provided salary derived from the posting's range (max, else min)."""
    amount = job.max_salary or job.min_salary
    if not amount:
        raise ValidationError(f"No salary data provided and job {job.id} lists no salary")
    return {"amount": float(amount), "currency": job.salary_currency or "USD", "period": "yearly"}


class SalaryVerificationStrategy(VerificationStrategy):
    verification_type = VerificationType.SALARY_VERIFICATION
    payload_model = SalaryPayload
    uses_lock = True

    def subject_key(self, payload: SalaryPayload) -> str:
        # A submitted salary is part of the subject; the posting's own range is not
        salary = payload.salary_data
        if salary is None:
            return subject_key(payload.job_id, "job")
        return subject_key(payload.job_id, salary.amount, salary.currency, salary.period)

    async def compute(self, payload: SalaryPayload, request_id: str) -> dict:
        job = await self.ctx.subjects.find_job(payload.job_id)
        if job is None or job.is_deleted:
            raise NotFoundError(f"Job {payload.job_id} not found")

        provided = payload.salary_data.model_dump() if payload.salary_data else salary_from_job(job)
        market = await self.ctx.market.get_salary_stats(job.title, job.location, job.experience_level)
        comparison = await self.ctx.reasoning.compare_salary(provided, market)

        is_valid = comparison.is_valid and not is_salary_below_market(provided, market)
        now = self.now()
        record = build_record(
            self.verification_type,
            now=now,
            status=RecordStatus.VERIFIED if is_valid else RecordStatus.REJECTED,
            job_id=job.id,
            provided_salary=provided,
            market_data=market,
            verification={
                "status": "passed" if is_valid else "failed",
                "method": "market_comparison",
                "confidence": comparison.confidence,
                "notes": "; ".join(comparison.reasons) or None,
            },
        )
        await self.persist(record, request_id)
        await self.ctx.subjects.set_salary_verified(job.id, is_valid)

        logger.info("Salary verification completed", job_id=job.id, is_valid=is_valid, request_id=request_id)
        return {
            "job_id": job.id,
            "is_verified": is_valid,
            "confidence": comparison.confidence,
            "market_comparison": comparison.comparison,
            "reasons": comparison.reasons,
            "market_data": market,
            "verification": record.to_dict(),
        }
