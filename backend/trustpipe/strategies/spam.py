"""Spam detection for job postings."""

import asyncio

import structlog

from trustpipe.adapters.subjects import JobSubject
from trustpipe.engines.policy import SPAM_SCORE_MAX, RecordStatus, VerificationType
from trustpipe.engines.records import build_record
from trustpipe.engines.scoring import aggregate, clamp, spam_signal
from trustpipe.errors import NotFoundError
from trustpipe.strategies.base import JobPayload, VerificationStrategy
from trustpipe.strategies.quality import assess_description_quality

logger = structlog.get_logger()

SUSPICIOUS_KEYWORDS = (
    "urgent",
    "immediate start",
    "no experience required",
    "work from home",
    "easy money",
    "guaranteed income",
)
SUSPICIOUS_KEYWORD_LIMIT = 2
DUPLICATE_FRAGMENT_LENGTH = 100
SALARY_CEILING_RATIO = 2.0
SALARY_FLOOR_RATIO = 0.5


def check_suspicious_keywords(description: str) -> dict:
    lowered = (description or "").lower()
    found = [word for word in SUSPICIOUS_KEYWORDS if word in lowered]
    return {
        "is_spam": len(found) > SUSPICIOUS_KEYWORD_LIMIT,
        "confidence": min(len(found) * 0.3, 1.0),
        "keywords": found,
    }


def check_salary_against_market(min_salary, max_salary, market: dict) -> dict:
    unrealistic = bool(
        (max_salary and max_salary > market["max_salary"] * SALARY_CEILING_RATIO)
        or (min_salary and min_salary < market["min_salary"] * SALARY_FLOOR_RATIO)
    )
    return {
        "is_spam": unrealistic,
        "confidence": 0.9 if unrealistic else 0.3,
        "details": "Salary outside market range" if unrealistic else "Salary within market range",
    }


def check_company_reputation(job: JobSubject) -> dict:
    verified = job.company is not None and job.company.is_verified
    if job.company is None:
        details = "Company not found"
    else:
        details = "Company verified" if verified else "Company not verified"
    return {
        "is_spam": not verified,
        "confidence": 0.2 if verified else 0.8,
        "details": details,
    }


def check_contact_information(job: JobSubject) -> dict:
    has_contact = bool(job.contact_email or job.contact_phone)
    return {
        "is_spam": not has_contact,
        "confidence": 0.2 if has_contact else 0.7,
        "details": "Contact information provided" if has_contact else "No contact information",
    }


class SpamDetectionStrategy(VerificationStrategy):
    verification_type = VerificationType.SPAM_CHECK
    payload_model = JobPayload

    def subject_key(self, payload: JobPayload) -> str:
        return payload.job_id

    async def compute(self, payload: JobPayload, request_id: str) -> dict:
        job = await self.ctx.subjects.find_job(payload.job_id, with_company=True)
        if job is None or job.is_deleted:
            raise NotFoundError(f"Job {payload.job_id} not found")

        duplicate, salary = await asyncio.gather(
            self._check_duplicate_content(job),
            self._check_unrealistic_salary(job),
        )
        checks = {
            "duplicate_content": duplicate,
            "suspicious_keywords": check_suspicious_keywords(job.description),
            "unrealistic_salary": salary,
            "description_quality": self._check_description_quality(job),
            "company_reputation": check_company_reputation(job),
            "contact_information": check_contact_information(job),
        }
        signals = {name: spam_signal(check) for name, check in checks.items()}
        spam_score = aggregate(self.ctx.policy.spam_weights, signals, SPAM_SCORE_MAX)
        is_spam = spam_score > self.ctx.policy.spam_threshold
        now = self.now()

        record = build_record(
            self.verification_type,
            now=now,
            status=RecordStatus.REJECTED if is_spam else RecordStatus.VERIFIED,
            job_id=job.id,
            checks=checks,
            spam_score=spam_score,
            is_spam=is_spam,
            checked_at=now,
        )
        await self.persist(record, request_id)
        if is_spam:
            await self.ctx.subjects.flag_job_spam(job.id, spam_score, now)

        logger.info("Spam check completed", job_id=job.id, spam_score=spam_score, is_spam=is_spam, request_id=request_id)
        return {
            "job_id": job.id,
            "is_spam": is_spam,
            "confidence": spam_score,
            "checks": checks,
            "verification": record.to_dict(),
        }

    async def _check_duplicate_content(self, job: JobSubject) -> dict:
        fragment = (job.description or "")[:DUPLICATE_FRAGMENT_LENGTH]
        similar = await self.ctx.subjects.count_similar_job_descriptions(fragment, job.id, job.company_id)
        return {
            "is_spam": similar > 0,
            "confidence": 0.8 if similar > 0 else 0.2,
            "details": f"Found {similar} similar jobs" if similar else "No duplicates",
        }

    async def _check_unrealistic_salary(self, job: JobSubject) -> dict:
        if not job.min_salary and not job.max_salary:
            return {"is_spam": False, "confidence": 0.3, "details": "No salary provided"}
        market = await self.ctx.market.get_salary_stats(job.title, job.location, job.experience_level)
        return check_salary_against_market(job.min_salary, job.max_salary, market)

    def _check_description_quality(self, job: JobSubject) -> dict:
        quality = assess_description_quality(job.description)
        flagged = quality["score"] < self.ctx.policy.spam_description_min_score
        return {
            "is_spam": flagged,
            "confidence": clamp((100 - quality["score"]) / 100, 0.0, 1.0),
            "score": quality["score"],
            "issues": quality["issues"],
        }
