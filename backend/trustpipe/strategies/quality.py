"""Job quality assessment."""

from typing import Optional

import structlog

from trustpipe.adapters.subjects import CompanySubject, JobSubject
from trustpipe.engines.policy import OVERALL_SCORE_MAX, RecordStatus, VerificationType
from trustpipe.engines.records import build_record
from trustpipe.engines.scoring import aggregate, metric_signal, round_half_up
from trustpipe.errors import NotFoundError
from trustpipe.strategies.base import JobPayload, VerificationStrategy

logger = structlog.get_logger()

DESCRIPTION_SECTIONS = ("responsibilities", "requirements", "qualifications")
COMMON_MISSPELLINGS = ("recieve", "seperate", "occured")
MIN_DESCRIPTION_LENGTH = 200

RECOMMENDATION_THRESHOLD = 70
HIGH_PRIORITY_THRESHOLD = 50

GRADES = ((90, "A+"), (80, "A"), (70, "B"), (60, "C"))


def grade(score: float) -> str:
    for floor, letter in GRADES:
        if score >= floor:
            return letter
    return "D"


def assess_description_quality(description: Optional[str]) -> dict:
    """Score a job description 0-100 on length, structure, spelling and detail."""
    description = description or ""
    lowered = description.lower()
    score = 0.0
    issues = []

    if len(description) > MIN_DESCRIPTION_LENGTH:
        score += 20
    else:
        issues.append("Description too short")

    found = [section for section in DESCRIPTION_SECTIONS if section in lowered]
    score += len(found) / len(DESCRIPTION_SECTIONS) * 30
    missing = [section for section in DESCRIPTION_SECTIONS if section not in found]
    if missing:
        issues.append(f"Missing sections: {', '.join(missing)}")

    if not any(word in description for word in COMMON_MISSPELLINGS):
        score += 25
    else:
        issues.append("Contains common spelling errors")

    if "years of experience" in description and "skills" in description:
        score += 25

    return {
        "score": min(score, 100.0),
        "issues": issues,
        "suggestion": "Improve job description content and structure" if issues else None,
    }


def assess_company_information(company: Optional[CompanySubject]) -> dict:
    if company is None:
        return {
            "score": 0,
            "issues": ["Missing company profile"],
            "suggestion": "Complete company profile",
        }
    score = 0
    issues = []
    if company.description:
        score += 30
    else:
        issues.append("Missing company description")
    if company.website:
        score += 30
    else:
        issues.append("Missing company website")
    if company.is_verified:
        score += 40
    return {
        "score": score,
        "issues": issues,
        "suggestion": "Complete company profile" if issues else None,
    }


def assess_salary_transparency(job: JobSubject) -> dict:
    has_salary = bool(job.min_salary and job.max_salary)
    return {
        "score": 80 if has_salary else 20,
        "suggestion": None if has_salary else "Provide salary range",
    }


def assess_requirements_clarity(job: JobSubject) -> dict:
    score = 0
    issues = []
    if job.skills:
        score += 50
    else:
        issues.append("Missing required skills")
    if job.experience_level:
        score += 50
    else:
        issues.append("Missing experience level")
    return {
        "score": score,
        "issues": issues,
        "suggestion": "Specify skills and experience requirements" if issues else None,
    }


def assess_contact_information(job: JobSubject) -> dict:
    has_contact = bool(job.contact_email or job.contact_phone)
    return {
        "score": 80 if has_contact else 20,
        "suggestion": None if has_contact else "Provide contact information",
    }


def assess_application_process(job: JobSubject) -> dict:
    has_link = bool(job.apply_link)
    return {
        "score": 80 if has_link else 20,
        "suggestion": None if has_link else "Provide clear application instructions",
    }


def quality_metrics(job: JobSubject) -> dict[str, dict]:
    return {
        "description_quality": assess_description_quality(job.description),
        "company_information": assess_company_information(job.company),
        "salary_transparency": assess_salary_transparency(job),
        "requirements_clarity": assess_requirements_clarity(job),
        "contact_information": assess_contact_information(job),
        "application_process": assess_application_process(job),
    }


def recommendations(metrics: dict[str, dict]) -> list[dict]:
    """One recommendation per metric scoring under 70; high priority under 50."""
    result = []
    for area, metric in metrics.items():
        score = metric.get("score") or 0
        if score < RECOMMENDATION_THRESHOLD:
            result.append({
                "area": area,
                "suggestion": metric.get("suggestion") or f"Improve {area}",
                "priority": "high" if score < HIGH_PRIORITY_THRESHOLD else "medium",
            })
    return result


class QualityAssessmentStrategy(VerificationStrategy):
    verification_type = VerificationType.QUALITY_ASSESSMENT
    payload_model = JobPayload

    def subject_key(self, payload: JobPayload) -> str:
        return payload.job_id

    async def compute(self, payload: JobPayload, request_id: str) -> dict:
        job = await self.ctx.subjects.find_job(payload.job_id, with_company=True)
        if job is None or job.is_deleted:
            raise NotFoundError(f"Job {payload.job_id} not found")

        metrics = quality_metrics(job)
        signals = {name: metric_signal(metric) for name, metric in metrics.items()}
        score = round_half_up(aggregate(self.ctx.policy.quality_weights, signals, OVERALL_SCORE_MAX))
        now = self.now()

        record = build_record(
            self.verification_type,
            now=now,
            status=RecordStatus.VERIFIED,
            job_id=job.id,
            metrics=metrics,
            overall_score=score,
            assessed_at=now,
        )
        await self.persist(record, request_id)
        await self.ctx.subjects.set_job_quality(job.id, score, now)

        logger.info("Job quality assessed", job_id=job.id, score=score, request_id=request_id)
        return {
            "job_id": job.id,
            "score": score,
            "grade": grade(score),
            "metrics": metrics,
            "recommendations": recommendations(metrics),
            "verification": record.to_dict(),
        }
