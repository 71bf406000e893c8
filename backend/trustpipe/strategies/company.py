"""Company verification and badge status."""

import asyncio
import math
from typing import Optional

import structlog

from trustpipe.adapters.probes import probe_social_profiles, probe_website
from trustpipe.adapters.subjects import CompanySubject
from trustpipe.engines.policy import COMPANY_STATUS_NAMESPACE, RecordStatus, VerificationType, ttl_for
from trustpipe.engines.records import build_record
from trustpipe.errors import NotFoundError
from trustpipe.strategies.base import CompanyPayload, VerificationStrategy

logger = structlog.get_logger()

MIN_EMPLOYEES = 10


def overall_verdict(checks: dict[str, dict], pass_ratio: float) -> dict:
    """``passed`` when at least ceil(ratio * total) checks passed."""
    total = len(checks)
    passed = sum(1 for check in checks.values() if check.get("passed"))
    # round() keeps 5 * 0.6 from landing just above 3
    required = math.ceil(round(total * pass_ratio, 6))
    return {
        "passed": total > 0 and passed >= required,
        "score": passed / total * 100 if total else 0.0,
        "passed_checks": passed,
        "total_checks": total,
    }


def badge_level(is_verified: bool, score: Optional[float]) -> str:
    if not is_verified:
        return "none"
    if score is not None and score >= 90:
        return "gold"
    if score is not None and score >= 70:
        return "silver"
    return "bronze"


def check_employee_count(company: CompanySubject) -> dict:
    enough = (company.employee_count or 0) >= MIN_EMPLOYEES
    return {
        "passed": enough,
        "confidence": 0.8 if enough else 0.5,
        "details": f"Employee count: {company.employee_count}",
    }


def check_address(company: CompanySubject) -> dict:
    return {
        "passed": bool(company.address),
        "confidence": 0.9 if company.address else 0.2,
        "details": f"Address: {company.address}" if company.address else "No address provided",
    }


class CompanyVerificationStrategy(VerificationStrategy):
    verification_type = VerificationType.COMPANY_VERIFICATION
    payload_model = CompanyPayload
    uses_lock = True

    def subject_key(self, payload: CompanyPayload) -> str:
        return payload.company_id

    async def _load(self, company_id: str) -> CompanySubject:
        company = await self.ctx.subjects.find_company(company_id)
        if company is None or company.is_deleted:
            raise NotFoundError(f"Company {company_id} not found")
        return company

    async def run_checks(self, company: CompanySubject) -> dict:
        registration, website, social = await asyncio.gather(
            self.ctx.reasoning.check_business_registration({
                "name": company.name,
                "domain": company.domain,
                "address": company.address,
                "social_profiles": company.social_profiles,
            }),
            probe_website(self.ctx.prober, company.domain, company.website),
            probe_social_profiles(self.ctx.prober, company.social_profiles),
        )
        return {
            "business_registration": registration.model_dump(),
            "website": website,
            "social_profiles": social,
            "employee_count": check_employee_count(company),
            "address": check_address(company),
        }

    async def compute(self, payload: CompanyPayload, request_id: str) -> dict:
        company = await self._load(payload.company_id)
        checks = await self.run_checks(company)
        overall = overall_verdict(checks, self.ctx.policy.company_pass_ratio)
        now = self.now()

        record = build_record(
            self.verification_type,
            now=now,
            status=RecordStatus.VERIFIED if overall["passed"] else RecordStatus.PENDING,
            company_id=company.id,
            verified_by=payload.verified_by,
            checks={**checks, "overall": overall},
            overall_score=overall["score"],
        )
        await self.persist(record, request_id)
        await self.ctx.subjects.mark_company_verification(
            company.id,
            is_verified=overall["passed"],
            verification_id=record.id,
            checked_at=now,
        )
        await self.ctx.cache.delete(COMPANY_STATUS_NAMESPACE, company.id)

        logger.info(
            "Company verification completed",
            company_id=company.id,
            passed=overall["passed"],
            score=overall["score"],
            request_id=request_id,
        )
        return {
            "company_id": company.id,
            "is_verified": overall["passed"],
            "badge_level": badge_level(overall["passed"], overall["score"]),
            "checks": record.checks,
            "verification": record.to_dict(),
        }

    async def get_status(self, company_id: str) -> dict:
        """Current verification state and badge level of a company."""
        cached = await self.ctx.cache.get(COMPANY_STATUS_NAMESPACE, company_id)
        if cached is not None:
            return cached

        company = await self._load(company_id)
        verification = None
        if company.verification_id:
            verification = await self.ctx.repository.get(company.verification_id, self.now())
        score = verification.overall_score if verification else None

        status = {
            "company_id": company.id,
            "is_verified": company.is_verified,
            "verification_date": company.last_verification_check.isoformat() if company.last_verification_check else None,
            "verification": verification.to_dict() if verification else None,
            "badge_level": badge_level(company.is_verified, score),
        }
        await self.ctx.cache.set(
            COMPANY_STATUS_NAMESPACE,
            company_id,
            status,
            ttl=ttl_for(VerificationType.COMPANY_VERIFICATION),
        )
        return status
