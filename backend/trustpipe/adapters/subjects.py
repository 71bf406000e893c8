"""Subject Store: companies, jobs and applications the pipeline evaluates.

Reads return ``None`` or an empty list for missing subjects and never raise
for "not found". Store outages surface as ``TransientExternalError`` on reads
and ``PersistenceError`` on the status updates strategies write back.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Optional, Protocol
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustpipe.db.models import Company, Job, JobApplication
from trustpipe.db.session import write_with_retry
from trustpipe.errors import TransientExternalError

logger = structlog.get_logger()

WITHDRAWN = "withdrawn"


@dataclass
class CompanySubject:
    id: str
    name: str
    domain: Optional[str] = None
    website: Optional[str] = None
    address: Optional[str] = None
    description: Optional[str] = None
    social_profiles: list[str] = field(default_factory=list)
    employee_count: Optional[int] = None
    is_verified: bool = False
    verified_badge: bool = False
    verification_id: Optional[str] = None
    last_verification_check: Optional[datetime] = None
    is_deleted: bool = False


@dataclass
class JobSubject:
    id: str
    title: str
    company_id: Optional[str] = None
    description: Optional[str] = None
    location: Optional[str] = None
    experience_level: Optional[str] = None
    skills: list[str] = field(default_factory=list)
    min_salary: Optional[int] = None
    max_salary: Optional[int] = None
    salary_currency: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    apply_link: Optional[str] = None
    is_deleted: bool = False
    is_spam: bool = False
    spam_score: Optional[float] = None
    flagged_at: Optional[datetime] = None
    salary_verified: Optional[bool] = None
    quality_score: Optional[int] = None
    last_quality_check: Optional[datetime] = None
    company: Optional[CompanySubject] = None


@dataclass
class ApplicationSubject:
    id: str
    user_id: str
    job_id: str
    company_id: Optional[str] = None
    status: str = "submitted"
    created_at: Optional[datetime] = None


class SubjectStore(Protocol):
    async def find_company(self, company_id: str) -> Optional[CompanySubject]: ...

    async def find_job(self, job_id: str, with_company: bool = False) -> Optional[JobSubject]: ...

    async def find_applications_by_user_and_job(self, user_id: str, job_id: str) -> list[ApplicationSubject]: ...

    async def find_similar_recent_applications(
        self, user_id: str, company_id: Optional[str], since: datetime
    ) -> list[ApplicationSubject]: ...

    async def count_similar_job_descriptions(
        self, fragment: str, exclude_job_id: str, exclude_company_id: Optional[str]
    ) -> int: ...

    async def mark_company_verification(
        self, company_id: str, *, is_verified: bool, verification_id: str, checked_at: datetime
    ) -> None: ...

    async def flag_job_spam(self, job_id: str, spam_score: float, flagged_at: datetime) -> None: ...

    async def set_salary_verified(self, job_id: str, verified: bool) -> None: ...

    async def set_job_quality(self, job_id: str, score: int, checked_at: datetime) -> None: ...


def _as_uuid(value: Optional[str]) -> Optional[UUID]:
    if value is None:
        return None
    try:
        return UUID(str(value))
    except ValueError:
        return None


def _str(value) -> Optional[str]:
    return None if value is None else str(value)


def _company_from_row(row: Company) -> CompanySubject:
    return CompanySubject(
        id=str(row.id),
        name=row.name,
        domain=row.domain,
        website=row.website,
        address=row.address,
        description=row.description,
        social_profiles=list(row.social_profiles or []),
        employee_count=row.employee_count,
        is_verified=bool(row.is_verified),
        verified_badge=bool(row.verified_badge),
        verification_id=row.verification_id,
        last_verification_check=row.last_verification_check,
        is_deleted=bool(row.is_deleted),
    )


def _job_from_row(row: Job, company: Optional[Company] = None) -> JobSubject:
    return JobSubject(
        id=str(row.id),
        title=row.title,
        company_id=_str(row.company_id),
        description=row.description,
        location=row.location,
        experience_level=row.experience_level,
        skills=list(row.skills or []),
        min_salary=row.min_salary,
        max_salary=row.max_salary,
        salary_currency=row.salary_currency,
        contact_email=row.contact_email,
        contact_phone=row.contact_phone,
        apply_link=row.apply_link,
        is_deleted=bool(row.is_deleted),
        is_spam=bool(row.is_spam),
        spam_score=row.spam_score,
        flagged_at=row.flagged_at,
        salary_verified=row.salary_verified,
        quality_score=row.quality_score,
        last_quality_check=row.last_quality_check,
        company=_company_from_row(company) if company is not None else None,
    )


def _application_from_row(row: JobApplication) -> ApplicationSubject:
    return ApplicationSubject(
        id=str(row.id),
        user_id=row.user_id,
        job_id=str(row.job_id),
        company_id=_str(row.company_id),
        status=row.status,
        created_at=row.created_at,
    )


def _escape_like(fragment: str) -> str:
    return fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class SqlSubjectStore:
    """Subject Store over the companies, jobs and job_applications tables."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _read(self, operation: str, query):
        try:
            async with self.session_factory() as session:
                return await session.execute(query)
        except SQLAlchemyError as e:
            logger.warning("Subject store read failed", operation=operation, error=str(e))
            raise TransientExternalError(f"Subject store {operation} failed: {e}") from e

    async def _write(self, operation: str, statement) -> None:
        async def work(session: AsyncSession) -> None:
            await session.execute(statement)

        await write_with_retry(self.session_factory, f"Subject store {operation}", work)

    async def find_company(self, company_id: str) -> Optional[CompanySubject]:
        key = _as_uuid(company_id)
        if key is None:
            return None
        result = await self._read("find_company", select(Company).where(Company.id == key))
        row = result.scalar_one_or_none()
        return _company_from_row(row) if row else None

    async def find_job(self, job_id: str, with_company: bool = False) -> Optional[JobSubject]:
        key = _as_uuid(job_id)
        if key is None:
            return None
        query = (
            select(Job, Company)
            .outerjoin(Company, Job.company_id == Company.id)
            .where(Job.id == key)
        )
        row = (await self._read("find_job", query)).first()
        if not row:
            return None
        job, company = row
        return _job_from_row(job, company if with_company else None)

    async def find_applications_by_user_and_job(self, user_id: str, job_id: str) -> list[ApplicationSubject]:
        key = _as_uuid(job_id)
        if key is None:
            return []
        query = (
            select(JobApplication)
            .where(
                JobApplication.user_id == str(user_id),
                JobApplication.job_id == key,
                JobApplication.status != WITHDRAWN,
            )
            .order_by(JobApplication.created_at.desc())
        )
        result = await self._read("find_applications_by_user_and_job", query)
        return [_application_from_row(row) for row in result.scalars().all()]

    async def find_similar_recent_applications(
        self, user_id: str, company_id: Optional[str], since: datetime
    ) -> list[ApplicationSubject]:
        key = _as_uuid(company_id)
        if key is None:
            return []
        query = (
            select(JobApplication)
            .where(
                JobApplication.user_id == str(user_id),
                JobApplication.company_id == key,
                JobApplication.created_at >= since,
            )
            .order_by(JobApplication.created_at.desc())
        )
        result = await self._read("find_similar_recent_applications", query)
        return [_application_from_row(row) for row in result.scalars().all()]

    async def count_similar_job_descriptions(
        self, fragment: str, exclude_job_id: str, exclude_company_id: Optional[str]
    ) -> int:
        """Count live jobs at other companies whose description contains ``fragment``."""
        if not fragment:
            return 0
        query = select(func.count(Job.id)).where(
            Job.description.ilike(f"%{_escape_like(fragment)}%", escape="\\"),
            Job.is_deleted.is_(False),
        )
        job_key = _as_uuid(exclude_job_id)
        if job_key is not None:
            query = query.where(Job.id != job_key)
        company_key = _as_uuid(exclude_company_id)
        if company_key is not None:
            query = query.where(or_(Job.company_id.is_(None), Job.company_id != company_key))
        result = await self._read("count_similar_job_descriptions", query)
        return result.scalar_one() or 0

    async def mark_company_verification(
        self, company_id: str, *, is_verified: bool, verification_id: str, checked_at: datetime
    ) -> None:
        await self._write(
            "mark_company_verification",
            update(Company)
            .where(Company.id == _as_uuid(company_id))
            .values(
                is_verified=is_verified,
                verified_badge=is_verified,
                verification_id=verification_id,
                last_verification_check=checked_at,
            ),
        )

    async def flag_job_spam(self, job_id: str, spam_score: float, flagged_at: datetime) -> None:
        await self._write(
            "flag_job_spam",
            update(Job)
            .where(Job.id == _as_uuid(job_id))
            .values(is_spam=True, spam_score=spam_score, flagged_at=flagged_at),
        )

    async def set_salary_verified(self, job_id: str, verified: bool) -> None:
        await self._write(
            "set_salary_verified",
            update(Job).where(Job.id == _as_uuid(job_id)).values(salary_verified=verified),
        )

    async def set_job_quality(self, job_id: str, score: int, checked_at: datetime) -> None:
        await self._write(
            "set_job_quality",
            update(Job)
            .where(Job.id == _as_uuid(job_id))
            .values(quality_score=score, last_quality_check=checked_at),
        )


class InMemorySubjectStore:
    """Dictionary-backed store for local runs without a database, and tests."""

    def __init__(
        self,
        companies: Optional[list[CompanySubject]] = None,
        jobs: Optional[list[JobSubject]] = None,
        applications: Optional[list[ApplicationSubject]] = None,
    ):
        self.companies = {c.id: c for c in companies or []}
        self.jobs = {j.id: j for j in jobs or []}
        self.applications = list(applications or [])
        self.reads = 0

    async def find_company(self, company_id: str) -> Optional[CompanySubject]:
        self.reads += 1
        company = self.companies.get(str(company_id))
        return replace(company) if company else None

    async def find_job(self, job_id: str, with_company: bool = False) -> Optional[JobSubject]:
        self.reads += 1
        job = self.jobs.get(str(job_id))
        if job is None:
            return None
        company = self.companies.get(job.company_id) if with_company and job.company_id else None
        return replace(job, company=replace(company) if company else None)

    async def find_applications_by_user_and_job(self, user_id: str, job_id: str) -> list[ApplicationSubject]:
        self.reads += 1
        return [
            a for a in self.applications
            if a.user_id == str(user_id) and a.job_id == str(job_id) and a.status != WITHDRAWN
        ]

    async def find_similar_recent_applications(
        self, user_id: str, company_id: Optional[str], since: datetime
    ) -> list[ApplicationSubject]:
        self.reads += 1
        if company_id is None:
            return []
        return [
            a for a in self.applications
            if a.user_id == str(user_id)
            and a.company_id == company_id
            and a.created_at is not None
            and a.created_at >= since
        ]

    async def count_similar_job_descriptions(
        self, fragment: str, exclude_job_id: str, exclude_company_id: Optional[str]
    ) -> int:
        self.reads += 1
        if not fragment:
            return 0
        needle = fragment.lower()
        return sum(
            1 for j in self.jobs.values()
            if j.id != exclude_job_id
            and not j.is_deleted
            and (exclude_company_id is None or j.company_id != exclude_company_id)
            and needle in (j.description or "").lower()
        )

    async def mark_company_verification(
        self, company_id: str, *, is_verified: bool, verification_id: str, checked_at: datetime
    ) -> None:
        company = self.companies[str(company_id)]
        company.is_verified = is_verified
        company.verified_badge = is_verified
        company.verification_id = verification_id
        company.last_verification_check = checked_at

    async def flag_job_spam(self, job_id: str, spam_score: float, flagged_at: datetime) -> None:
        job = self.jobs[str(job_id)]
        job.is_spam = True
        job.spam_score = spam_score
        job.flagged_at = flagged_at

    async def set_salary_verified(self, job_id: str, verified: bool) -> None:
        self.jobs[str(job_id)].salary_verified = verified

    async def set_job_quality(self, job_id: str, score: int, checked_at: datetime) -> None:
        job = self.jobs[str(job_id)]
        job.quality_score = score
        job.last_quality_check = checked_at
