"""Duplicate-application detection."""

from datetime import timedelta

import structlog

from trustpipe.engines.cache import subject_key
from trustpipe.engines.policy import MAX_SIMILAR_APPLICATIONS, RecordStatus, VerificationType
from trustpipe.engines.records import build_record
from trustpipe.errors import NotFoundError
from trustpipe.strategies.base import ApplicationPayload, VerificationStrategy

logger = structlog.get_logger()


def recommendation(is_duplicate: bool, has_similar_recent: bool) -> dict:
    if is_duplicate:
        return {"action": "block", "message": "You have already applied to this position"}
    if has_similar_recent:
        return {"action": "warn", "message": "You recently applied to a similar position at this company"}
    return {"action": "allow", "message": "Application can proceed"}


class DuplicateApplicationStrategy(VerificationStrategy):
    verification_type = VerificationType.DUPLICATE_CHECK
    payload_model = ApplicationPayload

    def subject_key(self, payload: ApplicationPayload) -> str:
        return subject_key(payload.user_id, payload.job_id)

    async def compute(self, payload: ApplicationPayload, request_id: str) -> dict:
        job = await self.ctx.subjects.find_job(payload.job_id)
        if job is None or job.is_deleted:
            raise NotFoundError(f"Job {payload.job_id} not found")

        now = self.now()
        since = now - timedelta(hours=self.ctx.policy.duplicate_window_hours)
        existing = await self.ctx.subjects.find_applications_by_user_and_job(payload.user_id, job.id)
        similar = await self.ctx.subjects.find_similar_recent_applications(payload.user_id, job.company_id, since)

        is_duplicate = bool(existing)
        has_similar_recent = bool(similar)
        advice = recommendation(is_duplicate, has_similar_recent)

        record = build_record(
            self.verification_type,
            now=now,
            status=RecordStatus.REJECTED if advice["action"] == "block" else RecordStatus.VERIFIED,
            user_id=payload.user_id,
            job_id=job.id,
            is_duplicate=is_duplicate,
            has_similar_recent=has_similar_recent,
            existing_applications=[existing[0].id] if existing else [],
            similar_applications=[a.id for a in similar[:MAX_SIMILAR_APPLICATIONS]],
            checked_at=now,
        )
        await self.persist(record, request_id)

        logger.info(
            "Duplicate check completed",
            user_id=payload.user_id,
            job_id=job.id,
            action=advice["action"],
            request_id=request_id,
        )
        return {
            "user_id": payload.user_id,
            "job_id": job.id,
            "is_duplicate": is_duplicate,
            "has_similar_recent": has_similar_recent,
            "existing_application": existing[0].id if existing else None,
            "similar_count": len(similar),
            "recommendation": advice,
            "verification": record.to_dict(),
        }
