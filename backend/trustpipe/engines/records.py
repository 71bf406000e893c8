"""Verification record model and the factory that derives its fields.

Derived fields (expiry, status timestamps, salary cross-validation, score
bounds) are computed here, once, before anything is handed to a repository.
"""

import json
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta, timezone
from typing import Any, Optional
from uuid import uuid4

from trustpipe.engines.policy import (
    CURRENT_SCHEMA_VERSION,
    MAX_CHECKS_BYTES,
    MAX_EXISTING_APPLICATIONS,
    MAX_SIMILAR_APPLICATIONS,
    OVERALL_SCORE_MAX,
    SPAM_SCORE_MAX,
    RecordStatus,
    VerificationType,
    ttl_for,
)
from trustpipe.engines.scoring import clamp
from trustpipe.errors import ValidationError

LOW_SALARY_RATIO = 0.5
LOW_SALARY_NOTE = "Salary significantly below market range"

_TERMINAL_STATUSES = {RecordStatus.VERIFIED, RecordStatus.REJECTED}


@dataclass
class VerificationRecord:
    """A persisted verification outcome for one subject."""

    type: VerificationType
    created_at: datetime
    expires_at: Optional[datetime]
    id: str = field(default_factory=lambda: str(uuid4()))
    status: RecordStatus = RecordStatus.PENDING
    company_id: Optional[str] = None
    job_id: Optional[str] = None
    user_id: Optional[str] = None
    verified_by: Optional[str] = None
    checks: dict = field(default_factory=dict)
    overall_score: Optional[float] = None
    spam_score: Optional[float] = None
    is_spam: bool = False
    provided_salary: Optional[dict] = None
    market_data: Optional[dict] = None
    verification: Optional[dict] = None
    is_duplicate: bool = False
    has_similar_recent: bool = False
    existing_applications: list[str] = field(default_factory=list)
    similar_applications: list[str] = field(default_factory=list)
    metrics: Optional[dict] = None
    verified_at: Optional[datetime] = None
    checked_at: Optional[datetime] = None
    assessed_at: Optional[datetime] = None
    schema_version: int = CURRENT_SCHEMA_VERSION
    metadata: dict = field(default_factory=dict)
    updated_at: Optional[datetime] = None

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at <= now

    def to_dict(self) -> dict:
        """JSON-friendly representation used in results and the cache."""
        data = asdict(self)
        data["type"] = self.type.value
        data["status"] = self.status.value
        for key, value in data.items():
            if isinstance(value, datetime):
                data[key] = value.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "VerificationRecord":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in data.items() if key in known}
        values["type"] = VerificationType(values["type"])
        values["status"] = RecordStatus(values.get("status", RecordStatus.PENDING))
        for key in ("created_at", "expires_at", "verified_at", "checked_at", "assessed_at", "updated_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        return cls(**values)


def build_record(
    verification_type: VerificationType,
    *,
    now: datetime,
    status: RecordStatus = RecordStatus.PENDING,
    expires_at: Optional[datetime] = None,
    checks: Optional[dict] = None,
    overall_score: Optional[float] = None,
    spam_score: Optional[float] = None,
    verification: Optional[dict] = None,
    existing_applications: Optional[list[str]] = None,
    similar_applications: Optional[list[str]] = None,
    **attributes: Any,
) -> VerificationRecord:
    """Create a record with every derived field filled in.

    - ``expires_at`` defaults to ``now + TTL[type]``.
    - ``verified_at`` is stamped for verified records, ``checked_at`` for
      rejected ones (unless the caller set them).
    - Scores are clamped to their bounds.
    - A provided salary under half the market minimum forces
      ``verification.status = "failed"`` with an explanatory note.
    """
    verification_type = VerificationType(verification_type)
    status = RecordStatus(status)
    if status == RecordStatus.EXPIRED:
        raise ValidationError("Records cannot be created in the expired state")
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)

    checks = checks or {}
    _check_size(checks)

    existing_applications = list(existing_applications or [])
    similar_applications = list(similar_applications or [])
    if len(existing_applications) > MAX_EXISTING_APPLICATIONS:
        raise ValidationError(f"Too many existing applications (max {MAX_EXISTING_APPLICATIONS})")
    if len(similar_applications) > MAX_SIMILAR_APPLICATIONS:
        raise ValidationError(f"Too many similar applications (max {MAX_SIMILAR_APPLICATIONS})")

    record = VerificationRecord(
        type=verification_type,
        created_at=now,
        updated_at=now,
        expires_at=expires_at or now + timedelta(seconds=ttl_for(verification_type)),
        status=status,
        checks=checks,
        overall_score=None if overall_score is None else clamp(overall_score, 0.0, OVERALL_SCORE_MAX),
        spam_score=None if spam_score is None else clamp(spam_score, 0.0, SPAM_SCORE_MAX),
        verification=dict(verification) if verification else None,
        existing_applications=existing_applications,
        similar_applications=similar_applications,
        **attributes,
    )

    if record.status == RecordStatus.VERIFIED and record.verified_at is None:
        record.verified_at = now
    elif record.status == RecordStatus.REJECTED and record.checked_at is None:
        record.checked_at = now

    _cross_validate_salary(record)
    return record


def transition_status(record: VerificationRecord, status: RecordStatus, now: datetime) -> VerificationRecord:
    """Move a pending record to a terminal status, stamping the timestamps."""
    status = RecordStatus(status)
    if record.status != RecordStatus.PENDING or status not in _TERMINAL_STATUSES:
        raise ValidationError(
            f"Illegal status transition {record.status.value} -> {status.value}",
            details={"record_id": record.id},
        )
    record.status = status
    record.updated_at = now
    if status == RecordStatus.VERIFIED:
        record.verified_at = record.verified_at or now
    else:
        record.checked_at = now
    return record


def _check_size(checks: dict) -> None:
    try:
        size = len(json.dumps(checks, default=str))
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Checks are not serializable: {exc}") from exc
    if size >= MAX_CHECKS_BYTES:
        raise ValidationError(f"Checks data too large ({size} bytes, max {MAX_CHECKS_BYTES})")


def is_salary_below_market(provided_salary: Optional[dict], market_data: Optional[dict]) -> bool:
    """True when the provided amount is under half the market minimum."""
    amount = (provided_salary or {}).get("amount")
    market_min = (market_data or {}).get("min_salary")
    if not amount or not market_min:
        return False
    return amount < market_min * LOW_SALARY_RATIO


def _cross_validate_salary(record: VerificationRecord) -> None:
    if is_salary_below_market(record.provided_salary, record.market_data):
        verification = record.verification or {}
        verification["status"] = "failed"
        verification["notes"] = LOW_SALARY_NOTE
        record.verification = verification
