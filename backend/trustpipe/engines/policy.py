"""Verification types, TTLs and scoring constants."""

from dataclasses import dataclass
from enum import Enum
from types import MappingProxyType
from typing import Mapping, Optional

from trustpipe.config import Settings, get_settings
from trustpipe.errors import ConfigurationError


class VerificationType(str, Enum):
    """Kinds of verification record."""

    COMPANY_VERIFICATION = "company_verification"
    SPAM_CHECK = "spam_check"
    SALARY_VERIFICATION = "salary_verification"
    DUPLICATE_CHECK = "duplicate_check"
    QUALITY_ASSESSMENT = "quality_assessment"


class TaskType(str, Enum):
    """Tags accepted on the task queue."""

    COMPANY_VERIFICATION = "company_verification"
    SPAM_CHECK = "spam_check"
    SALARY_VERIFICATION = "salary_verification"
    DUPLICATE_CHECK = "duplicate_check"
    QUALITY_ASSESSMENT = "quality_assessment"
    QUALITY_TASKS = "quality_tasks"


# Tags still sent by older producers
TASK_TYPE_ALIASES: Mapping[str, TaskType] = MappingProxyType({
    "spam_detection": TaskType.SPAM_CHECK,
    "duplicate_application": TaskType.DUPLICATE_CHECK,
    "job_quality": TaskType.QUALITY_ASSESSMENT,
})


class RecordStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"
    EXPIRED = "expired"


# Seconds a cached result / persisted record stays current
VERIFICATION_TTL: Mapping[VerificationType, int] = MappingProxyType({
    VerificationType.COMPANY_VERIFICATION: 604800,  # 1 week
    VerificationType.SPAM_CHECK: 86400,  # 1 day
    VerificationType.SALARY_VERIFICATION: 86400,  # 1 day
    VerificationType.DUPLICATE_CHECK: 3600,  # 1 hour
    VerificationType.QUALITY_ASSESSMENT: 86400,  # 1 day
})

MARKET_SALARY_NAMESPACE = "market_salary"
MARKET_SALARY_TTL = 86400
REQUEST_STATUS_NAMESPACE = "request_status"
REQUEST_STATUS_TTL = 86400
COMPANY_STATUS_NAMESPACE = "company_verification_status"

CURRENT_SCHEMA_VERSION = 2
MAX_CHECKS_BYTES = 10000
MAX_EXISTING_APPLICATIONS = 100
MAX_SIMILAR_APPLICATIONS = 50

SPAM_SCORE_MAX = 1.0
OVERALL_SCORE_MAX = 100.0


def resolve_task_type(tag: str) -> Optional[TaskType]:
    """Map a queue tag to a TaskType, or None when the tag is unknown."""
    try:
        return TaskType(tag)
    except ValueError:
        return TASK_TYPE_ALIASES.get(tag)


def verification_type_for(task_type: TaskType) -> Optional[VerificationType]:
    """The record type a task produces (None for passthrough tasks)."""
    try:
        return VerificationType(task_type.value)
    except ValueError:
        return None


def ttl_for(verification_type: VerificationType) -> int:
    return VERIFICATION_TTL[VerificationType(verification_type)]


@dataclass(frozen=True)
class ScoringPolicy:
    """Product constants used by the scoring strategies."""

    spam_weights: Mapping[str, float]
    quality_weights: Mapping[str, float]
    spam_threshold: float
    company_pass_ratio: float
    spam_description_min_score: float
    duplicate_window_hours: int

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "ScoringPolicy":
        settings = settings or get_settings()
        return cls(
            spam_weights=MappingProxyType(dict(settings.spam_weights)),
            quality_weights=MappingProxyType(dict(settings.quality_weights)),
            spam_threshold=settings.spam_threshold,
            company_pass_ratio=settings.company_pass_ratio,
            spam_description_min_score=settings.spam_description_min_score,
            duplicate_window_hours=settings.duplicate_window_hours,
        )


def result_topics(settings: Optional[Settings] = None) -> Mapping[TaskType, str]:
    """Result topic per task type."""
    settings = settings or get_settings()
    return MappingProxyType({task_type: settings.result_topic for task_type in TaskType})


def _check_ttl_table() -> None:
    missing = set(VerificationType) - set(VERIFICATION_TTL)
    if missing:
        raise ConfigurationError(f"No TTL configured for {sorted(t.value for t in missing)}")


_check_ttl_table()
