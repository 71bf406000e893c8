"""Database module."""

from trustpipe.db.session import dispose_engine, get_engine, get_session_factory
from trustpipe.db.models import (
    Base,
    Company,
    Job,
    JobApplication,
    Metric,
    VerificationRecordRow,
)

__all__ = [
    "get_engine",
    "get_session_factory",
    "dispose_engine",
    "Base",
    "Company",
    "Job",
    "JobApplication",
    "Metric",
    "VerificationRecordRow",
]
