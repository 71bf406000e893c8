"""SQLAlchemy database models."""

from datetime import datetime
from typing import Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import ARRAY, JSONB, UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class Company(Base):
    """Employer profile evaluated by company verification."""

    __tablename__ = "companies"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    domain: Mapped[Optional[str]] = mapped_column(String(255))
    website: Mapped[Optional[str]] = mapped_column(Text)
    address: Mapped[Optional[str]] = mapped_column(String(200))
    description: Mapped[Optional[str]] = mapped_column(Text)
    social_profiles: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text))
    employee_count: Mapped[Optional[int]] = mapped_column(Integer)

    # Verification state written by the pipeline
    is_verified: Mapped[bool] = mapped_column(Boolean, default=False)
    verified_badge: Mapped[bool] = mapped_column(Boolean, default=False)
    verification_id: Mapped[Optional[str]] = mapped_column(String(36))
    last_verification_check: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )


class Job(Base):
    """Job posting evaluated by spam, salary and quality checks."""

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    company_id: Mapped[Optional[UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("companies.id", ondelete="SET NULL")
    )
    title: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    location: Mapped[Optional[str]] = mapped_column(Text)
    experience_level: Mapped[Optional[str]] = mapped_column(String(50))
    skills: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text))
    min_salary: Mapped[Optional[int]] = mapped_column(Integer)
    max_salary: Mapped[Optional[int]] = mapped_column(Integer)
    salary_currency: Mapped[Optional[str]] = mapped_column(String(3))
    contact_email: Mapped[Optional[str]] = mapped_column(String(255))
    contact_phone: Mapped[Optional[str]] = mapped_column(String(50))
    apply_link: Mapped[Optional[str]] = mapped_column(Text)

    # Pipeline outputs
    is_spam: Mapped[bool] = mapped_column(Boolean, default=False)
    spam_score: Mapped[Optional[float]] = mapped_column(Float)
    flagged_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    salary_verified: Mapped[Optional[bool]] = mapped_column(Boolean)
    quality_score: Mapped[Optional[int]] = mapped_column(Integer)
    last_quality_check: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class JobApplication(Base):
    """A candidate's application to a job."""

    __tablename__ = "job_applications"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    user_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    job_id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("jobs.id", ondelete="CASCADE")
    )
    company_id: Mapped[Optional[UUID]] = mapped_column(UUID(as_uuid=True))
    status: Mapped[str] = mapped_column(
        String(20), default="submitted"
    )  # submitted, reviewed, shortlisted, interviewed, rejected, hired, withdrawn
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )

    __table_args__ = (
        Index("ix_job_applications_user_company_created", "user_id", "company_id", "created_at"),
    )


class VerificationRecordRow(Base):
    """Versioned, auto-expiring verification outcome."""

    __tablename__ = "verification_records"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    type: Mapped[str] = mapped_column(
        String(32), nullable=False, index=True
    )  # company_verification, spam_check, salary_verification, duplicate_check, quality_assessment

    # Weak references to subjects
    company_id: Mapped[Optional[str]] = mapped_column(String(36))
    job_id: Mapped[Optional[str]] = mapped_column(String(36))
    user_id: Mapped[Optional[str]] = mapped_column(String(36))
    verified_by: Mapped[Optional[str]] = mapped_column(String(36))

    checks: Mapped[Optional[dict]] = mapped_column(JSONB)
    status: Mapped[str] = mapped_column(
        String(20), default="pending", index=True
    )  # pending, verified, rejected, expired
    overall_score: Mapped[Optional[float]] = mapped_column(Float)
    spam_score: Mapped[Optional[float]] = mapped_column(Float)
    is_spam: Mapped[bool] = mapped_column(Boolean, default=False)

    provided_salary: Mapped[Optional[dict]] = mapped_column(JSONB)
    market_data: Mapped[Optional[dict]] = mapped_column(JSONB)
    verification: Mapped[Optional[dict]] = mapped_column(JSONB)

    is_duplicate: Mapped[bool] = mapped_column(Boolean, default=False)
    has_similar_recent: Mapped[bool] = mapped_column(Boolean, default=False)
    existing_applications: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text))
    similar_applications: Mapped[Optional[list[str]]] = mapped_column(ARRAY(Text))
    metrics: Mapped[Optional[dict]] = mapped_column(JSONB)

    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    checked_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    assessed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), index=True
    )  # NULL only on schema_version 1 rows
    schema_version: Mapped[int] = mapped_column(Integer, default=2, index=True)
    metadata_: Mapped[Optional[dict]] = mapped_column("metadata", JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        Index("ix_verification_records_company_type_status", "company_id", "type", "status"),
        Index("ix_verification_records_job_type_created", "job_id", "type", "created_at"),
        Index("ix_verification_records_user_job_type", "user_id", "job_id", "type"),
        Index("ix_verification_records_spam", "is_spam", "spam_score"),
    )


class Metric(Base):
    """Worker counters flushed for monitoring."""

    __tablename__ = "metrics"

    id: Mapped[UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid4
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    labels: Mapped[Optional[dict]] = mapped_column(JSONB)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
