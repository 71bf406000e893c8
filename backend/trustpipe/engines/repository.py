"""Persistence for verification records.

Two implementations share one interface: ``SqlRecordRepository`` (async
SQLAlchemy / PostgreSQL) and ``InMemoryRecordRepository`` (local runs without
a database, and tests). Expired records read as "not found"; physical
deletion happens in ``purge_expired``, run by a background task.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Awaitable, Callable, Optional, Protocol, TypeVar

import structlog
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from trustpipe.db.models import VerificationRecordRow
from trustpipe.db.session import get_session_factory, write_with_retry
from trustpipe.engines.policy import (
    OVERALL_SCORE_MAX,
    SPAM_SCORE_MAX,
    RecordStatus,
    VerificationType,
    ttl_for,
)
from trustpipe.engines.records import VerificationRecord, transition_status
from trustpipe.engines.scoring import clamp
from trustpipe.errors import NotFoundError, PersistenceError

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass
class BulkCreateResult:
    """Outcome of an unordered bulk insert."""

    inserted: list[str] = field(default_factory=list)
    failures: list[dict] = field(default_factory=list)  # {"index", "id", "error"}

    @property
    def ok(self) -> bool:
        return not self.failures


class RecordRepository(Protocol):
    async def create(self, record: VerificationRecord) -> VerificationRecord: ...

    async def bulk_create(self, records: list[VerificationRecord]) -> BulkCreateResult: ...

    async def get(self, record_id: str, now: Optional[datetime] = None) -> Optional[VerificationRecord]: ...

    async def latest_for_subject(
        self,
        verification_type: VerificationType,
        *,
        company_id: Optional[str] = None,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[VerificationRecord]: ...

    async def mark_verified(self, record_id: str, verified_by: Optional[str], now: datetime) -> VerificationRecord: ...

    async def mark_spam(self, record_id: str, score: float, now: datetime) -> VerificationRecord: ...

    async def update_score(self, record_id: str, score: float, now: datetime) -> VerificationRecord: ...

    async def find_spam_records(self, threshold: float = 0.8, limit: int = 100) -> list[VerificationRecord]: ...

    async def quality_stats(self, user_id: str) -> list[dict]: ...

    async def migrate_schema(self, old_version: int, new_version: int, now: Optional[datetime] = None) -> dict: ...

    async def purge_expired(self, now: Optional[datetime] = None) -> int: ...

    async def close(self) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _apply_spam(record: VerificationRecord, score: float, now: datetime) -> None:
    transition_status(record, RecordStatus.REJECTED, now)
    record.is_spam = True
    record.spam_score = clamp(score, 0.0, SPAM_SCORE_MAX)


def _apply_verified(record: VerificationRecord, verified_by: Optional[str], now: datetime) -> None:
    transition_status(record, RecordStatus.VERIFIED, now)
    record.verified_by = verified_by


def _apply_score(record: VerificationRecord, score: float, now: datetime) -> None:
    record.overall_score = clamp(score, 0.0, OVERALL_SCORE_MAX)
    record.assessed_at = now
    record.updated_at = now


def _stats_rows(records: list[VerificationRecord]) -> list[dict]:
    grouped: dict[str, list[VerificationRecord]] = {}
    for record in records:
        grouped.setdefault(record.type.value, []).append(record)
    stats = []
    for type_name, items in sorted(grouped.items()):
        scores = [r.overall_score for r in items if r.overall_score is not None]
        stats.append({
            "type": type_name,
            "avg_score": sum(scores) / len(scores) if scores else None,
            "total_records": len(items),
            "verified_count": sum(1 for r in items if r.status == RecordStatus.VERIFIED),
            "spam_count": sum(1 for r in items if r.is_spam),
        })
    return stats


# ============================================
# IN-MEMORY
# ============================================


class InMemoryRecordRepository:
    """Dictionary-backed repository for local runs and tests."""

    def __init__(self) -> None:
        self.records: dict[str, VerificationRecord] = {}

    async def create(self, record: VerificationRecord) -> VerificationRecord:
        if record.id in self.records:
            raise PersistenceError(f"Duplicate record id {record.id}")
        self.records[record.id] = replace(record)
        return record

    async def bulk_create(self, records: list[VerificationRecord]) -> BulkCreateResult:
        result = BulkCreateResult()
        for index, record in enumerate(records):
            try:
                await self.create(record)
                result.inserted.append(record.id)
            except PersistenceError as e:
                result.failures.append({"index": index, "id": record.id, "error": str(e)})
        return result

    async def get(self, record_id: str, now: Optional[datetime] = None) -> Optional[VerificationRecord]:
        record = self.records.get(record_id)
        if record is None or record.is_expired(now or _utcnow()):
            return None
        return replace(record)

    async def latest_for_subject(
        self,
        verification_type: VerificationType,
        *,
        company_id: Optional[str] = None,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[VerificationRecord]:
        now = now or _utcnow()
        candidates = [
            r for r in self.records.values()
            if r.type == VerificationType(verification_type)
            and (company_id is None or r.company_id == company_id)
            and (job_id is None or r.job_id == job_id)
            and (user_id is None or r.user_id == user_id)
            and not r.is_expired(now)
        ]
        if not candidates:
            return None
        return replace(max(candidates, key=lambda r: r.created_at))

    async def _mutate(self, record_id: str, now: datetime, change: Callable[[VerificationRecord], None]) -> VerificationRecord:
        record = await self.get(record_id, now)
        if record is None:
            raise NotFoundError(f"Verification record {record_id} not found")
        change(record)
        self.records[record_id] = replace(record)
        return record

    async def mark_verified(self, record_id: str, verified_by: Optional[str], now: datetime) -> VerificationRecord:
        return await self._mutate(record_id, now, lambda r: _apply_verified(r, verified_by, now))

    async def mark_spam(self, record_id: str, score: float, now: datetime) -> VerificationRecord:
        return await self._mutate(record_id, now, lambda r: _apply_spam(r, score, now))

    async def update_score(self, record_id: str, score: float, now: datetime) -> VerificationRecord:
        return await self._mutate(record_id, now, lambda r: _apply_score(r, score, now))

    async def find_spam_records(self, threshold: float = 0.8, limit: int = 100) -> list[VerificationRecord]:
        now = _utcnow()
        matches = [
            r for r in self.records.values()
            if not r.is_expired(now) and (r.is_spam or (r.spam_score or 0) >= threshold)
        ]
        matches.sort(key=lambda r: (r.spam_score or 0, r.created_at), reverse=True)
        return [replace(r) for r in matches[:limit]]

    async def quality_stats(self, user_id: str) -> list[dict]:
        return _stats_rows([r for r in self.records.values() if r.user_id == user_id])

    async def migrate_schema(self, old_version: int, new_version: int, now: Optional[datetime] = None) -> dict:
        for record in self.records.values():
            if record.schema_version != old_version:
                continue
            if record.expires_at is None:
                record.expires_at = record.created_at + timedelta(seconds=ttl_for(record.type))
            record.schema_version = new_version
        migrated = sum(1 for r in self.records.values() if r.schema_version == new_version)
        return {"success": True, "migrated_records": migrated}

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()
        expired = [rid for rid, r in self.records.items() if r.is_expired(now)]
        for record_id in expired:
            del self.records[record_id]
        return len(expired)

    async def close(self) -> None:
        return None


# ============================================
# SQL
# ============================================


_ROW_FIELDS = (
    "id", "type", "company_id", "job_id", "user_id", "verified_by", "checks",
    "status", "overall_score", "spam_score", "is_spam", "provided_salary",
    "market_data", "verification", "is_duplicate", "has_similar_recent",
    "existing_applications", "similar_applications", "metrics", "verified_at",
    "checked_at", "assessed_at", "expires_at", "schema_version", "created_at",
    "updated_at",
)


def record_to_row(record: VerificationRecord) -> VerificationRecordRow:
    values = {name: getattr(record, name) for name in _ROW_FIELDS}
    values["type"] = record.type.value
    values["status"] = record.status.value
    # JSON columns must not carry datetimes
    for name in ("checks", "provided_salary", "market_data", "verification", "metrics"):
        values[name] = _jsonable(values[name])
    return VerificationRecordRow(metadata_=_jsonable(record.metadata), **values)


def row_to_record(row: VerificationRecordRow) -> VerificationRecord:
    values = {name: getattr(row, name) for name in _ROW_FIELDS}
    values["type"] = VerificationType(row.type)
    values["status"] = RecordStatus(row.status)
    values["checks"] = row.checks or {}
    values["existing_applications"] = list(row.existing_applications or [])
    values["similar_applications"] = list(row.similar_applications or [])
    return VerificationRecord(metadata=row.metadata_ or {}, **values)


def _jsonable(value):
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


class SqlRecordRepository:
    """PostgreSQL-backed repository."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def _write(self, operation: str, work: Callable[[AsyncSession], Awaitable[T]]) -> T:
        return await write_with_retry(self.session_factory, operation, work)

    async def create(self, record: VerificationRecord) -> VerificationRecord:
        async def work(session: AsyncSession) -> VerificationRecord:
            session.add(record_to_row(record))
            return record

        return await self._write("create", work)

    async def bulk_create(self, records: list[VerificationRecord]) -> BulkCreateResult:
        """Insert each record in its own savepoint; failures are reported, not raised."""
        result = BulkCreateResult()
        try:
            async with self.session_factory() as session:
                async with session.begin():
                    for index, record in enumerate(records):
                        try:
                            async with session.begin_nested():
                                session.add(record_to_row(record))
                            result.inserted.append(record.id)
                        except SQLAlchemyError as e:
                            result.failures.append({"index": index, "id": record.id, "error": str(e)})
        except SQLAlchemyError as e:
            logger.error("Bulk create failed", error=str(e), records=len(records))
            failed = set(result.inserted)
            result.failures.extend(
                {"index": i, "id": r.id, "error": str(e)}
                for i, r in enumerate(records) if r.id in failed
            )
            result.inserted = []
        return result

    async def get(self, record_id: str, now: Optional[datetime] = None) -> Optional[VerificationRecord]:
        now = now or _utcnow()
        async with self.session_factory() as session:
            row = await session.get(VerificationRecordRow, record_id)
            if row is None or (row.expires_at is not None and row.expires_at <= now):
                return None
            return row_to_record(row)

    async def latest_for_subject(
        self,
        verification_type: VerificationType,
        *,
        company_id: Optional[str] = None,
        job_id: Optional[str] = None,
        user_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[VerificationRecord]:
        now = now or _utcnow()
        query = select(VerificationRecordRow).where(
            VerificationRecordRow.type == VerificationType(verification_type).value,
            VerificationRecordRow.expires_at > now,
        )
        if company_id is not None:
            query = query.where(VerificationRecordRow.company_id == company_id)
        if job_id is not None:
            query = query.where(VerificationRecordRow.job_id == job_id)
        if user_id is not None:
            query = query.where(VerificationRecordRow.user_id == user_id)
        query = query.order_by(VerificationRecordRow.created_at.desc()).limit(1)

        async with self.session_factory() as session:
            row = (await session.execute(query)).scalar_one_or_none()
            return row_to_record(row) if row else None

    async def _mutate(
        self,
        operation: str,
        record_id: str,
        now: datetime,
        change: Callable[[VerificationRecord], None],
    ) -> VerificationRecord:
        async def work(session: AsyncSession) -> VerificationRecord:
            row = await session.get(VerificationRecordRow, record_id, with_for_update=True)
            if row is None or (row.expires_at is not None and row.expires_at <= now):
                raise NotFoundError(f"Verification record {record_id} not found")
            record = row_to_record(row)
            change(record)
            await session.merge(record_to_row(record))
            return record

        return await self._write(operation, work)

    async def mark_verified(self, record_id: str, verified_by: Optional[str], now: datetime) -> VerificationRecord:
        return await self._mutate("mark_verified", record_id, now, lambda r: _apply_verified(r, verified_by, now))

    async def mark_spam(self, record_id: str, score: float, now: datetime) -> VerificationRecord:
        return await self._mutate("mark_spam", record_id, now, lambda r: _apply_spam(r, score, now))

    async def update_score(self, record_id: str, score: float, now: datetime) -> VerificationRecord:
        return await self._mutate("update_score", record_id, now, lambda r: _apply_score(r, score, now))

    async def find_spam_records(self, threshold: float = 0.8, limit: int = 100) -> list[VerificationRecord]:
        query = (
            select(VerificationRecordRow)
            .where(
                or_(VerificationRecordRow.is_spam.is_(True), VerificationRecordRow.spam_score >= threshold),
                VerificationRecordRow.expires_at > _utcnow(),
            )
            .order_by(VerificationRecordRow.spam_score.desc(), VerificationRecordRow.created_at.desc())
            .limit(limit)
        )
        async with self.session_factory() as session:
            rows = (await session.execute(query)).scalars().all()
            return [row_to_record(row) for row in rows]

    async def quality_stats(self, user_id: str) -> list[dict]:
        query = (
            select(
                VerificationRecordRow.type,
                func.avg(VerificationRecordRow.overall_score),
                func.count(VerificationRecordRow.id),
                func.count(VerificationRecordRow.id).filter(VerificationRecordRow.status == RecordStatus.VERIFIED.value),
                func.count(VerificationRecordRow.id).filter(VerificationRecordRow.is_spam.is_(True)),
            )
            .where(VerificationRecordRow.user_id == user_id)
            .group_by(VerificationRecordRow.type)
            .order_by(VerificationRecordRow.type)
        )
        async with self.session_factory() as session:
            result = await session.execute(query)
            return [
                {
                    "type": type_name,
                    "avg_score": float(avg) if avg is not None else None,
                    "total_records": total,
                    "verified_count": verified,
                    "spam_count": spam,
                }
                for type_name, avg, total, verified, spam in result
            ]

    async def migrate_schema(self, old_version: int, new_version: int, now: Optional[datetime] = None) -> dict:
        """Backfill expiry for legacy rows per type and bump their version."""

        async def work(session: AsyncSession) -> int:
            for verification_type in VerificationType:
                ttl = timedelta(seconds=ttl_for(verification_type))
                await session.execute(
                    update(VerificationRecordRow)
                    .where(
                        VerificationRecordRow.schema_version == old_version,
                        VerificationRecordRow.type == verification_type.value,
                    )
                    .values(
                        schema_version=new_version,
                        expires_at=func.coalesce(
                            VerificationRecordRow.expires_at,
                            VerificationRecordRow.created_at + ttl,
                        ),
                    )
                )
            return await session.scalar(
                select(func.count(VerificationRecordRow.id)).where(
                    VerificationRecordRow.schema_version == new_version
                )
            ) or 0

        migrated = await self._write("migrate_schema", work)
        logger.info("Schema migration complete", old_version=old_version, new_version=new_version, migrated=migrated)
        return {"success": True, "migrated_records": migrated}

    async def purge_expired(self, now: Optional[datetime] = None) -> int:
        now = now or _utcnow()

        async def work(session: AsyncSession) -> int:
            result = await session.execute(
                delete(VerificationRecordRow).where(VerificationRecordRow.expires_at <= now)
            )
            return result.rowcount or 0

        return await self._write("purge_expired", work)

    async def close(self) -> None:
        return None


@lru_cache
def get_repository() -> RecordRepository:
    """SQL repository when a database is configured, in-memory otherwise."""
    factory = get_session_factory()
    if factory is None:
        logger.info("No database configured; using in-memory verification records")
        return InMemoryRecordRepository()
    return SqlRecordRepository(factory)
