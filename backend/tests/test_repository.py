import asyncio
from dataclasses import replace
from datetime import timedelta

import pytest

from conftest import NOW
from trustpipe.engines.policy import RecordStatus, VerificationType
from trustpipe.engines.records import build_record
from trustpipe.engines.repository import InMemoryRecordRepository, record_to_row, row_to_record
from trustpipe.errors import NotFoundError, ValidationError


def test_expired_records_read_as_not_found() -> None:
    repository = InMemoryRecordRepository()
    record = build_record(VerificationType.DUPLICATE_CHECK, now=NOW, user_id="u", job_id="j")
    asyncio.run(repository.create(record))

    assert asyncio.run(repository.get(record.id, NOW + timedelta(minutes=59))) is not None
    assert asyncio.run(repository.get(record.id, NOW + timedelta(hours=1))) is None
    assert asyncio.run(repository.get("missing", NOW)) is None


def test_bulk_create_reports_failures_without_raising() -> None:
    repository = InMemoryRecordRepository()
    first = build_record(VerificationType.SPAM_CHECK, now=NOW, job_id="j1")
    second = build_record(VerificationType.SPAM_CHECK, now=NOW, job_id="j2")
    asyncio.run(repository.create(first))

    result = asyncio.run(repository.bulk_create([first, second]))

    assert result.inserted == [second.id]
    assert len(result.failures) == 1
    assert result.failures[0]["index"] == 0
    assert not result.ok


def test_latest_for_subject_skips_expired_and_other_subjects() -> None:
    repository = InMemoryRecordRepository()
    old = build_record(VerificationType.QUALITY_ASSESSMENT, now=NOW - timedelta(days=2), job_id="j1")
    current = build_record(VerificationType.QUALITY_ASSESSMENT, now=NOW - timedelta(hours=1), job_id="j1")
    other = build_record(VerificationType.QUALITY_ASSESSMENT, now=NOW, job_id="j2")
    for record in (old, current, other):
        asyncio.run(repository.create(record))

    latest = asyncio.run(repository.latest_for_subject(VerificationType.QUALITY_ASSESSMENT, job_id="j1", now=NOW))

    assert latest.id == current.id


def test_mark_spam_and_mark_verified_follow_transitions() -> None:
    repository = InMemoryRecordRepository()
    record = build_record(VerificationType.SPAM_CHECK, now=NOW, job_id="j1")
    asyncio.run(repository.create(record))

    flagged = asyncio.run(repository.mark_spam(record.id, 1.4, NOW))

    assert flagged.status is RecordStatus.REJECTED
    assert flagged.is_spam is True
    assert flagged.spam_score == 1.0
    assert flagged.checked_at == NOW
    with pytest.raises(ValidationError):
        asyncio.run(repository.mark_verified(record.id, "admin-1", NOW))
    with pytest.raises(NotFoundError):
        asyncio.run(repository.update_score("missing", 50, NOW))


def test_update_score_clamps_and_stamps_assessment() -> None:
    repository = InMemoryRecordRepository()
    record = build_record(VerificationType.QUALITY_ASSESSMENT, now=NOW, job_id="j1")
    asyncio.run(repository.create(record))

    updated = asyncio.run(repository.update_score(record.id, 140, NOW + timedelta(minutes=1)))

    assert updated.overall_score == 100.0
    assert updated.assessed_at == NOW + timedelta(minutes=1)


def test_migrate_schema_backfills_expiry_per_type() -> None:
    repository = InMemoryRecordRepository()
    legacy_company = build_record(VerificationType.COMPANY_VERIFICATION, now=NOW, company_id="c1")
    legacy_duplicate = build_record(VerificationType.DUPLICATE_CHECK, now=NOW, user_id="u", job_id="j")
    current = build_record(VerificationType.SPAM_CHECK, now=NOW, job_id="j")
    for record in (legacy_company, legacy_duplicate):
        repository.records[record.id] = replace(record, expires_at=None, schema_version=1)
    repository.records[current.id] = current

    result = asyncio.run(repository.migrate_schema(1, 2))

    assert result == {"success": True, "migrated_records": 3}
    assert repository.records[legacy_company.id].expires_at == NOW + timedelta(days=7)
    assert repository.records[legacy_duplicate.id].expires_at == NOW + timedelta(hours=1)
    assert {r.schema_version for r in repository.records.values()} == {2}


def test_purge_expired_deletes_only_expired() -> None:
    repository = InMemoryRecordRepository()
    short = build_record(VerificationType.DUPLICATE_CHECK, now=NOW, user_id="u", job_id="j")
    long = build_record(VerificationType.COMPANY_VERIFICATION, now=NOW, company_id="c")
    asyncio.run(repository.create(short))
    asyncio.run(repository.create(long))

    purged = asyncio.run(repository.purge_expired(NOW + timedelta(hours=2)))

    assert purged == 1
    assert list(repository.records) == [long.id]


def test_find_spam_records_and_quality_stats() -> None:
    repository = InMemoryRecordRepository()
    now = NOW.replace(year=2099)
    spam = build_record(VerificationType.SPAM_CHECK, now=now, status=RecordStatus.REJECTED,
                        job_id="j1", user_id="u1", spam_score=0.9, is_spam=True)
    clean = build_record(VerificationType.SPAM_CHECK, now=now, status=RecordStatus.VERIFIED,
                         job_id="j2", user_id="u1", spam_score=0.1)
    quality = build_record(VerificationType.QUALITY_ASSESSMENT, now=now, status=RecordStatus.VERIFIED,
                           job_id="j1", user_id="u1", overall_score=80)
    for record in (spam, clean, quality):
        asyncio.run(repository.create(record))

    found = asyncio.run(repository.find_spam_records(threshold=0.8))
    stats = asyncio.run(repository.quality_stats("u1"))

    assert [r.id for r in found] == [spam.id]
    assert stats == [
        {"type": "quality_assessment", "avg_score": 80, "total_records": 1, "verified_count": 1, "spam_count": 0},
        {"type": "spam_check", "avg_score": None, "total_records": 2, "verified_count": 1, "spam_count": 1},
    ]


def test_row_mapping_keeps_metadata_and_enums() -> None:
    record = build_record(VerificationType.SPAM_CHECK, now=NOW, job_id="j1", checks={"at": NOW})
    record.metadata = {"source": "worker", "request_id": "req-1"}

    row = record_to_row(record)
    restored = row_to_record(row)

    assert row.type == "spam_check"
    assert row.metadata_ == {"source": "worker", "request_id": "req-1"}
    assert row.checks == {"at": NOW.isoformat()}
    assert restored.status is RecordStatus.PENDING
    assert restored.metadata["request_id"] == "req-1"
