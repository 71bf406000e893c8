import asyncio

from conftest import NOW, GOOD_DESCRIPTION, make_company, make_job
from trustpipe.adapters.subjects import InMemorySubjectStore
from trustpipe.strategies.quality import QualityAssessmentStrategy, assess_description_quality, grade


def test_grades() -> None:
    assert [grade(s) for s in (95, 85, 75, 65, 55)] == ["A+", "A", "B", "C", "D"]
    assert grade(90) == "A+"


def test_description_quality_rules() -> None:
    good = assess_description_quality(GOOD_DESCRIPTION)
    misspelled = assess_description_quality("Requirements: you will recieve training.")

    assert good == {"score": 100.0, "issues": [], "suggestion": None}
    assert misspelled["score"] == 10
    assert "Contains common spelling errors" in misspelled["issues"]
    assert assess_description_quality(None)["score"] == 25


def test_complete_posting_from_verified_company(make_context) -> None:
    subjects = InMemorySubjectStore(companies=[make_company(is_verified=True)], jobs=[make_job()])
    strategy = QualityAssessmentStrategy(make_context(subjects=subjects))

    result = asyncio.run(strategy.handle({"job_id": "job-1"}, "req-1"))

    assert result["score"] == 93
    assert result["grade"] == "A+"
    assert result["recommendations"] == []
    assert result["verification"]["status"] == "verified"
    assert result["verification"]["assessed_at"] == NOW.isoformat()
    assert subjects.jobs["job-1"].quality_score == 93
    assert subjects.jobs["job-1"].last_quality_check == NOW


def test_sparse_posting_gets_high_priority_recommendations(make_context) -> None:
    sparse = make_job(
        company_id=None,
        description="Short",
        skills=[],
        experience_level=None,
        min_salary=None,
        max_salary=None,
        contact_email=None,
        apply_link=None,
    )
    strategy = QualityAssessmentStrategy(make_context(subjects=InMemorySubjectStore(jobs=[sparse])))

    result = asyncio.run(strategy.handle({"job_id": "job-1"}, "req-1"))

    assert result["score"] == 13
    assert result["grade"] == "D"
    assert len(result["recommendations"]) == 6
    assert {r["priority"] for r in result["recommendations"]} == {"high"}
    assert result["metrics"]["company_information"]["issues"] == ["Missing company profile"]


def test_unverified_company_lowers_company_metric(make_context) -> None:
    subjects = InMemorySubjectStore(companies=[make_company()], jobs=[make_job()])
    strategy = QualityAssessmentStrategy(make_context(subjects=subjects))

    result = asyncio.run(strategy.handle({"job_id": "job-1"}, "req-1"))

    assert result["metrics"]["company_information"]["score"] == 60
    assert result["score"] == 85
    assert result["recommendations"] == [
        {"area": "company_information", "suggestion": "Improve company_information", "priority": "medium"}
    ]
