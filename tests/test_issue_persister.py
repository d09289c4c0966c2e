"""Tests for IssuePersister."""

import asyncio

import pytest
from sqlalchemy import func, select

from reviewbot.errors import PersistenceFailure
from reviewbot.orm.issue import Issue
from reviewbot.schemas import AnalyzedIssue, ReviewStatus, Severity
from reviewbot.services.issue_persister import IssuePersister, ReviewMetrics, SeverityCounts, detect_language

from .fakes import connect_repository, create_review, issue_payload, open_database


async def issue_count(db) -> int:
    async with db.session() as session:
        result = await session.execute(select(func.count()).select_from(Issue))
        return result.scalar_one()


class TestDetectLanguage:
    """Test extension based language detection."""

    def test_known_extensions(self):
        """Test common extensions map to languages."""
        assert detect_language("src/app.tsx") == "typescript"
        assert detect_language("main.PY") == "python"
        assert detect_language("lib/mod.rs") == "rust"

    def test_unknown_extension(self):
        """Test unrecognized files are 'unknown'."""
        assert detect_language("Makefile") == "unknown"
        assert detect_language("notes.txt") == "unknown"


class TestSeverityCounts:
    """Test in-memory severity counting."""

    def test_counts_by_severity(self):
        """Test counts are taken from the issue list."""
        issues = [AnalyzedIssue(**issue_payload(s)) for s in ("critical", "critical", "warning", "info")]
        counts = SeverityCounts.from_issues(issues)

        assert counts == SeverityCounts(total=4, critical=2, warning=1, info=1)


class TestIssuePersister:
    """Test the single-transaction commit."""

    def test_commit_writes_issues_and_completes(self, tmp_path):
        """Test issues, counts and status are written together."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                review = await create_review(db, repo, status=ReviewStatus.IN_PROGRESS)
                issues = [
                    AnalyzedIssue(**issue_payload("critical", line=3)),
                    AnalyzedIssue(**issue_payload("info", file_path="web/app.ts", line=9, line_end=None)),
                ]

                counts = await IssuePersister(db).commit(
                    review.id, "Two findings", issues, ReviewMetrics(files_reviewed=2, lines_reviewed=40, processing_time_ms=1200)
                )

                assert counts.total == 2
                async with db.session() as session:
                    stored = await session.get(type(review), review.id)
                    rows = (await session.execute(select(Issue).order_by(Issue.line_start))).scalars().all()

                assert stored.status == ReviewStatus.COMPLETED.value
                assert stored.summary == "Two findings"
                assert (stored.total_issues, stored.critical_count, stored.warning_count, stored.info_count) == (2, 1, 0, 1)
                assert (stored.files_reviewed, stored.lines_reviewed, stored.processing_time_ms) == (2, 40, 1200)
                assert stored.completed_at is not None
                assert [r.language for r in rows] == ["python", "typescript"]
                assert rows[1].line_end == 9
                assert rows[0].severity == Severity.CRITICAL.value
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_failure_mid_batch_rolls_back_everything(self, tmp_path):
        """Test a bad third issue of five leaves no issues and the review in progress."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                review = await create_review(db, repo, status=ReviewStatus.IN_PROGRESS)
                issues = [AnalyzedIssue(**issue_payload("warning", line=n)) for n in range(1, 6)]
                # file_path is NOT NULL in storage
                issues[2] = AnalyzedIssue.model_construct(
                    file_path=None, severity=Severity.WARNING, title="broken", description="broken"
                )

                with pytest.raises(PersistenceFailure):
                    await IssuePersister(db).commit(review.id, "Five findings", issues, ReviewMetrics())

                assert await issue_count(db) == 0
                async with db.session() as session:
                    stored = await session.get(type(review), review.id)
                assert stored.status == ReviewStatus.IN_PROGRESS.value
                assert stored.total_issues == 0
                assert stored.summary is None
            finally:
                await db.close()

        asyncio.run(scenario())

    def test_review_not_in_progress(self, tmp_path):
        """Test committing to a review that is not in progress writes nothing."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            try:
                repo = await connect_repository(db)
                review = await create_review(db, repo, status=ReviewStatus.FAILED)

                with pytest.raises(PersistenceFailure):
                    await IssuePersister(db).commit(
                        review.id, "late", [AnalyzedIssue(**issue_payload("critical"))], ReviewMetrics()
                    )

                assert await issue_count(db) == 0
                async with db.session() as session:
                    stored = await session.get(type(review), review.id)
                assert stored.status == ReviewStatus.FAILED.value
            finally:
                await db.close()

        asyncio.run(scenario())
