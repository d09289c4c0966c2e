"""Transactional persistence of review results."""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import PurePosixPath
from typing import Optional, Sequence

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from ..errors import PersistenceFailure
from ..orm.issue import Issue
from ..orm.review import Review
from ..schemas import AnalyzedIssue, ReviewStatus, Severity
from .database import DatabaseService

logger = logging.getLogger(__name__)

# Extension -> language name, also used to pick per-language settings.
LANGUAGE_MAP = {
    ".js": "javascript",
    ".jsx": "javascript",
    ".mjs": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".py": "python",
    ".java": "java",
    ".go": "go",
    ".rs": "rust",
    ".rb": "ruby",
    ".php": "php",
    ".cs": "csharp",
    ".cpp": "cpp",
    ".c": "c",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
}


def detect_language(filename: str) -> str:
    """Guess a file's language from its extension ("unknown" if not recognized)."""
    return LANGUAGE_MAP.get(PurePosixPath(filename).suffix.lower(), "unknown")


@dataclass
class ReviewMetrics:
    """Run measurements recorded on a completed review."""

    files_reviewed: int = 0
    lines_reviewed: int = 0
    processing_time_ms: int = 0


@dataclass
class SeverityCounts:
    total: int = 0
    critical: int = 0
    warning: int = 0
    info: int = 0

    @classmethod
    def from_issues(cls, issues: Sequence[AnalyzedIssue]) -> "SeverityCounts":
        counts = cls(total=len(issues))
        for issue in issues:
            if issue.severity == Severity.CRITICAL:
                counts.critical += 1
            elif issue.severity == Severity.WARNING:
                counts.warning += 1
            elif issue.severity == Severity.INFO:
                counts.info += 1
        return counts


class IssuePersister:
    """Writes a review's findings and completion state in one transaction."""

    def __init__(self, db_service: DatabaseService):
        self.db = db_service

    async def commit(
        self,
        review_id: str,
        summary: str,
        issues: Sequence[AnalyzedIssue],
        metrics: ReviewMetrics,
    ) -> SeverityCounts:
        """Persist issues and mark the review completed.

        Counts are computed from the same issue list that is inserted, never
        re-queried. The issue inserts and the status update share a single
        transaction: a reader either sees the review in_progress with no
        issues from this batch, or completed with all of them.

        Args:
            review_id: Review to complete. Must currently be in_progress.
            summary: Summary text for the review.
            issues: Findings to store (already filtered).
            metrics: Files/lines reviewed and processing time.

        Returns:
            The counts written to the review.

        Raises:
            PersistenceFailure: If anything fails; nothing is written.
        """
        counts = SeverityCounts.from_issues(issues)

        try:
            async with self.db.session() as session:
                for issue in issues:
                    session.add(self._to_row(review_id, issue))
                await session.flush()

                result = await session.execute(
                    update(Review)
                    .where(
                        Review.id == review_id,
                        Review.status == ReviewStatus.IN_PROGRESS.value,
                    )
                    .values(
                        status=ReviewStatus.COMPLETED.value,
                        summary=summary,
                        total_issues=counts.total,
                        critical_count=counts.critical,
                        warning_count=counts.warning,
                        info_count=counts.info,
                        files_reviewed=metrics.files_reviewed,
                        lines_reviewed=metrics.lines_reviewed,
                        processing_time_ms=metrics.processing_time_ms,
                        completed_at=datetime.now(timezone.utc),
                    )
                )
                if result.rowcount != 1:
                    raise PersistenceFailure(f"Review {review_id} is not in progress")
        except PersistenceFailure:
            logger.error("Commit for review %s rolled back: review not in progress", review_id)
            raise
        except SQLAlchemyError as e:
            logger.error("Commit for review %s rolled back: %s", review_id, e)
            raise PersistenceFailure(f"Failed to store review results: {e}") from e

        logger.info(
            "Stored %d issue(s) for review %s (critical=%d, warning=%d, info=%d)",
            counts.total, review_id, counts.critical, counts.warning, counts.info,
        )
        return counts

    def _to_row(self, review_id: str, issue: AnalyzedIssue) -> Issue:
        line_start: Optional[int] = issue.line_start
        return Issue(
            review_id=review_id,
            file_path=issue.file_path,
            line_start=line_start,
            line_end=issue.line_end if issue.line_end is not None else line_start,
            severity=_value(issue.severity),
            category=_value(issue.category),
            title=issue.title,
            description=issue.description,
            suggestion=issue.suggestion,
            code_snippet=issue.code_snippet,
            language=detect_language(issue.file_path) if issue.file_path else None,
        )


def _value(member) -> str:
    return getattr(member, "value", member)
