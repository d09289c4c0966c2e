"""ORM model for pull request reviews."""

from datetime import datetime
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ..schemas import ReviewStatus
from .base import SqlalchemyBase


class Review(SqlalchemyBase):
    """One analysis attempt for a specific commit of a pull request."""

    __tablename__ = "reviews"
    __table_args__ = (
        # Idempotency: one review per analyzed commit.
        UniqueConstraint("repository_id", "pr_number", "head_sha", name="uq_reviews_repo_pr_head"),
        CheckConstraint(
            "status IN ('pending', 'in_progress', 'completed', 'failed')",
            name="ck_reviews_status",
        ),
        Index("idx_reviews_repository_id", "repository_id"),
        Index("idx_reviews_user_id", "user_id"),
        Index("idx_reviews_status", "status"),
        Index("idx_reviews_created_at", "created_at"),
    )

    repository_id: Mapped[str] = mapped_column(
        String, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=False
    )
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    # Pull request snapshot
    pr_number: Mapped[int] = mapped_column(Integer, nullable=False)
    pr_title: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pr_url: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    pr_author: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    head_sha: Mapped[str] = mapped_column(String, nullable=False)
    base_sha: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    # Lifecycle
    status: Mapped[str] = mapped_column(String, nullable=False, default=ReviewStatus.PENDING.value)
    summary: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Aggregates
    total_issues: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    critical_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    warning_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    info_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    files_reviewed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lines_reviewed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processing_time_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Review(id={self.id}, pr_number={self.pr_number}, status={self.status}, "
            f"head_sha={self.head_sha[:8] if self.head_sha else None})>"
        )
