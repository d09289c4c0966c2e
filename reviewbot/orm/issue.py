"""ORM model for review findings."""

from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class Issue(SqlalchemyBase):
    """One finding attached to a review. Immutable apart from the resolved flag."""

    __tablename__ = "issues"
    __table_args__ = (
        CheckConstraint("severity IN ('critical', 'warning', 'info')", name="ck_issues_severity"),
        CheckConstraint(
            "category IN ('security', 'performance', 'style', 'bug', 'best_practice', 'other')",
            name="ck_issues_category",
        ),
        Index("idx_issues_review_id", "review_id"),
        Index("idx_issues_severity", "severity"),
    )

    review_id: Mapped[str] = mapped_column(
        String, ForeignKey("reviews.id", ondelete="CASCADE"), nullable=False
    )
    file_path: Mapped[str] = mapped_column(String, nullable=False)
    line_start: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    line_end: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    severity: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    suggestion: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    code_snippet: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    language: Mapped[Optional[str]] = mapped_column(String, nullable=True)

    is_resolved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Issue(id={self.id}, review_id={self.review_id}, severity={self.severity}, "
            f"file_path={self.file_path}, line_start={self.line_start})>"
        )
