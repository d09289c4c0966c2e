"""ORM model for scoped settings blobs."""

from typing import Any, Optional

from sqlalchemy import JSON, CheckConstraint, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


def make_scope_key(user_id: Optional[str], repository_id: Optional[str]) -> str:
    """Build the uniqueness key for a settings scope.

    SQL unique constraints treat NULLs as distinct, so (user, NULL, key) would
    not be unique on its own. The derived key is never NULL.
    """
    if user_id and repository_id:
        return f"user:{user_id}/repo:{repository_id}"
    if user_id:
        return f"user:{user_id}"
    if repository_id:
        return f"repo:{repository_id}"
    raise ValueError("A setting needs a user scope, a repository scope, or both")


class Setting(SqlalchemyBase):
    """A configuration blob scoped to a user, a repository, or both."""

    __tablename__ = "settings"
    __table_args__ = (
        Index("idx_settings_scope_key", "scope_key", "setting_key", unique=True),
        Index("idx_settings_user_id", "user_id"),
        Index("idx_settings_repository_id", "repository_id"),
        CheckConstraint(
            "user_id IS NOT NULL OR repository_id IS NOT NULL",
            name="ck_settings_scope",
        ),
    )

    user_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=True
    )
    repository_id: Mapped[Optional[str]] = mapped_column(
        String, ForeignKey("repositories.id", ondelete="CASCADE"), nullable=True
    )
    scope_key: Mapped[str] = mapped_column(String, nullable=False)
    setting_key: Mapped[str] = mapped_column(String, nullable=False)
    setting_value: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        """String representation."""
        return f"<Setting(id={self.id}, scope={self.scope_key}, key={self.setting_key})>"
