"""Repository model for connected source-control repositories."""

from sqlalchemy import Boolean, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class Repository(SqlalchemyBase):
    """A repository whose pull requests may be reviewed automatically."""

    __tablename__ = "repositories"
    __table_args__ = (
        Index("idx_repositories_github_id", "github_id", unique=True),
        Index("idx_repositories_full_name", "full_name"),
        Index("idx_repositories_user_id", "user_id"),
    )

    github_id: Mapped[str] = mapped_column(String, nullable=False)  # id from webhook payloads
    user_id: Mapped[str] = mapped_column(
        String, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    name: Mapped[str] = mapped_column(String, nullable=False)
    full_name: Mapped[str] = mapped_column(String, nullable=False)  # "owner/name"
    auto_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    @property
    def owner(self) -> str:
        return self.full_name.split("/", 1)[0]

    def __repr__(self) -> str:
        """String representation."""
        return (
            f"<Repository(id={self.id}, full_name={self.full_name}, "
            f"github_id={self.github_id}, auto_review={self.auto_review})>"
        )
