"""User model for repository owners."""

from typing import Optional

from sqlalchemy import Index, String
from sqlalchemy.orm import Mapped, mapped_column

from .base import SqlalchemyBase


class User(SqlalchemyBase):
    """A source-control account that owns connected repositories."""

    __tablename__ = "users"
    __table_args__ = (
        Index("idx_users_github_login", "github_login", unique=True),
    )

    github_login: Mapped[str] = mapped_column(String, nullable=False)
    github_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
