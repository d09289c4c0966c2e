"""Service for connected repositories and their owners."""

import logging
from typing import Optional

from sqlalchemy import select

from ..orm.repository import Repository
from ..orm.user import User
from .database import DatabaseService

logger = logging.getLogger(__name__)


class RepositoryService:
    """Lookups and registration of repositories."""

    def __init__(self, db_service: DatabaseService):
        self.db = db_service

    async def get(self, repository_id: str) -> Optional[Repository]:
        """Get a repository by its internal id."""
        async with self.db.session() as session:
            return await session.get(Repository, repository_id)

    async def find_by_github_id(self, github_id: str | int) -> Optional[Repository]:
        """Get a repository by the source-control id carried in webhook payloads."""
        async with self.db.session() as session:
            result = await session.execute(
                select(Repository).where(Repository.github_id == str(github_id))
            )
            return result.scalar_one_or_none()

    async def get_or_create_user(self, github_login: str, github_id: Optional[str] = None) -> User:
        """Get a user by login, creating it on first sight."""
        async with self.db.session() as session:
            result = await session.execute(select(User).where(User.github_login == github_login))
            user = result.scalar_one_or_none()
            if user is None:
                user = User(github_login=github_login, github_id=github_id)
                session.add(user)
                await session.flush()
                logger.info("Created user %s", github_login)
            return user

    async def register(
        self,
        github_id: str | int,
        full_name: str,
        owner_login: Optional[str] = None,
        auto_review: bool = True,
    ) -> Repository:
        """Connect a repository, or update the auto-review flag if already connected.

        Args:
            github_id: Source-control repository id.
            full_name: Repository name in format "owner/repo".
            owner_login: Login of the owning user (defaults to the owner part of full_name).
            auto_review: Whether webhook events trigger reviews.

        Returns:
            The stored repository.
        """
        if "/" not in full_name:
            raise ValueError(f"Repository name must be 'owner/repo', got '{full_name}'")

        owner = await self.get_or_create_user(owner_login or full_name.split("/", 1)[0])

        async with self.db.session() as session:
            result = await session.execute(
                select(Repository).where(Repository.github_id == str(github_id))
            )
            repository = result.scalar_one_or_none()
            if repository is None:
                repository = Repository(
                    github_id=str(github_id),
                    user_id=owner.id,
                    name=full_name.split("/", 1)[1],
                    full_name=full_name,
                    auto_review=auto_review,
                )
                session.add(repository)
                logger.info("Connected repository %s (github_id=%s)", full_name, github_id)
            else:
                repository.full_name = full_name
                repository.name = full_name.split("/", 1)[1]
                repository.auto_review = auto_review
                logger.info("Updated repository %s (auto_review=%s)", full_name, auto_review)
            await session.flush()
            return repository
