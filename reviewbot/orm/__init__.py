"""ORM models for database persistence."""

from .base import Base, SqlalchemyBase
from .issue import Issue
from .repository import Repository
from .review import Review
from .setting import Setting, make_scope_key
from .user import User
from .webhook_event import WebhookEvent

__all__ = [
    "Base",
    "SqlalchemyBase",
    "Issue",
    "Repository",
    "Review",
    "Setting",
    "User",
    "WebhookEvent",
    "make_scope_key",
]
