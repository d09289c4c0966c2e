"""Service layer for business logic and database operations."""

from .analysis_service import AnalysisService
from .cache_service import AnalysisCache
from .database import DatabaseService
from .github_service import GitHubService
from .issue_persister import IssuePersister
from .repository_service import RepositoryService
from .review_service import ReviewOrchestrator
from .settings_service import SettingsResolver
from .task_runner import BackgroundTaskRunner
from .webhook_handler import WebhookIngestor

__all__ = [
    "AnalysisCache",
    "AnalysisService",
    "BackgroundTaskRunner",
    "DatabaseService",
    "GitHubService",
    "IssuePersister",
    "RepositoryService",
    "ReviewOrchestrator",
    "SettingsResolver",
    "WebhookIngestor",
]
