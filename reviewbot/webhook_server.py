"""FastAPI server: GitHub webhook receiver and operator JSON API."""

import logging
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError

from .errors import (
    IssueNotFound,
    MalformedPayload,
    PullRequestNotFound,
    RepositoryNotFound,
    ReviewNotFound,
    SignatureInvalid,
)
from .orm.issue import Issue
from .orm.review import Review
from .schemas import ReviewStatus, SettingsOverride
from .services.cache_service import AnalysisCache
from .services.database import DatabaseService
from .services.review_service import ReviewOrchestrator
from .services.settings_service import DEFAULT_REVIEW_SETTINGS, SettingsResolver
from .services.webhook_handler import WebhookIngestor

logger = logging.getLogger(__name__)


class StartReviewRequest(BaseModel):
    repository_id: str
    pr_number: int = Field(..., ge=1)
    user_id: Optional[str] = None


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def review_to_dict(review: Review) -> dict[str, Any]:
    """Serialize a review row for API responses."""
    return {
        "id": review.id,
        "repository_id": review.repository_id,
        "user_id": review.user_id,
        "pr_number": review.pr_number,
        "pr_title": review.pr_title,
        "pr_url": review.pr_url,
        "pr_author": review.pr_author,
        "head_sha": review.head_sha,
        "base_sha": review.base_sha,
        "status": review.status,
        "summary": review.summary,
        "error_message": review.error_message,
        "total_issues": review.total_issues,
        "critical_count": review.critical_count,
        "warning_count": review.warning_count,
        "info_count": review.info_count,
        "files_reviewed": review.files_reviewed,
        "lines_reviewed": review.lines_reviewed,
        "processing_time_ms": review.processing_time_ms,
        "created_at": _iso(review.created_at),
        "completed_at": _iso(review.completed_at),
    }


def issue_to_dict(issue: Issue) -> dict[str, Any]:
    """Serialize an issue row for API responses."""
    return {
        "id": issue.id,
        "review_id": issue.review_id,
        "file_path": issue.file_path,
        "line_start": issue.line_start,
        "line_end": issue.line_end,
        "severity": issue.severity,
        "category": issue.category,
        "title": issue.title,
        "description": issue.description,
        "suggestion": issue.suggestion,
        "code_snippet": issue.code_snippet,
        "language": issue.language,
        "is_resolved": issue.is_resolved,
        "resolved_at": _iso(issue.resolved_at),
    }


def create_webhook_app(
    ingestor: WebhookIngestor,
    orchestrator: ReviewOrchestrator,
    settings_resolver: SettingsResolver,
    db_service: DatabaseService,
    cache: AnalysisCache,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        ingestor: WebhookIngestor for GitHub deliveries
        orchestrator: ReviewOrchestrator for the review API
        settings_resolver: SettingsResolver for the settings API
        db_service: Database service (health check)
        cache: Analysis cache (health check)

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Review Bot",
        description="GitHub webhook receiver and pull request review API",
        version="1.0.0"
    )

    @app.exception_handler(SignatureInvalid)
    async def _signature_invalid(request: Request, exc: SignatureInvalid) -> JSONResponse:
        return JSONResponse({"detail": "Invalid signature"}, status_code=401)

    @app.exception_handler(MalformedPayload)
    async def _malformed_payload(request: Request, exc: MalformedPayload) -> JSONResponse:
        return JSONResponse({"detail": str(exc) or "Malformed payload"}, status_code=400)

    @app.exception_handler(RepositoryNotFound)
    @app.exception_handler(PullRequestNotFound)
    @app.exception_handler(ReviewNotFound)
    @app.exception_handler(IssueNotFound)
    async def _not_found(request: Request, exc: Exception) -> JSONResponse:
        return JSONResponse({"detail": str(exc) or "Not found"}, status_code=404)

    @app.get("/health")
    async def health_check() -> JSONResponse:
        """Health check endpoint.

        The cache never makes the service unhealthy: without Redis it runs on
        the in-process fallback.
        """
        database_ok = await db_service.ping()
        body = {
            "status": "healthy" if database_ok else "unhealthy",
            "service": "reviewbot",
            "database": "connected" if database_ok else "disconnected",
            "cache": cache.status(),
        }
        return JSONResponse(body, status_code=200 if database_ok else 503)

    @app.post("/webhooks/github")
    async def github_webhook(request: Request) -> JSONResponse:
        """Handle incoming GitHub webhooks.

        Verifies the signature before anything else and returns quickly;
        reviews are started in the background.
        """
        body = await request.body()
        signature = request.headers.get("X-Hub-Signature-256")
        event_type = request.headers.get("X-GitHub-Event", "")
        delivery_id = request.headers.get("X-GitHub-Delivery", "")

        logger.info(f"Received GitHub webhook: event={event_type}, delivery_id={delivery_id}")

        result = await ingestor.handle(body, signature, event_type, delivery_id)
        return JSONResponse(result.to_dict(), status_code=200)

    # Reviews

    @app.post("/api/reviews")
    async def start_review(request_body: StartReviewRequest) -> JSONResponse:
        result = await orchestrator.start(
            request_body.repository_id, request_body.pr_number, request_body.user_id
        )
        return JSONResponse(
            {"outcome": result.outcome.value, "review": review_to_dict(result.review)},
            status_code=202 if result.created else 200,
        )

    @app.get("/api/reviews")
    async def list_reviews(
        repository_id: Optional[str] = None,
        status: Optional[ReviewStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> dict[str, Any]:
        limit = max(1, min(limit, 100))
        reviews = await orchestrator.list_reviews(
            repository_id=repository_id, status=status, limit=limit, offset=max(0, offset)
        )
        return {"reviews": [review_to_dict(r) for r in reviews]}

    @app.get("/api/reviews/{review_id}")
    async def get_review(review_id: str) -> dict[str, Any]:
        review, issues = await orchestrator.get_review_with_issues(review_id)
        body = review_to_dict(review)
        body["issues"] = [issue_to_dict(i) for i in issues]
        return body

    @app.delete("/api/reviews/{review_id}")
    async def delete_review(review_id: str) -> dict[str, Any]:
        await orchestrator.delete_review(review_id)
        return {"deleted": True, "id": review_id}

    @app.post("/api/issues/{issue_id}/resolve")
    async def resolve_issue(issue_id: str) -> dict[str, Any]:
        return issue_to_dict(await orchestrator.resolve_issue(issue_id))

    @app.delete("/api/issues/{issue_id}/resolve")
    async def unresolve_issue(issue_id: str) -> dict[str, Any]:
        return issue_to_dict(await orchestrator.unresolve_issue(issue_id))

    # Settings

    @app.get("/api/settings/defaults")
    async def default_settings() -> dict[str, Any]:
        return DEFAULT_REVIEW_SETTINGS.model_dump(mode="json")

    @app.get("/api/users/{user_id}/settings")
    async def get_user_settings(user_id: str, repository_id: Optional[str] = None) -> dict[str, Any]:
        settings = await settings_resolver.resolve(user_id, repository_id)
        return settings.model_dump(mode="json")

    @app.put("/api/users/{user_id}/settings")
    async def update_user_settings(user_id: str, partial: SettingsOverride) -> dict[str, Any]:
        try:
            settings = await settings_resolver.update_user_settings(user_id, partial)
        except IntegrityError:
            raise HTTPException(status_code=404, detail=f"User {user_id} not found")
        return settings.model_dump(mode="json")

    @app.put("/api/repositories/{repository_id}/settings")
    async def update_repository_settings(repository_id: str, partial: SettingsOverride) -> dict[str, Any]:
        try:
            settings = await settings_resolver.update_repository_settings(repository_id, partial)
        except IntegrityError:
            raise HTTPException(status_code=404, detail=f"Repository {repository_id} not found")
        return settings.model_dump(mode="json")

    return app
