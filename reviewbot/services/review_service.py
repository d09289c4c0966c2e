"""Review orchestration: dedup, lifecycle, analysis and persistence of PR reviews."""

import asyncio
import fnmatch
import logging
import re
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePosixPath
from typing import Iterable, Optional, Sequence

from pydantic import ValidationError
from sqlalchemy import case, delete, select, update
from sqlalchemy.exc import IntegrityError

from ..errors import AnalysisFailure, IssueNotFound, RepositoryNotFound, ReviewNotFound
from ..orm.issue import Issue
from ..orm.review import Review
from ..schemas import (
    SEVERITY_RANK,
    AnalysisFile,
    AnalysisResult,
    AnalyzedIssue,
    PRContext,
    PullRequestFile,
    ReviewSettings,
    ReviewStatus,
    Severity,
)
from .analysis_service import AnalysisService
from .cache_service import AnalysisCache
from .database import DatabaseService
from .github_service import GitHubService
from .issue_persister import IssuePersister, ReviewMetrics, detect_language
from .repository_service import RepositoryService
from .settings_service import SettingsResolver
from .task_runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)

NO_FILES_SUMMARY = "No analyzable files in this pull request"
DEFAULT_MAX_FILE_SIZE = 100000


class StartOutcome(Enum):
    """Result of asking for a review of a pull request head."""

    CREATED = "created"
    DUPLICATE = "duplicate"


@dataclass
class StartResult:
    review: Review
    outcome: StartOutcome

    @property
    def created(self) -> bool:
        return self.outcome == StartOutcome.CREATED


class RunOutcome(Enum):
    """How a review run ended."""

    COMPLETED = "completed"
    NO_FILES = "no_files"
    FAILED = "failed"
    SKIPPED = "skipped"  # review was not pending; another run owns or owned it


def filter_issues_by_severity(issues: Iterable[AnalyzedIssue], threshold: Severity) -> list[AnalyzedIssue]:
    """Keep issues at or above threshold (critical > warning > info)."""
    limit = SEVERITY_RANK[Severity(threshold)]
    return [issue for issue in issues if SEVERITY_RANK[issue.severity] <= limit]


def _compile_patterns(patterns: Iterable[str]) -> list[re.Pattern]:
    compiled = []
    for pattern in patterns:
        try:
            compiled.append(re.compile(pattern))
        except re.error as e:
            logger.warning("Skipping invalid ignore pattern %r: %s", pattern, e)
    return compiled


def _matches_ignored_file(filename: str, ignored_files: Iterable[str]) -> bool:
    basename = PurePosixPath(filename).name
    for entry in ignored_files:
        if filename == entry or basename == entry:
            return True
        if fnmatch.fnmatchcase(filename, entry) or fnmatch.fnmatchcase(basename, entry):
            return True
    return False


def select_analysis_files(files: Iterable[PullRequestFile], settings: ReviewSettings) -> list[AnalysisFile]:
    """
    Pick the changed files that will be sent for analysis.

    A file is dropped if it was removed or has no patch, if it matches the
    ignored-file list or an ignored pattern, if its language profile is
    disabled or excludes it, or if its patch is larger than the profile's
    max_file_size. Dropped files are not analyzed at all.

    Args:
        files: Changed files of the pull request.
        settings: Effective review settings.

    Returns:
        Files to analyze, in input order.
    """
    ignored_patterns = _compile_patterns(settings.ignored_patterns)
    selected: list[AnalysisFile] = []

    for f in files:
        if f.status == "removed" or not f.patch:
            logger.debug("Skipping %s: removed or no patch", f.filename)
            continue
        if _matches_ignored_file(f.filename, settings.ignored_files):
            logger.debug("Skipping %s: ignored file", f.filename)
            continue
        if any(p.search(f.filename) for p in ignored_patterns):
            logger.debug("Skipping %s: ignored pattern", f.filename)
            continue

        language = detect_language(f.filename)
        profile = settings.language_settings.get(language)
        if profile is not None:
            if not profile.enabled:
                logger.debug("Skipping %s: %s disabled", f.filename, language)
                continue
            if any(p.search(f.filename) for p in _compile_patterns(profile.exclude_patterns)):
                logger.debug("Skipping %s: excluded for %s", f.filename, language)
                continue

        max_size = profile.max_file_size if profile is not None else DEFAULT_MAX_FILE_SIZE
        if len(f.patch) > max_size:
            logger.debug("Skipping %s: patch size %d > %d", f.filename, len(f.patch), max_size)
            continue

        selected.append(AnalysisFile(filename=f.filename, patch=f.patch, language=language))

    return selected


class ReviewOrchestrator:
    """Creates reviews for pull request heads and drives them to a terminal state.

    start() is the fast path used by webhooks and the API: it resolves the
    head commit, deduplicates, inserts a pending row and schedules run().
    run() executes on the background runner and always ends with a status
    write: completed (through IssuePersister) or failed.
    """

    def __init__(
        self,
        db_service: DatabaseService,
        repository_service: RepositoryService,
        github_service: GitHubService,
        analysis_service: AnalysisService,
        settings_resolver: SettingsResolver,
        cache: AnalysisCache,
        persister: IssuePersister,
        runner: BackgroundTaskRunner,
        analysis_timeout: float = 300.0,
        cache_ttl: Optional[int] = None,
    ):
        self.db = db_service
        self.repositories = repository_service
        self.github = github_service
        self.analysis = analysis_service
        self.settings = settings_resolver
        self.cache = cache
        self.persister = persister
        self.runner = runner
        self.analysis_timeout = analysis_timeout
        self.cache_ttl = cache_ttl
        logger.debug("ReviewOrchestrator initialized (analysis_timeout=%ss)", analysis_timeout)

    # Lifecycle

    async def start(
        self,
        repository_id: str,
        pr_number: int,
        user_id: Optional[str] = None,
    ) -> StartResult:
        """
        Get or create the review for the current head of a pull request.

        Args:
            repository_id: Connected repository.
            pr_number: Pull request number.
            user_id: Requesting user (defaults to the repository owner).

        Returns:
            StartResult with the new review (CREATED, run scheduled) or the
            existing one for the same head commit (DUPLICATE, nothing scheduled).

        Raises:
            RepositoryNotFound: If the repository is not connected.
            PullRequestNotFound: If source control has no such pull request.
        """
        repository = await self.repositories.get(repository_id)
        if repository is None:
            raise RepositoryNotFound(f"Repository {repository_id} not connected")

        pr = await self.github.get_pull_request(repository.owner, repository.name, pr_number)

        existing = await self._find_review(repository.id, pr_number, pr.head_sha)
        if existing is not None:
            logger.info(
                "Review for %s#%d at %s already exists (%s, %s)",
                repository.full_name, pr_number, pr.head_sha[:8], existing.id, existing.status,
            )
            return StartResult(existing, StartOutcome.DUPLICATE)

        review = Review(
            repository_id=repository.id,
            user_id=user_id or repository.user_id,
            pr_number=pr_number,
            pr_title=pr.title,
            pr_url=pr.url,
            pr_author=pr.author,
            head_sha=pr.head_sha,
            base_sha=pr.base_sha,
            status=ReviewStatus.PENDING.value,
        )

        try:
            async with self.db.session() as session:
                session.add(review)
        except IntegrityError:
            # A concurrent start inserted the same (repository, PR, head) first.
            existing = await self._find_review(repository.id, pr_number, pr.head_sha)
            if existing is None:
                raise
            logger.info("Concurrent start for %s#%d resolved to review %s", repository.full_name, pr_number, existing.id)
            return StartResult(existing, StartOutcome.DUPLICATE)

        logger.info("Created review %s for %s#%d at %s", review.id, repository.full_name, pr_number, pr.head_sha[:8])
        self.runner.submit(
            lambda: self.run(review.id),
            name=f"review-{review.id}",
            on_cancel=lambda: self._mark_failed(review.id, "Review cancelled before it started", 0),
        )
        return StartResult(review, StartOutcome.CREATED)

    async def run(self, review_id: str) -> RunOutcome:
        """
        Analyze a pending review and drive it to completed or failed.

        Never raises for pipeline errors: they are recorded on the review as
        failed with the error message. Cancellation also marks the review
        failed before propagating.

        Args:
            review_id: Review to run.

        Returns:
            How the run ended.
        """
        start_time = time.monotonic()

        def elapsed_ms() -> int:
            return int((time.monotonic() - start_time) * 1000)

        try:
            if not await self._transition(review_id, ReviewStatus.PENDING, ReviewStatus.IN_PROGRESS):
                logger.warning("Review %s is not pending, skipping run", review_id)
                return RunOutcome.SKIPPED

            review = await self.get_review(review_id)
            repository = await self.repositories.get(review.repository_id)
            if repository is None:
                raise RepositoryNotFound(f"Repository {review.repository_id} not connected")

            logger.info("Running review %s for %s#%d", review_id, repository.full_name, review.pr_number)

            pr, files = await asyncio.gather(
                self.github.get_pull_request(repository.owner, repository.name, review.pr_number),
                self.github.get_pull_request_files(repository.owner, repository.name, review.pr_number),
            )
            settings = await self.settings.resolve(review.user_id, repository.id)

            analysis_files = select_analysis_files(files, settings)
            if not analysis_files:
                logger.info("Review %s: no analyzable files among %d changed", review_id, len(files))
                await self.persister.commit(
                    review_id, NO_FILES_SUMMARY, [], ReviewMetrics(processing_time_ms=elapsed_ms())
                )
                return RunOutcome.NO_FILES

            pr_context = PRContext(
                title=pr.title or review.pr_title or "",
                description=pr.body,
                author=pr.author or review.pr_author or "unknown",
            )
            result = await self._get_or_compute_analysis(analysis_files, pr_context, settings)

            issues = filter_issues_by_severity(result.issues, settings.severity_threshold)
            if len(issues) != len(result.issues):
                logger.debug(
                    "Review %s: dropped %d issue(s) below %s",
                    review_id, len(result.issues) - len(issues), settings.severity_threshold.value,
                )

            await self.persister.commit(
                review_id,
                result.summary,
                issues,
                ReviewMetrics(
                    files_reviewed=len(analysis_files),
                    lines_reviewed=sum(len(f.patch.splitlines()) for f in analysis_files),
                    processing_time_ms=elapsed_ms(),
                ),
            )
            logger.info("Review %s completed in %dms with %d issue(s)", review_id, elapsed_ms(), len(issues))
            return RunOutcome.COMPLETED

        except asyncio.CancelledError:
            await self._mark_failed(review_id, "Review cancelled", elapsed_ms())
            raise
        except Exception as e:
            logger.error("Review %s failed: %s", review_id, e, exc_info=True)
            await self._mark_failed(review_id, str(e) or type(e).__name__, elapsed_ms())
            return RunOutcome.FAILED

    async def _get_or_compute_analysis(
        self,
        files: Sequence[AnalysisFile],
        pr_context: PRContext,
        settings: ReviewSettings,
    ) -> AnalysisResult:
        key = AnalysisCache.make_key(files, settings)

        cached = await self.cache.get(key)
        if cached is not None:
            try:
                result = AnalysisResult.model_validate(cached)
                logger.info("Using cached analysis result")
                return result
            except ValidationError as e:
                logger.debug("Ignoring unusable cached analysis: %s", e)

        try:
            result = await asyncio.wait_for(
                self.analysis.analyze(files, pr_context, settings),
                timeout=self.analysis_timeout,
            )
        except asyncio.TimeoutError as e:
            raise AnalysisFailure(f"Analysis timed out after {self.analysis_timeout:g}s") from e

        await self.cache.set(key, result.model_dump(mode="json"), self.cache_ttl)
        return result

    async def _transition(
        self,
        review_id: str,
        from_status: ReviewStatus | Sequence[ReviewStatus],
        to_status: ReviewStatus,
        **values,
    ) -> bool:
        """Move a review to to_status only if it is currently in from_status."""
        allowed = [from_status] if isinstance(from_status, ReviewStatus) else list(from_status)
        async with self.db.session() as session:
            result = await session.execute(
                update(Review)
                .where(
                    Review.id == review_id,
                    Review.status.in_([s.value for s in allowed]),
                )
                .values(status=to_status.value, **values)
            )
            return result.rowcount == 1

    async def _mark_failed(self, review_id: str, message: str, elapsed_ms: int) -> None:
        try:
            moved = await self._transition(
                review_id,
                (ReviewStatus.PENDING, ReviewStatus.IN_PROGRESS),
                ReviewStatus.FAILED,
                error_message=message,
                processing_time_ms=elapsed_ms,
            )
            if not moved:
                logger.warning("Review %s already terminal, not marking failed", review_id)
        except Exception as e:
            logger.error("Could not mark review %s failed: %s", review_id, e, exc_info=True)

    # Queries

    async def _find_review(self, repository_id: str, pr_number: int, head_sha: str) -> Optional[Review]:
        async with self.db.session() as session:
            result = await session.execute(
                select(Review).where(
                    Review.repository_id == repository_id,
                    Review.pr_number == pr_number,
                    Review.head_sha == head_sha,
                )
            )
            return result.scalar_one_or_none()

    async def get_review(self, review_id: str) -> Review:
        """Get a review by id, raising ReviewNotFound if missing."""
        async with self.db.session() as session:
            review = await session.get(Review, review_id)
        if review is None:
            raise ReviewNotFound(f"Review {review_id} not found")
        return review

    async def get_review_with_issues(self, review_id: str) -> tuple[Review, list[Issue]]:
        """Get a review and its issues, most severe first."""
        severity_order = case(
            {s.value: rank for s, rank in SEVERITY_RANK.items()},
            value=Issue.severity,
            else_=len(SEVERITY_RANK),
        )
        async with self.db.session() as session:
            review = await session.get(Review, review_id)
            if review is None:
                raise ReviewNotFound(f"Review {review_id} not found")
            result = await session.execute(
                select(Issue)
                .where(Issue.review_id == review_id)
                .order_by(severity_order, Issue.file_path, Issue.line_start)
            )
            issues = list(result.scalars().all())
        return review, issues

    async def list_reviews(
        self,
        repository_id: Optional[str] = None,
        status: Optional[ReviewStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Review]:
        """List reviews, newest first."""
        stmt = select(Review).order_by(Review.created_at.desc()).limit(limit).offset(offset)
        if repository_id:
            stmt = stmt.where(Review.repository_id == repository_id)
        if status is not None:
            stmt = stmt.where(Review.status == ReviewStatus(status).value)
        async with self.db.session() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def delete_review(self, review_id: str) -> None:
        """Delete a review and its issues in one transaction."""
        async with self.db.session() as session:
            await session.execute(delete(Issue).where(Issue.review_id == review_id))
            result = await session.execute(delete(Review).where(Review.id == review_id))
            if result.rowcount == 0:
                raise ReviewNotFound(f"Review {review_id} not found")
        logger.info("Deleted review %s", review_id)

    async def resolve_issue(self, issue_id: str) -> Issue:
        """Mark an issue resolved."""
        return await self._set_resolved(issue_id, True)

    async def unresolve_issue(self, issue_id: str) -> Issue:
        """Clear an issue's resolved flag."""
        return await self._set_resolved(issue_id, False)

    async def _set_resolved(self, issue_id: str, resolved: bool) -> Issue:
        async with self.db.session() as session:
            issue = await session.get(Issue, issue_id)
            if issue is None:
                raise IssueNotFound(f"Issue {issue_id} not found")
            issue.is_resolved = resolved
            issue.resolved_at = datetime.now(timezone.utc) if resolved else None
            await session.flush()
            return issue
