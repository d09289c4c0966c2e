"""GitHub webhook ingestion."""

import hashlib
import hmac
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from sqlalchemy import select, update

from ..errors import MalformedPayload, SignatureInvalid
from ..orm.repository import Repository
from ..orm.webhook_event import WebhookEvent
from .database import DatabaseService
from .repository_service import RepositoryService
from .task_runner import BackgroundTaskRunner

logger = logging.getLogger(__name__)

REVIEW_ACTIONS = frozenset({"opened", "synchronize", "reopened"})


def verify_github_signature(payload: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Verify GitHub webhook signature using HMAC SHA-256.

    Args:
        payload: Raw request body bytes
        signature: X-Hub-Signature-256 header value (format: "sha256=...")
        secret: Webhook secret

    Returns:
        True if signature is valid, False otherwise (including a missing secret)
    """
    if not secret:
        logger.error("GitHub webhook secret not configured, rejecting delivery")
        return False

    if not signature or not signature.startswith("sha256="):
        logger.warning("Invalid signature format (missing sha256= prefix)")
        return False

    received_signature = signature[7:]

    expected_signature = hmac.new(
        secret.encode("utf-8"),
        payload,
        hashlib.sha256
    ).hexdigest()

    # Timing-safe comparison
    is_valid = hmac.compare_digest(expected_signature, received_signature)

    if not is_valid:
        logger.warning("Signature verification failed")

    return is_valid


class IngestStatus(Enum):
    ACCEPTED = "accepted"
    IGNORED = "ignored"


class IgnoreReason(Enum):
    PING = "ping"
    UNSUPPORTED_EVENT = "unsupported_event"
    UNSUPPORTED_ACTION = "unsupported_action"
    DUPLICATE_DELIVERY = "duplicate_delivery"
    REPO_NOT_CONNECTED = "repo_not_connected"
    AUTO_REVIEW_DISABLED = "auto_review_disabled"


@dataclass
class IngestResult:
    status: IngestStatus
    delivery_id: str
    reason: Optional[IgnoreReason] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "reason": self.reason.value if self.reason else None,
            "delivery_id": self.delivery_id,
        }


class WebhookIngestor:
    """Verifies, records and filters GitHub deliveries, then triggers reviews."""

    def __init__(
        self,
        db_service: DatabaseService,
        repository_service: RepositoryService,
        orchestrator: Any,  # ReviewOrchestrator
        runner: BackgroundTaskRunner,
        webhook_secret: Optional[str],
    ):
        """Initialize webhook ingestor.

        Args:
            db_service: Database service for the delivery log
            repository_service: Repository lookups
            orchestrator: ReviewOrchestrator that starts reviews
            runner: Runner for the detached trigger
            webhook_secret: Shared secret for signature verification
        """
        self.db_service = db_service
        self.repositories = repository_service
        self.orchestrator = orchestrator
        self.runner = runner
        self.webhook_secret = webhook_secret

    async def handle(
        self,
        raw_body: bytes,
        signature_header: Optional[str],
        event_type: str,
        delivery_id: str,
    ) -> IngestResult:
        """Process one webhook delivery.

        Only the signature and payload checks can fail the delivery. Every
        other outcome is an accepted or ignored result; the review itself is
        started in the background.

        Args:
            raw_body: Request body exactly as received
            signature_header: X-Hub-Signature-256 header
            event_type: X-GitHub-Event header
            delivery_id: X-GitHub-Delivery header

        Returns:
            IngestResult describing what happened

        Raises:
            SignatureInvalid: Signature missing or wrong
            MalformedPayload: Body is not a JSON object, its repository or
                pull_request field is not an object, or a pull_request event
                lacks its number or repository id. The signed body is still
                recorded; unparseable text is kept under payload["raw"].
        """
        if not verify_github_signature(raw_body, signature_header, self.webhook_secret):
            logger.warning(f"Invalid webhook signature for event={event_type}, delivery_id={delivery_id}")
            raise SignatureInvalid("Invalid signature")

        try:
            payload = json.loads(raw_body.decode("utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.error(f"Failed to parse webhook payload: {e}")
            raw_text = raw_body.decode("utf-8", errors="replace")
            await self._record_event(delivery_id, None, event_type, None, {"raw": raw_text})
            raise MalformedPayload("Invalid JSON payload") from e
        if not isinstance(payload, dict):
            await self._record_event(delivery_id, None, event_type, None, {"raw": payload})
            raise MalformedPayload("Payload must be a JSON object")
        for field in ("repository", "pull_request"):
            if not isinstance(payload.get(field) or {}, dict):
                await self._record_event(delivery_id, None, event_type, None, payload)
                raise MalformedPayload(f"Payload field '{field}' must be a JSON object")

        action = payload.get("action")
        github_repo_id = (payload.get("repository") or {}).get("id")
        repository = None
        if github_repo_id is not None:
            repository = await self.repositories.find_by_github_id(github_repo_id)

        duplicate = bool(delivery_id) and await self._is_delivery_processed(delivery_id)
        event_id = await self._record_event(delivery_id, repository, event_type, action, payload)

        logger.info(
            f"Processing webhook event: type={event_type}, action={action}, delivery_id={delivery_id}"
        )

        if duplicate:
            logger.info(f"Delivery {delivery_id} already processed, ignoring")
            return IngestResult(IngestStatus.IGNORED, delivery_id, IgnoreReason.DUPLICATE_DELIVERY)

        if event_type == "ping":
            logger.info("Received ping event (webhook configured successfully)")
            return IngestResult(IngestStatus.ACCEPTED, delivery_id, IgnoreReason.PING)

        if event_type != "pull_request":
            logger.debug(f"Ignoring unhandled event type: {event_type}")
            return IngestResult(IngestStatus.IGNORED, delivery_id, IgnoreReason.UNSUPPORTED_EVENT)

        if action not in REVIEW_ACTIONS:
            logger.debug(f"Ignoring pull_request action: {action}")
            return IngestResult(IngestStatus.IGNORED, delivery_id, IgnoreReason.UNSUPPORTED_ACTION)

        pr_number = payload.get("number")
        if pr_number is None:
            pr_number = (payload.get("pull_request") or {}).get("number")
        if not isinstance(pr_number, int) or github_repo_id is None:
            raise MalformedPayload("pull_request payload missing number or repository.id")

        if repository is None:
            logger.info(f"Repository {github_repo_id} is not connected, ignoring PR #{pr_number}")
            return IngestResult(IngestStatus.IGNORED, delivery_id, IgnoreReason.REPO_NOT_CONNECTED)

        if not repository.auto_review:
            logger.info(f"Auto review disabled for {repository.full_name}, ignoring PR #{pr_number}")
            return IngestResult(IngestStatus.IGNORED, delivery_id, IgnoreReason.AUTO_REVIEW_DISABLED)

        self.runner.submit(
            lambda: self._trigger_review(event_id, repository.id, pr_number),
            name=f"trigger-{delivery_id or event_id}",
        )
        logger.info(f"Accepted PR #{pr_number} on {repository.full_name} for review")
        return IngestResult(IngestStatus.ACCEPTED, delivery_id)

    async def _trigger_review(self, event_id: str, repository_id: str, pr_number: int) -> None:
        try:
            result = await self.orchestrator.start(repository_id, pr_number)
            logger.info(
                f"Review {result.review.id} for PR #{pr_number}: {result.outcome.value}"
            )
            await self._mark_processed(event_id)
        except Exception as e:
            logger.error(
                f"Error starting review for PR #{pr_number} (event {event_id}): {e}",
                exc_info=True
            )

    async def _is_delivery_processed(self, delivery_id: str) -> bool:
        async with self.db_service.session() as session:
            result = await session.execute(
                select(WebhookEvent.id).where(
                    WebhookEvent.delivery_id == delivery_id,
                    WebhookEvent.processed == True  # noqa: E712
                ).limit(1)
            )
            return result.scalar_one_or_none() is not None

    async def _record_event(
        self,
        delivery_id: str,
        repository: Optional[Repository],
        event_type: str,
        action: Optional[str],
        payload: dict[str, Any],
    ) -> str:
        event = WebhookEvent(
            delivery_id=delivery_id or None,
            repository_id=repository.id if repository else None,
            event_type=event_type or "unknown",
            action=action,
            payload=payload,
        )
        async with self.db_service.session() as session:
            session.add(event)
            await session.flush()
            return event.id

    async def _mark_processed(self, event_id: str) -> None:
        async with self.db_service.session() as session:
            await session.execute(
                update(WebhookEvent)
                .where(WebhookEvent.id == event_id)
                .values(processed=True, processed_at=datetime.now(timezone.utc))
            )
