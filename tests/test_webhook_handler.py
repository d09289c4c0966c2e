"""Tests for WebhookIngestor and signature verification."""

import asyncio
import json
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from reviewbot.errors import MalformedPayload, SignatureInvalid
from reviewbot.orm.webhook_event import WebhookEvent
from reviewbot.services.repository_service import RepositoryService
from reviewbot.services.review_service import StartOutcome
from reviewbot.services.task_runner import BackgroundTaskRunner
from reviewbot.services.webhook_handler import (
    IgnoreReason,
    IngestStatus,
    WebhookIngestor,
    verify_github_signature,
)

from .fakes import WEBHOOK_SECRET, connect_repository, open_database, sign


class FakeOrchestrator:
    """Records start calls."""

    def __init__(self, error=None):
        self.calls = []
        self.error = error

    async def start(self, repository_id, pr_number, user_id=None):
        self.calls.append((repository_id, pr_number))
        if self.error is not None:
            raise self.error
        return SimpleNamespace(review=SimpleNamespace(id="review-1"), outcome=StartOutcome.CREATED)


def pr_event(action="opened", number=42, repo_id=1001) -> bytes:
    return json.dumps({
        "action": action,
        "number": number,
        "pull_request": {
            "number": number,
            "head": {"sha": "abc123"},
            "base": {"sha": "base000"},
        },
        "repository": {"id": repo_id, "full_name": "octo/app"},
    }).encode("utf-8")


async def recorded_events(db) -> list[WebhookEvent]:
    async with db.session() as session:
        result = await session.execute(select(WebhookEvent).order_by(WebhookEvent.created_at))
        return list(result.scalars().all())


class TestVerifyGitHubSignature:
    """Test HMAC signature verification."""

    def test_valid_signature(self):
        """Test a correct signature verifies."""
        body = b'{"zen": "Keep it simple"}'
        assert verify_github_signature(body, sign(body), WEBHOOK_SECRET)

    def test_wrong_secret(self):
        """Test a signature made with another secret fails."""
        body = b"{}"
        assert not verify_github_signature(body, sign(body, "other"), WEBHOOK_SECRET)

    def test_tampered_body(self):
        """Test a modified body fails."""
        assert not verify_github_signature(b'{"a": 2}', sign(b'{"a": 1}'), WEBHOOK_SECRET)

    def test_missing_prefix_header_or_secret(self):
        """Test missing parts fail closed."""
        body = b"{}"
        assert not verify_github_signature(body, sign(body)[7:], WEBHOOK_SECRET)
        assert not verify_github_signature(body, None, WEBHOOK_SECRET)
        assert not verify_github_signature(body, sign(body), None)
        assert not verify_github_signature(body, sign(body), "")


class TestWebhookIngestor:
    """Test event gating and background triggering."""

    def run_scenario(self, tmp_path, body_fn, orchestrator=None, auto_review=True):
        """Run body_fn(ingestor, db, repo, orchestrator, runner) against a fresh database."""

        async def scenario():
            db = await open_database(tmp_path / "test.db")
            runner = BackgroundTaskRunner()
            try:
                repo = await connect_repository(db, auto_review=auto_review)
                orch = orchestrator or FakeOrchestrator()
                ingestor = WebhookIngestor(db, RepositoryService(db), orch, runner, WEBHOOK_SECRET)
                await body_fn(ingestor, db, repo, orch, runner)
            finally:
                await runner.close()
                await db.close()

        asyncio.run(scenario())

    def test_invalid_signature_records_nothing(self, tmp_path):
        """Test a bad signature is rejected before any other work."""

        async def body(ingestor, db, repo, orch, runner):
            payload = pr_event()
            with pytest.raises(SignatureInvalid):
                await ingestor.handle(payload, sign(payload, "wrong"), "pull_request", "d-1")
            assert await recorded_events(db) == []
            assert orch.calls == []

        self.run_scenario(tmp_path, body)

    def test_missing_secret_fails_closed(self, tmp_path):
        """Test an ingestor without a secret rejects everything."""

        async def body(ingestor, db, repo, orch, runner):
            ingestor.webhook_secret = None
            payload = pr_event()
            with pytest.raises(SignatureInvalid):
                await ingestor.handle(payload, sign(payload), "pull_request", "d-1")

        self.run_scenario(tmp_path, body)

    def test_malformed_payloads(self, tmp_path):
        """Test non-JSON bodies, non-object bodies and non-object fields are rejected."""

        async def body(ingestor, db, repo, orch, runner):
            bodies = (
                b"not json",
                b"[1, 2]",
                b'{"action": "opened", "number": 1, "repository": "octo/app"}',
                b'{"action": "opened", "repository": {"id": 1001}, "pull_request": 7}',
            )
            for raw in bodies:
                with pytest.raises(MalformedPayload):
                    await ingestor.handle(raw, sign(raw), "pull_request", "d-1")
            assert orch.calls == []

        self.run_scenario(tmp_path, body)

    def test_malformed_payload_is_recorded(self, tmp_path):
        """Test a signed but unparseable body still leaves an event row."""

        async def body(ingestor, db, repo, orch, runner):
            raw = b"not json"
            with pytest.raises(MalformedPayload):
                await ingestor.handle(raw, sign(raw), "pull_request", "d-9")

            events = await recorded_events(db)
            assert len(events) == 1
            assert events[0].delivery_id == "d-9"
            assert events[0].event_type == "pull_request"
            assert events[0].payload == {"raw": "not json"}
            assert not events[0].processed

        self.run_scenario(tmp_path, body)

    def test_pull_request_without_number(self, tmp_path):
        """Test a qualifying event missing the PR number is malformed."""

        async def body(ingestor, db, repo, orch, runner):
            raw = json.dumps({"action": "opened", "repository": {"id": 1001}}).encode()
            with pytest.raises(MalformedPayload):
                await ingestor.handle(raw, sign(raw), "pull_request", "d-1")

        self.run_scenario(tmp_path, body)

    def test_ping(self, tmp_path):
        """Test ping is accepted and recorded without triggering."""

        async def body(ingestor, db, repo, orch, runner):
            raw = b'{"zen": "Design for failure.", "hook_id": 1}'
            result = await ingestor.handle(raw, sign(raw), "ping", "d-ping")

            assert result.status == IngestStatus.ACCEPTED
            assert result.reason == IgnoreReason.PING
            events = await recorded_events(db)
            assert [(e.event_type, e.delivery_id) for e in events] == [("ping", "d-ping")]
            assert orch.calls == []

        self.run_scenario(tmp_path, body)

    def test_unsupported_event_and_action(self, tmp_path):
        """Test other events and PR actions are ignored."""

        async def body(ingestor, db, repo, orch, runner):
            raw = b'{"action": "opened", "issue": {"number": 1}}'
            result = await ingestor.handle(raw, sign(raw), "issues", "d-1")
            assert result.status == IngestStatus.IGNORED
            assert result.reason == IgnoreReason.UNSUPPORTED_EVENT

            raw = pr_event(action="closed")
            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-2")
            assert result.reason == IgnoreReason.UNSUPPORTED_ACTION

            assert orch.calls == []
            assert len(await recorded_events(db)) == 2

        self.run_scenario(tmp_path, body)

    def test_repository_not_connected(self, tmp_path):
        """Test events for unknown repositories are dropped silently."""

        async def body(ingestor, db, repo, orch, runner):
            raw = pr_event(repo_id=9999)
            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-1")

            assert result.status == IngestStatus.IGNORED
            assert result.reason == IgnoreReason.REPO_NOT_CONNECTED
            events = await recorded_events(db)
            assert events[0].repository_id is None
            assert orch.calls == []

        self.run_scenario(tmp_path, body)

    def test_auto_review_disabled(self, tmp_path):
        """Test repositories with auto review off are dropped silently."""

        async def body(ingestor, db, repo, orch, runner):
            raw = pr_event()
            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-1")

            assert result.status == IngestStatus.IGNORED
            assert result.reason == IgnoreReason.AUTO_REVIEW_DISABLED
            assert orch.calls == []

        self.run_scenario(tmp_path, body, auto_review=False)

    def test_qualifying_event_triggers_review(self, tmp_path):
        """Test opened, synchronize and reopened start a review in the background."""

        async def body(ingestor, db, repo, orch, runner):
            for i, action in enumerate(("opened", "synchronize", "reopened")):
                raw = pr_event(action=action)
                result = await ingestor.handle(raw, sign(raw), "pull_request", f"d-{i}")
                assert result.status == IngestStatus.ACCEPTED
                assert result.reason is None

            await runner.drain()

            assert orch.calls == [(repo.id, 42)] * 3
            events = await recorded_events(db)
            assert all(e.processed for e in events)
            assert all(e.repository_id == repo.id for e in events)
            assert all(e.processed_at is not None for e in events)

        self.run_scenario(tmp_path, body)

    def test_redelivery_is_ignored(self, tmp_path):
        """Test a delivery that was already processed is recorded but not re-triggered."""

        async def body(ingestor, db, repo, orch, runner):
            raw = pr_event()
            await ingestor.handle(raw, sign(raw), "pull_request", "d-same")
            await runner.drain()

            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-same")
            await runner.drain()

            assert result.status == IngestStatus.IGNORED
            assert result.reason == IgnoreReason.DUPLICATE_DELIVERY
            assert len(orch.calls) == 1
            assert len(await recorded_events(db)) == 2

        self.run_scenario(tmp_path, body)

    def test_trigger_failure_is_not_surfaced(self, tmp_path):
        """Test a failing start is logged and leaves the event unprocessed."""

        async def body(ingestor, db, repo, orch, runner):
            raw = pr_event()
            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-1")
            await runner.drain()

            assert result.status == IngestStatus.ACCEPTED
            assert len(orch.calls) == 1
            events = await recorded_events(db)
            assert events[0].processed is False

        self.run_scenario(tmp_path, body, orchestrator=FakeOrchestrator(error=RuntimeError("GitHub down")))

    def test_result_serialization(self, tmp_path):
        """Test results serialize for the HTTP response."""

        async def body(ingestor, db, repo, orch, runner):
            raw = pr_event(action="labeled")
            result = await ingestor.handle(raw, sign(raw), "pull_request", "d-9")
            assert result.to_dict() == {"status": "ignored", "reason": "unsupported_action", "delivery_id": "d-9"}

        self.run_scenario(tmp_path, body)
