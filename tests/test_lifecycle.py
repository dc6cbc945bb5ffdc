"""Tests for the connection lifecycle manager against an in-memory database."""

import asyncio
import uuid
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from carelink.accounts.service import get_blind_user
from carelink.connections.lifecycle import ConnectionLifecycle
from carelink.connections.repository import ConnectionRepository
from carelink.errors import (
    DuplicateActiveRequest,
    InvalidTransition,
    NotFound,
    NotRequestOwner,
    TransientGatewayError,
    UnknownBlindUser,
    UnknownGuardian,
    ValidationError,
)
from carelink.models.enums import ChangeType, ConnectionStatus
from carelink.schemas.events import EventType


def emitted_types(mock_emit) -> list[EventType]:
    return [c.args[0].event_type for c in mock_emit.await_args_list]


async def guardian_of(session_factory, blind_id: str) -> str | None:
    async with session_factory() as db:
        user = await get_blind_user(db, blind_id)
        return user.guardian_id


# ── request_connection ───────────────────────────────────────────────


class TestRequestConnection:
    @pytest.mark.asyncio()
    async def test_creates_pending_request(self, lifecycle, feed, mock_emit):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        assert request.status is ConnectionStatus.PENDING
        assert request.blind_id == "BLIND001"
        assert request.guardian_id == "Guardian001"
        assert request.created_at == request.updated_at

        assert [e.change_type for e in feed.published] == [ChangeType.INSERT]
        assert feed.published[0].record["id"] == str(request.id)
        assert emitted_types(mock_emit["lifecycle"]) == [EventType.CONNECTION_REQUESTED]

    @pytest.mark.asyncio()
    async def test_identifiers_are_matched_case_insensitively(self, lifecycle):
        request = await lifecycle.request_connection(" blind001 ", "GUARDIAN001")

        assert request.blind_id == "BLIND001"
        assert request.guardian_id == "Guardian001"

    @pytest.mark.asyncio()
    async def test_duplicate_pending_is_rejected(self, lifecycle):
        await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(DuplicateActiveRequest, match="already pending"):
            await lifecycle.request_connection("blind001", "Guardian001")

        assert await lifecycle.count_by_status("Guardian001", ConnectionStatus.PENDING) == 1

    @pytest.mark.asyncio()
    async def test_duplicate_accepted_is_rejected(self, lifecycle):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")

        with pytest.raises(DuplicateActiveRequest, match="already connected") as exc_info:
            await lifecycle.request_connection("BLIND001", "Guardian001")
        assert exc_info.value.context["status"] == "accepted"

    @pytest.mark.asyncio()
    async def test_new_request_allowed_after_rejection(self, lifecycle):
        first = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(first.id, ConnectionStatus.REJECTED)

        second = await lifecycle.request_connection("BLIND001", "Guardian001")

        assert second.id != first.id
        assert second.status is ConnectionStatus.PENDING

    @pytest.mark.asyncio()
    async def test_new_request_allowed_after_removal(self, lifecycle):
        first = await lifecycle.request_connection("BLIND002", "Guardian002")
        await lifecycle.decide(first.id, "accepted")
        await lifecycle.remove(first.id)

        second = await lifecycle.request_connection("BLIND002", "Guardian002")

        assert second.status is ConnectionStatus.PENDING

    @pytest.mark.asyncio()
    async def test_same_blind_user_may_ask_several_guardians(self, lifecycle):
        await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.request_connection("BLIND001", "Guardian002")

        assert len(await lifecycle.list_pending("Guardian001")) == 1
        assert len(await lifecycle.list_pending("Guardian002")) == 1

    @pytest.mark.asyncio()
    async def test_unknown_blind_user(self, lifecycle, feed):
        with pytest.raises(UnknownBlindUser):
            await lifecycle.request_connection("BLIND999", "Guardian001")
        assert feed.published == []

    @pytest.mark.asyncio()
    async def test_unknown_guardian(self, lifecycle):
        with pytest.raises(UnknownGuardian):
            await lifecycle.request_connection("BLIND001", "Guardian999")

    @pytest.mark.asyncio()
    @pytest.mark.parametrize(
        ("blind_id", "guardian_id"),
        [("", "Guardian001"), ("BLIND001", None), ("BL1", "Guardian001"), ("BLIND001", "Guard001")],
    )
    async def test_validation_happens_before_any_io(self, blind_id, guardian_id):
        session_factory = MagicMock()
        lifecycle = ConnectionLifecycle(session_factory, ConnectionRepository())

        with pytest.raises(ValidationError):
            await lifecycle.request_connection(blind_id, guardian_id)
        session_factory.assert_not_called()

    @pytest.mark.asyncio()
    async def test_unique_index_catches_a_race_the_precheck_missed(self, lifecycle, repository):
        await lifecycle.request_connection("BLIND001", "Guardian001")

        # Simulate a concurrent writer that passed the pre-check at the same time
        with patch.object(repository, "find_active", AsyncMock(return_value=None)):
            with pytest.raises(DuplicateActiveRequest):
                await lifecycle.request_connection("BLIND001", "Guardian001")

        assert await lifecycle.count_by_status("Guardian001", ConnectionStatus.PENDING) == 1


# ── decide ───────────────────────────────────────────────────────────


class TestDecide:
    @pytest.mark.asyncio()
    async def test_accept_links_blind_user(self, lifecycle, seeded, feed, mock_emit):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        accepted = await lifecycle.decide(request.id, "accepted", guardian_id="guardian001")

        assert accepted.status is ConnectionStatus.ACCEPTED
        assert accepted.updated_at > request.updated_at
        assert await guardian_of(seeded, "BLIND001") == "Guardian001"
        assert [e.change_type for e in feed.published] == [ChangeType.INSERT, ChangeType.UPDATE]
        assert emitted_types(mock_emit["lifecycle"]) == [
            EventType.CONNECTION_REQUESTED,
            EventType.CONNECTION_ACCEPTED,
            EventType.GUARDIAN_LINKED,
        ]

    @pytest.mark.asyncio()
    async def test_reject_does_not_touch_blind_user(self, lifecycle, seeded):
        request = await lifecycle.request_connection("BLIND002", "Guardian001")

        rejected = await lifecycle.decide(request.id, "rejected")

        assert rejected.status is ConnectionStatus.REJECTED
        assert await guardian_of(seeded, "BLIND002") is None
        assert await lifecycle.list_pending("Guardian001") == []

    @pytest.mark.asyncio()
    async def test_second_accept_is_an_invalid_transition(self, lifecycle, mock_emit):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")
        mock_emit["lifecycle"].reset_mock()

        with pytest.raises(InvalidTransition) as exc_info:
            await lifecycle.decide(request.id, "accepted")

        assert exc_info.value.current == "accepted"
        assert exc_info.value.target == "accepted"
        mock_emit["lifecycle"].assert_not_awaited()

    @pytest.mark.asyncio()
    async def test_reject_after_accept_is_an_invalid_transition(self, lifecycle):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")

        with pytest.raises(InvalidTransition):
            await lifecycle.decide(request.id, "rejected")

        accepted = await lifecycle.list_accepted("Guardian001")
        assert [r.id for r in accepted] == [request.id]

    @pytest.mark.asyncio()
    @pytest.mark.parametrize("decision", ["pending", "removed", "maybe"])
    async def test_decision_must_be_accept_or_reject(self, lifecycle, decision):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(ValidationError):
            await lifecycle.decide(request.id, decision)

        pending = await lifecycle.list_pending("Guardian001")
        assert pending[0].status is ConnectionStatus.PENDING

    @pytest.mark.asyncio()
    async def test_unknown_request(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.decide(uuid.uuid4(), "accepted")

    @pytest.mark.asyncio()
    async def test_other_guardian_cannot_decide(self, lifecycle, seeded):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(NotRequestOwner):
            await lifecycle.decide(request.id, "accepted", guardian_id="Guardian002")

        assert len(await lifecycle.list_pending("Guardian001")) == 1
        assert await guardian_of(seeded, "BLIND001") is None

    @pytest.mark.asyncio()
    async def test_guardian_dashboard_scenario(self, lifecycle, seeded):
        first = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.request_connection("BLIND002", "Guardian001")
        assert len(await lifecycle.list_pending("Guardian001")) == 2

        await lifecycle.decide(first.id, "accepted")

        pending = await lifecycle.list_pending("Guardian001")
        accepted = await lifecycle.list_accepted("Guardian001")
        assert [r.blind_id for r in pending] == ["BLIND002"]
        assert [r.blind_id for r in accepted] == ["BLIND001"]
        assert await guardian_of(seeded, "BLIND001") == "Guardian001"
        assert await guardian_of(seeded, "BLIND002") is None


# ── remove ───────────────────────────────────────────────────────────


class TestRemove:
    @pytest.mark.asyncio()
    async def test_remove_accepted_connection(self, lifecycle, seeded, mock_emit):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")

        removed = await lifecycle.remove(request.id, guardian_id="Guardian001")

        assert removed.status is ConnectionStatus.REMOVED
        assert await lifecycle.list_accepted("Guardian001") == []
        assert await lifecycle.count_by_status("Guardian001", ConnectionStatus.REMOVED) == 1
        assert EventType.CONNECTION_REMOVED in emitted_types(mock_emit["lifecycle"])

    @pytest.mark.asyncio()
    async def test_remove_keeps_blind_user_link(self, lifecycle, seeded):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")

        await lifecycle.remove(request.id)

        assert await guardian_of(seeded, "BLIND001") == "Guardian001"

    @pytest.mark.asyncio()
    async def test_pending_request_cannot_be_removed(self, lifecycle):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(InvalidTransition):
            await lifecycle.remove(request.id)

    @pytest.mark.asyncio()
    async def test_removed_is_terminal(self, lifecycle):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "accepted")
        await lifecycle.remove(request.id)

        with pytest.raises(InvalidTransition):
            await lifecycle.remove(request.id)
        with pytest.raises(InvalidTransition):
            await lifecycle.decide(request.id, "accepted")


# ── Accept-and-link saga ─────────────────────────────────────────────


class TestLinkSaga:
    @pytest.mark.asyncio()
    async def test_link_failure_is_deferred_then_repaired_on_read(self, lifecycle, seeded, mock_emit):
        request = await lifecycle.request_connection("BLIND003", "Guardian002")

        failing = AsyncMock(side_effect=TransientGatewayError("database unavailable"))
        with patch("carelink.connections.lifecycle.set_blind_user_guardian", failing):
            accepted = await lifecycle.decide(request.id, "accepted")

        assert accepted.status is ConnectionStatus.ACCEPTED
        assert failing.await_count == 2
        assert await guardian_of(seeded, "BLIND003") is None
        assert emitted_types(mock_emit["lifecycle"])[-1] is EventType.GUARDIAN_LINK_DEFERRED

        user = await lifecycle.load_blind_user("blind003")

        assert user.guardian_id == "Guardian002"
        assert await guardian_of(seeded, "BLIND003") == "Guardian002"
        assert emitted_types(mock_emit["lifecycle"])[-1] is EventType.GUARDIAN_LINK_REPAIRED

    @pytest.mark.asyncio()
    async def test_link_is_idempotent(self, lifecycle, seeded):
        assert await lifecycle.link_guardian("BLIND001", "Guardian001") is True
        assert await lifecycle.link_guardian("BLIND001", "Guardian001") is False
        assert await guardian_of(seeded, "BLIND001") == "Guardian001"

    @pytest.mark.asyncio()
    async def test_load_without_accepted_request_changes_nothing(self, lifecycle, mock_emit):
        await lifecycle.request_connection("BLIND002", "Guardian001")

        user = await lifecycle.load_blind_user("BLIND002")

        assert user.guardian_id is None
        assert EventType.GUARDIAN_LINK_REPAIRED not in emitted_types(mock_emit["lifecycle"])

    @pytest.mark.asyncio()
    async def test_load_unknown_blind_user(self, lifecycle):
        with pytest.raises(UnknownBlindUser):
            await lifecycle.load_blind_user("BLIND404")


# ── Queries ──────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio()
    async def test_blind_user_sees_every_request_with_status(self, lifecycle):
        first = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(first.id, "rejected")
        second = await lifecycle.request_connection("BLIND001", "Guardian002")
        await lifecycle.request_connection("BLIND002", "Guardian001")

        requests = await lifecycle.list_for_blind_user("blind001")

        assert [r.id for r in requests] == [second.id, first.id]
        assert [r.status for r in requests] == [ConnectionStatus.PENDING, ConnectionStatus.REJECTED]

    @pytest.mark.asyncio()
    async def test_blind_user_without_requests(self, lifecycle):
        assert await lifecycle.list_for_blind_user("BLIND003") == []

    @pytest.mark.asyncio()
    async def test_list_for_unknown_blind_user(self, lifecycle):
        with pytest.raises(UnknownBlindUser):
            await lifecycle.list_for_blind_user("BLIND404")

    @pytest.mark.asyncio()
    async def test_get_request(self, lifecycle):
        created = await lifecycle.request_connection("BLIND001", "Guardian001")

        loaded = await lifecycle.get_request(created.id, guardian_id="guardian001")

        assert loaded.id == created.id
        assert loaded.status is ConnectionStatus.PENDING

    @pytest.mark.asyncio()
    async def test_get_request_for_other_guardian(self, lifecycle):
        created = await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(NotRequestOwner):
            await lifecycle.get_request(created.id, guardian_id="Guardian002")

    @pytest.mark.asyncio()
    async def test_get_unknown_request(self, lifecycle):
        with pytest.raises(NotFound):
            await lifecycle.get_request(uuid.uuid4())


# ── Retries and concurrency ──────────────────────────────────────────


class FlakyRepository(ConnectionRepository):
    """Fails the first ``failures`` status updates with a transient error."""

    def __init__(self, clock, failures: int) -> None:
        super().__init__(clock=clock)
        self.failures = failures
        self.update_calls = 0

    async def update_status(self, db, request_id, new_status):
        self.update_calls += 1
        if self.update_calls <= self.failures:
            raise TransientGatewayError("connection reset")
        return await super().update_status(db, request_id, new_status)


class TestRetries:
    @pytest.mark.asyncio()
    async def test_transient_failure_is_retried(self, seeded, clock, feed):
        repository = FlakyRepository(clock, failures=1)
        lifecycle = ConnectionLifecycle(seeded, repository, feed, write_attempts=3, retry_delay=0)
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        accepted = await lifecycle.decide(request.id, "accepted")

        assert accepted.status is ConnectionStatus.ACCEPTED
        assert repository.update_calls == 2

    @pytest.mark.asyncio()
    async def test_gives_up_after_configured_attempts(self, seeded, clock, feed):
        repository = FlakyRepository(clock, failures=5)
        lifecycle = ConnectionLifecycle(seeded, repository, feed, write_attempts=3, retry_delay=0)
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        with pytest.raises(TransientGatewayError):
            await lifecycle.decide(request.id, "accepted")

        assert repository.update_calls == 3
        assert len(await lifecycle.list_pending("Guardian001")) == 1

    @pytest.mark.asyncio()
    async def test_domain_errors_are_not_retried(self, lifecycle, repository):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        await lifecycle.decide(request.id, "rejected")

        with patch.object(repository, "get", wraps=repository.get) as get:
            with pytest.raises(InvalidTransition):
                await lifecycle.decide(request.id, "accepted")

        assert get.await_count == 1

    @pytest.mark.asyncio()
    async def test_retry_after_lost_acknowledgement_is_idempotent(self, lifecycle, monkeypatch):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")
        original = lifecycle._transition_once
        calls = 0

        async def commit_then_drop(*args):
            nonlocal calls
            calls += 1
            result = await original(*args)
            if calls == 1:
                raise TransientGatewayError("acknowledgement lost")
            return result

        monkeypatch.setattr(lifecycle, "_transition_once", commit_then_drop)

        accepted = await lifecycle.decide(request.id, "accepted")

        assert calls == 2
        assert accepted.status is ConnectionStatus.ACCEPTED

    @pytest.mark.asyncio()
    async def test_concurrent_accepts_exactly_one_wins(self, lifecycle):
        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        with patch("carelink.connections.lifecycle.set_blind_user_guardian", AsyncMock(return_value=True)):
            results = await asyncio.gather(
                lifecycle.decide(request.id, "accepted", guardian_id="Guardian001"),
                lifecycle.decide(request.id, "accepted", guardian_id="Guardian001"),
                return_exceptions=True,
            )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 1
        assert len(failures) == 1
        assert isinstance(failures[0], InvalidTransition)
        assert lifecycle._locks == {}

    @pytest.mark.asyncio()
    async def test_concurrent_rejects_exactly_one_wins(self, lifecycle):
        request = await lifecycle.request_connection("BLIND002", "Guardian001")

        results = await asyncio.gather(
            lifecycle.decide(request.id, "rejected"),
            lifecycle.decide(request.id, "rejected"),
            return_exceptions=True,
        )

        assert sum(isinstance(r, InvalidTransition) for r in results) == 1
        assert await lifecycle.count_by_status("Guardian001", ConnectionStatus.REJECTED) == 1

    @pytest.mark.asyncio()
    async def test_feed_outage_does_not_fail_the_write(self, lifecycle, feed):
        feed.publish = AsyncMock(side_effect=TransientGatewayError("feed down"))

        request = await lifecycle.request_connection("BLIND001", "Guardian001")

        assert request.status is ConnectionStatus.PENDING
        assert len(await lifecycle.list_pending("Guardian001")) == 1
