"""
Tests for the spare request lifecycle (create, respond, cancel-sparing,
reissue, pause, cancel).
"""

import asyncio
from datetime import date, time

import pytest
from sqlalchemy import func, select

from backend.database.models import (
    DeliveryChannel,
    NotificationQueueEntry,
    NotificationStatus,
    SparePosition,
    SpareRequest,
    SpareRequestStatus,
    SpareRequestType,
)
from backend.services import data_service, delivery_ledger, spare_service
from backend.services.notification_dispatcher import NotificationDispatcher
from backend.services.spare_service import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from backend.tests.helpers import identity_shuffler, soon_game, staggered_game
from backend.utils.constants import KIND_SPARE_CANCELLATION, KIND_SPARE_FILLED, KIND_SPARE_REQUEST
from backend.utils.datetime_utils import as_utc


class FailingSelector:
    async def select_candidates(self, session, spare_request):
        raise RuntimeError("member directory unavailable")


async def _create(db_session, requester, league, clock, sender, game=None, **kwargs):
    game_date, game_time = game or staggered_game()
    kwargs.setdefault("shuffler", identity_shuffler)
    return await spare_service.create_spare_request(
        db_session,
        requester.id,
        league.id,
        game_date,
        game_time,
        clock=clock,
        sender=sender,
        **kwargs,
    )


class TestCreateSpareRequest:
    @pytest.mark.asyncio
    async def test_private_request_notifies_invitees_immediately(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        a = await make_member("Alice", available=False)
        b = await make_member("Bob", available=False)
        await make_member("Carol")

        result = await _create(
            db_session,
            requester,
            league,
            clock,
            sender,
            request_type=SpareRequestType.PRIVATE,
            invited_member_ids=[a.id, b.id],
        )

        assert result["notification_path"] == spare_service.IMMEDIATE
        assert result["notifications_sent"] == 2
        assert result["notifications_queued"] == 0
        assert result["notification_status"] == "completed"
        assert result["notification_generation"] == 0
        assert sorted(sender.member_ids()) == sorted([a.id, b.id])

        rows = await delivery_ledger.get_deliveries(db_session, result["spare_request_id"])
        assert len(rows) == 2
        assert all(row.notification_generation == 0 and row.sent_at is not None for row in rows)

    @pytest.mark.asyncio
    async def test_public_request_for_game_within_window_notifies_everyone(
        self, db_session, league, make_member, clock, sender
    ):
        requester = await make_member("Requester")
        members = [await make_member(name) for name in ("Alice", "Bob", "Carol")]
        await make_member("Dave", available=False)

        result = await _create(db_session, requester, league, clock, sender, game=soon_game())

        assert result["notification_path"] == spare_service.IMMEDIATE
        assert result["notifications_sent"] == 3
        assert sorted(sender.member_ids()) == [m.id for m in members]

        report = await spare_service.get_notification_status_report(db_session, result["spare_request_id"])
        assert report["notification_status"] == "completed"
        assert report["notifications_sent_at"] is not None
        assert report["members_queued"] == 0
        assert report["deliveries_sent"] == 3

    @pytest.mark.asyncio
    async def test_public_request_for_later_game_is_queued(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        await make_member("Alice")

        result = await _create(db_session, requester, league, clock, sender)

        assert result["notification_path"] == spare_service.STAGGERED
        assert result["notifications_queued"] == 1
        assert result["notification_status"] == "in_progress"
        assert sender.calls == []

    @pytest.mark.asyncio
    async def test_no_candidates_completes_without_sending(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")

        result = await _create(db_session, requester, league, clock, sender)

        assert result["notifications_queued"] == 0
        assert result["notification_status"] == "completed"

    @pytest.mark.asyncio
    async def test_skip_request_only_reaches_members_who_can_skip(
        self, db_session, league, make_member, clock, sender
    ):
        requester = await make_member("Requester")
        skip = await make_member("Sandra", can_skip=True)
        await make_member("Lenny")

        await _create(db_session, requester, league, clock, sender, game=soon_game(), position=SparePosition.SKIP)

        assert sender.member_ids() == [skip.id]

    @pytest.mark.asyncio
    async def test_unsubscribed_members_are_not_candidates(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        subscribed = await make_member("Alice")
        await make_member("Bob", email_subscribed=False)

        await _create(db_session, requester, league, clock, sender, game=soon_game())

        assert sender.member_ids() == [subscribed.id]

    @pytest.mark.asyncio
    async def test_sms_opt_in_adds_a_channel(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        await make_member("Alice", phone="+15555550100", opted_in_sms=True)

        await _create(db_session, requester, league, clock, sender, game=soon_game())

        assert [call[0] for call in sender.calls] == [DeliveryChannel.EMAIL, DeliveryChannel.SMS]

    @pytest.mark.asyncio
    async def test_spare_only_member_cannot_request(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester", spare_only=True)
        with pytest.raises(ForbiddenError):
            await _create(db_session, requester, league, clock, sender)

    @pytest.mark.asyncio
    async def test_game_in_the_past_is_rejected(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        with pytest.raises(ValidationError):
            await _create(db_session, requester, league, clock, sender, game=(date(2026, 3, 1), time(19, 0)))

    @pytest.mark.asyncio
    async def test_private_request_needs_invitees(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        with pytest.raises(ValidationError):
            await _create(
                db_session,
                requester,
                league,
                clock,
                sender,
                request_type=SpareRequestType.PRIVATE,
                invited_member_ids=[requester.id],
            )
        with pytest.raises(NotFoundError):
            await _create(
                db_session,
                requester,
                league,
                clock,
                sender,
                request_type=SpareRequestType.PRIVATE,
                invited_member_ids=[9999],
            )

    @pytest.mark.asyncio
    async def test_unknown_league_and_long_message(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        game_date, game_time = staggered_game()
        with pytest.raises(NotFoundError):
            await spare_service.create_spare_request(
                db_session, requester.id, 9999, game_date, game_time, clock=clock, sender=sender
            )
        with pytest.raises(ValidationError):
            await _create(db_session, requester, league, clock, sender, message="x" * 1001)


class TestImmediateWindow:
    def _request(self, game_date, game_time, request_type=SpareRequestType.PUBLIC):
        return SpareRequest(game_date=game_date, game_time=game_time, request_type=request_type)

    def test_exactly_window_hours_out_is_staggered(self, clock):
        # 2026-03-03 07:00 Toronto is exactly 24 hours after the test clock
        assert spare_service.uses_immediate_path(self._request(date(2026, 3, 3), time(7, 0)), clock.now()) is False
        assert spare_service.uses_immediate_path(self._request(date(2026, 3, 3), time(6, 59)), clock.now()) is True

    def test_private_requests_are_always_immediate(self, clock):
        request = self._request(date(2026, 6, 1), time(19, 0), SpareRequestType.PRIVATE)
        assert spare_service.uses_immediate_path(request, clock.now()) is True


class TestRespond:
    @pytest.mark.asyncio
    async def test_fill_stops_notifications_and_notifies_requester(
        self, db_session, league, make_member, clock, sender, supervisor
    ):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        filled = await spare_service.respond_to_spare_request(
            db_session, request_id, alice.id, comment="See you there", clock=clock, sender=sender,
            supervisor=supervisor,
        )
        await supervisor.wait_idle(timeout=5)

        assert filled.status == SpareRequestStatus.FILLED
        assert filled.filled_by_member_id == alice.id
        assert filled.notification_status == NotificationStatus.STOPPED
        assert filled.next_notification_at is None
        assert sender.member_ids(KIND_SPARE_FILLED) == [requester.id]
        assert sender.comments[-1] == "See you there"

        summary = await NotificationDispatcher(clock=clock, sender=sender, delay_seconds=180).tick()
        assert summary.due == 0
        assert sender.member_ids(KIND_SPARE_REQUEST) == []

    @pytest.mark.asyncio
    async def test_only_one_of_two_concurrent_responders_wins(
        self, db_session, session_maker, league, make_member, clock, sender, supervisor
    ):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        bob = await make_member("Bob")
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        async def respond(member_id):
            async with session_maker() as session:
                return await spare_service.respond_to_spare_request(
                    session, request_id, member_id, clock=clock, sender=sender, supervisor=supervisor
                )

        outcomes = await asyncio.gather(respond(alice.id), respond(bob.id), return_exceptions=True)
        await supervisor.wait_idle(timeout=5)

        winners = [o for o in outcomes if isinstance(o, SpareRequest)]
        losers = [o for o in outcomes if isinstance(o, ConflictError)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert winners[0].filled_by_member_id in (alice.id, bob.id)
        assert sender.member_ids(KIND_SPARE_FILLED) == [requester.id]

    @pytest.mark.asyncio
    async def test_respond_validation(self, db_session, league, make_member, clock, sender, supervisor):
        requester = await make_member("Requester")
        invited = await make_member("Alice")
        outsider = await make_member("Bob")
        result = await _create(
            db_session,
            requester,
            league,
            clock,
            sender,
            request_type=SpareRequestType.PRIVATE,
            invited_member_ids=[invited.id],
        )
        request_id = result["spare_request_id"]

        with pytest.raises(ValidationError):
            await spare_service.respond_to_spare_request(
                db_session, request_id, requester.id, clock=clock, sender=sender, supervisor=supervisor
            )
        with pytest.raises(ForbiddenError):
            await spare_service.respond_to_spare_request(
                db_session, request_id, outsider.id, clock=clock, sender=sender, supervisor=supervisor
            )
        with pytest.raises(NotFoundError):
            await spare_service.respond_to_spare_request(
                db_session, 9999, invited.id, clock=clock, sender=sender, supervisor=supervisor
            )

        await spare_service.respond_to_spare_request(
            db_session, request_id, invited.id, clock=clock, sender=sender, supervisor=supervisor
        )
        with pytest.raises(ConflictError):
            await spare_service.respond_to_spare_request(
                db_session, request_id, invited.id, clock=clock, sender=sender, supervisor=supervisor
            )
        await supervisor.wait_idle(timeout=5)


class TestCancelSparingAndReissue:
    @pytest.mark.asyncio
    async def test_cancel_sparing_then_reissue_starts_new_generation(
        self, db_session, league, make_member, clock, sender, supervisor
    ):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        bob = await make_member("Bob")
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]
        dispatcher = NotificationDispatcher(clock=clock, sender=sender, delay_seconds=180)

        await dispatcher.tick()
        assert sender.member_ids(KIND_SPARE_REQUEST) == [alice.id]

        await spare_service.respond_to_spare_request(
            db_session, request_id, alice.id, clock=clock, sender=sender, supervisor=supervisor
        )
        reopened = await spare_service.cancel_sparing(
            db_session, request_id, alice.id, "Came down with a cold", clock=clock, sender=sender,
            supervisor=supervisor,
        )
        await supervisor.wait_idle(timeout=5)

        assert reopened.status == SpareRequestStatus.OPEN
        assert reopened.had_cancellation is True
        assert reopened.filled_by_member_id is None
        # Notifications do not resume on their own
        assert reopened.notification_status == NotificationStatus.STOPPED
        assert sender.member_ids(KIND_SPARE_CANCELLATION) == [requester.id]
        assert "Came down with a cold" in sender.comments

        clock.advance(600)
        assert (await dispatcher.tick()).due == 0

        reissued = await spare_service.reissue_spare_request(
            db_session, request_id, requester.id, clock=clock, shuffler=identity_shuffler, sender=sender
        )
        assert reissued["notification_generation"] == 1
        assert reissued["notification_path"] == spare_service.STAGGERED
        assert reissued["notifications_queued"] == 2

        await dispatcher.tick()
        assert sender.member_ids(KIND_SPARE_REQUEST) == [alice.id, alice.id]
        gen_one = await delivery_ledger.get_deliveries(db_session, request_id, generation=1)
        assert [(row.member_id, row.kind) for row in gen_one] == [(alice.id, KIND_SPARE_REQUEST)]

        clock.advance(180)
        await dispatcher.tick()
        assert sender.member_ids(KIND_SPARE_REQUEST) == [alice.id, alice.id, bob.id]

        report = await spare_service.get_notification_status_report(db_session, request_id)
        assert report["notification_generation"] == 1
        assert report["deliveries_sent"] == 2

    @pytest.mark.asyncio
    async def test_each_fill_and_cancellation_notifies_the_requester(
        self, db_session, league, make_member, clock, sender, supervisor
    ):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        for _ in range(2):
            await spare_service.respond_to_spare_request(
                db_session, request_id, alice.id, clock=clock, sender=sender, supervisor=supervisor
            )
            await supervisor.wait_idle(timeout=5)
            await spare_service.cancel_sparing(
                db_session, request_id, alice.id, "Sorry", clock=clock, sender=sender, supervisor=supervisor
            )
            await supervisor.wait_idle(timeout=5)

        assert sender.member_ids(KIND_SPARE_FILLED) == [requester.id, requester.id]
        assert sender.member_ids(KIND_SPARE_CANCELLATION) == [requester.id, requester.id]
        assert [call[2] for call in sender.calls if call[1] == requester.id] == [
            "spare_filled:1",
            "spare_cancellation:1",
            "spare_filled:2",
            "spare_cancellation:2",
        ]
        refreshed = await data_service.get_spare_request(db_session, request_id)
        assert refreshed.fill_count == 2

    @pytest.mark.asyncio
    async def test_failed_reissue_leaves_running_notifications_untouched(
        self, db_session, league, make_member, clock, sender
    ):
        requester = await make_member("Requester")
        await make_member("Alice")
        await make_member("Bob")
        requester_id = requester.id
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]
        assert result["notifications_queued"] == 2

        with pytest.raises(RuntimeError):
            await spare_service.reissue_spare_request(
                db_session, request_id, requester_id, message="New message",
                clock=clock, selector=FailingSelector(), shuffler=identity_shuffler, sender=sender,
            )

        refreshed = await data_service.get_spare_request(db_session, request_id)
        assert refreshed.notification_generation == 0
        assert refreshed.notification_status == NotificationStatus.IN_PROGRESS
        assert refreshed.message is None
        pending = await db_session.execute(
            select(func.count(NotificationQueueEntry.id)).where(
                NotificationQueueEntry.spare_request_id == request_id,
                NotificationQueueEntry.notified_at.is_(None),
            )
        )
        assert pending.scalar_one() == 2

    @pytest.mark.asyncio
    async def test_failed_candidate_selection_creates_nothing(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        await make_member("Alice")

        with pytest.raises(RuntimeError):
            await _create(db_session, requester, league, clock, sender, selector=FailingSelector())

        count = await db_session.execute(select(func.count(SpareRequest.id)))
        assert count.scalar_one() == 0

    @pytest.mark.asyncio
    async def test_cancel_sparing_validation(self, db_session, league, make_member, clock, sender, supervisor):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        bob = await make_member("Bob")
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        with pytest.raises(ConflictError):
            await spare_service.cancel_sparing(db_session, request_id, alice.id, "x", supervisor=supervisor)

        await spare_service.respond_to_spare_request(
            db_session, request_id, alice.id, clock=clock, sender=sender, supervisor=supervisor
        )
        with pytest.raises(ValidationError):
            await spare_service.cancel_sparing(db_session, request_id, alice.id, "   ", supervisor=supervisor)
        with pytest.raises(ForbiddenError):
            await spare_service.cancel_sparing(db_session, request_id, bob.id, "Not me", supervisor=supervisor)
        with pytest.raises(ConflictError):
            await spare_service.reissue_spare_request(db_session, request_id, requester.id, clock=clock)
        await supervisor.wait_idle(timeout=5)

    @pytest.mark.asyncio
    async def test_only_requester_can_reissue(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender)

        with pytest.raises(ForbiddenError):
            await spare_service.reissue_spare_request(db_session, result["spare_request_id"], alice.id, clock=clock)

    @pytest.mark.asyncio
    async def test_reissue_updates_message(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender, message="Lead needed")

        await spare_service.reissue_spare_request(
            db_session, result["spare_request_id"], requester.id, message="Any position",
            clock=clock, shuffler=identity_shuffler, sender=sender,
        )

        refreshed = await data_service.get_spare_request(db_session, result["spare_request_id"])
        assert refreshed.message == "Any position"
        assert refreshed.notification_generation == 1


class TestPauseAndCancel:
    @pytest.mark.asyncio
    async def test_pause_and_unpause_while_in_progress(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        requester_id, alice_id = requester.id, alice.id
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        with pytest.raises(ForbiddenError):
            await spare_service.pause_notifications(db_session, request_id, alice_id)

        # Unpausing a running request just makes the next send due now
        clock.advance(90)
        running = await spare_service.unpause_notifications(db_session, request_id, requester_id, clock=clock)
        assert running.notification_paused is False
        assert as_utc(running.next_notification_at) == clock.now()

        paused = await spare_service.pause_notifications(db_session, request_id, requester_id)
        assert paused.notification_paused is True
        assert paused.effective_notification_status == NotificationStatus.PAUSED
        again = await spare_service.pause_notifications(db_session, request_id, requester_id)
        assert again.notification_paused is True

        clock.advance(30)
        resumed = await spare_service.unpause_notifications(db_session, request_id, requester_id, clock=clock)
        assert resumed.notification_paused is False
        assert resumed.effective_notification_status == NotificationStatus.IN_PROGRESS
        assert as_utc(resumed.next_notification_at) == clock.now()

        await spare_service.cancel_spare_request(db_session, request_id, requester_id)
        with pytest.raises(ConflictError):
            await spare_service.pause_notifications(db_session, request_id, requester_id)
        with pytest.raises(ConflictError):
            await spare_service.unpause_notifications(db_session, request_id, requester_id, clock=clock)

    @pytest.mark.asyncio
    async def test_completed_run_cannot_be_paused(self, db_session, league, make_member, clock, sender):
        requester = await make_member("Requester")
        await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender, game=soon_game())

        with pytest.raises(ConflictError):
            await spare_service.pause_notifications(db_session, result["spare_request_id"], requester.id)

    @pytest.mark.asyncio
    async def test_cancel_is_terminal(self, db_session, league, make_member, clock, sender, supervisor):
        requester = await make_member("Requester")
        alice = await make_member("Alice")
        requester_id, alice_id = requester.id, alice.id
        result = await _create(db_session, requester, league, clock, sender)
        request_id = result["spare_request_id"]

        with pytest.raises(ForbiddenError):
            await spare_service.cancel_spare_request(db_session, request_id, alice_id)

        cancelled = await spare_service.cancel_spare_request(db_session, request_id, requester_id)
        assert cancelled.status == SpareRequestStatus.CANCELLED
        assert cancelled.cancelled_by_member_id == requester_id

        with pytest.raises(ConflictError):
            await spare_service.cancel_spare_request(db_session, request_id, requester_id)
        with pytest.raises(ConflictError):
            await spare_service.respond_to_spare_request(
                db_session, request_id, alice_id, clock=clock, sender=sender, supervisor=supervisor
            )
        assert sender.member_ids(KIND_SPARE_FILLED) == []

    @pytest.mark.asyncio
    async def test_cancelling_completed_request_keeps_completed_status(
        self, db_session, league, make_member, clock, sender
    ):
        requester = await make_member("Requester")
        await make_member("Alice")
        result = await _create(db_session, requester, league, clock, sender, game=soon_game())

        cancelled = await spare_service.cancel_spare_request(db_session, result["spare_request_id"], requester.id)
        assert cancelled.notification_status == NotificationStatus.COMPLETED
