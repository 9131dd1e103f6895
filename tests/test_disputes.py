"""
Tests for the dispute and evidence workflow, admin resolution and the deadline sweep.
"""
from datetime import timedelta

import pytest

from arena.config import Config
from arena.constants import DisputeConstants
from arena.database.models import MatchStatus, Side, TransactionType, NotificationKind, utc_now
from arena.operations.disputes import validate_link
from arena.utils.exceptions import (
    ValidationError, NotDisputable, NotInEvidencePhase, NotAwaitingAdmin, NotDismissable, NotAMember,
    DisputeAlreadyExists, NoDisputeFound, InvalidTransition
)

from conftest import STARTING_BALANCE, start_match

REASON = "Opponent disconnected and reported a win"
LINK = "https://youtu.be/clip-123"


@pytest.fixture
async def live_match(orchestrator, game, users):
    """An IN_PROGRESS SOLO match between users[0] (A) and users[1] (B) with a 50 wager."""
    return await start_match(orchestrator, game.id, [users[0]], [users[1]], wager=50)


class TestFileDispute:

    @pytest.mark.asyncio
    async def test_dispute_moves_match_to_disputed(self, orchestrator, disputes, live_match, users):
        before = utc_now()
        dispute = await disputes.file_dispute(live_match, users[1], REASON)

        assert dispute.initiator_id == users[1]
        window = timedelta(hours=Config.DISPUTE_WINDOW_HOURS)
        assert before + window <= dispute.deadline <= utc_now() + window
        assert dispute.evidence == []

        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.DISPUTED
        assert match.dispute.id == dispute.id

    @pytest.mark.asyncio
    async def test_second_dispute_rejected(self, disputes, live_match, users):
        """Should allow only one dispute per match"""
        await disputes.file_dispute(live_match, users[1], REASON)

        with pytest.raises(DisputeAlreadyExists):
            await disputes.file_dispute(live_match, users[0], "I won fair and square, see clip")

    @pytest.mark.asyncio
    async def test_initial_evidence_attached(self, orchestrator, disputes, live_match, users):
        dispute = await disputes.file_dispute(live_match, users[1], REASON, evidence_link=LINK)

        assert len(dispute.evidence) == 1
        assert dispute.evidence[0].submitted_link == LINK
        assert dispute.evidence[0].message == REASON

        match = await orchestrator.get_match(live_match)
        assert [e.user_id for e in match.dispute.evidence] == [users[1]]

    @pytest.mark.asyncio
    async def test_completed_match_records_dispute_without_transition(self, orchestrator, disputes,
                                                                      live_match, users):
        await orchestrator.report_result(live_match, users[0], Side.A)

        dispute = await disputes.file_dispute(live_match, users[1], REASON)

        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.COMPLETED
        assert match.dispute.id == dispute.id

    @pytest.mark.asyncio
    async def test_not_member(self, disputes, live_match, users):
        with pytest.raises(NotAMember):
            await disputes.file_dispute(live_match, users[4], REASON)

    @pytest.mark.asyncio
    async def test_not_disputable_before_start(self, orchestrator, disputes, game, users):
        match = await orchestrator.create_match(users[0], game.id, 10, "SOLO", "EU", "PC")
        with pytest.raises(NotDisputable):
            await disputes.file_dispute(match.id, users[0], REASON)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("reason,link", [
        ("too short", None),
        ("x" * 501, None),
        (REASON, "not a url"),
        (REASON, "ftp://files.example.com/clip"),
        (REASON, ""),
        (REASON, "https://clips.example.com/" + "a" * DisputeConstants.MAX_LINK_LENGTH),
    ])
    async def test_validation(self, orchestrator, disputes, live_match, users, reason, link):
        with pytest.raises(ValidationError):
            await disputes.file_dispute(live_match, users[1], reason, evidence_link=link)
        assert (await orchestrator.get_match(live_match)).status == MatchStatus.IN_PROGRESS


class TestEvidence:

    @pytest.mark.asyncio
    async def test_evidence_while_disputed_does_not_escalate(self, orchestrator, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.submit_evidence(live_match, users[0], LINK, "Here is my side of the story")

        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.DISPUTED
        assert len(match.dispute.evidence) == 1

    @pytest.mark.asyncio
    async def test_opponent_evidence_escalates_to_admin(self, orchestrator, disputes, bus, live_match, users):
        """Should move AWAITING_OPPONENT_EVIDENCE to admin review on the next submission"""
        await disputes.file_dispute(live_match, users[1], REASON, evidence_link=LINK)
        await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_OPPONENT_EVIDENCE)
        bus.drain()

        await disputes.submit_evidence(live_match, users[0], "https://twitch.tv/vod/9", "Full VOD of the match")

        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.AWAITING_ADMIN_REVIEW
        assert [e.user_id for e in match.dispute.evidence] == [users[1], users[0]]

        events = bus.drain()
        assert len(events) == 1
        assert events[0].kind == NotificationKind.DISPUTE_UPDATE
        assert events[0].metadata['status'] == MatchStatus.AWAITING_ADMIN_REVIEW.value

    @pytest.mark.asyncio
    async def test_evidence_under_admin_review_keeps_status(self, orchestrator, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.escalate_dispute(live_match, "AWAITING_ADMIN_REVIEW")
        await disputes.submit_evidence(live_match, users[1], LINK, "One more angle of the play")

        assert (await orchestrator.get_match(live_match)).status == MatchStatus.AWAITING_ADMIN_REVIEW

    @pytest.mark.asyncio
    async def test_not_in_evidence_phase(self, disputes, live_match, users):
        with pytest.raises(NotInEvidencePhase):
            await disputes.submit_evidence(live_match, users[0], LINK, "Evidence without a dispute")

    @pytest.mark.asyncio
    async def test_evidence_requires_membership(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        with pytest.raises(NotAMember):
            await disputes.submit_evidence(live_match, users[5], LINK, "I was watching the stream")

    @pytest.mark.asyncio
    async def test_evidence_validation(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        with pytest.raises(ValidationError):
            await disputes.submit_evidence(live_match, users[0], LINK, "short")
        with pytest.raises(ValidationError):
            await disputes.submit_evidence(live_match, users[0], "youtube", "A long enough message")


class TestEscalation:

    @pytest.mark.asyncio
    async def test_escalate_requires_dispute(self, disputes, live_match):
        with pytest.raises(NoDisputeFound):
            await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_ADMIN_REVIEW)

    @pytest.mark.asyncio
    async def test_escalate_rejects_other_targets(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        with pytest.raises(ValidationError):
            await disputes.escalate_dispute(live_match, MatchStatus.COMPLETED)

    @pytest.mark.asyncio
    async def test_escalate_follows_transition_table(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_ADMIN_REVIEW)

        with pytest.raises(InvalidTransition):
            await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_OPPONENT_EVIDENCE)


class TestResolution:

    @pytest.mark.asyncio
    async def test_resolve_with_winner_pays_out(self, db, ledger, orchestrator, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_ADMIN_REVIEW)

        resolution = await disputes.resolve_dispute(live_match, winning_team=Side.B, admin_user_id=users[7])

        assert resolution.status == MatchStatus.COMPLETED
        assert resolution.settlement.winnings == 90
        assert await ledger.get_balance(users[1]) == STARTING_BALANCE + 40
        assert await ledger.get_balance(db.treasury_id) == 10

        match = await orchestrator.get_match(live_match)
        assert match.winning_team == Side.B
        assert match.dispute.is_resolved
        assert match.dispute.resolution == "PAYOUT_B"
        assert match.dispute.resolved_by == users[7]

    @pytest.mark.asyncio
    async def test_resolve_without_winner_refunds(self, ledger, orchestrator, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_ADMIN_REVIEW)

        resolution = await disputes.resolve_dispute(live_match, admin_user_id=users[7])

        assert resolution.status == MatchStatus.REFUNDED
        assert resolution.refund.wagers_returned
        assert await ledger.get_balance(users[0]) == STARTING_BALANCE
        assert await ledger.get_balance(users[1]) == STARTING_BALANCE

        match = await orchestrator.get_match(live_match)
        assert match.winning_team is None
        assert match.dispute.resolution == "REFUNDED"
        refunds = [e for e in await ledger.get_entries_for_match(live_match) if e.type == TransactionType.REFUND]
        assert len(refunds) == 2

    @pytest.mark.asyncio
    async def test_resolve_requires_admin_review(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        with pytest.raises(NotAwaitingAdmin):
            await disputes.resolve_dispute(live_match, winning_team=Side.A)

    @pytest.mark.asyncio
    async def test_admin_refund_of_disputed_match_closes_dispute(self, orchestrator, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        await orchestrator.refund_match(live_match, "Both players cheated", admin_user_id=users[7])

        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.REFUNDED
        assert match.dispute.is_resolved

    @pytest.mark.asyncio
    async def test_dismiss_dispute_on_completed_match(self, db, ledger, orchestrator, disputes, bus,
                                                      live_match, users):
        """Should close a completed match's dispute without moving credits"""
        await orchestrator.report_result(live_match, users[0], Side.A)
        await disputes.file_dispute(live_match, users[1], REASON)
        treasury_before = await ledger.get_balance(db.treasury_id)
        bus.drain()

        dispute = await disputes.dismiss_dispute(live_match, admin_user_id=users[7])

        assert dispute.resolution == "DISMISSED"
        match = await orchestrator.get_match(live_match)
        assert match.status == MatchStatus.COMPLETED
        assert match.dispute.is_resolved
        assert match.dispute.resolved_by == users[7]
        assert await ledger.get_balance(users[0]) == STARTING_BALANCE + 40
        assert await ledger.get_balance(db.treasury_id) == treasury_before
        assert [e.kind for e in bus.drain()] == [NotificationKind.DISPUTE_UPDATE]

        with pytest.raises(NoDisputeFound):
            await disputes.dismiss_dispute(live_match, admin_user_id=users[7])

    @pytest.mark.asyncio
    async def test_dismiss_only_on_completed_match(self, disputes, live_match, users):
        await disputes.file_dispute(live_match, users[1], REASON)
        with pytest.raises(NotDismissable):
            await disputes.dismiss_dispute(live_match)


class TestDeadlineSweep:

    @pytest.mark.asyncio
    async def test_expired_disputes_go_to_admin_review(self, orchestrator, disputes, bus, live_match, users):
        dispute = await disputes.file_dispute(live_match, users[1], REASON)
        bus.drain()

        assert await disputes.sweep_expired_disputes(now=dispute.deadline - timedelta(minutes=1)) == []
        assert (await orchestrator.get_match(live_match)).status == MatchStatus.DISPUTED

        escalated = await disputes.sweep_expired_disputes(now=dispute.deadline + timedelta(minutes=1))

        assert escalated == [live_match]
        assert (await orchestrator.get_match(live_match)).status == MatchStatus.AWAITING_ADMIN_REVIEW
        assert [e.kind for e in bus.drain()] == [NotificationKind.DISPUTE_UPDATE]

        assert await disputes.sweep_expired_disputes(now=dispute.deadline + timedelta(hours=1)) == []

    @pytest.mark.asyncio
    async def test_awaiting_opponent_is_swept(self, orchestrator, disputes, live_match, users):
        dispute = await disputes.file_dispute(live_match, users[1], REASON)
        await disputes.escalate_dispute(live_match, MatchStatus.AWAITING_OPPONENT_EVIDENCE)

        assert await disputes.sweep_expired_disputes(now=dispute.deadline) == [live_match]

    @pytest.mark.asyncio
    async def test_completed_match_dispute_not_swept(self, orchestrator, disputes, live_match, users):
        await orchestrator.report_result(live_match, users[0], Side.A)
        dispute = await disputes.file_dispute(live_match, users[1], REASON)

        assert await disputes.sweep_expired_disputes(now=dispute.deadline + timedelta(days=1)) == []
        assert (await orchestrator.get_match(live_match)).status == MatchStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_sweep(self, orchestrator, disputes, game, users, monkeypatch):
        first = await start_match(orchestrator, game.id, [users[0]], [users[1]])
        second = await start_match(orchestrator, game.id, [users[2]], [users[3]])
        first_dispute = await disputes.file_dispute(first, users[0], REASON)
        await disputes.file_dispute(second, users[2], REASON)

        real_lock = orchestrator.lock_match

        async def flaky_lock(session, match_id):
            if match_id == first:
                raise RuntimeError("lock timeout")
            return await real_lock(session, match_id)

        monkeypatch.setattr(orchestrator, "lock_match", flaky_lock)

        escalated = await disputes.sweep_expired_disputes(now=first_dispute.deadline + timedelta(hours=1))

        assert escalated == [second]
        monkeypatch.undo()
        assert (await orchestrator.get_match(first)).status == MatchStatus.DISPUTED


class TestLinkValidation:

    def test_link_at_column_limit_is_accepted(self):
        prefix = "https://clips.example.com/"
        link = prefix + "a" * (DisputeConstants.MAX_LINK_LENGTH - len(prefix))
        assert validate_link(link) == link

    def test_link_over_column_limit_is_rejected(self):
        prefix = "https://clips.example.com/"
        with pytest.raises(ValidationError):
            validate_link(prefix + "a" * (DisputeConstants.MAX_LINK_LENGTH - len(prefix) + 1))
