"""
Dispute and evidence workflow.

A dispute is filed against an IN_PROGRESS (or already COMPLETED) match and
opens a fixed evidence window. Evidence can be added while the match sits in
any dispute state; the first submission made while the match awaits the
opponent's evidence moves it on to admin review. Admins escalate, pay out, or
refund disputed matches, and a periodic sweep moves matches whose evidence
window has closed to admin review.

All status changes go through the settlement orchestrator's lock and locked
helpers, so payouts and refunds made here follow the same ledger rules as the
normal settlement path.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import urlparse

from sqlalchemy import select

from arena.config import Config
from arena.constants import DisputeConstants
from arena.database.models import (
    Match, MatchStatus, Dispute, DisputeEvidence, Side, NotificationKind, utc_now
)
from arena.operations.match_state import (
    MatchStateRules, validate_transition, get_valid_next_states, get_status_description
)
from arena.operations.settlement import (
    SettlementOrchestrator, SettlementResult, RefundResult, coerce_enum
)
from arena.services.notifications import NotificationBus
from arena.utils.exceptions import (
    ValidationError, NotDisputable, NotInEvidencePhase, NotAwaitingAdmin, NotDismissable,
    DisputeAlreadyExists, NoDisputeFound
)
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

ESCALATION_TARGETS = (MatchStatus.AWAITING_OPPONENT_EVIDENCE, MatchStatus.AWAITING_ADMIN_REVIEW)
SWEEPABLE_STATES = (MatchStatus.DISPUTED, MatchStatus.AWAITING_OPPONENT_EVIDENCE)


def validate_message(value, label: str) -> str:
    if not isinstance(value, str):
        raise ValidationError(f"{label} is required")
    value = value.strip()
    if not DisputeConstants.MIN_MESSAGE_LENGTH <= len(value) <= DisputeConstants.MAX_MESSAGE_LENGTH:
        raise ValidationError(
            f"{label} must be between {DisputeConstants.MIN_MESSAGE_LENGTH} and "
            f"{DisputeConstants.MAX_MESSAGE_LENGTH} characters"
        )
    return value


def validate_link(link) -> str:
    """Evidence links must be absolute http(s) URLs"""
    if not isinstance(link, str) or not link.strip():
        raise ValidationError("An evidence link is required")
    link = link.strip()
    parsed = urlparse(link)
    if parsed.scheme not in DisputeConstants.ALLOWED_LINK_SCHEMES or not parsed.netloc:
        raise ValidationError(f"Invalid evidence link: {link}", "Evidence link must be a valid URL")
    if len(link) > DisputeConstants.MAX_LINK_LENGTH:
        raise ValidationError("Evidence link is too long")
    return link


@dataclass
class DisputeResolution:
    match_id: int
    status: MatchStatus
    settlement: Optional[SettlementResult] = None
    refund: Optional[RefundResult] = None


class DisputeWorkflow:
    """Files disputes, records evidence, and drives admin resolution"""

    def __init__(self, db, orchestrator: Optional[SettlementOrchestrator] = None,
                 bus: Optional[NotificationBus] = None):
        self.db = db
        self.orchestrator = orchestrator or SettlementOrchestrator(db, bus=bus)
        self.logger = logger

    def _dispute_event(self, match: Match, message: str):
        return self.orchestrator.make_event(
            NotificationKind.DISPUTE_UPDATE, match, message, status=match.status.value
        )

    async def file_dispute(self, match_id: int, user_id: int, reason: str,
                           evidence_link: Optional[str] = None) -> Dispute:
        """
        Open a dispute with a deadline DISPUTE_WINDOW_HOURS from now.

        An IN_PROGRESS match moves to DISPUTED. A COMPLETED match is terminal
        and keeps its status: the dispute is recorded for admin visibility, takes
        no evidence, is not swept, and is closed with dismiss_dispute.
        """
        reason = validate_message(reason, "Dispute reason")
        if evidence_link is not None:
            evidence_link = validate_link(evidence_link)

        async with self.db.transaction() as session:
            match = await self.orchestrator.lock_match(session, match_id)

            if not MatchStateRules.can_dispute(match.status):
                if match.dispute is not None:
                    raise DisputeAlreadyExists(match_id)
                raise NotDisputable(match.status, get_valid_next_states(match.status), match_id)
            self.orchestrator.require_member(match, user_id)
            if match.dispute is not None:
                raise DisputeAlreadyExists(match_id)

            dispute = Dispute(
                initiator_id=user_id,
                reason=reason,
                deadline=utc_now() + timedelta(hours=Config.DISPUTE_WINDOW_HOURS),
                evidence=[],
            )
            if evidence_link is not None:
                dispute.evidence.append(
                    DisputeEvidence(user_id=user_id, submitted_link=evidence_link, message=reason)
                )
            match.dispute = dispute

            if match.status != MatchStatus.COMPLETED:
                validate_transition(match.status, MatchStatus.DISPUTED, match_id)
                match.status = MatchStatus.DISPUTED

            await session.flush()
            event = self._dispute_event(match, "A dispute has been filed for this match")

        self.logger.info(f"User {user_id} filed a dispute on match {match_id}, deadline {dispute.deadline}")
        self.orchestrator.publish(event)
        return dispute

    async def submit_evidence(self, match_id: int, user_id: int, link: str, message: str) -> DisputeEvidence:
        """Append evidence to the match's dispute"""
        link = validate_link(link)
        message = validate_message(message, "Evidence message")
        event = None

        async with self.db.transaction() as session:
            match = await self.orchestrator.lock_match(session, match_id)

            if not MatchStateRules.can_submit_evidence(match.status):
                raise NotInEvidencePhase(match.status, get_valid_next_states(match.status), match_id)
            self.orchestrator.require_member(match, user_id)
            dispute = match.dispute
            if dispute is None:
                raise NoDisputeFound(match_id)

            evidence = DisputeEvidence(user_id=user_id, submitted_link=link, message=message)
            dispute.evidence.append(evidence)

            # Only the opponent's response escalates; plain DISPUTED waits for an admin
            if match.status == MatchStatus.AWAITING_OPPONENT_EVIDENCE:
                validate_transition(match.status, MatchStatus.AWAITING_ADMIN_REVIEW, match_id)
                match.status = MatchStatus.AWAITING_ADMIN_REVIEW
                event = self._dispute_event(
                    match, "Both parties have submitted evidence. Admin review pending."
                )

            await session.flush()

        self.logger.info(f"User {user_id} submitted evidence for match {match_id}")
        self.orchestrator.publish(event)
        return evidence

    # ============================================================================
    # Admin paths
    # ============================================================================

    async def escalate_dispute(self, match_id: int, to_status, admin_user_id: Optional[int] = None) -> Match:
        """Move a disputed match to awaiting opponent evidence or admin review"""
        to_status = coerce_enum(MatchStatus, to_status, "status")
        if to_status not in ESCALATION_TARGETS:
            raise ValidationError(f"Disputes cannot be escalated to {to_status.value}")

        async with self.db.transaction() as session:
            match = await self.orchestrator.lock_match(session, match_id)
            if match.dispute is None:
                raise NoDisputeFound(match_id)

            validate_transition(match.status, to_status, match_id)
            match.status = to_status
            await session.flush()
            event = self._dispute_event(match, get_status_description(to_status))

        self.logger.info(f"Admin {admin_user_id} escalated match {match_id} to {to_status.value}")
        self.orchestrator.publish(event)
        return match

    async def resolve_dispute(self, match_id: int, winning_team=None, admin_user_id: Optional[int] = None,
                              reason: Optional[str] = None) -> DisputeResolution:
        """
        Close a dispute under admin review.

        With a winning team the pot is distributed exactly as a reported result
        would be; without one, every player's wager is refunded.
        """
        if winning_team is not None:
            winning_team = coerce_enum(Side, winning_team, "winning team")

        async with self.db.transaction() as session:
            match = await self.orchestrator.lock_match(session, match_id)

            if not MatchStateRules.requires_admin_action(match.status):
                raise NotAwaitingAdmin(match.status, get_valid_next_states(match.status), match_id)
            if match.dispute is None:
                raise NoDisputeFound(match_id)

            resolution = DisputeResolution(match_id=match_id, status=match.status)
            if winning_team is not None:
                resolution.settlement = await self.orchestrator.apply_result(session, match, winning_team)
                self.orchestrator.close_dispute(match, f"PAYOUT_{winning_team.value}", admin_user_id)
                event = self.orchestrator.result_event(match, resolution.settlement)
            else:
                reason = reason or "Dispute resolved without a winner"
                resolution.refund = await self.orchestrator.apply_refund(session, match, reason, admin_user_id)
                event = self.orchestrator.refund_event(match, reason)

            resolution.status = match.status
            await session.flush()

        self.logger.info(
            f"Admin {admin_user_id} resolved dispute on match {match_id}: {resolution.status.value}"
        )
        self.orchestrator.publish(event)
        return resolution

    async def dismiss_dispute(self, match_id: int, admin_user_id: Optional[int] = None,
                              reason: Optional[str] = None) -> Dispute:
        """Close an open dispute on a COMPLETED match without moving credits"""
        async with self.db.transaction() as session:
            match = await self.orchestrator.lock_match(session, match_id)

            if match.status != MatchStatus.COMPLETED:
                raise NotDismissable(match.status, get_valid_next_states(match.status), match_id)
            dispute = match.dispute
            if dispute is None or dispute.is_resolved:
                raise NoDisputeFound(match_id)

            self.orchestrator.close_dispute(match, "DISMISSED", admin_user_id)
            await session.flush()
            event = self._dispute_event(match, reason or "The dispute on this completed match was dismissed")

        self.logger.info(f"Admin {admin_user_id} dismissed dispute on completed match {match_id}")
        self.orchestrator.publish(event)
        return dispute

    # ============================================================================
    # Deadline enforcement
    # ============================================================================

    async def get_expired_dispute_match_ids(self, now: Optional[datetime] = None) -> List[int]:
        now = now or utc_now()
        async with self.db.get_session() as session:
            result = await session.execute(
                select(Dispute.match_id)
                .join(Match, Match.id == Dispute.match_id)
                .where(
                    Dispute.resolved_at.is_(None),
                    Dispute.deadline <= now,
                    Match.status.in_(SWEEPABLE_STATES)
                )
                .order_by(Dispute.deadline)
            )
            return list(result.scalars().all())

    async def sweep_expired_disputes(self, now: Optional[datetime] = None) -> List[int]:
        """
        Force matches whose evidence window has closed into admin review.

        Each match is escalated in its own atomic unit; a failure on one match
        is logged and the sweep continues.
        """
        now = now or utc_now()
        escalated = []

        for match_id in await self.get_expired_dispute_match_ids(now):
            try:
                async with self.db.transaction() as session:
                    match = await self.orchestrator.lock_match(session, match_id)

                    # Re-check under the lock; the match may have moved since the scan
                    if match.status not in SWEEPABLE_STATES or match.dispute is None \
                            or not match.dispute.is_expired(now):
                        continue

                    validate_transition(match.status, MatchStatus.AWAITING_ADMIN_REVIEW, match_id)
                    match.status = MatchStatus.AWAITING_ADMIN_REVIEW
                    await session.flush()
                    event = self._dispute_event(
                        match, "The evidence window has closed. Admin review pending."
                    )
            except Exception as e:
                self.logger.error(f"Failed to escalate expired dispute on match {match_id}: {e}", exc_info=True)
                continue

            escalated.append(match_id)
            self.orchestrator.publish(event)

        if escalated:
            self.logger.info(f"Escalated {len(escalated)} expired disputes to admin review")
        return escalated
