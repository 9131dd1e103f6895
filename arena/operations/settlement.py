"""
Settlement Orchestrator

Drives a match from lobby formation through wager collection, result
reporting, payout and refund. Every operation runs as one guarded atomic
unit: the match row is locked, the state machine guard is checked, ledger
movements and the status change are written, and the unit commits or rolls
back as a whole. Notifications are published only after the commit.

Ordering rules:
- Start of match: wagers are batch-debited before OPEN -> IN_PROGRESS. A
  participant short of funds leaves the match OPEN with no debit.
- Result: winnings are distributed before IN_PROGRESS -> COMPLETED. A failed
  distribution rolls the unit back and the match stays IN_PROGRESS.
- Rating updates run after the payout inside a savepoint; their failure is
  logged and never undoes the payout.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from arena.config import Config
from arena.database.models import (
    Match, MatchPlayer, MatchStatus, User, Game, Team, Dispute,
    Side, TeamSize, ServerRegion, Platform,
    TransactionType, NotificationKind, utc_now
)
from arena.operations.ledger import (
    Ledger, WagerMetadata, WinMetadata, PlatformFeeMetadata, RefundMetadata
)
from arena.operations.match_state import (
    MatchStateRules, validate_transition, get_valid_next_states
)
from arena.operations.rating import RatingEngine, RatingOutcome
from arena.services.notifications import NotificationBus, NotificationEvent
from arena.utils.exceptions import (
    ValidationError, MatchNotFound, UserNotFound, NotJoinable, NotLeavable,
    NotReadyable, NotReportable, NotRefundable, NotAMember, AlreadyMember,
    TeamFull, InsufficientFunds, SettlementFailed
)
from arena.utils.elo import EloCalculator
from arena.utils.logger import setup_logger
from arena.utils.rounding import round_half_up

logger = setup_logger(__name__)


# ============================================================================
# Input coercion
# ============================================================================

def coerce_enum(enum_cls, value, label: str):
    """Accept an enum member or its value, raising ValidationError otherwise"""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except (ValueError, TypeError):
        raise ValidationError(f"Invalid {label}: {value!r}") from None


def _validate_non_negative_int(value, label: str, allow_none: bool = False) -> None:
    if value is None and allow_none:
        return
    if not isinstance(value, int) or isinstance(value, bool) or value < 0:
        raise ValidationError(f"{label} must be a non-negative integer, got {value!r}")


# ============================================================================
# Winnings distribution
# ============================================================================

@dataclass
class WinningsDistribution:
    total_pot: int
    platform_fee: int
    total_winnings: int
    per_winner: int
    winner_ids: List[int] = field(default_factory=list)
    transaction_ids: List[int] = field(default_factory=list)

    @property
    def total_distributed(self) -> int:
        return self.per_winner * len(self.winner_ids)

    @property
    def remainder(self) -> int:
        """Floor-division leftover retained by the platform"""
        return self.total_winnings - self.total_distributed


def calculate_distribution(wager: int, player_count: int, winner_count: int,
                           fee_percentage: Optional[float] = None) -> WinningsDistribution:
    """
    Split a match pot between the winning players.

    totalPot = wager * playerCount, the platform fee is rounded half-up, and each
    winner receives floor(totalWinnings / winnerCount). The floor remainder is
    not redistributed.
    """
    if winner_count <= 0:
        raise ValidationError("A distribution needs at least one winner")
    if player_count < winner_count:
        raise ValidationError("Winner count cannot exceed player count")

    fee_percentage = Config.PLATFORM_FEE_PERCENTAGE if fee_percentage is None else fee_percentage
    total_pot = wager * player_count
    platform_fee = round_half_up(total_pot * fee_percentage)
    total_winnings = total_pot - platform_fee

    return WinningsDistribution(
        total_pot=total_pot,
        platform_fee=platform_fee,
        total_winnings=total_winnings,
        per_winner=total_winnings // winner_count,
    )


# ============================================================================
# Operation results
# ============================================================================

@dataclass
class ReadyResult:
    match_id: int
    user_id: int
    ready: bool
    started: bool = False


@dataclass
class SettlementResult:
    match_id: int
    winning_team: Side
    distribution: WinningsDistribution
    rating: Optional[RatingOutcome] = None

    @property
    def winnings(self) -> int:
        return self.distribution.total_distributed

    @property
    def rating_updated(self) -> bool:
        return self.rating is not None


@dataclass
class RefundResult:
    match_id: int
    user_ids: List[int]
    amount_per_user: int
    wagers_returned: bool
    transaction_ids: List[int] = field(default_factory=list)


class SettlementOrchestrator:
    """
    Sequences match operations over the Ledger and Rating Engine.

    Match status and user balances are only mutated through this class and
    the dispute workflow, which reuses its locked helpers.
    """

    def __init__(self, db, ledger: Optional[Ledger] = None, rating_engine: Optional[RatingEngine] = None,
                 bus: Optional[NotificationBus] = None, fee_percentage: Optional[float] = None):
        self.db = db
        self.ledger = ledger or Ledger(db)
        self.rating_engine = rating_engine or RatingEngine(db)
        self.bus = bus
        self.fee_percentage = Config.PLATFORM_FEE_PERCENTAGE if fee_percentage is None else fee_percentage
        self.logger = logger

    # ============================================================================
    # Locking and notification helpers
    # ============================================================================

    async def lock_match(self, session: AsyncSession, match_id: int) -> Match:
        """
        Take the match write lock and load it with players and dispute.

        The lock_version bump is the first write of the unit, so concurrent
        guarded sequences on the same match serialize here on every backend.
        """
        bumped = await session.execute(
            update(Match)
            .where(Match.id == match_id)
            .values(lock_version=Match.lock_version + 1)
            .execution_options(synchronize_session=False)
        )
        if bumped.rowcount == 0:
            raise MatchNotFound(match_id)

        result = await session.execute(
            select(Match)
            .options(
                selectinload(Match.game),
                selectinload(Match.players),
                selectinload(Match.dispute).selectinload(Dispute.evidence)
            )
            .where(Match.id == match_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    @staticmethod
    def require_member(match: Match, user_id: int) -> MatchPlayer:
        player = match.get_player(user_id)
        if player is None:
            raise NotAMember(match.id, user_id)
        return player

    @staticmethod
    def make_event(kind: NotificationKind, match: Match, message: str, **metadata) -> NotificationEvent:
        return NotificationEvent(
            kind=kind,
            user_ids=tuple(p.user_id for p in match.players),
            message=message,
            metadata={'match_id': match.id, **metadata},
        )

    def publish(self, *events: Optional[NotificationEvent]) -> None:
        """Hand committed events to the notification bus"""
        if self.bus is None:
            return
        for event in events:
            if event is not None:
                self.bus.publish(event)

    @staticmethod
    def _game_name(match: Match) -> str:
        return match.game.name if match.game else f"game {match.game_id}"

    # ============================================================================
    # Lobby operations
    # ============================================================================

    async def create_match(self, creator_id: int, game_id: int, wager: int, team_size, region, platform,
                           team_a_id: Optional[int] = None, team_b_id: Optional[int] = None) -> Match:
        """Create a match in LOBBY with the creator seated on side A"""
        _validate_non_negative_int(wager, "Wager")
        team_size = coerce_enum(TeamSize, team_size, "team size")
        region = coerce_enum(ServerRegion, region, "region")
        platform = coerce_enum(Platform, platform, "platform")
        if team_a_id is not None and team_a_id == team_b_id:
            raise ValidationError("A team cannot play against itself")

        async with self.db.transaction() as session:
            creator = await session.get(User, creator_id)
            if creator is None:
                raise UserNotFound(creator_id)
            if creator.is_system:
                raise ValidationError("System accounts cannot create matches")

            game = await session.get(Game, game_id)
            if game is None or not game.is_active:
                raise ValidationError(f"Game {game_id} not found", "Game not found")

            for team_id in (team_a_id, team_b_id):
                if team_id is not None and await session.get(Team, team_id) is None:
                    raise ValidationError(f"Team {team_id} not found", "Team not found")

            match = Match(
                game_id=game_id,
                wager=wager,
                team_size=team_size,
                region=region,
                platform=platform,
                status=MatchStatus.LOBBY,
                team_a_id=team_a_id,
                team_b_id=team_b_id,
                created_by=creator_id,
                lock_version=0,
            )
            session.add(match)
            await session.flush()

            session.add(MatchPlayer(match_id=match.id, user_id=creator_id, team=Side.A, is_ready=False))
            await session.flush()
            match_id = match.id

        self.logger.info(
            f"User {creator_id} created match {match_id} ({team_size.value}, wager {wager}, game {game_id})"
        )
        return await self.get_match(match_id)

    async def join_match(self, match_id: int, user_id: int, team) -> MatchPlayer:
        """
        Seat a user on one side of a match.

        Any successful join moves a LOBBY match to OPEN. The balance check here
        is advisory; wagers are only taken when the match starts.
        """
        team = coerce_enum(Side, team, "team")

        async with self.db.transaction() as session:
            match = await self.lock_match(session, match_id)

            if not MatchStateRules.can_join(match.status):
                raise NotJoinable(match.status, get_valid_next_states(match.status), match_id)
            if match.get_player(user_id) is not None:
                raise AlreadyMember(match_id, user_id)

            capacity = match.team_size.max_players
            if len(match.players_on(team)) >= capacity:
                raise TeamFull(match_id, team.value, capacity)

            user = await session.get(User, user_id)
            if user is None:
                raise UserNotFound(user_id)
            if user.is_system:
                raise ValidationError("System accounts cannot join matches")
            if user.credits < match.wager:
                raise InsufficientFunds(user_id, match.wager, user.credits)

            player = MatchPlayer(match_id=match.id, user_id=user_id, team=team, is_ready=False)
            session.add(player)

            if match.status == MatchStatus.LOBBY:
                validate_transition(match.status, MatchStatus.OPEN, match_id)
                match.status = MatchStatus.OPEN

            await session.flush()

        self.logger.info(f"User {user_id} joined match {match_id} on team {team.value}")
        return player

    async def leave_match(self, match_id: int, user_id: int) -> None:
        """Remove a membership before the match starts; an OPEN match returns to LOBBY"""
        async with self.db.transaction() as session:
            match = await self.lock_match(session, match_id)

            if not MatchStateRules.can_join(match.status):
                raise NotLeavable(match.status, get_valid_next_states(match.status), match_id)
            player = self.require_member(match, user_id)

            match.players.remove(player)
            if match.status == MatchStatus.OPEN:
                validate_transition(match.status, MatchStatus.LOBBY, match_id)
                match.status = MatchStatus.LOBBY

            await session.flush()

        self.logger.info(f"User {user_id} left match {match_id}")

    # ============================================================================
    # Start of match
    # ============================================================================

    async def set_ready(self, match_id: int, user_id: int, ready: bool) -> ReadyResult:
        """
        Record a player's ready flag and start the match once everyone is ready.

        If collecting wagers fails, InsufficientFunds is raised and the whole
        unit rolls back: the ready flag is not saved, the match stays OPEN and
        no wager is taken.
        """
        if not isinstance(ready, bool):
            raise ValidationError(f"Ready flag must be a boolean, got {ready!r}")

        result = ReadyResult(match_id=match_id, user_id=user_id, ready=ready)
        event = None

        async with self.db.transaction() as session:
            match = await self.lock_match(session, match_id)

            if not MatchStateRules.can_ready(match.status):
                raise NotReadyable(match.status, get_valid_next_states(match.status), match_id)
            player = self.require_member(match, user_id)
            player.is_ready = ready

            if match.all_ready() and match.both_sides_full():
                batch = await self.ledger.batch_debit(
                    [p.user_id for p in match.players], match.wager,
                    TransactionType.WAGER_DEBIT, WagerMetadata(match_id=match.id),
                    session=session
                )
                if batch.success:
                    validate_transition(match.status, MatchStatus.IN_PROGRESS, match_id)
                    match.status = MatchStatus.IN_PROGRESS
                    match.started_at = utc_now()
                    result.started = True
                    event = self.make_event(
                        NotificationKind.MATCH_STARTED, match,
                        f"A {self._game_name(match)} match is starting",
                        wager=match.wager
                    )
                else:
                    self.logger.info(f"Match {match_id} could not start: {batch.error}")
                    raise batch.error

            await session.flush()

        if result.started:
            self.logger.info(f"Match {match_id} started, collected {match.wager} from {match.player_count} players")
        self.publish(event)
        return result

    # ============================================================================
    # Result and payout
    # ============================================================================

    async def distribute_winnings(self, session: AsyncSession, match: Match,
                                  winning_team: Side) -> WinningsDistribution:
        """
        Credit each winner their share and the treasury the platform fee.

        Runs inside the caller's locked unit. Raises SettlementFailed on any
        ledger failure so the unit rolls back.
        """
        winner_ids = [p.user_id for p in match.players_on(winning_team)]
        if not winner_ids:
            raise SettlementFailed(match.id, "distribute_winnings", f"no players on team {winning_team.value}")

        distribution = calculate_distribution(
            match.wager, match.player_count, len(winner_ids), self.fee_percentage
        )

        batch = await self.ledger.batch_credit(
            winner_ids, distribution.per_winner, TransactionType.MATCH_WIN,
            WinMetadata(
                match_id=match.id,
                winning_team=winning_team.value,
                total_pot=distribution.total_pot,
                platform_fee=distribution.platform_fee,
            ),
            session=session
        )
        if not batch.success:
            raise SettlementFailed(match.id, "distribute_winnings", str(batch.error))

        fee = await self.ledger.credit(
            self.db.treasury_id, distribution.platform_fee, TransactionType.PLATFORM_FEE,
            PlatformFeeMetadata(
                match_id=match.id,
                fee_percentage=self.fee_percentage,
                total_pot=distribution.total_pot,
            ),
            session=session
        )
        if not fee.success:
            raise SettlementFailed(match.id, "platform_fee", str(fee.error))

        distribution.winner_ids = winner_ids
        distribution.transaction_ids = list(batch.transaction_ids) + [fee.transaction_id]

        self.logger.info(
            f"Match {match.id}: pot {distribution.total_pot}, fee {distribution.platform_fee}, "
            f"{distribution.per_winner} to each of {len(winner_ids)} winners"
        )
        return distribution

    async def _update_ratings(self, session: AsyncSession, match: Match,
                              winning_team: Side) -> Optional[RatingOutcome]:
        try:
            async with session.begin_nested():
                return await self.rating_engine.apply_match_outcome(match.id, winning_team, session=session)
        except Exception as e:
            self.logger.error(f"Rating update failed for match {match.id}: {e}", exc_info=True)
            return None

    async def apply_result(self, session: AsyncSession, match: Match, winning_team: Side,
                           team_a_score: Optional[int] = None,
                           team_b_score: Optional[int] = None) -> SettlementResult:
        """Pay out, update ratings, then mark the locked match COMPLETED"""
        validate_transition(match.status, MatchStatus.COMPLETED, match.id)

        distribution = await self.distribute_winnings(session, match, winning_team)
        rating = await self._update_ratings(session, match, winning_team)

        match.status = MatchStatus.COMPLETED
        match.winning_team = winning_team
        match.team_a_score = team_a_score
        match.team_b_score = team_b_score
        match.completed_at = utc_now()
        await session.flush()

        return SettlementResult(
            match_id=match.id, winning_team=winning_team, distribution=distribution, rating=rating
        )

    def result_event(self, match: Match, result: SettlementResult) -> NotificationEvent:
        elo_changes = {}
        if result.rating is not None:
            for update in result.rating.side_a_updates + result.rating.side_b_updates:
                elo_changes[str(update.user_id)] = EloCalculator.format_elo_change(update.change)
        return self.make_event(
            NotificationKind.MATCH_RESULT, match,
            f"Match completed! Team {result.winning_team.value} won the {self._game_name(match)} match",
            winning_team=result.winning_team.value,
            per_winner=result.distribution.per_winner,
            elo_changes=elo_changes,
        )

    async def report_result(self, match_id: int, user_id: int, winning_team,
                            team_a_score: Optional[int] = None,
                            team_b_score: Optional[int] = None) -> SettlementResult:
        """
        Settle an in-progress match.

        Raises SettlementFailed if the payout cannot be written; the match then
        remains IN_PROGRESS and the report can be retried.
        """
        winning_team = coerce_enum(Side, winning_team, "winning team")
        _validate_non_negative_int(team_a_score, "Team A score", allow_none=True)
        _validate_non_negative_int(team_b_score, "Team B score", allow_none=True)

        try:
            async with self.db.transaction() as session:
                match = await self.lock_match(session, match_id)

                if not MatchStateRules.can_report_result(match.status):
                    raise NotReportable(match.status, get_valid_next_states(match.status), match_id)
                self.require_member(match, user_id)

                result = await self.apply_result(session, match, winning_team, team_a_score, team_b_score)
                event = self.result_event(match, result)
        except SettlementFailed as e:
            self.logger.error(f"Settlement of match {match_id} rolled back: {e}")
            raise

        self.logger.info(f"User {user_id} reported match {match_id}: team {winning_team.value} won")
        self.publish(event)
        return result

    # ============================================================================
    # Refunds
    # ============================================================================

    @staticmethod
    def close_dispute(match: Match, resolution: str, admin_user_id: Optional[int] = None) -> None:
        dispute = match.dispute
        if dispute is not None and not dispute.is_resolved:
            dispute.resolved_at = utc_now()
            dispute.resolution = resolution
            dispute.resolved_by = admin_user_id

    async def apply_refund(self, session: AsyncSession, match: Match, reason: str,
                           admin_user_id: Optional[int] = None) -> RefundResult:
        """Return collected wagers and mark the locked match REFUNDED"""
        validate_transition(match.status, MatchStatus.REFUNDED, match.id)

        user_ids = [p.user_id for p in match.players]
        result = RefundResult(
            match_id=match.id,
            user_ids=user_ids,
            amount_per_user=match.wager,
            wagers_returned=MatchStateRules.wagers_collected(match.status),
        )

        if result.wagers_returned and user_ids:
            batch = await self.ledger.batch_credit(
                user_ids, match.wager, TransactionType.REFUND,
                RefundMetadata(match_id=match.id, reason=reason),
                session=session
            )
            if not batch.success:
                raise SettlementFailed(match.id, "refund", str(batch.error))
            result.transaction_ids = list(batch.transaction_ids)

        match.status = MatchStatus.REFUNDED
        match.completed_at = utc_now()
        self.close_dispute(match, "REFUNDED", admin_user_id)
        await session.flush()

        self.logger.info(
            f"Refunded match {match.id} ({reason}): "
            f"{match.wager if result.wagers_returned else 0} to each of {len(user_ids)} players"
        )
        return result

    def refund_event(self, match: Match, reason: str) -> NotificationEvent:
        return self.make_event(
            NotificationKind.MATCH_REFUNDED, match,
            f"Your {self._game_name(match)} match was refunded",
            reason=reason,
        )

    async def refund_match(self, match_id: int, reason: str,
                           admin_user_id: Optional[int] = None) -> RefundResult:
        """Administrative refund, legal from any non-terminal status"""
        if not isinstance(reason, str) or not reason.strip():
            raise ValidationError("A refund reason is required")

        async with self.db.transaction() as session:
            match = await self.lock_match(session, match_id)

            if not MatchStateRules.can_refund(match.status):
                raise NotRefundable(match.status, get_valid_next_states(match.status), match_id)

            result = await self.apply_refund(session, match, reason, admin_user_id)
            event = self.refund_event(match, reason)

        self.publish(event)
        return result

    # ============================================================================
    # Reads
    # ============================================================================

    async def get_match(self, match_id: int) -> Match:
        match = await self.db.get_match(match_id)
        if match is None:
            raise MatchNotFound(match_id)
        return match

    async def list_matches(self, game_id: Optional[int] = None, status=None, region=None,
                           platform=None, team_size=None, min_wager: Optional[int] = None,
                           max_wager: Optional[int] = None, limit: int = 20,
                           offset: int = 0) -> Sequence[Match]:
        """List matches matching the given filters, newest first"""
        query = select(Match).options(selectinload(Match.game), selectinload(Match.players))

        if game_id is not None:
            query = query.where(Match.game_id == game_id)
        if status is not None:
            query = query.where(Match.status == coerce_enum(MatchStatus, status, "status"))
        if region is not None:
            query = query.where(Match.region == coerce_enum(ServerRegion, region, "region"))
        if platform is not None:
            query = query.where(Match.platform == coerce_enum(Platform, platform, "platform"))
        if team_size is not None:
            query = query.where(Match.team_size == coerce_enum(TeamSize, team_size, "team size"))
        if min_wager is not None:
            query = query.where(Match.wager >= min_wager)
        if max_wager is not None:
            query = query.where(Match.wager <= max_wager)

        async with self.db.get_session() as session:
            result = await session.execute(
                query.order_by(Match.created_at.desc(), Match.id.desc()).limit(limit).offset(offset)
            )
            return list(result.scalars().all())
