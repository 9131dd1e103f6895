"""
Rating engine persistence.

Applies the outcome of a completed match to per-game player ratings and, for
team-vs-team matches, to team ratings and win/loss records. The math lives in
arena.utils.elo.EloCalculator; this module only reads and writes ratings.

The settlement orchestrator treats this step as best-effort: it runs in a
savepoint after the payout, and its failure never rolls back settlement.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from arena.config import Config
from arena.constants import LeaderboardConstants
from arena.database.models import (
    Match, Side, Team, UserElo, TeamElo, EloHistory
)
from arena.utils.elo import EloCalculator
from arena.utils.exceptions import MatchNotFound
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class EloUpdate:
    old_elo: int
    new_elo: int
    user_id: Optional[int] = None
    team_id: Optional[int] = None

    @property
    def change(self) -> int:
        return self.new_elo - self.old_elo


@dataclass
class RatingOutcome:
    """Rating changes produced by one match"""
    match_id: int
    winning_team: Side
    side_a_updates: List[EloUpdate] = field(default_factory=list)
    side_b_updates: List[EloUpdate] = field(default_factory=list)
    team_updates: List[EloUpdate] = field(default_factory=list)

    @staticmethod
    def _average_change(updates: List[EloUpdate]) -> float:
        if not updates:
            return 0.0
        return sum(u.change for u in updates) / len(updates)

    @property
    def side_a_average_change(self) -> float:
        return self._average_change(self.side_a_updates)

    @property
    def side_b_average_change(self) -> float:
        return self._average_change(self.side_b_updates)


class RatingEngine:
    """Updates UserElo and TeamElo rows from match outcomes"""

    def __init__(self, db):
        self.db = db
        self.logger = logger

    async def _get_or_create_user_elos(self, session: AsyncSession, user_ids: Sequence[int],
                                       game_id: int) -> Dict[int, UserElo]:
        result = await session.execute(
            select(UserElo)
            .where(UserElo.user_id.in_(user_ids), UserElo.game_id == game_id)
            .with_for_update()
        )
        elos = {row.user_id: row for row in result.scalars().all()}

        for user_id in set(user_ids) - set(elos):
            elo = UserElo(user_id=user_id, game_id=game_id, elo=Config.DEFAULT_ELO, games_played=0)
            session.add(elo)
            elos[user_id] = elo

        await session.flush()
        return elos

    async def _get_or_create_team_elo(self, session: AsyncSession, team_id: int, game_id: int) -> TeamElo:
        result = await session.execute(
            select(TeamElo)
            .where(TeamElo.team_id == team_id, TeamElo.game_id == game_id)
            .with_for_update()
        )
        team_elo = result.scalar_one_or_none()
        if team_elo is None:
            team_elo = TeamElo(team_id=team_id, game_id=game_id, elo=Config.DEFAULT_ELO)
            session.add(team_elo)
            await session.flush()
        return team_elo

    def _apply(self, session: AsyncSession, match: Match, rating, games_played: int,
               opponent_rating: int, won: bool, user_id: Optional[int] = None,
               team_id: Optional[int] = None) -> EloUpdate:
        old_elo = rating.elo
        new_elo = EloCalculator.calculate_new_elo(old_elo, opponent_rating, 1.0 if won else 0.0, games_played)
        rating.elo = new_elo

        session.add(EloHistory(
            user_id=user_id,
            team_id=team_id,
            game_id=match.game_id,
            match_id=match.id,
            old_elo=old_elo,
            new_elo=new_elo,
            elo_change=new_elo - old_elo,
            opponent_elo=opponent_rating,
            k_factor=EloCalculator.get_k_factor(games_played),
            won=won,
        ))
        return EloUpdate(old_elo=old_elo, new_elo=new_elo, user_id=user_id, team_id=team_id)

    async def apply_match_outcome(self, match_id: int, winning_team: Side,
                                  session: Optional[AsyncSession] = None) -> RatingOutcome:
        """
        Update every player's per-game rating against the opposing side's average.

        Side averages are taken from ratings before any update in this match,
        so the order players are processed in does not matter.
        """
        async def _apply_outcome(session: AsyncSession) -> RatingOutcome:
            result = await session.execute(
                select(Match).options(selectinload(Match.players)).where(Match.id == match_id)
            )
            match = result.scalar_one_or_none()
            if match is None:
                raise MatchNotFound(match_id)

            side_a = [p.user_id for p in match.players_on(Side.A)]
            side_b = [p.user_id for p in match.players_on(Side.B)]
            elos = await self._get_or_create_user_elos(session, side_a + side_b, match.game_id)

            side_a_average = EloCalculator.calculate_team_average([elos[u].elo for u in side_a])
            side_b_average = EloCalculator.calculate_team_average([elos[u].elo for u in side_b])

            outcome = RatingOutcome(match_id=match.id, winning_team=winning_team)

            for user_ids, opponent_average, side, updates in (
                (side_a, side_b_average, Side.A, outcome.side_a_updates),
                (side_b, side_a_average, Side.B, outcome.side_b_updates),
            ):
                for user_id in user_ids:
                    rating = elos[user_id]
                    updates.append(self._apply(
                        session, match, rating, rating.games_played, opponent_average,
                        won=(side == winning_team), user_id=user_id
                    ))
                    rating.games_played += 1

            if match.is_team_match:
                outcome.team_updates = await self._apply_team_outcome(
                    session, match, winning_team, side_a_average, side_b_average
                )

            await session.flush()

            self.logger.info(
                f"Applied ratings for match {match.id}: side A avg change "
                f"{outcome.side_a_average_change:+.1f}, side B avg change {outcome.side_b_average_change:+.1f}"
            )
            return outcome

        if session:
            return await _apply_outcome(session)
        async with self.db.transaction() as txn_session:
            return await _apply_outcome(txn_session)

    async def _apply_team_outcome(self, session: AsyncSession, match: Match, winning_team: Side,
                                  side_a_average: int, side_b_average: int) -> List[EloUpdate]:
        teams = {
            Side.A: await session.get(Team, match.team_a_id, with_for_update=True),
            Side.B: await session.get(Team, match.team_b_id, with_for_update=True),
        }
        opponent_average = {Side.A: side_b_average, Side.B: side_a_average}

        updates = []
        for side in (Side.A, Side.B):
            team = teams[side]
            team_elo = await self._get_or_create_team_elo(session, team.id, match.game_id)
            updates.append(self._apply(
                session, match, team_elo, team.games_played, opponent_average[side],
                won=(side == winning_team), team_id=team.id
            ))

        teams[winning_team].wins += 1
        teams[winning_team.opponent].losses += 1
        return updates

    # ============================================================================
    # Leaderboards
    # ============================================================================

    async def get_user_elo(self, user_id: int, game_id: int) -> int:
        async with self.db.get_session() as session:
            elo = (await session.execute(
                select(UserElo.elo).where(UserElo.user_id == user_id, UserElo.game_id == game_id)
            )).scalar_one_or_none()
            return elo if elo is not None else Config.DEFAULT_ELO

    async def get_leaderboard(self, game_id: int,
                              limit: int = LeaderboardConstants.DEFAULT_LIMIT) -> List[UserElo]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(UserElo)
                .options(selectinload(UserElo.user))
                .where(UserElo.game_id == game_id)
                .order_by(UserElo.elo.desc(), UserElo.user_id)
                .limit(limit)
            )
            return list(result.scalars().all())

    async def get_team_leaderboard(self, game_id: int,
                                   limit: int = LeaderboardConstants.DEFAULT_LIMIT) -> List[TeamElo]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(TeamElo)
                .options(selectinload(TeamElo.team))
                .where(TeamElo.game_id == game_id)
                .order_by(TeamElo.elo.desc(), TeamElo.team_id)
                .limit(limit)
            )
            return list(result.scalars().all())
