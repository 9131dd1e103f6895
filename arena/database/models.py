from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Enum as SQLEnum, UniqueConstraint, CheckConstraint
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
from enum import Enum
from typing import Optional, List

from arena.constants import TeamSizeConstants, DisputeConstants

Base = declarative_base()


def utc_now() -> datetime:
    """Naive UTC timestamp; all DateTime columns store naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class MatchStatus(Enum):
    """Status of a match from lobby formation to payout or refund"""
    LOBBY = "LOBBY"                  # Created, creator on side A
    OPEN = "OPEN"                    # Accepting players and ready checks
    IN_PROGRESS = "IN_PROGRESS"      # Wagers collected, match being played
    COMPLETED = "COMPLETED"          # Winnings distributed (terminal)
    DISPUTED = "DISPUTED"            # Outcome contested
    AWAITING_OPPONENT_EVIDENCE = "AWAITING_OPPONENT_EVIDENCE"
    AWAITING_ADMIN_REVIEW = "AWAITING_ADMIN_REVIEW"
    REFUNDED = "REFUNDED"            # Wagers returned (terminal)

class TeamSize(Enum):
    SOLO = "SOLO"
    DUO = "DUO"
    TRIO = "TRIO"
    SQUAD = "SQUAD"
    TEAM = "TEAM"

    @property
    def max_players(self) -> int:
        """Maximum players per side"""
        return TeamSizeConstants.MAX_PLAYERS_PER_SIDE.get(
            self.value, TeamSizeConstants.DEFAULT_MAX_PLAYERS
        )

class Side(Enum):
    A = "A"
    B = "B"

    @property
    def opponent(self) -> 'Side':
        return Side.B if self is Side.A else Side.A

class ServerRegion(Enum):
    NA_EAST = "NA_EAST"
    NA_WEST = "NA_WEST"
    EU = "EU"
    ASIA = "ASIA"

class Platform(Enum):
    PC = "PC"
    PLAYSTATION = "PLAYSTATION"
    XBOX = "XBOX"

class TransactionType(Enum):
    WAGER_DEBIT = "WAGER_DEBIT"
    MATCH_WIN = "MATCH_WIN"
    MATCH_LOSS = "MATCH_LOSS"
    PLATFORM_FEE = "PLATFORM_FEE"
    REFUND = "REFUND"
    DEPOSIT = "DEPOSIT"
    WITHDRAWAL = "WITHDRAWAL"

class TransactionStatus(Enum):
    COMPLETED = "COMPLETED"
    PENDING = "PENDING"
    FAILED = "FAILED"

class NotificationKind(Enum):
    MATCH_STARTED = "MATCH_STARTED"
    MATCH_RESULT = "MATCH_RESULT"
    MATCH_REFUNDED = "MATCH_REFUNDED"
    DISPUTE_UPDATE = "DISPUTE_UPDATE"


class User(Base):
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True)
    username = Column(String(100), nullable=False, unique=True)

    # Current credit balance (cache of the transactions ledger)
    credits = Column(Integer, nullable=False, default=0)

    # System identities (platform treasury) cannot join matches
    is_system = Column(Boolean, default=False, nullable=False)

    # Metadata
    created_at = Column(DateTime, default=utc_now)

    # Relationships
    transactions = relationship("Transaction", back_populates="user", order_by="Transaction.id")
    elos = relationship("UserElo", back_populates="user")

    __table_args__ = (
        CheckConstraint('credits >= 0', name='non_negative_credits_check'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', credits={self.credits})>"

class Game(Base):
    __tablename__ = 'games'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    is_active = Column(Boolean, default=True)

    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<Game(id={self.id}, name='{self.name}')>"

class Team(Base):
    """A persistent roster that can compete as one side of a team-vs-team match"""
    __tablename__ = 'teams'

    id = Column(Integer, primary_key=True)
    name = Column(String(100), nullable=False, unique=True)
    tag = Column(String(10), nullable=True)

    wins = Column(Integer, default=0, nullable=False)
    losses = Column(Integer, default=0, nullable=False)

    created_at = Column(DateTime, default=utc_now)

    @property
    def games_played(self) -> int:
        return (self.wins or 0) + (self.losses or 0)

    def __repr__(self):
        return f"<Team(id={self.id}, name='{self.name}', record={self.wins}-{self.losses})>"

class Match(Base):
    """
    One wagering contest between side A and side B.

    Status is mutated only by the settlement orchestrator and the dispute
    workflow, always inside a guarded atomic unit that first bumps
    lock_version.
    """
    __tablename__ = 'matches'

    id = Column(Integer, primary_key=True)

    # Match configuration
    game_id = Column(Integer, ForeignKey('games.id'), nullable=False)
    wager = Column(Integer, nullable=False, default=0)  # Credits per player
    team_size = Column(SQLEnum(TeamSize), nullable=False)
    region = Column(SQLEnum(ServerRegion), nullable=False)
    platform = Column(SQLEnum(Platform), nullable=False)
    status = Column(SQLEnum(MatchStatus), nullable=False, default=MatchStatus.LOBBY, index=True)

    # Optional persistent teams (team-vs-team matches)
    team_a_id = Column(Integer, ForeignKey('teams.id'), nullable=True)
    team_b_id = Column(Integer, ForeignKey('teams.id'), nullable=True)

    # Outcome
    winning_team = Column(SQLEnum(Side), nullable=True)
    team_a_score = Column(Integer, nullable=True)
    team_b_score = Column(Integer, nullable=True)

    # Row lock token, bumped at the start of each guarded sequence
    lock_version = Column(Integer, nullable=False, default=0)

    # Timing
    created_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    created_at = Column(DateTime, default=utc_now)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    # Relationships
    game = relationship("Game")
    team_a = relationship("Team", foreign_keys=[team_a_id])
    team_b = relationship("Team", foreign_keys=[team_b_id])
    players = relationship("MatchPlayer", back_populates="match", cascade="all, delete-orphan",
                           order_by="MatchPlayer.id")
    dispute = relationship("Dispute", back_populates="match", uselist=False, cascade="all, delete-orphan")

    __table_args__ = (
        CheckConstraint('wager >= 0', name='non_negative_wager_check'),
    )

    @property
    def is_team_match(self) -> bool:
        """True when both sides are persistent teams"""
        return self.team_a_id is not None and self.team_b_id is not None

    @property
    def player_count(self) -> int:
        return len(self.players)

    def players_on(self, side: Side) -> List['MatchPlayer']:
        return [p for p in self.players if p.team == side]

    def get_player(self, user_id: int) -> Optional['MatchPlayer']:
        for player in self.players:
            if player.user_id == user_id:
                return player
        return None

    def both_sides_full(self) -> bool:
        capacity = self.team_size.max_players
        return (len(self.players_on(Side.A)) == capacity and
                len(self.players_on(Side.B)) == capacity)

    def all_ready(self) -> bool:
        return bool(self.players) and all(p.is_ready for p in self.players)

    def __repr__(self):
        return f"<Match(id={self.id}, status={self.status.value}, wager={self.wager}, players={self.player_count})>"

class MatchPlayer(Base):
    """Membership of one user on one side of one match"""
    __tablename__ = 'match_players'

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    team = Column(SQLEnum(Side), nullable=False)
    is_ready = Column(Boolean, default=False, nullable=False)

    joined_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        UniqueConstraint('match_id', 'user_id', name='unique_user_per_match'),
    )

    # Relationships
    match = relationship("Match", back_populates="players")
    user = relationship("User")

    def __repr__(self):
        return f"<MatchPlayer(match_id={self.match_id}, user_id={self.user_id}, team={self.team.value}, ready={self.is_ready})>"

class Transaction(Base):
    """
    Append-only ledger entry for a single credit movement.

    Debits are negative, credits positive. The sum of a user's entries equals
    User.credits; both are written in the same atomic unit by the Ledger.
    """
    __tablename__ = 'transactions'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    type = Column(SQLEnum(TransactionType), nullable=False)
    amount = Column(Integer, nullable=False)
    status = Column(SQLEnum(TransactionStatus), nullable=False, default=TransactionStatus.COMPLETED)
    balance_after = Column(Integer, nullable=False)

    # Weak back-reference for lookups; no cascading ownership
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=True, index=True)
    metadata_json = Column(Text, nullable=True)  # Tagged metadata variant, see operations.ledger

    created_at = Column(DateTime, default=utc_now)

    # Relationships
    user = relationship("User", back_populates="transactions")

    def __repr__(self):
        return f"<Transaction(user_id={self.user_id}, type={self.type.value}, amount={self.amount}, balance_after={self.balance_after})>"

class UserElo(Base):
    """Per (user, game) rating, created lazily on first completed match"""
    __tablename__ = 'user_elos'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    game_id = Column(Integer, ForeignKey('games.id'), nullable=False)
    elo = Column(Integer, nullable=False, default=1000)
    games_played = Column(Integer, nullable=False, default=0)

    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('user_id', 'game_id', name='unique_user_game_elo'),
        CheckConstraint('elo >= 100', name='elo_floor_check'),
    )

    user = relationship("User", back_populates="elos")
    game = relationship("Game")

    def __repr__(self):
        return f"<UserElo(user_id={self.user_id}, game_id={self.game_id}, elo={self.elo}, games={self.games_played})>"

class TeamElo(Base):
    __tablename__ = 'team_elos'

    id = Column(Integer, primary_key=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=False)
    game_id = Column(Integer, ForeignKey('games.id'), nullable=False)
    elo = Column(Integer, nullable=False, default=1000)

    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    __table_args__ = (
        UniqueConstraint('team_id', 'game_id', name='unique_team_game_elo'),
    )

    team = relationship("Team")

    def __repr__(self):
        return f"<TeamElo(team_id={self.team_id}, game_id={self.game_id}, elo={self.elo})>"

class EloHistory(Base):
    __tablename__ = 'elo_history'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=True, index=True)
    team_id = Column(Integer, ForeignKey('teams.id'), nullable=True)
    game_id = Column(Integer, ForeignKey('games.id'), nullable=False)
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=True)

    old_elo = Column(Integer, nullable=False)
    new_elo = Column(Integer, nullable=False)
    elo_change = Column(Integer, nullable=False)
    opponent_elo = Column(Integer, nullable=False)
    k_factor = Column(Integer, nullable=False)
    won = Column(Boolean, nullable=False)

    recorded_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        subject = f"user_id={self.user_id}" if self.user_id else f"team_id={self.team_id}"
        return f"<EloHistory({subject}, {self.old_elo} -> {self.new_elo})>"

class Dispute(Base):
    """At most one per match; owns its ordered evidence list"""
    __tablename__ = 'disputes'

    id = Column(Integer, primary_key=True)
    match_id = Column(Integer, ForeignKey('matches.id'), nullable=False, unique=True)
    initiator_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    reason = Column(Text, nullable=False)
    deadline = Column(DateTime, nullable=False, index=True)

    # Resolution tracking
    resolved_at = Column(DateTime, nullable=True)
    resolution = Column(String(50), nullable=True)  # e.g. "PAYOUT_A", "REFUNDED"
    resolved_by = Column(Integer, ForeignKey('users.id'), nullable=True)

    created_at = Column(DateTime, default=utc_now)

    # Relationships
    match = relationship("Match", back_populates="dispute")
    initiator = relationship("User", foreign_keys=[initiator_id])
    evidence = relationship("DisputeEvidence", back_populates="dispute", cascade="all, delete-orphan",
                            order_by="DisputeEvidence.id")

    @property
    def is_resolved(self) -> bool:
        return self.resolved_at is not None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utc_now()) >= self.deadline

    def __repr__(self):
        return f"<Dispute(id={self.id}, match_id={self.match_id}, deadline={self.deadline}, evidence={len(self.evidence)})>"

class DisputeEvidence(Base):
    __tablename__ = 'dispute_evidence'

    id = Column(Integer, primary_key=True)
    dispute_id = Column(Integer, ForeignKey('disputes.id'), nullable=False, index=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    submitted_link = Column(String(DisputeConstants.MAX_LINK_LENGTH), nullable=False)
    message = Column(Text, nullable=False)

    created_at = Column(DateTime, default=utc_now)

    dispute = relationship("Dispute", back_populates="evidence")

    def __repr__(self):
        return f"<DisputeEvidence(dispute_id={self.dispute_id}, user_id={self.user_id})>"

class Notification(Base):
    """Persisted copy of a delivered notification; subject to retention cleanup"""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    kind = Column(SQLEnum(NotificationKind), nullable=False)
    message = Column(String(500), nullable=False)
    metadata_json = Column(Text, nullable=True)
    read = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=utc_now)

    def __repr__(self):
        return f"<Notification(user_id={self.user_id}, kind={self.kind.value}, read={self.read})>"
