from typing import Optional, List
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload
from sqlalchemy import select, func
from contextlib import asynccontextmanager

from arena.config import Config
from arena.database.models import (
    Base, User, Game, Team, Match, MatchPlayer, Transaction, Dispute
)
from arena.utils.exceptions import UserNotFound
from arena.utils.logger import setup_logger

class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None
        self.treasury_id: Optional[int] = None

    async def initialize(self):
        """Initialize the database connection and create tables"""
        self.logger.info("Initializing database...")

        # Convert sqlite URL to async if needed
        database_url = self.database_url
        if database_url.startswith('sqlite:///'):
            database_url = database_url.replace('sqlite:///', 'sqlite+aiosqlite:///')

        self.engine = create_async_engine(
            database_url,
            echo=Config.DEBUG,
            future=True
        )

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        # Create all tables
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Database initialized successfully")

        await self.initialize_default_data()

    @property
    def session_factory(self):
        return self.async_session

    async def initialize_default_data(self):
        """Ensure the platform treasury identity exists"""
        async with self.transaction() as session:
            result = await session.execute(
                select(User).where(User.username == Config.TREASURY_USERNAME)
            )
            treasury = result.scalar_one_or_none()

            if treasury is None:
                treasury = User(username=Config.TREASURY_USERNAME, credits=0, is_system=True)
                session.add(treasury)
                await session.flush()
                self.logger.info(f"Created platform treasury account {treasury.id}")

            self.treasury_id = treasury.id

    @asynccontextmanager
    async def get_session(self):
        """Get a database session"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    @asynccontextmanager
    async def transaction(self):
        """
        Create a transaction boundary for atomic operations.

        All operations within the context are committed together on success,
        or rolled back together on failure.

        Usage:
            async with db.transaction() as session:
                await ledger.debit(..., session=session)
                await ledger.credit(..., session=session)
                # Both commit together here

        The caller is responsible for passing the yielded session to all
        participating operations. Exceptions must propagate out of the
        context for rollback to occur.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise
            finally:
                await session.close()

    async def close(self):
        """Close the database connection"""
        if self.engine:
            await self.engine.dispose()
            self.logger.info("Database connection closed")

    # ============================================================================
    # User operations
    # ============================================================================

    async def create_user(self, username: str) -> User:
        """
        Create a new user with an empty ledger.

        Balances only ever change through the Ledger; fund new accounts with
        Ledger.deposit.
        """
        async with self.transaction() as session:
            user = User(username=username, credits=0)
            session.add(user)
            await session.flush()
            self.logger.info(f"Created user {user.id} ({username})")
            return user

    async def get_user(self, user_id: int) -> Optional[User]:
        async with self.get_session() as session:
            return await session.get(User, user_id)

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self.get_session() as session:
            result = await session.execute(
                select(User).where(User.username == username)
            )
            return result.scalar_one_or_none()

    # ============================================================================
    # Game and team operations
    # ============================================================================

    async def create_game(self, name: str) -> Game:
        async with self.transaction() as session:
            game = Game(name=name, is_active=True)
            session.add(game)
            await session.flush()
            return game

    async def get_all_games(self, active_only: bool = True) -> List[Game]:
        async with self.get_session() as session:
            query = select(Game)
            if active_only:
                query = query.where(Game.is_active == True)
            result = await session.execute(query.order_by(Game.name))
            return list(result.scalars().all())

    async def create_team(self, name: str, tag: Optional[str] = None) -> Team:
        async with self.transaction() as session:
            team = Team(name=name, tag=tag)
            session.add(team)
            await session.flush()
            return team

    async def get_team(self, team_id: int) -> Optional[Team]:
        async with self.get_session() as session:
            return await session.get(Team, team_id)

    # ============================================================================
    # Match reads
    # ============================================================================

    async def get_match(self, match_id: int) -> Optional[Match]:
        """Get a match with players and dispute evidence loaded"""
        async with self.get_session() as session:
            result = await session.execute(
                select(Match)
                .options(
                    selectinload(Match.game),
                    selectinload(Match.players),
                    selectinload(Match.dispute).selectinload(Dispute.evidence)
                )
                .where(Match.id == match_id)
            )
            return result.scalar_one_or_none()

    async def get_matches_for_user(self, user_id: int, limit: int = 25) -> List[Match]:
        async with self.get_session() as session:
            result = await session.execute(
                select(Match)
                .join(Match.players)
                .where(MatchPlayer.user_id == user_id)
                .options(selectinload(Match.players))
                .order_by(Match.created_at.desc(), Match.id.desc())
                .limit(limit)
            )
            return list(result.scalars().unique().all())

    # ============================================================================
    # Ledger integrity
    # ============================================================================

    async def verify_balance_integrity(self, user_id: int) -> dict:
        """Verify balance integrity by comparing the cached balance with the ledger"""
        async with self.get_session() as session:
            cached_balance = (await session.execute(
                select(User.credits).where(User.id == user_id)
            )).scalar_one_or_none()

            if cached_balance is None:
                raise UserNotFound(user_id)

            calculated_balance = (await session.execute(
                select(func.coalesce(func.sum(Transaction.amount), 0))
                .where(Transaction.user_id == user_id)
            )).scalar_one()

            return {
                'user_id': user_id,
                'cached_balance': cached_balance,
                'calculated_balance': calculated_balance,
                'integrity_check': cached_balance == calculated_balance
            }
