"""Shared pytest fixtures for the settlement engine tests."""
from typing import AsyncGenerator, List

import pytest

from arena.database.database import Database
from arena.database.models import Side, TeamSize, ServerRegion, Platform
from arena.operations.disputes import DisputeWorkflow
from arena.operations.ledger import Ledger
from arena.operations.rating import RatingEngine
from arena.operations.settlement import SettlementOrchestrator
from arena.services.notifications import NotificationBus

STARTING_BALANCE = 1000


@pytest.fixture(scope="function")
async def db(tmp_path) -> AsyncGenerator[Database, None]:
    """Fresh file-backed SQLite database per test."""
    database = Database(f"sqlite:///{tmp_path / 'arena_test.db'}")
    await database.initialize()

    yield database

    await database.close()


@pytest.fixture
def ledger(db: Database) -> Ledger:
    return Ledger(db)


@pytest.fixture
def bus() -> NotificationBus:
    return NotificationBus(maxsize=100)


@pytest.fixture
def orchestrator(db: Database, ledger: Ledger, bus: NotificationBus) -> SettlementOrchestrator:
    return SettlementOrchestrator(db, ledger=ledger, rating_engine=RatingEngine(db), bus=bus)


@pytest.fixture
def disputes(db: Database, orchestrator: SettlementOrchestrator) -> DisputeWorkflow:
    return DisputeWorkflow(db, orchestrator=orchestrator)


@pytest.fixture
async def game(db: Database):
    return await db.create_game("Rocket Arena")


async def make_funded_users(db: Database, ledger: Ledger, count: int,
                            balance: int = STARTING_BALANCE, prefix: str = "player") -> List[int]:
    user_ids = []
    for i in range(count):
        user = await db.create_user(f"{prefix}{i}")
        if balance:
            await ledger.deposit(user.id, balance, reference="test-funding")
        user_ids.append(user.id)
    return user_ids


@pytest.fixture
async def users(db: Database, ledger: Ledger) -> List[int]:
    """Eight users with STARTING_BALANCE credits each."""
    return await make_funded_users(db, ledger, 8)


async def start_match(orchestrator: SettlementOrchestrator, game_id: int, side_a: List[int],
                      side_b: List[int], wager: int = 50, team_size: TeamSize = TeamSize.SOLO,
                      team_a_id: int = None, team_b_id: int = None) -> int:
    """Create a match, seat both sides, ready everyone; returns the match id."""
    match = await orchestrator.create_match(
        side_a[0], game_id, wager, team_size, ServerRegion.EU, Platform.PC,
        team_a_id=team_a_id, team_b_id=team_b_id
    )
    for user_id in side_a[1:]:
        await orchestrator.join_match(match.id, user_id, Side.A)
    for user_id in side_b:
        await orchestrator.join_match(match.id, user_id, Side.B)
    for user_id in side_a + side_b:
        await orchestrator.set_ready(match.id, user_id, True)
    return match.id
