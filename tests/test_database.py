"""
Tests for database setup, seeding and read helpers.
"""
import pytest

from arena.config import Config
from arena.database.database import Database
from arena.utils.exceptions import UserNotFound

from conftest import start_match


class TestInitialization:

    @pytest.mark.asyncio
    async def test_treasury_created(self, db):
        """Should create the system treasury account on first start"""
        treasury = await db.get_user_by_username(Config.TREASURY_USERNAME)
        assert treasury is not None
        assert treasury.is_system
        assert treasury.credits == 0
        assert db.treasury_id == treasury.id

    @pytest.mark.asyncio
    async def test_reinitialize_reuses_treasury(self, db, tmp_path):
        second = Database(f"sqlite:///{tmp_path / 'arena_test.db'}")
        await second.initialize()
        try:
            assert second.treasury_id == db.treasury_id
        finally:
            await second.close()

    @pytest.mark.asyncio
    async def test_new_users_start_empty(self, db):
        user = await db.create_user("newcomer")
        assert user.credits == 0
        assert not user.is_system
        assert (await db.get_user(user.id)).username == "newcomer"

    @pytest.mark.asyncio
    async def test_games(self, db):
        await db.create_game("Zeta Strike")
        await db.create_game("Alpha League")
        assert [g.name for g in await db.get_all_games()] == ["Alpha League", "Zeta Strike"]


class TestReads:

    @pytest.mark.asyncio
    async def test_matches_for_user(self, db, orchestrator, game, users):
        first = await start_match(orchestrator, game.id, [users[0]], [users[1]])
        second = await start_match(orchestrator, game.id, [users[0]], [users[2]])

        matches = await db.get_matches_for_user(users[0])
        assert {m.id for m in matches} == {first, second}
        assert [m.id for m in await db.get_matches_for_user(users[2])] == [second]

    @pytest.mark.asyncio
    async def test_integrity_check(self, db, ledger, users):
        integrity = await db.verify_balance_integrity(users[0])
        assert integrity['cached_balance'] == integrity['calculated_balance'] == 1000
        assert integrity['integrity_check']

    @pytest.mark.asyncio
    async def test_integrity_unknown_user(self, db):
        with pytest.raises(UserNotFound):
            await db.verify_balance_integrity(999)


class TestConfig:

    def test_defaults(self):
        assert Config.DEFAULT_ELO == 1000
        assert Config.PLATFORM_FEE_PERCENTAGE == pytest.approx(0.10)
        assert Config.DISPUTE_WINDOW_HOURS == 48

    def test_validate_rejects_bad_fee(self, monkeypatch):
        monkeypatch.setattr(Config, "PLATFORM_FEE_PERCENTAGE", 1.5)
        with pytest.raises(ValueError):
            Config.validate()

    def test_validate_accepts_defaults(self):
        Config.validate()
