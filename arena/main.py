import asyncio
import logging
import traceback
from typing import Optional

from arena.config import Config
from arena.database.database import Database
from arena.operations.disputes import DisputeWorkflow
from arena.operations.ledger import Ledger
from arena.operations.rating import RatingEngine
from arena.operations.settlement import SettlementOrchestrator
from arena.services.housekeeping import HousekeepingService
from arena.services.notifications import NotificationBus, NotificationService
from arena.utils.logger import setup_logger
from arena.utils.redis_utils import connect_notification_redis


class SettlementEngine:
    """Wires the settlement core and its background worker together"""

    def __init__(self, database_url: Optional[str] = None):
        self.db = Database(database_url)
        self.bus = NotificationBus()
        self.redis_client = None
        self.ledger: Optional[Ledger] = None
        self.orchestrator: Optional[SettlementOrchestrator] = None
        self.disputes: Optional[DisputeWorkflow] = None
        self.housekeeping: Optional[HousekeepingService] = None
        self.logger = setup_logger(__name__)

    async def setup(self):
        """Called when the engine is starting up"""
        self.logger.info("Setting up settlement engine...")

        await self.db.initialize()
        self.redis_client = await connect_notification_redis()

        self.ledger = Ledger(self.db)
        self.orchestrator = SettlementOrchestrator(
            self.db, ledger=self.ledger, rating_engine=RatingEngine(self.db), bus=self.bus
        )
        self.disputes = DisputeWorkflow(self.db, orchestrator=self.orchestrator)

        notification_service = NotificationService(self.db.session_factory, redis_client=self.redis_client)
        self.housekeeping = HousekeepingService(self.disputes, notification_service, self.bus)
        self.housekeeping.start()

        self.logger.info("Settlement engine setup complete!")

    async def close(self):
        """Cleanup when the engine is shutting down"""
        self.logger.info("Shutting down settlement engine...")

        if self.housekeeping:
            await self.housekeeping.stop()
        if self.redis_client is not None:
            await self.redis_client.aclose()
        await self.db.close()


async def main():
    """Main entry point"""
    Config.validate()

    engine = SettlementEngine()

    try:
        await engine.setup()
        # Background loops run until the process is cancelled
        await asyncio.Event().wait()
    except asyncio.CancelledError:
        pass
    except Exception as e:
        logging.error(f"Fatal error: {e}")
        traceback.print_exc()
    finally:
        await engine.close()


def run():
    """Console script entry point"""
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    run()
