"""
Housekeeping Service - Background Tasks

Runs the periodic reconciliation work of the settlement engine:
- dispute deadline sweep (expired evidence windows go to admin review)
- notification retention cleanup
- notification dispatch from the in-process bus to NotificationService
"""

import asyncio
from typing import List, Optional

from arena.config import Config
from arena.operations.disputes import DisputeWorkflow
from arena.services.notifications import NotificationBus, NotificationEvent, NotificationService
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

RETENTION_INTERVAL_SECONDS = 24 * 60 * 60


class HousekeepingService:
    """Background maintenance loops"""

    def __init__(self, disputes: DisputeWorkflow, notification_service: NotificationService,
                 bus: NotificationBus, sweep_interval_seconds: Optional[float] = None,
                 retention_interval_seconds: float = RETENTION_INTERVAL_SECONDS):
        self.disputes = disputes
        self.notification_service = notification_service
        self.bus = bus
        self.sweep_interval_seconds = (
            Config.DISPUTE_SWEEP_INTERVAL_MINUTES * 60 if sweep_interval_seconds is None
            else sweep_interval_seconds
        )
        self.retention_interval_seconds = retention_interval_seconds
        self._tasks: List[asyncio.Task] = []
        # Events whose delivery was cut off by stop(); redelivered on shutdown
        self._interrupted: List[NotificationEvent] = []
        self.logger = logger

    # ============================================================================
    # Single passes
    # ============================================================================

    async def sweep_disputes(self) -> List[int]:
        """Escalate expired disputes once"""
        try:
            escalated = await self.disputes.sweep_expired_disputes()
            if escalated:
                self.logger.info(f"Dispute sweep escalated matches {escalated}")
            return escalated
        except Exception as e:
            self.logger.error(f"Error in dispute sweep task: {e}", exc_info=True)
            return []

    async def cleanup_notifications(self) -> int:
        try:
            return await self.notification_service.cleanup_old_notifications()
        except Exception as e:
            self.logger.error(f"Error in notification cleanup task: {e}", exc_info=True)
            return 0

    async def _deliver(self, event) -> bool:
        try:
            await self.notification_service.deliver(event)
            return True
        except Exception as e:
            self.logger.error(f"Failed to deliver {event.kind.value} notification: {e}", exc_info=True)
            return False

    async def dispatch_pending(self) -> int:
        """Deliver every interrupted or queued event; returns the number delivered"""
        pending, self._interrupted = self._interrupted + self.bus.drain(), []
        delivered = 0
        for event in pending:
            if await self._deliver(event):
                delivered += 1
        return delivered

    # ============================================================================
    # Loops
    # ============================================================================

    async def _dispute_sweep_loop(self):
        while True:
            await self.sweep_disputes()
            await asyncio.sleep(self.sweep_interval_seconds)

    async def _retention_loop(self):
        while True:
            await self.cleanup_notifications()
            await asyncio.sleep(self.retention_interval_seconds)

    async def _dispatch_loop(self):
        while True:
            event = await self.bus.get()
            try:
                await self._deliver(event)
            except asyncio.CancelledError:
                self.logger.warning(
                    f"Delivery of {event.kind.value} notification interrupted, retrying on shutdown"
                )
                self._interrupted.append(event)
                raise
            finally:
                self.bus.task_done()

    def start(self):
        """Start all background loops on the running event loop"""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._dispute_sweep_loop(), name="dispute-sweep"),
            asyncio.create_task(self._retention_loop(), name="notification-retention"),
            asyncio.create_task(self._dispatch_loop(), name="notification-dispatch"),
        ]
        self.logger.info("HousekeepingService: Background tasks started")

    async def stop(self):
        """Cancel the loops and deliver anything still queued"""
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []

        remaining = await self.dispatch_pending()
        if remaining:
            self.logger.info(f"Delivered {remaining} queued notifications during shutdown")
        self.logger.info("HousekeepingService: Background tasks stopped")

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)
