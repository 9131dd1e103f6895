"""
Notification delivery for settlement events.

Settlement operations publish NotificationEvent objects to a NotificationBus
after their atomic unit commits. A dispatcher (see HousekeepingService) drains
the bus into NotificationService, which persists one row per recipient and fans
the event out over Redis pub/sub when a client is configured.

Delivery is fire-and-forget from the settlement side: a full queue or a Redis
outage never affects a committed ledger or match status change.
"""

import asyncio
import json
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select, update, delete

from arena.config import Config
from arena.database.models import Notification, NotificationKind, utc_now
from arena.services.base import BaseService
from arena.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    user_ids: Sequence[int]
    message: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict:
        return {
            'kind': self.kind.value,
            'user_ids': list(self.user_ids),
            'message': self.message,
            'metadata': self.metadata,
        }


class NotificationBus:
    """In-process channel between settlement operations and notification delivery"""

    def __init__(self, maxsize: Optional[int] = None):
        self._queue: asyncio.Queue = asyncio.Queue(
            maxsize=Config.NOTIFICATION_QUEUE_SIZE if maxsize is None else maxsize
        )
        self.dropped = 0

    def publish(self, event: NotificationEvent) -> bool:
        """Enqueue an event without blocking. Returns False if the event was dropped."""
        if not event.user_ids:
            return False
        try:
            self._queue.put_nowait(event)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            logger.error(f"Notification queue full, dropped {event.kind.value} for users {list(event.user_ids)}")
            return False

    async def get(self) -> NotificationEvent:
        return await self._queue.get()

    def task_done(self):
        self._queue.task_done()

    async def join(self):
        """Wait until every queued event has been processed"""
        await self._queue.join()

    def drain(self) -> List[NotificationEvent]:
        """Remove and return every event currently queued"""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events
            self._queue.task_done()

    def qsize(self) -> int:
        return self._queue.qsize()

    def empty(self) -> bool:
        return self._queue.empty()


class NotificationService(BaseService):
    """Persists notifications and publishes them to Redis"""

    def __init__(self, session_factory, redis_client=None, channel: Optional[str] = None):
        super().__init__(session_factory)
        self.redis_client = redis_client
        self.channel = channel or Config.NOTIFICATION_CHANNEL

    async def deliver(self, event: NotificationEvent) -> int:
        """
        Persist the event for every recipient, then publish it.

        Returns the number of rows written. Redis failures are logged; the
        persisted rows remain the source of truth for clients that poll.
        """
        async def _persist():
            async with self.get_session() as session:
                metadata_json = json.dumps(event.metadata, sort_keys=True) if event.metadata else None
                for user_id in event.user_ids:
                    session.add(Notification(
                        user_id=user_id,
                        kind=event.kind,
                        message=event.message[:500],
                        metadata_json=metadata_json,
                    ))
            return len(event.user_ids)

        count = await self.execute_with_retry(_persist)

        if self.redis_client is not None:
            try:
                await self.redis_client.publish(self.channel, json.dumps(event.to_payload()))
            except Exception as e:
                logger.error(f"Failed to publish {event.kind.value} notification to Redis: {e}", exc_info=True)

        logger.debug(f"Delivered {event.kind.value} notification to {count} users")
        return count

    async def get_user_notifications(self, user_id: int, unread_only: bool = False,
                                     limit: int = 50) -> List[Notification]:
        async with self.get_session() as session:
            query = select(Notification).where(Notification.user_id == user_id)
            if unread_only:
                query = query.where(Notification.read == False)
            result = await session.execute(query.order_by(Notification.id.desc()).limit(limit))
            return list(result.scalars().all())

    async def mark_read(self, user_id: int, notification_ids: Optional[Sequence[int]] = None) -> int:
        """Mark the given (or all) notifications of a user as read"""
        async with self.get_session() as session:
            stmt = update(Notification).where(Notification.user_id == user_id, Notification.read == False)
            if notification_ids is not None:
                stmt = stmt.where(Notification.id.in_(list(notification_ids)))
            result = await session.execute(stmt.values(read=True))
            return result.rowcount

    async def cleanup_old_notifications(self, days: Optional[int] = None) -> int:
        """Delete read notifications older than the retention window"""
        days = Config.NOTIFICATION_RETENTION_DAYS if days is None else days
        cutoff = utc_now() - timedelta(days=days)
        async with self.get_session() as session:
            result = await session.execute(
                delete(Notification).where(Notification.read == True, Notification.created_at < cutoff)
            )
            count = result.rowcount
        if count:
            logger.info(f"Removed {count} read notifications older than {days} days")
        return count
