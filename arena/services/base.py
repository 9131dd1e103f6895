"""
Base class for Arena background services.

Services run outside the settlement request path (notification delivery,
housekeeping). Each unit of work gets its own session, committed on success
and rolled back on error, and can be retried when the store is briefly busy.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar('T')


class BaseService:
    """Session management and retry for services built on a session factory."""

    # SQLite "database is locked" and dropped connections surface as OperationalError
    RETRYABLE_ERRORS: Tuple[Type[Exception], ...] = (OperationalError,)
    RETRY_BASE_DELAY = 0.1

    def __init__(self, session_factory):
        """
        Args:
            session_factory: async_sessionmaker from Database.session_factory
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on success, roll back on error."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable[[], Awaitable[T]], max_retries: int = 3) -> T:
        """Run func, retrying with exponential backoff while the store reports a transient error."""
        for attempt in range(1, max_retries + 1):
            try:
                return await func()
            except self.RETRYABLE_ERRORS as e:
                if attempt == max_retries:
                    raise
                logger.warning(f"{type(self).__name__}: retry {attempt} of {func.__name__} after {e}")
                await asyncio.sleep(self.RETRY_BASE_DELAY * (2 ** (attempt - 1)))
