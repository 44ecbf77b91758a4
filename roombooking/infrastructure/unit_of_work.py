"""
Unit of Work over an AsyncSession.

Every use case opens one of these per transaction:

    async with uow_factory() as uow:
        room = await uow.rooms.get_for_update(room_id)
        ...
        await uow.commit()

Leaving the block without commit() rolls the transaction back. Lock waits,
deadlocks and dropped connections surface as TransientStoreError so callers
can tell them apart from domain rejections.
"""

from __future__ import annotations

import logging
from types import TracebackType
from typing import Optional

from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..domain.errors import TransientStoreError
from .repositories import (
    SqlAlchemyNotificationRepository,
    SqlAlchemyReservationRepository,
    SqlAlchemyRoomRepository,
    SqlAlchemyUserRepository,
    SqlAlchemyWaitlistRepository,
)

logger = logging.getLogger(__name__)


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return isinstance(exc, DBAPIError) and exc.connection_invalidated


class SqlAlchemyUnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory
        self._committed = False

    async def __aenter__(self) -> "SqlAlchemyUnitOfWork":
        self.session = self._session_factory()
        self.rooms = SqlAlchemyRoomRepository(self.session)
        self.users = SqlAlchemyUserRepository(self.session)
        self.reservations = SqlAlchemyReservationRepository(self.session)
        self.waitlist = SqlAlchemyWaitlistRepository(self.session)
        self.notifications = SqlAlchemyNotificationRepository(self.session)
        self._committed = False
        return self

    async def __aexit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        tb: Optional[TracebackType],
    ) -> None:
        try:
            if exc is not None or not self._committed:
                # Rows already handed to the caller stay readable; rollback would expire them.
                self.session.expunge_all()
                await self.rollback()
        finally:
            await self.session.close()
        if exc is not None and _is_transient(exc):
            logger.warning("transaction aborted by the store: %s", exc)
            raise TransientStoreError("the store is busy, retry the request") from exc

    async def commit(self) -> None:
        await self.session.commit()
        self._committed = True

    async def rollback(self) -> None:
        await self.session.rollback()
