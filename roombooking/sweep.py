"""
Expiry sweep: mark reservations whose end time has passed as done.

Runs either as a periodic task inside the API process (see main.lifespan)
or as a single pass from cron via the ``roombooking-sweep`` command.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial

from sqlalchemy.exc import SQLAlchemyError

from .domain.errors import BookingError
from .domain.events import BroadcastSink
from .domain.repositories import UnitOfWorkFactory
from .models import ReservationStatus
from .usecases.reservations import expire_finished_reservations
from .utils.audit_log import emit_audit_log

logger = logging.getLogger(__name__)


async def run_sweep(uow_factory: UnitOfWorkFactory, broadcaster: BroadcastSink) -> int:
    expired = await expire_finished_reservations(uow_factory, broadcaster)
    for reservation in expired:
        try:
            emit_audit_log(
                action="reservation.expired",
                initiator="system",
                reservation_id=reservation.id,
                room_id=reservation.room_id,
                user_id=reservation.user_id,
                status_from=ReservationStatus.ACTIVE,
                status_to=ReservationStatus.DONE,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
            )
        except RuntimeError:
            logger.exception("audit log failed for expired reservation %s", reservation.id)
    if expired:
        logger.info("expiry sweep marked %d reservations done", len(expired))
    return len(expired)


async def sweep_forever(
    uow_factory: UnitOfWorkFactory,
    broadcaster: BroadcastSink,
    *,
    interval_seconds: float,
) -> None:
    while True:
        try:
            await run_sweep(uow_factory, broadcaster)
        except (BookingError, SQLAlchemyError, OSError) as exc:
            logger.error("expiry sweep failed: %s", exc)
        await asyncio.sleep(interval_seconds)


async def _run_once() -> int:
    from .database import async_session, close_db
    from .infrastructure.broadcast import LoggingBroadcastSink
    from .infrastructure.unit_of_work import SqlAlchemyUnitOfWork

    try:
        return await run_sweep(partial(SqlAlchemyUnitOfWork, async_session), LoggingBroadcastSink())
    finally:
        await close_db()


def main() -> None:
    from .config import get_settings

    logging.basicConfig(level=get_settings().log_level)
    count = asyncio.run(_run_once())
    logger.info("done, %d reservations expired", count)


if __name__ == "__main__":
    main()
