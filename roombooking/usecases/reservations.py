from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..domain.errors import AuthorizationError, NotFoundError, ValidationError
from ..domain.events import BroadcastSink, ReservationCancelled, ReservationCreated, publish_safely, room_channel
from ..domain.repositories import ReservationDetail, UnitOfWorkFactory
from ..domain.services import BookingPolicy, validate_interval
from ..models import Reservation, ReservationStatus, Room
from ..utils.time import utcnow_naive
from .admission import ReservationRequest, evaluate_admission
from .waitlist import reassign_freed_interval
from .writer import write_reservation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CancelOutcome:
    reservation: ReservationDetail
    status_from: ReservationStatus
    promoted_reservation_ids: list[int] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.status_from != self.reservation.status


@dataclass(frozen=True)
class RoomAvailability:
    room: Room
    is_available: bool


async def create_reservation(
    uow_factory: UnitOfWorkFactory,
    broadcaster: BroadcastSink,
    request: ReservationRequest,
    *,
    policy: BookingPolicy,
    now: datetime | None = None,
) -> ReservationDetail:
    now = now or utcnow_naive()
    # Malformed intervals never open a transaction.
    validate_interval(request.start_time, request.end_time, now=now, policy=policy)

    async with uow_factory() as uow:
        await evaluate_admission(uow, request, now=now, policy=policy, lock=False)
        # Authoritative pass: same rules, under row locks, right before the insert.
        admission = await evaluate_admission(uow, request, now=now, policy=policy, lock=True)
        detail = await write_reservation(uow, request, admission)
        await uow.commit()

    publish_safely(broadcaster, room_channel(detail.room_id), ReservationCreated(detail))
    return detail


async def cancel_reservation(
    uow_factory: UnitOfWorkFactory,
    broadcaster: BroadcastSink,
    *,
    reservation_id: int,
    user_id: int,
    policy: BookingPolicy,
    now: datetime | None = None,
) -> CancelOutcome:
    async with uow_factory() as uow:
        reservation = await uow.reservations.get_for_update(reservation_id)
        if reservation is None:
            raise NotFoundError("reservation not found", reason="reservation_not_found")
        if reservation.user_id != user_id:
            raise AuthorizationError("cannot cancel another user's reservation", reason="not_owner")

        status_from = reservation.status
        # Idempotent: cancelled or finished reservations are returned as-is
        if status_from == ReservationStatus.ACTIVE:
            await uow.reservations.set_status(reservation, ReservationStatus.CANCELLED)
        detail = await uow.reservations.get_detail(reservation.id)
        if detail is None:  # pragma: no cover - locked above
            raise NotFoundError("reservation not found", reason="reservation_not_found")
        if status_from == ReservationStatus.ACTIVE:
            await uow.commit()

    if status_from != ReservationStatus.ACTIVE:
        return CancelOutcome(reservation=detail, status_from=status_from)

    publish_safely(
        broadcaster,
        room_channel(detail.room_id),
        ReservationCancelled(
            id=detail.id,
            room_id=detail.room_id,
            start_time=detail.start_time,
            end_time=detail.end_time,
        ),
    )
    promoted = await reassign_freed_interval(
        uow_factory,
        broadcaster,
        room_id=detail.room_id,
        freed_start=detail.start_time,
        freed_end=detail.end_time,
        policy=policy,
        now=now,
    )
    if promoted:
        logger.info("cancelling reservation %s promoted waitlist reservations %s", detail.id, promoted)
    return CancelOutcome(reservation=detail, status_from=status_from, promoted_reservation_ids=promoted)


async def expire_finished_reservations(
    uow_factory: UnitOfWorkFactory,
    broadcaster: BroadcastSink,
    *,
    now: datetime | None = None,
) -> list[Reservation]:
    """
    Flip reservations whose end time has passed to done and tell room
    subscribers the slot is gone. The waitlist is not consulted: the freed
    time is already in the past.
    """
    now = now or utcnow_naive()
    async with uow_factory() as uow:
        expired = await uow.reservations.expire_finished(now)
        await uow.commit()

    for reservation in expired:
        publish_safely(
            broadcaster,
            room_channel(reservation.room_id),
            ReservationCancelled(
                id=reservation.id,
                room_id=reservation.room_id,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
            ),
        )
    return expired


async def list_user_reservations(
    uow_factory: UnitOfWorkFactory,
    *,
    user_id: int,
) -> list[ReservationDetail]:
    async with uow_factory() as uow:
        return await uow.reservations.list_active_for_user(user_id)


async def list_rooms(uow_factory: UnitOfWorkFactory) -> list[Room]:
    async with uow_factory() as uow:
        return await uow.rooms.list_all()


async def room_timeline(
    uow_factory: UnitOfWorkFactory,
    *,
    room_id: int,
) -> tuple[Room, list[ReservationDetail]]:
    async with uow_factory() as uow:
        room = await uow.rooms.get(room_id)
        if room is None:
            raise NotFoundError("room not found", reason="room_not_found")
        return room, await uow.reservations.list_active_for_room(room_id)


async def get_room(uow_factory: UnitOfWorkFactory, *, room_id: int) -> Room:
    async with uow_factory() as uow:
        room = await uow.rooms.get(room_id)
    if room is None:
        raise NotFoundError("room not found", reason="room_not_found")
    return room


async def find_available_rooms(
    uow_factory: UnitOfWorkFactory,
    *,
    start_time: datetime,
    end_time: datetime,
    min_capacity: int | None = None,
    has_projector: bool = False,
    has_whiteboard: bool = False,
) -> list[RoomAvailability]:
    """
    Rooms matching the feature filters, each flagged with whether it is free
    for the whole interval. Unlike admission this is a plain read: a room shown
    as available can still be taken before the caller books it.
    """
    if start_time >= end_time:
        raise ValidationError("start time must be before end time", reason="invalid_interval")

    async with uow_factory() as uow:
        rooms = await uow.rooms.list_all(
            min_capacity=min_capacity,
            has_projector=has_projector,
            has_whiteboard=has_whiteboard,
        )
        found: list[RoomAvailability] = []
        for room in rooms:
            busy = await uow.reservations.find_overlapping(room.id, start_time, end_time)
            found.append(RoomAvailability(room=room, is_available=not busy))
    return found
