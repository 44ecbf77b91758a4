from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query

from ..deps import get_booking_policy, get_current_user_id, get_uow_factory
from ..domain.errors import BookingError
from ..domain.repositories import UnitOfWorkFactory
from ..domain.services import BookingPolicy
from ..schemas import ReservationRead, RoomAvailabilityRead, RoomRead, RoomTimeline
from ..usecases import reservations as reservation_usecase
from .errors import to_http_exception, to_utc_interval

router = APIRouter(prefix="/rooms", tags=["rooms"], dependencies=[Depends(get_current_user_id)])


@router.get("", response_model=List[RoomRead])
async def list_rooms(uow_factory: UnitOfWorkFactory = Depends(get_uow_factory)) -> list[RoomRead]:
    rooms = await reservation_usecase.list_rooms(uow_factory)
    return [RoomRead.from_db(room=room) for room in rooms]


# Declared before /{room_id} so "available" is not parsed as an id.
@router.get("/available", response_model=List[RoomAvailabilityRead])
async def find_available_rooms(
    start_time: datetime = Query(...),
    end_time: datetime = Query(...),
    min_capacity: Optional[int] = Query(None, ge=1),
    has_projector: bool = Query(False),
    has_whiteboard: bool = Query(False),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> list[RoomAvailabilityRead]:
    start_utc, end_utc = to_utc_interval(start_time, end_time)
    try:
        found = await reservation_usecase.find_available_rooms(
            uow_factory,
            start_time=start_utc,
            end_time=end_utc,
            min_capacity=min_capacity,
            has_projector=has_projector,
            has_whiteboard=has_whiteboard,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return [RoomAvailabilityRead.from_availability(room=item.room, is_available=item.is_available) for item in found]


@router.get("/{room_id}", response_model=RoomRead)
async def get_room(
    room_id: int = Path(..., ge=1),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
) -> RoomRead:
    try:
        room = await reservation_usecase.get_room(uow_factory, room_id=room_id)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return RoomRead.from_db(room=room)


@router.get("/{room_id}/timeline", response_model=RoomTimeline)
async def room_timeline(
    room_id: int = Path(..., ge=1),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> RoomTimeline:
    try:
        room, details = await reservation_usecase.room_timeline(uow_factory, room_id=room_id)
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return RoomTimeline(
        room=RoomRead.from_db(room=room),
        reservations=[ReservationRead.from_detail(detail=detail, tz=policy.tz) for detail in details],
    )
