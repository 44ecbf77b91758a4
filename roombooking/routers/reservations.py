from typing import List

from fastapi import APIRouter, Depends, Path, status

from ..deps import get_booking_policy, get_broadcaster, get_current_user_id, get_uow_factory
from ..domain.errors import BookingError
from ..domain.events import BroadcastSink
from ..domain.repositories import UnitOfWorkFactory
from ..domain.services import BookingPolicy, normalize_participants
from ..schemas import ReservationCancelRead, ReservationCreate, ReservationRead
from ..usecases import reservations as reservation_usecase
from ..usecases.admission import ReservationRequest
from ..utils.audit_log import emit_audit_log
from .errors import audit_failed, to_http_exception, to_utc_interval

router = APIRouter(prefix="", tags=["reservations"])


@router.post("/reservations", response_model=ReservationRead, status_code=status.HTTP_201_CREATED)
async def create_reservation(
    payload: ReservationCreate,
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    broadcaster: BroadcastSink = Depends(get_broadcaster),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> ReservationRead:
    start, end = to_utc_interval(payload.start_time, payload.end_time)
    try:
        request = ReservationRequest(
            room_id=payload.room_id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            participants=normalize_participants(payload.participants, policy=policy),
        )
        detail = await reservation_usecase.create_reservation(uow_factory, broadcaster, request, policy=policy)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    try:
        emit_audit_log(
            action="reservation.created",
            initiator="user",
            reservation_id=detail.id,
            room_id=detail.room_id,
            user_id=user_id,
            status_from=None,
            status_to=detail.status,
            start_time=detail.start_time,
            end_time=detail.end_time,
            extra={"participants": list(detail.participants)} if detail.participants else None,
        )
    except RuntimeError as exc:
        raise audit_failed() from exc

    return ReservationRead.from_detail(detail=detail, tz=policy.tz)


@router.get("/me/reservations", response_model=List[ReservationRead])
async def list_my_reservations(
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> list[ReservationRead]:
    details = await reservation_usecase.list_user_reservations(uow_factory, user_id=user_id)
    return [ReservationRead.from_detail(detail=detail, tz=policy.tz) for detail in details]


@router.post("/me/reservations/{reservation_id}/cancel", response_model=ReservationCancelRead)
async def cancel_reservation(
    reservation_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    broadcaster: BroadcastSink = Depends(get_broadcaster),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> ReservationCancelRead:
    try:
        outcome = await reservation_usecase.cancel_reservation(
            uow_factory,
            broadcaster,
            reservation_id=reservation_id,
            user_id=user_id,
            policy=policy,
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    if outcome.changed:
        try:
            emit_audit_log(
                action="reservation.cancelled",
                initiator="user",
                reservation_id=outcome.reservation.id,
                room_id=outcome.reservation.room_id,
                user_id=user_id,
                status_from=outcome.status_from,
                status_to=outcome.reservation.status,
                start_time=outcome.reservation.start_time,
                end_time=outcome.reservation.end_time,
                extra={"promoted_reservation_ids": outcome.promoted_reservation_ids}
                if outcome.promoted_reservation_ids
                else None,
            )
        except RuntimeError as exc:
            raise audit_failed() from exc

    return ReservationCancelRead(
        reservation=ReservationRead.from_detail(detail=outcome.reservation, tz=policy.tz),
        promoted_reservation_ids=outcome.promoted_reservation_ids,
    )
