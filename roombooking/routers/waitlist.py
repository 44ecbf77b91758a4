from typing import List

from fastapi import APIRouter, Depends, Path, status

from ..deps import get_booking_policy, get_current_user_id, get_uow_factory
from ..domain.errors import BookingError
from ..domain.repositories import UnitOfWorkFactory
from ..domain.services import BookingPolicy, normalize_participants
from ..models import WaitlistStatus
from ..schemas import WaitlistCreate, WaitlistRead
from ..usecases import waitlist as waitlist_usecase
from ..usecases.admission import ReservationRequest
from ..utils.audit_log import emit_audit_log
from .errors import audit_failed, to_http_exception, to_utc_interval

router = APIRouter(prefix="", tags=["waitlist"])


@router.post("/waitlist", response_model=WaitlistRead, status_code=status.HTTP_201_CREATED)
async def submit_waitlist(
    payload: WaitlistCreate,
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> WaitlistRead:
    start, end = to_utc_interval(payload.start_time, payload.end_time)
    try:
        request = ReservationRequest(
            room_id=payload.room_id,
            user_id=user_id,
            start_time=start,
            end_time=end,
            participants=normalize_participants(payload.participants, policy=policy),
        )
        entry = await waitlist_usecase.submit_waitlist_entry(uow_factory, request, policy=policy)
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    try:
        emit_audit_log(
            action="waitlist.submitted",
            initiator="user",
            reservation_id=None,
            room_id=entry.room_id,
            user_id=user_id,
            status_from=None,
            status_to=entry.status,
            start_time=entry.start_time,
            end_time=entry.end_time,
            extra={"waitlist_id": entry.id, "queue_position": entry.queue_position},
        )
    except RuntimeError as exc:
        raise audit_failed() from exc

    return WaitlistRead.from_db(entry=entry, tz=policy.tz)


@router.get("/me/waitlist", response_model=List[WaitlistRead])
async def list_my_waitlist(
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> list[WaitlistRead]:
    entries = await waitlist_usecase.list_my_waitlist(uow_factory, user_id=user_id)
    return [WaitlistRead.from_db(entry=entry, tz=policy.tz) for entry in entries]


@router.post("/me/waitlist/{waitlist_id}/cancel", response_model=WaitlistRead)
async def cancel_waitlist(
    waitlist_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> WaitlistRead:
    try:
        entry, previous = await waitlist_usecase.cancel_waitlist_entry(
            uow_factory, entry_id=waitlist_id, user_id=user_id
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc

    if previous == WaitlistStatus.WAITING:
        try:
            emit_audit_log(
                action="waitlist.cancelled",
                initiator="user",
                reservation_id=None,
                room_id=entry.room_id,
                user_id=user_id,
                status_from=previous,
                status_to=entry.status,
                start_time=entry.start_time,
                end_time=entry.end_time,
                extra={"waitlist_id": entry.id},
            )
        except RuntimeError as exc:
            raise audit_failed() from exc

    return WaitlistRead.from_db(entry=entry, tz=policy.tz)
