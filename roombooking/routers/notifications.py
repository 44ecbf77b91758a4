from typing import List

from fastapi import APIRouter, Depends, Path

from ..deps import get_booking_policy, get_current_user_id, get_uow_factory
from ..domain.errors import BookingError
from ..domain.repositories import UnitOfWorkFactory
from ..domain.services import BookingPolicy
from ..schemas import NotificationRead
from ..usecases import notifications as notification_usecase
from .errors import to_http_exception

router = APIRouter(prefix="/me/notifications", tags=["notifications"])


@router.get("", response_model=List[NotificationRead])
async def list_my_notifications(
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> list[NotificationRead]:
    notifications = await notification_usecase.list_notifications(uow_factory, user_id=user_id)
    return [NotificationRead.from_db(notification=n, tz=policy.tz) for n in notifications]


@router.post("/{notification_id}/read", response_model=NotificationRead)
async def mark_notification_read(
    notification_id: int = Path(..., ge=1),
    user_id: int = Depends(get_current_user_id),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    policy: BookingPolicy = Depends(get_booking_policy),
) -> NotificationRead:
    try:
        notification = await notification_usecase.mark_notification_read(
            uow_factory, notification_id=notification_id, user_id=user_id
        )
    except BookingError as exc:
        raise to_http_exception(exc) from exc
    return NotificationRead.from_db(notification=notification, tz=policy.tz)
