from __future__ import annotations

from ..domain.errors import AuthorizationError, NotFoundError
from ..domain.repositories import UnitOfWorkFactory
from ..models import Notification


async def list_notifications(uow_factory: UnitOfWorkFactory, *, user_id: int) -> list[Notification]:
    """Newest first."""
    async with uow_factory() as uow:
        return await uow.notifications.list_for_user(user_id)


async def mark_notification_read(
    uow_factory: UnitOfWorkFactory,
    *,
    notification_id: int,
    user_id: int,
) -> Notification:
    async with uow_factory() as uow:
        notification = await uow.notifications.get_for_update(notification_id)
        if notification is None:
            raise NotFoundError("notification not found", reason="notification_not_found")
        if notification.user_id != user_id:
            raise AuthorizationError("cannot read another user's notification", reason="not_owner")
        if notification.is_read:
            return notification
        await uow.notifications.mark_read(notification)
        await uow.commit()
    return notification
