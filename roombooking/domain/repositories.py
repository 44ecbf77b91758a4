from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Protocol, Sequence

from ..models import Notification, Reservation, ReservationStatus, Room, WaitlistEntry, WaitlistStatus


@dataclass(frozen=True)
class ReservationDetail:
    """Reservation joined with room and owner display fields."""

    id: int
    room_id: int
    room_name: str
    room_location: str
    user_id: int
    user_name: str
    student_id: str
    start_time: datetime
    end_time: datetime
    status: ReservationStatus
    participants: tuple[str, ...] = ()


class RoomRepository(Protocol):
    async def get(self, room_id: int) -> Room | None: ...

    async def get_for_update(self, room_id: int) -> Room | None: ...

    async def list_all(
        self,
        *,
        min_capacity: int | None = None,
        has_projector: bool = False,
        has_whiteboard: bool = False,
    ) -> list[Room]: ...


class UserRepository(Protocol):
    async def resolve_student_ids(self, student_ids: Sequence[str]) -> dict[str, int]: ...

    async def lock(self, user_ids: Iterable[int]) -> None: ...


class ReservationRepository(Protocol):
    async def count_active_for_user(self, user_id: int, now: datetime, *, lock: bool = False) -> int: ...

    async def find_overlapping(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        *,
        lock: bool = False,
    ) -> list[Reservation]: ...

    async def create(
        self,
        *,
        room_id: int,
        user_id: int,
        start_time: datetime,
        end_time: datetime,
    ) -> Reservation: ...

    async def add_participants(self, reservation_id: int, user_ids: Iterable[int]) -> None: ...

    async def get_for_update(self, reservation_id: int) -> Reservation | None: ...

    async def get_detail(self, reservation_id: int) -> ReservationDetail | None: ...

    async def set_status(self, reservation: Reservation, status: ReservationStatus) -> Reservation: ...

    async def list_active_for_user(self, user_id: int) -> list[ReservationDetail]: ...

    async def list_active_for_room(self, room_id: int) -> list[ReservationDetail]: ...

    async def expire_finished(self, now: datetime) -> list[Reservation]: ...


class WaitlistRepository(Protocol):
    async def has_waiting(self, *, user_id: int, room_id: int, start_time: datetime, end_time: datetime) -> bool: ...

    async def next_position(self, *, room_id: int, start_time: datetime, end_time: datetime) -> int: ...

    async def create(
        self,
        *,
        room_id: int,
        user_id: int,
        start_time: datetime,
        end_time: datetime,
        participants: Sequence[str],
        queue_position: int,
    ) -> WaitlistEntry: ...

    async def get_for_update(self, entry_id: int) -> WaitlistEntry | None: ...

    async def list_contained(self, room_id: int, start: datetime, end: datetime) -> list[WaitlistEntry]: ...

    async def list_waiting_for_user(self, user_id: int, now: datetime) -> list[WaitlistEntry]: ...

    async def set_status(self, entry: WaitlistEntry, status: WaitlistStatus) -> WaitlistEntry: ...


class NotificationRepository(Protocol):
    async def create(self, *, user_id: int, reservation_id: int | None, message: str) -> Notification: ...

    async def list_for_user(self, user_id: int) -> list[Notification]: ...

    async def get_for_update(self, notification_id: int) -> Notification | None: ...

    async def mark_read(self, notification: Notification) -> Notification: ...


class UnitOfWork(Protocol):
    """
    One transaction against the store. Nothing is committed unless commit()
    is called; leaving the block without it (or with an exception) rolls back.
    """

    rooms: RoomRepository
    users: UserRepository
    reservations: ReservationRepository
    waitlist: WaitlistRepository
    notifications: NotificationRepository

    async def __aenter__(self) -> "UnitOfWork": ...

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None: ...

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...


UnitOfWorkFactory = Callable[[], UnitOfWork]
