"""
Shared fakes: an in-memory store behind the UnitOfWork protocol, and a
broadcast sink that records what was published.

The store serializes writers with one asyncio.Lock that a unit of work takes
on its first locking read or write and keeps until commit or rollback.
Unlocked reads never wait. Every repository call yields to the event loop so
concurrent use cases interleave the way they would against a real database.
"""

from __future__ import annotations

import asyncio
import itertools
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable, Sequence

import pytest
from roombooking.domain.errors import TransientStoreError
from roombooking.domain.events import BroadcastEvent
from roombooking.domain.repositories import ReservationDetail
from roombooking.domain.services import BookingPolicy
from roombooking.models import (
    Notification,
    Reservation,
    ReservationStatus,
    Room,
    User,
    UserRole,
    WaitlistEntry,
    WaitlistStatus,
)

NOW = datetime(2026, 3, 2, 9, 0)


class InMemoryStore:
    def __init__(self) -> None:
        self.users: dict[int, User] = {}
        self.rooms: dict[int, Room] = {}
        self.reservations: dict[int, Reservation] = {}
        self.participants: set[tuple[int, int]] = set()
        self.waitlist: dict[int, WaitlistEntry] = {}
        self.notifications: list[Notification] = []
        self.lock = asyncio.Lock()
        self.commits = 0
        self.opened: list[FakeUnitOfWork] = []
        self.failures: dict[str, int] = defaultdict(int)
        self._ids: dict[str, itertools.count[int]] = defaultdict(lambda: itertools.count(1))

    def next_id(self, table: str) -> int:
        return next(self._ids[table])

    def fail(self, operation: str, times: int = 1) -> None:
        """Make the next `times` calls of e.g. "reservations.add_participants" raise TransientStoreError."""
        self.failures[operation] += times

    def add_user(self, student_id: str, name: str = "", *, role: UserRole = UserRole.MEMBER) -> User:
        user = User(
            id=self.next_id("users"),
            student_id=student_id,
            name=name or f"user-{student_id}",
            role=role,
            created_at=NOW,
        )
        self.users[user.id] = user
        return user

    def add_room(
        self,
        name: str = "Room A",
        *,
        capacity: int = 4,
        location: str = "1F",
        has_projector: bool = False,
        has_whiteboard: bool = True,
    ) -> Room:
        room = Room(
            id=self.next_id("rooms"),
            name=name,
            location=location,
            capacity=capacity,
            has_projector=has_projector,
            has_whiteboard=has_whiteboard,
            created_at=NOW,
            updated_at=NOW,
        )
        self.rooms[room.id] = room
        return room

    def add_reservation(
        self,
        room: Room,
        user: User,
        start: datetime,
        end: datetime,
        *,
        participants: Iterable[User] = (),
        status: ReservationStatus = ReservationStatus.ACTIVE,
    ) -> Reservation:
        reservation = Reservation(
            id=self.next_id("reservations"),
            room_id=room.id,
            user_id=user.id,
            start_time=start,
            end_time=end,
            status=status,
            created_at=NOW,
            updated_at=NOW,
        )
        self.reservations[reservation.id] = reservation
        for participant in participants:
            self.participants.add((reservation.id, participant.id))
        return reservation

    def add_waitlist_entry(
        self,
        room: Room,
        user: User,
        start: datetime,
        end: datetime,
        *,
        participants: Sequence[str] = (),
        queue_position: int = 1,
        created_at: datetime = NOW,
        status: WaitlistStatus = WaitlistStatus.WAITING,
    ) -> WaitlistEntry:
        entry = WaitlistEntry(
            id=self.next_id("waitlist"),
            room_id=room.id,
            user_id=user.id,
            start_time=start,
            end_time=end,
            participants=list(participants),
            queue_position=queue_position,
            status=status,
            created_at=created_at,
            updated_at=created_at,
        )
        self.waitlist[entry.id] = entry
        return entry

    def add_notification(self, user: User, message: str, *, created_at: datetime = NOW) -> Notification:
        notification = Notification(
            id=self.next_id("notifications"),
            user_id=user.id,
            reservation_id=None,
            message=message,
            is_read=False,
            created_at=created_at,
        )
        self.notifications.append(notification)
        return notification

    def active_reservations(self, room_id: int | None = None) -> list[Reservation]:
        return [
            reservation
            for reservation in self.reservations.values()
            if reservation.status == ReservationStatus.ACTIVE and room_id in (None, reservation.room_id)
        ]

    def detail(self, reservation: Reservation) -> ReservationDetail:
        room = self.rooms[reservation.room_id]
        owner = self.users[reservation.user_id]
        students = sorted(
            self.users[user_id].student_id
            for reservation_id, user_id in self.participants
            if reservation_id == reservation.id
        )
        return ReservationDetail(
            id=reservation.id,
            room_id=room.id,
            room_name=room.name,
            room_location=room.location,
            user_id=owner.id,
            user_name=owner.name,
            student_id=owner.student_id,
            start_time=reservation.start_time,
            end_time=reservation.end_time,
            status=reservation.status,
            participants=tuple(students),
        )


class _FakeRepository:
    def __init__(self, uow: "FakeUnitOfWork") -> None:
        self.uow = uow
        self.store = uow.store


class FakeRoomRepository(_FakeRepository):
    async def get(self, room_id: int) -> Room | None:
        await self.uow.step("rooms.get")
        return self.store.rooms.get(room_id)

    async def get_for_update(self, room_id: int) -> Room | None:
        await self.uow.step("rooms.get_for_update", lock=True)
        return self.store.rooms.get(room_id)

    async def list_all(
        self,
        *,
        min_capacity: int | None = None,
        has_projector: bool = False,
        has_whiteboard: bool = False,
    ) -> list[Room]:
        await self.uow.step("rooms.list_all")
        rooms = [
            room
            for room in self.store.rooms.values()
            if room.capacity >= (min_capacity or 0)
            and (room.has_projector or not has_projector)
            and (room.has_whiteboard or not has_whiteboard)
        ]
        return sorted(rooms, key=lambda room: room.name)


class FakeUserRepository(_FakeRepository):
    async def resolve_student_ids(self, student_ids: Sequence[str]) -> dict[str, int]:
        await self.uow.step("users.resolve_student_ids")
        wanted = set(student_ids)
        return {user.student_id: user.id for user in self.store.users.values() if user.student_id in wanted}

    async def lock(self, user_ids: Iterable[int]) -> None:
        self.uow.locked_user_ids.append(sorted(set(user_ids)))
        await self.uow.step("users.lock", lock=True)


class FakeReservationRepository(_FakeRepository):
    async def count_active_for_user(self, user_id: int, now: datetime, *, lock: bool = False) -> int:
        await self.uow.step("reservations.count_active_for_user", lock=lock)
        return sum(
            1
            for reservation in self.store.active_reservations()
            if reservation.end_time > now
            and (reservation.user_id == user_id or (reservation.id, user_id) in self.store.participants)
        )

    async def find_overlapping(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        *,
        lock: bool = False,
    ) -> list[Reservation]:
        await self.uow.step("reservations.find_overlapping", lock=lock)
        found = [
            reservation
            for reservation in self.store.active_reservations(room_id)
            if reservation.start_time < end and reservation.end_time > start
        ]
        return sorted(found, key=lambda reservation: reservation.start_time)

    async def create(self, *, room_id: int, user_id: int, start_time: datetime, end_time: datetime) -> Reservation:
        await self.uow.step("reservations.create", lock=True)
        reservation = Reservation(
            id=self.store.next_id("reservations"),
            room_id=room_id,
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            status=ReservationStatus.ACTIVE,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.reservations[reservation.id] = reservation
        self.uow.on_rollback(lambda: self.store.reservations.pop(reservation.id, None))
        return reservation

    async def add_participants(self, reservation_id: int, user_ids: Iterable[int]) -> None:
        await self.uow.step("reservations.add_participants", lock=True)
        for user_id in user_ids:
            edge = (reservation_id, user_id)
            self.store.participants.add(edge)
            self.uow.on_rollback(lambda edge=edge: self.store.participants.discard(edge))

    async def get_for_update(self, reservation_id: int) -> Reservation | None:
        await self.uow.step("reservations.get_for_update", lock=True)
        return self.store.reservations.get(reservation_id)

    async def get_detail(self, reservation_id: int) -> ReservationDetail | None:
        await self.uow.step("reservations.get_detail")
        reservation = self.store.reservations.get(reservation_id)
        return self.store.detail(reservation) if reservation is not None else None

    async def set_status(self, reservation: Reservation, status: ReservationStatus) -> Reservation:
        await self.uow.step("reservations.set_status", lock=True)
        previous = reservation.status
        reservation.status = status
        self.uow.on_rollback(lambda: setattr(reservation, "status", previous))
        return reservation

    async def list_active_for_user(self, user_id: int) -> list[ReservationDetail]:
        await self.uow.step("reservations.list_active_for_user")
        mine = [
            reservation
            for reservation in self.store.active_reservations()
            if reservation.user_id == user_id or (reservation.id, user_id) in self.store.participants
        ]
        return [self.store.detail(r) for r in sorted(mine, key=lambda r: (r.start_time, r.id))]

    async def list_active_for_room(self, room_id: int) -> list[ReservationDetail]:
        await self.uow.step("reservations.list_active_for_room")
        rows = sorted(self.store.active_reservations(room_id), key=lambda r: (r.start_time, r.id))
        return [self.store.detail(r) for r in rows]

    async def expire_finished(self, now: datetime) -> list[Reservation]:
        await self.uow.step("reservations.expire_finished", lock=True)
        expired = [r for r in self.store.active_reservations() if r.end_time <= now]
        for reservation in expired:
            reservation.status = ReservationStatus.DONE
            self.uow.on_rollback(lambda r=reservation: setattr(r, "status", ReservationStatus.ACTIVE))
        return expired


class FakeWaitlistRepository(_FakeRepository):
    async def has_waiting(self, *, user_id: int, room_id: int, start_time: datetime, end_time: datetime) -> bool:
        await self.uow.step("waitlist.has_waiting")
        return any(
            entry.user_id == user_id
            and entry.room_id == room_id
            and entry.start_time == start_time
            and entry.end_time == end_time
            and entry.status == WaitlistStatus.WAITING
            for entry in self.store.waitlist.values()
        )

    async def next_position(self, *, room_id: int, start_time: datetime, end_time: datetime) -> int:
        await self.uow.step("waitlist.next_position")
        positions = [
            entry.queue_position
            for entry in self.store.waitlist.values()
            if entry.room_id == room_id and entry.start_time == start_time and entry.end_time == end_time
        ]
        return max(positions, default=0) + 1

    async def create(
        self,
        *,
        room_id: int,
        user_id: int,
        start_time: datetime,
        end_time: datetime,
        participants: Sequence[str],
        queue_position: int,
    ) -> WaitlistEntry:
        await self.uow.step("waitlist.create", lock=True)
        entry = WaitlistEntry(
            id=self.store.next_id("waitlist"),
            room_id=room_id,
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            participants=list(participants),
            queue_position=queue_position,
            status=WaitlistStatus.WAITING,
            created_at=NOW,
            updated_at=NOW,
        )
        self.store.waitlist[entry.id] = entry
        self.uow.on_rollback(lambda: self.store.waitlist.pop(entry.id, None))
        return entry

    async def get_for_update(self, entry_id: int) -> WaitlistEntry | None:
        await self.uow.step("waitlist.get_for_update", lock=True)
        return self.store.waitlist.get(entry_id)

    async def list_contained(self, room_id: int, start: datetime, end: datetime) -> list[WaitlistEntry]:
        await self.uow.step("waitlist.list_contained")
        found = [
            entry
            for entry in self.store.waitlist.values()
            if entry.room_id == room_id
            and entry.status == WaitlistStatus.WAITING
            and entry.start_time >= start
            and entry.end_time <= end
        ]
        return sorted(found, key=lambda entry: (entry.created_at, entry.queue_position, entry.id))

    async def list_waiting_for_user(self, user_id: int, now: datetime) -> list[WaitlistEntry]:
        await self.uow.step("waitlist.list_waiting_for_user")
        found = [
            entry
            for entry in self.store.waitlist.values()
            if entry.user_id == user_id and entry.status == WaitlistStatus.WAITING and entry.end_time > now
        ]
        return sorted(found, key=lambda entry: (entry.created_at, entry.id))

    async def set_status(self, entry: WaitlistEntry, status: WaitlistStatus) -> WaitlistEntry:
        await self.uow.step("waitlist.set_status", lock=True)
        previous = entry.status
        entry.status = status
        self.uow.on_rollback(lambda: setattr(entry, "status", previous))
        return entry


class FakeNotificationRepository(_FakeRepository):
    async def create(self, *, user_id: int, reservation_id: int | None, message: str) -> Notification:
        await self.uow.step("notifications.create", lock=True)
        notification = Notification(
            id=self.store.next_id("notifications"),
            user_id=user_id,
            reservation_id=reservation_id,
            message=message,
            is_read=False,
            created_at=NOW,
        )
        self.store.notifications.append(notification)
        self.uow.on_rollback(lambda: self.store.notifications.remove(notification))
        return notification

    async def list_for_user(self, user_id: int) -> list[Notification]:
        await self.uow.step("notifications.list_for_user")
        mine = [n for n in self.store.notifications if n.user_id == user_id]
        return sorted(mine, key=lambda n: (n.created_at, n.id), reverse=True)

    async def get_for_update(self, notification_id: int) -> Notification | None:
        await self.uow.step("notifications.get_for_update", lock=True)
        return next((n for n in self.store.notifications if n.id == notification_id), None)

    async def mark_read(self, notification: Notification) -> Notification:
        await self.uow.step("notifications.mark_read", lock=True)
        previous = notification.is_read
        notification.is_read = True
        self.uow.on_rollback(lambda: setattr(notification, "is_read", previous))
        return notification


class FakeUnitOfWork:
    def __init__(self, store: InMemoryStore) -> None:
        self.store = store
        store.opened.append(self)
        self.locked_user_ids: list[list[int]] = []
        self._undo: list[Callable[[], Any]] = []
        self._holding = False
        self._committed = False

    async def __aenter__(self) -> "FakeUnitOfWork":
        self.rooms = FakeRoomRepository(self)
        self.users = FakeUserRepository(self)
        self.reservations = FakeReservationRepository(self)
        self.waitlist = FakeWaitlistRepository(self)
        self.notifications = FakeNotificationRepository(self)
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        if exc is not None or not self._committed:
            await self.rollback()

    async def step(self, operation: str, *, lock: bool = False) -> None:
        if lock and not self._holding:
            await self.store.lock.acquire()
            self._holding = True
        await asyncio.sleep(0)
        if self.store.failures.get(operation):
            self.store.failures[operation] -= 1
            raise TransientStoreError(f"injected failure in {operation}")

    def on_rollback(self, undo: Callable[[], Any]) -> None:
        self._undo.append(undo)

    async def commit(self) -> None:
        await self.step("commit")
        self._undo.clear()
        self._committed = True
        self.store.commits += 1
        self._release()

    async def rollback(self) -> None:
        for undo in reversed(self._undo):
            undo()
        self._undo.clear()
        self._release()

    def _release(self) -> None:
        if self._holding:
            self._holding = False
            self.store.lock.release()


class RecordingBroadcaster:
    def __init__(self) -> None:
        self.published: list[tuple[str, BroadcastEvent]] = []

    def publish(self, channel: str, event: BroadcastEvent) -> None:
        self.published.append((channel, event))

    def names(self, channel: str | None = None) -> list[str]:
        return [event.name for ch, event in self.published if channel in (None, ch)]


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def policy() -> BookingPolicy:
    return BookingPolicy(timezone="UTC")


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def uow_factory(store: InMemoryStore) -> Callable[[], FakeUnitOfWork]:
    return lambda: FakeUnitOfWork(store)


@pytest.fixture
def broadcaster() -> RecordingBroadcaster:
    return RecordingBroadcaster()


@pytest.fixture
def at() -> Callable[..., tuple[datetime, datetime]]:
    """Interval starting `hours` after NOW, on the hour."""

    def _at(hours: int, duration: int = 1) -> tuple[datetime, datetime]:
        start = NOW + timedelta(hours=hours)
        return start, start + timedelta(hours=duration)

    return _at
