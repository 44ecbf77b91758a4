from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from typing import Any, Iterable, List, Sequence

from sqlalchemy import Select, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..domain.repositories import ReservationDetail
from ..models import (
    Notification,
    Reservation,
    ReservationParticipant,
    ReservationStatus,
    Room,
    User,
    WaitlistEntry,
    WaitlistStatus,
)
from ..utils.time import utcnow_naive


class SqlAlchemyRoomRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get(self, room_id: int) -> Room | None:
        return await self.session.get(Room, room_id)

    async def get_for_update(self, room_id: int) -> Room | None:
        result = await self.session.scalar(select(Room).where(Room.id == room_id).with_for_update())
        return result if isinstance(result, Room) else None

    async def list_all(
        self,
        *,
        min_capacity: int | None = None,
        has_projector: bool = False,
        has_whiteboard: bool = False,
    ) -> List[Room]:
        stmt = select(Room).order_by(Room.name)
        if min_capacity:
            stmt = stmt.where(Room.capacity >= min_capacity)
        if has_projector:
            stmt = stmt.where(Room.has_projector.is_(True))
        if has_whiteboard:
            stmt = stmt.where(Room.has_whiteboard.is_(True))
        rows = await self.session.scalars(stmt)
        return list(rows.all())


class SqlAlchemyUserRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def resolve_student_ids(self, student_ids: Sequence[str]) -> dict[str, int]:
        if not student_ids:
            return {}
        rows = await self.session.execute(
            select(User.student_id, User.id).where(User.student_id.in_(list(student_ids)))
        )
        return {student_id: user_id for student_id, user_id in rows.all()}

    async def lock(self, user_ids: Iterable[int]) -> None:
        # Ascending order keeps concurrent admissions from deadlocking on each other.
        ids = sorted(set(user_ids))
        if not ids:
            return
        await self.session.execute(
            select(User.id).where(User.id.in_(ids)).order_by(User.id).with_for_update()
        )


class SqlAlchemyReservationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def count_active_for_user(self, user_id: int, now: datetime, *, lock: bool = False) -> int:
        # Two narrow selects instead of an OR across a join, so a locking read
        # only touches this user's rows.
        owned: Select[Any] = select(Reservation.id).where(
            Reservation.user_id == user_id,
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.end_time > now,
        )
        joined: Select[Any] = (
            select(Reservation.id)
            .join(ReservationParticipant, ReservationParticipant.reservation_id == Reservation.id)
            .where(
                ReservationParticipant.user_id == user_id,
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.end_time > now,
            )
        )
        if lock:
            owned = owned.with_for_update()
            joined = joined.with_for_update(of=Reservation)
        ids = set((await self.session.scalars(owned)).all())
        ids.update((await self.session.scalars(joined)).all())
        return len(ids)

    async def find_overlapping(
        self,
        room_id: int,
        start: datetime,
        end: datetime,
        *,
        lock: bool = False,
    ) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(
                Reservation.room_id == room_id,
                Reservation.status == ReservationStatus.ACTIVE,
                Reservation.start_time < end,
                Reservation.end_time > start,
            )
            .order_by(Reservation.start_time)
        )
        if lock:
            stmt = stmt.with_for_update()
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def create(
        self,
        *,
        room_id: int,
        user_id: int,
        start_time: datetime,
        end_time: datetime,
    ) -> Reservation:
        now = utcnow_naive()
        reservation = Reservation(
            room_id=room_id,
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            status=ReservationStatus.ACTIVE,
            created_at=now,
            updated_at=now,
        )
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def add_participants(self, reservation_id: int, user_ids: Iterable[int]) -> None:
        self.session.add_all(
            [ReservationParticipant(reservation_id=reservation_id, user_id=user_id) for user_id in user_ids]
        )
        await self.session.flush()

    async def get_for_update(self, reservation_id: int) -> Reservation | None:
        result = await self.session.scalar(
            select(Reservation).where(Reservation.id == reservation_id).with_for_update()
        )
        return result if isinstance(result, Reservation) else None

    async def get_detail(self, reservation_id: int) -> ReservationDetail | None:
        details = await self._load_details(Reservation.id == reservation_id)
        return details[0] if details else None

    async def set_status(self, reservation: Reservation, status: ReservationStatus) -> Reservation:
        reservation.status = status
        reservation.updated_at = utcnow_naive()
        self.session.add(reservation)
        await self.session.flush()
        return reservation

    async def list_active_for_user(self, user_id: int) -> List[ReservationDetail]:
        participating = select(ReservationParticipant.reservation_id).where(ReservationParticipant.user_id == user_id)
        return await self._load_details(
            Reservation.status == ReservationStatus.ACTIVE,
            or_(Reservation.user_id == user_id, Reservation.id.in_(participating)),
        )

    async def list_active_for_room(self, room_id: int) -> List[ReservationDetail]:
        return await self._load_details(
            Reservation.room_id == room_id,
            Reservation.status == ReservationStatus.ACTIVE,
        )

    async def expire_finished(self, now: datetime) -> List[Reservation]:
        stmt = (
            select(Reservation)
            .where(Reservation.status == ReservationStatus.ACTIVE, Reservation.end_time <= now)
            .with_for_update()
        )
        expired = list((await self.session.scalars(stmt)).all())
        for reservation in expired:
            reservation.status = ReservationStatus.DONE
            reservation.updated_at = now
        await self.session.flush()
        return expired

    async def _load_details(self, *criteria: Any) -> List[ReservationDetail]:
        stmt = (
            select(Reservation, Room, User)
            .join(Room, Reservation.room_id == Room.id)
            .join(User, Reservation.user_id == User.id)
            .where(*criteria)
            .order_by(Reservation.start_time, Reservation.id)
        )
        rows = (await self.session.execute(stmt)).all()
        if not rows:
            return []

        ids = [reservation.id for reservation, _, _ in rows]
        participant_rows = await self.session.execute(
            select(ReservationParticipant.reservation_id, User.student_id)
            .join(User, ReservationParticipant.user_id == User.id)
            .where(ReservationParticipant.reservation_id.in_(ids))
            .order_by(User.student_id)
        )
        participants: dict[int, list[str]] = defaultdict(list)
        for reservation_id, student_id in participant_rows.all():
            participants[reservation_id].append(student_id)

        return [
            ReservationDetail(
                id=reservation.id,
                room_id=room.id,
                room_name=room.name,
                room_location=room.location,
                user_id=user.id,
                user_name=user.name,
                student_id=user.student_id,
                start_time=reservation.start_time,
                end_time=reservation.end_time,
                status=reservation.status,
                participants=tuple(participants.get(reservation.id, ())),
            )
            for reservation, room, user in rows
        ]


class SqlAlchemyWaitlistRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def has_waiting(self, *, user_id: int, room_id: int, start_time: datetime, end_time: datetime) -> bool:
        stmt = select(WaitlistEntry.id).where(
            WaitlistEntry.user_id == user_id,
            WaitlistEntry.room_id == room_id,
            WaitlistEntry.start_time == start_time,
            WaitlistEntry.end_time == end_time,
            WaitlistEntry.status == WaitlistStatus.WAITING,
        )
        return await self.session.scalar(stmt) is not None

    async def next_position(self, *, room_id: int, start_time: datetime, end_time: datetime) -> int:
        stmt = select(func.coalesce(func.max(WaitlistEntry.queue_position), 0)).where(
            WaitlistEntry.room_id == room_id,
            WaitlistEntry.start_time == start_time,
            WaitlistEntry.end_time == end_time,
        )
        return int(await self.session.scalar(stmt) or 0) + 1

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
        now = utcnow_naive()
        entry = WaitlistEntry(
            room_id=room_id,
            user_id=user_id,
            start_time=start_time,
            end_time=end_time,
            participants=list(participants),
            queue_position=queue_position,
            status=WaitlistStatus.WAITING,
            created_at=now,
            updated_at=now,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def get_for_update(self, entry_id: int) -> WaitlistEntry | None:
        result = await self.session.scalar(
            select(WaitlistEntry).where(WaitlistEntry.id == entry_id).with_for_update()
        )
        return result if isinstance(result, WaitlistEntry) else None

    async def list_contained(self, room_id: int, start: datetime, end: datetime) -> List[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.room_id == room_id,
                WaitlistEntry.status == WaitlistStatus.WAITING,
                WaitlistEntry.start_time >= start,
                WaitlistEntry.end_time <= end,
            )
            .order_by(WaitlistEntry.created_at, WaitlistEntry.queue_position, WaitlistEntry.id)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def list_waiting_for_user(self, user_id: int, now: datetime) -> List[WaitlistEntry]:
        stmt = (
            select(WaitlistEntry)
            .where(
                WaitlistEntry.user_id == user_id,
                WaitlistEntry.status == WaitlistStatus.WAITING,
                WaitlistEntry.end_time > now,
            )
            .order_by(WaitlistEntry.created_at, WaitlistEntry.id)
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def set_status(self, entry: WaitlistEntry, status: WaitlistStatus) -> WaitlistEntry:
        entry.status = status
        entry.updated_at = utcnow_naive()
        self.session.add(entry)
        await self.session.flush()
        return entry


class SqlAlchemyNotificationRepository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create(self, *, user_id: int, reservation_id: int | None, message: str) -> Notification:
        notification = Notification(
            user_id=user_id,
            reservation_id=reservation_id,
            message=message,
            is_read=False,
            created_at=utcnow_naive(),
        )
        self.session.add(notification)
        await self.session.flush()
        return notification

    async def list_for_user(self, user_id: int) -> List[Notification]:
        stmt = (
            select(Notification)
            .where(Notification.user_id == user_id)
            .order_by(Notification.created_at.desc(), Notification.id.desc())
        )
        rows = await self.session.scalars(stmt)
        return list(rows.all())

    async def get_for_update(self, notification_id: int) -> Notification | None:
        result = await self.session.scalar(
            select(Notification).where(Notification.id == notification_id).with_for_update()
        )
        return result if isinstance(result, Notification) else None

    async def mark_read(self, notification: Notification) -> Notification:
        notification.is_read = True
        self.session.add(notification)
        await self.session.flush()
        return notification
