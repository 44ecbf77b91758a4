from datetime import datetime
from typing import List, Optional, Union
from zoneinfo import ZoneInfo

from pydantic import BaseModel, Field, field_serializer

from .domain.repositories import ReservationDetail
from .models import Notification, ReservationStatus, Room, WaitlistEntry, WaitlistStatus
from .utils.time import utc_naive_to_local


class RoomRead(BaseModel):
    room_id: int
    name: str
    location: str
    capacity: int
    has_projector: bool
    has_whiteboard: bool

    @classmethod
    def from_db(cls, *, room: Room) -> "RoomRead":
        return cls(
            room_id=room.id,
            name=room.name,
            location=room.location,
            capacity=room.capacity,
            has_projector=bool(room.has_projector),
            has_whiteboard=bool(room.has_whiteboard),
        )


class RoomAvailabilityRead(RoomRead):
    is_available: bool

    @classmethod
    def from_availability(cls, *, room: Room, is_available: bool) -> "RoomAvailabilityRead":
        return cls(**RoomRead.from_db(room=room).model_dump(), is_available=is_available)


class ReservationCreate(BaseModel):
    room_id: int = Field(ge=1)
    start_time: datetime
    end_time: datetime
    participants: Union[List[str], str, None] = None


class ReservationRead(BaseModel):
    reservation_id: int
    room_id: int
    room_name: str
    location: str
    user_id: int
    user_name: str
    student_id: str
    start_time: datetime
    end_time: datetime
    status: ReservationStatus
    participants: List[str]

    @field_serializer("start_time", "end_time")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_detail(cls, *, detail: ReservationDetail, tz: ZoneInfo) -> "ReservationRead":
        return cls(
            reservation_id=detail.id,
            room_id=detail.room_id,
            room_name=detail.room_name,
            location=detail.room_location,
            user_id=detail.user_id,
            user_name=detail.user_name,
            student_id=detail.student_id,
            start_time=utc_naive_to_local(detail.start_time, tz),
            end_time=utc_naive_to_local(detail.end_time, tz),
            status=detail.status,
            participants=list(detail.participants),
        )


class ReservationCancelRead(BaseModel):
    reservation: ReservationRead
    promoted_reservation_ids: List[int] = Field(default_factory=list)


class RoomTimeline(BaseModel):
    room: RoomRead
    reservations: List[ReservationRead]


class WaitlistCreate(BaseModel):
    room_id: int = Field(ge=1)
    start_time: datetime
    end_time: datetime
    participants: Union[List[str], str, None] = None


class WaitlistRead(BaseModel):
    waitlist_id: int
    room_id: int
    user_id: int
    start_time: datetime
    end_time: datetime
    participants: List[str]
    queue_position: int
    status: WaitlistStatus
    created_at: Optional[datetime] = None

    @field_serializer("start_time", "end_time", "created_at")
    def _ser_datetime(self, dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @classmethod
    def from_db(cls, *, entry: WaitlistEntry, tz: ZoneInfo) -> "WaitlistRead":
        return cls(
            waitlist_id=entry.id,
            room_id=entry.room_id,
            user_id=entry.user_id,
            start_time=utc_naive_to_local(entry.start_time, tz),
            end_time=utc_naive_to_local(entry.end_time, tz),
            participants=list(entry.participants or []),
            queue_position=entry.queue_position,
            status=entry.status,
            created_at=utc_naive_to_local(entry.created_at, tz) if entry.created_at else None,
        )


class NotificationRead(BaseModel):
    notification_id: int
    reservation_id: Optional[int] = None
    message: str
    is_read: bool
    created_at: datetime

    @field_serializer("created_at")
    def _ser_datetime(self, dt: datetime) -> str:
        return dt.isoformat()

    @classmethod
    def from_db(cls, *, notification: Notification, tz: ZoneInfo) -> "NotificationRead":
        return cls(
            notification_id=notification.id,
            reservation_id=notification.reservation_id,
            message=notification.message,
            is_read=bool(notification.is_read),
            created_at=utc_naive_to_local(notification.created_at, tz),
        )
