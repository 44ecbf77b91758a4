from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, ClassVar, Protocol

from ..utils.time import utc_naive_isoformat
from .repositories import ReservationDetail

logger = logging.getLogger(__name__)


def room_channel(room_id: int) -> str:
    return f"room:{room_id}"


def user_channel(user_id: int) -> str:
    return f"user:{user_id}"


class BroadcastEvent(Protocol):
    name: ClassVar[str]

    def to_payload(self) -> dict[str, Any]: ...


class BroadcastSink(Protocol):
    """Fire-and-forget delivery of events to subscribers of a logical channel."""

    def publish(self, channel: str, event: BroadcastEvent) -> None: ...


@dataclass(frozen=True)
class ReservationCreated:
    name: ClassVar[str] = "reservation:created"

    reservation: ReservationDetail

    def to_payload(self) -> dict[str, Any]:
        detail = self.reservation
        return {
            "id": detail.id,
            "room_id": detail.room_id,
            "room_name": detail.room_name,
            "location": detail.room_location,
            "user_id": detail.user_id,
            "user_name": detail.user_name,
            "student_id": detail.student_id,
            "start_time": utc_naive_isoformat(detail.start_time),
            "end_time": utc_naive_isoformat(detail.end_time),
            "status": detail.status.value,
            "participants": list(detail.participants),
        }


@dataclass(frozen=True)
class ReservationCancelled:
    name: ClassVar[str] = "reservation:cancelled"

    id: int
    room_id: int
    start_time: datetime
    end_time: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "start_time": utc_naive_isoformat(self.start_time),
            "end_time": utc_naive_isoformat(self.end_time),
        }


@dataclass(frozen=True)
class WaitlistPromoted:
    name: ClassVar[str] = "waitlist:promoted"

    entry_id: int
    reservation_id: int
    user_id: int
    room_id: int
    start_time: datetime
    end_time: datetime

    def to_payload(self) -> dict[str, Any]:
        return {
            "waitlist_id": self.entry_id,
            "reservation_id": self.reservation_id,
            "user_id": self.user_id,
            "room_id": self.room_id,
            "start_time": utc_naive_isoformat(self.start_time),
            "end_time": utc_naive_isoformat(self.end_time),
        }


def publish_safely(sink: BroadcastSink, channel: str, event: BroadcastEvent) -> None:
    """Delivery is best effort; the booking state never depends on it."""
    try:
        sink.publish(channel, event)
    except Exception:
        logger.exception("failed to publish %s on %s", event.name, channel)
