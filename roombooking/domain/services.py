from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Iterable, Sequence
from zoneinfo import ZoneInfo

from ..utils.time import utc_naive_to_local
from .errors import ConflictError, ValidationError

if TYPE_CHECKING:
    from ..config import Settings

STUDENT_ID_PATTERN = re.compile(r"[0-9]{7,10}")


@dataclass(frozen=True)
class BookingPolicy:
    max_active_reservations: int = 3
    booking_window_days: int = 6
    max_participants: int = 10
    timezone: str = "Asia/Seoul"
    unknown_participant_policy: str = "drop"

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)

    @classmethod
    def from_settings(cls, settings: "Settings") -> "BookingPolicy":
        return cls(
            max_active_reservations=settings.max_active_reservations,
            booking_window_days=settings.booking_window_days,
            max_participants=settings.max_participants,
            timezone=settings.booking_timezone,
            unknown_participant_policy=settings.unknown_participant_policy,
        )


def overlaps(start_a: datetime, end_a: datetime, start_b: datetime, end_b: datetime) -> bool:
    """Half-open interval intersection: [a, b) and [b, c) do not overlap."""
    return start_a < end_b and start_b < end_a


def validate_interval(start: datetime, end: datetime, *, now: datetime, policy: BookingPolicy) -> None:
    """
    Temporal rules shared by reservations and waitlist entries.
    All datetimes are naive UTC; hour alignment and the booking window are
    judged in the policy's local timezone.
    """
    if end <= start:
        raise ValidationError("end_time must be later than start_time", reason="invalid_interval")

    tz = policy.tz
    local_start = utc_naive_to_local(start, tz)
    local_end = utc_naive_to_local(end, tz)
    for value in (local_start, local_end):
        if value.minute or value.second or value.microsecond:
            raise ValidationError(
                "reservations must start and end on the hour",
                reason="not_on_the_hour",
            )

    if start <= now:
        raise ValidationError("cannot reserve a time in the past", reason="in_past")

    last_day = utc_naive_to_local(now, tz).date() + timedelta(days=policy.booking_window_days)
    if local_start.date() > last_day:
        raise ValidationError(
            f"reservations can be made at most {policy.booking_window_days} days ahead",
            reason="outside_booking_window",
        )


def normalize_participants(raw: str | Iterable[object] | None, *, policy: BookingPolicy) -> tuple[str, ...]:
    """Accept a comma separated string or a list of student ids; dedupe, keep order."""
    if raw is None:
        return ()
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(",")]
    else:
        items = [str(part).strip() for part in raw]
    items = [item for item in items if item]

    unique = tuple(dict.fromkeys(items))
    if len(unique) > policy.max_participants:
        raise ValidationError(
            f"at most {policy.max_participants} participants allowed",
            reason="invalid_participants",
        )
    for student_id in unique:
        if not STUDENT_ID_PATTERN.fullmatch(student_id):
            raise ValidationError(
                f"invalid student id {student_id!r}: must be 7-10 digits",
                reason="invalid_participants",
            )
    return unique


@dataclass(frozen=True)
class AdmissionSnapshot:
    capacity: int
    participant_count: int
    owner_active_count: int
    conflicting_reservation_ids: Sequence[int] = ()
    participant_active_counts: Sequence[tuple[str, int]] = field(default_factory=tuple)


def validate_admission(snapshot: AdmissionSnapshot, *, policy: BookingPolicy) -> None:
    """
    Pure validation of capacity, quota and overlap over a snapshot read from
    the store. Raises ConflictError on the first rule that fails, in order:
    capacity, requester quota, overlap, participant quota.
    """
    total = 1 + snapshot.participant_count
    if total > snapshot.capacity:
        raise ConflictError(
            f"total participants ({total}) exceed room capacity ({snapshot.capacity})",
            reason="capacity_exceeded",
        )
    if snapshot.owner_active_count >= policy.max_active_reservations:
        raise ConflictError(
            f"maximum {policy.max_active_reservations} active reservations allowed",
            reason="quota_exceeded",
        )
    if snapshot.conflicting_reservation_ids:
        raise ConflictError("this time slot is already reserved", reason="overlap")
    for student_id, count in snapshot.participant_active_counts:
        if count >= policy.max_active_reservations:
            raise ConflictError(
                f"participant {student_id} already has {count} active reservations",
                reason="participant_quota_exceeded",
                participant=student_id,
            )
