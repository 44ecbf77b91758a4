from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime

from ..domain.errors import NotFoundError, ValidationError
from ..domain.repositories import UnitOfWork
from ..domain.services import AdmissionSnapshot, BookingPolicy, validate_admission
from ..models import Room

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReservationRequest:
    room_id: int
    user_id: int
    start_time: datetime
    end_time: datetime
    participants: tuple[str, ...] = ()


@dataclass(frozen=True)
class Admission:
    room: Room
    participant_ids: dict[str, int] = field(default_factory=dict)


async def resolve_participants(
    uow: UnitOfWork,
    request: ReservationRequest,
    *,
    policy: BookingPolicy,
) -> dict[str, int]:
    """
    Map participant student ids to user ids, in request order. The owner is
    implicitly a participant and is never listed twice. Unknown ids are
    dropped or rejected according to the policy.
    """
    if not request.participants:
        return {}
    resolved = await uow.users.resolve_student_ids(request.participants)
    missing = [student_id for student_id in request.participants if student_id not in resolved]
    if missing:
        if policy.unknown_participant_policy == "reject":
            raise ValidationError(
                f"unknown participants: {', '.join(missing)}",
                reason="unknown_participants",
            )
        logger.info("dropping unknown participants %s for room %s", missing, request.room_id)
    return {
        student_id: resolved[student_id]
        for student_id in request.participants
        if student_id in resolved and resolved[student_id] != request.user_id
    }


async def evaluate_admission(
    uow: UnitOfWork,
    request: ReservationRequest,
    *,
    now: datetime,
    policy: BookingPolicy,
    lock: bool,
) -> Admission:
    """
    Read room, quota and overlap state and validate it.

    With lock=False this is the optimistic pass. With lock=True the room row,
    then the involved user rows (ascending id), then the counted reservation
    rows are locked for the rest of the transaction, so the result stays true
    until commit.
    """
    room = await (uow.rooms.get_for_update(request.room_id) if lock else uow.rooms.get(request.room_id))
    if room is None:
        raise NotFoundError("room not found", reason="room_not_found")

    participant_ids = await resolve_participants(uow, request, policy=policy)
    if lock:
        await uow.users.lock([request.user_id, *participant_ids.values()])

    owner_count = await uow.reservations.count_active_for_user(request.user_id, now, lock=lock)
    conflicts = await uow.reservations.find_overlapping(
        room.id, request.start_time, request.end_time, lock=lock
    )
    participant_counts = []
    for student_id, user_id in participant_ids.items():
        count = await uow.reservations.count_active_for_user(user_id, now, lock=lock)
        participant_counts.append((student_id, count))

    snapshot = AdmissionSnapshot(
        capacity=room.capacity,
        participant_count=len(participant_ids),
        owner_active_count=owner_count,
        conflicting_reservation_ids=tuple(reservation.id for reservation in conflicts),
        participant_active_counts=tuple(participant_counts),
    )
    validate_admission(snapshot, policy=policy)
    return Admission(room=room, participant_ids=participant_ids)
