from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import SQLAlchemyError

from ..domain.errors import AuthorizationError, BookingError, ConflictError, NotFoundError, StaleWaitlistEntry
from ..domain.events import BroadcastSink, ReservationCreated, WaitlistPromoted, publish_safely, room_channel, user_channel
from ..domain.repositories import ReservationDetail, UnitOfWorkFactory
from ..domain.services import BookingPolicy, overlaps, validate_interval
from ..models import WaitlistEntry, WaitlistStatus
from ..utils.audit_log import emit_audit_log
from ..utils.time import utcnow_naive
from .admission import ReservationRequest, evaluate_admission, resolve_participants
from .writer import write_reservation

logger = logging.getLogger(__name__)

PROMOTION_MESSAGE = "Your waitlisted reservation was assigned automatically."


async def submit_waitlist_entry(
    uow_factory: UnitOfWorkFactory,
    request: ReservationRequest,
    *,
    policy: BookingPolicy,
    now: datetime | None = None,
) -> WaitlistEntry:
    now = now or utcnow_naive()
    validate_interval(request.start_time, request.end_time, now=now, policy=policy)

    async with uow_factory() as uow:
        # The room lock serializes position assignment for every key in the room.
        room = await uow.rooms.get_for_update(request.room_id)
        if room is None:
            raise NotFoundError("room not found", reason="room_not_found")

        participant_ids = await resolve_participants(uow, request, policy=policy)
        total = 1 + len(participant_ids)
        if total > room.capacity:
            raise ConflictError(
                f"total participants ({total}) exceed room capacity ({room.capacity})",
                reason="capacity_exceeded",
            )

        await uow.users.lock([request.user_id])
        active = await uow.reservations.count_active_for_user(request.user_id, now, lock=True)
        if active >= policy.max_active_reservations:
            raise ConflictError(
                f"maximum {policy.max_active_reservations} active reservations allowed",
                reason="quota_exceeded",
            )

        if await uow.waitlist.has_waiting(
            user_id=request.user_id,
            room_id=room.id,
            start_time=request.start_time,
            end_time=request.end_time,
        ):
            raise ConflictError(
                "you already have a waiting request for this time slot",
                reason="duplicate_waitlist_entry",
            )

        position = await uow.waitlist.next_position(
            room_id=room.id, start_time=request.start_time, end_time=request.end_time
        )
        entry = await uow.waitlist.create(
            room_id=room.id,
            user_id=request.user_id,
            start_time=request.start_time,
            end_time=request.end_time,
            participants=request.participants,
            queue_position=position,
        )
        await uow.commit()
    return entry


async def list_my_waitlist(
    uow_factory: UnitOfWorkFactory,
    *,
    user_id: int,
    now: datetime | None = None,
) -> list[WaitlistEntry]:
    """Waiting entries whose interval has not ended yet."""
    now = now or utcnow_naive()
    async with uow_factory() as uow:
        return await uow.waitlist.list_waiting_for_user(user_id, now)


async def cancel_waitlist_entry(
    uow_factory: UnitOfWorkFactory,
    *,
    entry_id: int,
    user_id: int,
) -> tuple[WaitlistEntry, WaitlistStatus]:
    """Returns the entry and its status before the call."""
    async with uow_factory() as uow:
        entry = await uow.waitlist.get_for_update(entry_id)
        if entry is None:
            raise NotFoundError("waitlist entry not found", reason="waitlist_entry_not_found")
        if entry.user_id != user_id:
            raise AuthorizationError("cannot cancel another user's waitlist entry", reason="not_owner")
        previous = entry.status
        # Idempotent: assigned or cancelled entries are returned as-is
        if previous != WaitlistStatus.WAITING:
            return entry, previous
        await uow.waitlist.set_status(entry, WaitlistStatus.CANCELLED)
        await uow.commit()
    return entry, previous


async def reassign_freed_interval(
    uow_factory: UnitOfWorkFactory,
    broadcaster: BroadcastSink,
    *,
    room_id: int,
    freed_start: datetime,
    freed_end: datetime,
    policy: BookingPolicy,
    now: datetime | None = None,
) -> list[int]:
    """
    Promote waiting entries that fit inside a freed interval.

    Candidates are snapshotted once, oldest submission first, and walked in
    order against a working list of occupied intervals. Each promotion is its
    own transaction; one failing entry never stops the rest. Returns the ids
    of the reservations created.
    """
    now = now or utcnow_naive()
    async with uow_factory() as uow:
        candidates = await uow.waitlist.list_contained(room_id, freed_start, freed_end)
        if not candidates:
            return []
        occupied = [
            (reservation.start_time, reservation.end_time)
            for reservation in await uow.reservations.find_overlapping(room_id, freed_start, freed_end)
        ]

    created: list[int] = []
    for entry in candidates:
        if any(overlaps(entry.start_time, entry.end_time, start, end) for start, end in occupied):
            logger.debug("waitlist entry %s still blocked", entry.id)
            continue

        # Owner quota is checked on its own, before any other admission rule.
        try:
            async with uow_factory() as uow:
                owner_active = await uow.reservations.count_active_for_user(entry.user_id, now)
        except (BookingError, SQLAlchemyError) as exc:
            logger.warning("leaving waitlist entry %s waiting: %s", entry.id, exc)
            continue
        if owner_active >= policy.max_active_reservations:
            logger.info("waitlist entry %s is stale: owner holds %s active reservations", entry.id, owner_active)
            await _retire_stale(
                uow_factory,
                entry.id,
                reason=f"maximum {policy.max_active_reservations} active reservations allowed",
            )
            continue

        try:
            detail = await _promote(uow_factory, entry, policy=policy, now=now)
        except StaleWaitlistEntry as exc:
            logger.info("waitlist entry %s is stale: %s", entry.id, exc)
            await _retire_stale(uow_factory, entry.id, reason=exc.message)
            continue
        except (BookingError, SQLAlchemyError) as exc:
            logger.warning("leaving waitlist entry %s waiting: %s", entry.id, exc)
            continue

        if detail is None:
            continue
        occupied.append((entry.start_time, entry.end_time))
        created.append(detail.id)

        publish_safely(broadcaster, room_channel(room_id), ReservationCreated(detail))
        publish_safely(
            broadcaster,
            user_channel(entry.user_id),
            WaitlistPromoted(
                entry_id=entry.id,
                reservation_id=detail.id,
                user_id=entry.user_id,
                room_id=room_id,
                start_time=entry.start_time,
                end_time=entry.end_time,
            ),
        )
        _audit_system_event(
            "waitlist.promoted",
            detail.id,
            room_id=room_id,
            user_id=entry.user_id,
            status_from=WaitlistStatus.WAITING.value,
            status_to=WaitlistStatus.ASSIGNED.value,
            extra={"waitlist_id": entry.id, "queue_position": entry.queue_position},
        )
    return created


async def _promote(
    uow_factory: UnitOfWorkFactory,
    entry: WaitlistEntry,
    *,
    policy: BookingPolicy,
    now: datetime,
) -> ReservationDetail | None:
    request = ReservationRequest(
        room_id=entry.room_id,
        user_id=entry.user_id,
        start_time=entry.start_time,
        end_time=entry.end_time,
        participants=tuple(entry.participants or ()),
    )
    validate_interval(request.start_time, request.end_time, now=now, policy=policy)

    async with uow_factory() as uow:
        try:
            admission = await evaluate_admission(uow, request, now=now, policy=policy, lock=True)
        except ConflictError as exc:
            if exc.is_quota_violation:
                raise StaleWaitlistEntry(exc.message, participant=exc.participant) from exc
            raise

        locked = await uow.waitlist.get_for_update(entry.id)
        if locked is None or locked.status != WaitlistStatus.WAITING:
            return None

        detail = await write_reservation(uow, request, admission)
        await uow.waitlist.set_status(locked, WaitlistStatus.ASSIGNED)
        await uow.notifications.create(user_id=entry.user_id, reservation_id=detail.id, message=PROMOTION_MESSAGE)
        await uow.commit()
    return detail


async def _retire_stale(uow_factory: UnitOfWorkFactory, entry_id: int, *, reason: str) -> None:
    try:
        async with uow_factory() as uow:
            entry = await uow.waitlist.get_for_update(entry_id)
            if entry is None or entry.status != WaitlistStatus.WAITING:
                return
            await uow.waitlist.set_status(entry, WaitlistStatus.CANCELLED)
            await uow.commit()
    except (BookingError, SQLAlchemyError) as exc:
        logger.warning("could not cancel stale waitlist entry %s: %s", entry_id, exc)
        return
    _audit_system_event(
        "waitlist.stale",
        None,
        room_id=entry.room_id,
        user_id=entry.user_id,
        status_from=WaitlistStatus.WAITING.value,
        status_to=WaitlistStatus.CANCELLED.value,
        extra={"waitlist_id": entry_id},
        message=reason,
    )


def _audit_system_event(
    action: str,
    reservation_id: int | None,
    *,
    room_id: int,
    user_id: int,
    status_from: str,
    status_to: str,
    extra: dict[str, object],
    message: str | None = None,
) -> None:
    try:
        emit_audit_log(
            action=action,  # type: ignore[arg-type]
            initiator="system",
            reservation_id=reservation_id,
            room_id=room_id,
            user_id=user_id,
            status_from=status_from,
            status_to=status_to,
            message=message,
            extra=extra,
        )
    except RuntimeError:
        logger.exception("audit log failed for %s", action)
