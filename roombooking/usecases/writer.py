from __future__ import annotations

from ..domain.repositories import ReservationDetail, UnitOfWork
from .admission import Admission, ReservationRequest


async def write_reservation(
    uow: UnitOfWork,
    request: ReservationRequest,
    admission: Admission,
) -> ReservationDetail:
    """Insert the reservation and its participant edges inside the caller's transaction."""
    reservation = await uow.reservations.create(
        room_id=admission.room.id,
        user_id=request.user_id,
        start_time=request.start_time,
        end_time=request.end_time,
    )
    if admission.participant_ids:
        await uow.reservations.add_participants(reservation.id, admission.participant_ids.values())

    detail = await uow.reservations.get_detail(reservation.id)
    if detail is None:  # pragma: no cover - row inserted above
        raise RuntimeError(f"reservation {reservation.id} vanished inside its own transaction")
    return detail
