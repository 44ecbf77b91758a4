from __future__ import annotations

QUOTA_REASONS = frozenset({"quota_exceeded", "participant_quota_exceeded"})


class BookingError(Exception):
    """Base for every error the booking core reports to its caller."""

    reason = "booking_error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        if reason is not None:
            self.reason = reason

    @property
    def message(self) -> str:
        return str(self)


class ValidationError(BookingError):
    reason = "invalid_request"


class ConflictError(BookingError):
    reason = "conflict"

    def __init__(self, message: str, *, reason: str | None = None, participant: str | None = None) -> None:
        super().__init__(message, reason=reason)
        self.participant = participant

    @property
    def is_quota_violation(self) -> bool:
        return self.reason in QUOTA_REASONS


class NotFoundError(BookingError):
    reason = "not_found"


class AuthorizationError(BookingError):
    reason = "forbidden"


class TransientStoreError(BookingError):
    """Lock timeout, deadlock or lost connection. The whole request may be retried."""

    reason = "store_unavailable"


class StaleWaitlistEntry(ConflictError):
    """A waitlist entry whose owner or participants ran out of quota before promotion."""

    reason = "stale_waitlist_entry"
