class BookingError(RuntimeError):
    """Base class for errors raised by the booking core."""
    pass


class InvalidInput(BookingError):
    """Raised for malformed ranges, slots or requester details. Client-correctable."""
    pass


class CredentialUnavailable(BookingError):
    """Raised when no credential strategy produced an access token."""
    pass


class GatewayUnavailable(BookingError):
    """Raised when the calendar API is unreachable or keeps erroring after the auth retry."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class AvailabilityUnavailable(BookingError):
    """Raised when slots cannot be computed safely (busy windows unknown)."""
    pass


class SlotUnavailable(BookingError):
    """Raised when the requested slot is no longer free. Client-correctable."""
    pass


class BookingConfirmationFailed(BookingError):
    """Raised when the local reservation exists but the calendar event could not be created."""

    def __init__(self, message: str, reservation_id: str) -> None:
        super().__init__(message)
        self.reservation_id = reservation_id


class ReservationNotFound(BookingError):
    """Raised when a reservation id or lookup hash does not resolve."""
    pass


class RequesterBlocked(BookingError):
    """Raised when the requester e-mail is on the blacklist."""
    pass


class PersistenceUnavailable(BookingError):
    """Raised when a reservation, blacklist or notification store call fails or times out."""
    pass
