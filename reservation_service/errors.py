from datetime import datetime


class ReservationError(Exception):
    """
    Base of the service error taxonomy.

    Every subclass carries a stable `kind`, the HTTP status the API layer
    answers with, and a human-readable message. Extra structured fields
    (e.g. next_available_date) go into `extra`.
    """

    kind = "ReservationError"
    status_code = 400

    def __init__(self, message: str, **extra):
        super().__init__(message)
        self.message = message
        self.extra = extra

    def to_dict(self) -> dict:
        body = {"error": self.kind, "message": self.message}
        for key, value in self.extra.items():
            body[key] = value.isoformat() if isinstance(value, datetime) else value
        return body


class ValidationError(ReservationError):
    kind = "ValidationError"
    status_code = 400


class NotFound(ReservationError):
    kind = "NotFound"
    status_code = 404


class ProviderBusy(ReservationError):
    kind = "ProviderBusy"
    status_code = 409

    def __init__(self, message: str, next_available_date: datetime | None = None):
        super().__init__(message, next_available_date=next_available_date)
        self.next_available_date = next_available_date


class SchedulingConflict(ReservationError):
    kind = "SchedulingConflict"
    status_code = 409


class InvalidTransition(ReservationError):
    kind = "InvalidTransition"
    status_code = 409


class Forbidden(ReservationError):
    kind = "Forbidden"
    status_code = 403


class Conflict(ReservationError):
    """Lost an optimistic-concurrency race; reload and retry."""

    kind = "Conflict"
    status_code = 409


class Unavailable(ReservationError):
    """Store timed out or failed transiently; nothing was committed."""

    kind = "Unavailable"
    status_code = 503
