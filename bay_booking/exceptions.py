"""
Errors raised by the booking engine.

Every error carries a ``kind`` the API returns to callers. ``overridable``
errors may be retried with ``bypass_checks=True``; all others are final.
"""


class BookingEngineError(Exception):
    """Base exception for all booking engine errors."""
    kind = "error"
    overridable = False

    def as_dict(self):
        return {"kind": self.kind, "detail": str(self), "overridable": self.overridable}


class NotFoundError(BookingEngineError):
    kind = "not-found"

    def __init__(self, object_type, object_id):
        self.object_type = object_type
        self.object_id = object_id
        super().__init__(f"{object_type} {object_id} not found")


class BookingValidationError(BookingEngineError):
    """A candidate booking was rejected."""


class InvalidWindowError(BookingValidationError):
    kind = "invalid-window"


class BookingConflictError(BookingValidationError):
    kind = "conflict"

    def __init__(self, bay_name, conflicting_ids=()):
        self.bay_name = bay_name
        self.conflicting_ids = list(conflicting_ids)
        super().__init__(f"{bay_name} is already booked for the selected time")


class ClosedDayError(BookingValidationError):
    kind = "closed-day"
    overridable = True


class OutsideHoursError(BookingValidationError):
    kind = "outside-hours"
    overridable = True


class ConcurrencyLimitError(BookingValidationError):
    kind = "concurrency-limit"

    def __init__(self, limit, member_name):
        self.limit = limit
        self.member_name = member_name
        super().__init__(f"{member_name} has reached the maximum of {limit} concurrent bookings.")

    def as_dict(self):
        data = super().as_dict()
        data.update(limit=self.limit, member_name=self.member_name)
        return data


class BayUnavailableError(BookingValidationError):
    kind = "bay-unavailable"


class InvalidTransitionError(BookingEngineError):
    kind = "invalid-transition"

    def __init__(self, current, target, message=None):
        self.current = current
        self.target = target
        super().__init__(message or f"Cannot move booking from {current} to {target}")


class InvalidBayStatusError(BookingEngineError):
    kind = "invalid-bay-status"
