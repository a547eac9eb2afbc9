"""
Pure scheduling rules: time-range conflicts, business hours and member
concurrency. Nothing here touches the database; callers pass in whatever
bookings, bays and hours they have loaded (model instances or querysets).
"""
from dataclasses import dataclass
from enum import Enum
from zoneinfo import ZoneInfo

from django.utils import timezone

from .models import Bay, Booking, Weekday


def overlaps(a_start, a_end, b_start, b_end):
    """Half-open ``[start, end)`` overlap: touching windows do not overlap."""
    return a_start < b_end and b_start < a_end


def find_conflicts(bay_id, start, end, bookings, exclude_id=None):
    """Blocking bookings on ``bay_id`` overlapping ``[start, end)``."""
    return [
        b for b in bookings
        if b.bay_id == bay_id
        and b.status in Booking.BLOCKING_STATUSES
        and (exclude_id is None or b.pk != exclude_id)
        and overlaps(start, end, b.start_time, b.end_time)
    ]


def has_conflict(bay_id, start, end, bookings, exclude_id=None):
    return bool(find_conflicts(bay_id, start, end, bookings, exclude_id))


def available_bays(bays, start, end, bookings, exclude_id=None):
    """Bays that can take a booking for ``[start, end)``.

    Bays in maintenance are never offered. ``exclude_id`` lets an edited
    booking keep its own slot.
    """
    bookings = list(bookings)
    return [
        bay for bay in bays
        if bay.status != Bay.Status.MAINTENANCE
        and not has_conflict(bay.pk, start, end, bookings, exclude_id)
    ]


def count_active_bookings(member_id, bookings, exclude_id=None):
    return sum(
        1 for b in bookings
        if b.member_id == member_id
        and b.status in Booking.BLOCKING_STATUSES
        and (exclude_id is None or b.pk != exclude_id)
    )


def exceeds_concurrency_limit(member_id, bookings, limit, exclude_id=None):
    """True when one more booking would put the member over ``limit``.

    A ``limit`` of ``None`` means the facility has no cap.
    """
    if limit is None:
        return False
    return count_active_bookings(member_id, bookings, exclude_id) >= limit


class HoursOutcome(Enum):
    OK = "ok"
    CLOSED_DAY = "closed-day"
    OUTSIDE_HOURS = "outside-hours"


@dataclass(frozen=True)
class HoursCheck:
    outcome: HoursOutcome
    reason: str = ""

    @property
    def ok(self):
        return self.outcome is HoursOutcome.OK


def check_business_hours(start, end, hours_by_weekday, tz_name):
    """Validate a window against per-weekday opening hours.

    ``hours_by_weekday`` maps :class:`Weekday` values to objects with
    ``open``, ``close`` and ``is_open``. The weekday and times are taken in
    the facility's local timezone.
    """
    tz = ZoneInfo(tz_name)
    local_start = timezone.localtime(start, tz)
    local_end = timezone.localtime(end, tz)
    weekday = Weekday(local_start.weekday())
    day_name = weekday.label

    hours = hours_by_weekday.get(weekday)
    if hours is None or not hours.is_open:
        return HoursCheck(HoursOutcome.CLOSED_DAY, f"The facility is closed on {day_name}s.")

    opens = hours.open.strftime("%H:%M")
    closes = hours.close.strftime("%H:%M")
    ends_same_day = local_end.date() == local_start.date()
    if (
        local_start.time() < hours.open
        or not ends_same_day
        or local_end.time() > hours.close
    ):
        return HoursCheck(
            HoursOutcome.OUTSIDE_HOURS,
            f"Booking is outside of business hours for {day_name} ({opens} - {closes}).",
        )
    return HoursCheck(HoursOutcome.OK)


ALLOWED_TRANSITIONS = {
    Booking.Status.CONFIRMED: {
        Booking.Status.CHECKED_IN,
        Booking.Status.NO_SHOW,
        Booking.Status.COMPLETED,
        Booking.Status.CANCELED,
    },
    Booking.Status.CHECKED_IN: {
        Booking.Status.COMPLETED,
        Booking.Status.CANCELED,
    },
}


def can_transition(current, target):
    return target in ALLOWED_TRANSITIONS.get(current, ())


def derive_bay_status(current, booking_statuses):
    """Bay status implied by the statuses of the bay's bookings.

    Maintenance is sticky: only a manual change clears it.
    """
    if current == Bay.Status.MAINTENANCE:
        return current
    statuses = set(booking_statuses)
    if Booking.Status.CHECKED_IN in statuses:
        return Bay.Status.IN_USE
    if Booking.Status.CONFIRMED in statuses:
        return Bay.Status.BOOKED
    return Bay.Status.AVAILABLE
