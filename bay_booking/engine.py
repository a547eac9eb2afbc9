"""
Booking engine

Applies booking lifecycle operations for one facility. Every mutation runs in
a single ``transaction.atomic()`` block that locks the rows it depends on,
re-validates against the current database state, writes the booking, the
derived bay status and the audit entry, or none of them.
"""
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional
from zoneinfo import ZoneInfo

from django.db import transaction
from django.utils import timezone

from . import scheduling
from .audit import SYSTEM_ACTOR, Actor, booking_snapshot, diff_fields, log_change
from .exceptions import (
    BayUnavailableError,
    BookingConflictError,
    ClosedDayError,
    ConcurrencyLimitError,
    InvalidBayStatusError,
    InvalidTransitionError,
    InvalidWindowError,
    NotFoundError,
    OutsideHoursError,
)
from .models import AuditLog, Bay, Booking, Member

logger = logging.getLogger(__name__)


@dataclass
class BookingCandidate:
    member_id: int
    bay_id: int
    start_time: object
    end_time: Optional[object] = None
    payment_method: str = Booking.PaymentMethod.CASH
    payment_status: str = Booking.PaymentStatus.UNPAID
    payment_amount_cents: int = 0


class BookingEngine:
    """Booking operations for ``facility`` performed on behalf of ``actor``."""

    def __init__(self, facility, actor: Actor, source: str = "API"):
        self.facility = facility
        self.actor = actor
        self.source = source

    # ------------------------------------------------------------------
    # Create / edit
    # ------------------------------------------------------------------

    def create_booking(self, candidate: BookingCandidate, bypass_checks: bool = False) -> Booking:
        with transaction.atomic():
            bay = self._lock_bay(candidate.bay_id)
            member = self._lock_member(candidate.member_id)
            start, end = self._resolve_window(candidate)
            self._validate(bay, member, start, end, bypass_checks)

            booking = Booking.objects.create(
                facility=self.facility,
                member=member,
                bay=bay,
                start_time=start,
                end_time=end,
                status=Booking.Status.CONFIRMED,
                payment_method=candidate.payment_method,
                payment_status=candidate.payment_status,
                payment_amount_cents=candidate.payment_amount_cents,
            )
            self._refresh_bay_status(bay)
            log_change(
                self.facility, self.actor, AuditLog.Action.CREATE, booking,
                f"Booking for {member.full_name} on {bay.name}",
                new=booking_snapshot(booking), source=self.source,
            )

        logger.info(
            f"Created booking {booking.pk} on {bay.name} "
            f"{start.isoformat()} - {end.isoformat()} for member {member.pk}"
        )
        return booking

    def update_booking(self, booking_id, candidate: BookingCandidate, bypass_checks: bool = False) -> Booking:
        """Re-validate and apply an edit as if it were a new booking.

        The booking is excluded from its own conflict and concurrency checks.
        """
        with transaction.atomic():
            booking = self._lock_booking(booking_id)
            if booking.status in Booking.TERMINAL_STATUSES:
                raise InvalidTransitionError(
                    booking.status, booking.status,
                    f"Cannot edit a {booking.status} booking",
                )

            old_bay_id = booking.bay_id
            bays = self._lock_bays({old_bay_id, candidate.bay_id})
            bay = bays[candidate.bay_id]
            member = self._lock_member(candidate.member_id)
            start, end = self._resolve_window(candidate)
            self._validate(
                bay, member, start, end, bypass_checks,
                exclude_id=booking.pk, check_maintenance=candidate.bay_id != old_bay_id,
            )

            before = booking_snapshot(booking)
            booking.member = member
            booking.bay = bay
            booking.start_time = start
            booking.end_time = end
            booking.payment_method = candidate.payment_method
            booking.payment_status = candidate.payment_status
            booking.payment_amount_cents = candidate.payment_amount_cents
            booking.save()

            for locked in bays.values():
                self._refresh_bay_status(locked)
            previous, new = diff_fields(before, booking_snapshot(booking))
            log_change(
                self.facility, self.actor, AuditLog.Action.UPDATE, booking,
                f"Booking for {member.full_name}",
                previous=previous, new=new, source=self.source,
            )

        logger.info(f"Updated booking {booking.pk}: {sorted(new)}")
        return booking

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def transition_status(self, booking_id, new_status) -> Booking:
        with transaction.atomic():
            booking = self._lock_booking(booking_id)
            self._apply_transition(booking, new_status)
        return booking

    def cancel_booking(self, booking_id) -> Booking:
        return self.transition_status(booking_id, Booking.Status.CANCELED)

    def check_in(self, booking_id) -> Booking:
        return self.transition_status(booking_id, Booking.Status.CHECKED_IN)

    def mark_no_show(self, booking_id) -> Booking:
        return self.transition_status(booking_id, Booking.Status.NO_SHOW)

    def complete_booking(self, booking_id) -> Booking:
        return self.transition_status(booking_id, Booking.Status.COMPLETED)

    def extend_booking(self, booking_id, minutes) -> Booking:
        """Push back the end of a checked-in booking by ``minutes``.

        Fails with a conflict if the longer window now overlaps another
        blocking booking on the same bay.
        """
        if minutes <= 0:
            raise InvalidWindowError("Extension must be a positive number of minutes")

        with transaction.atomic():
            booking = self._lock_booking(booking_id)
            if booking.status != Booking.Status.CHECKED_IN:
                raise InvalidTransitionError(
                    booking.status, booking.status,
                    f"Only checked-in bookings can be extended, this one is {booking.status}",
                )
            bay = self._lock_bay(booking.bay_id)
            new_end = booking.end_time + timedelta(minutes=minutes)
            self._check_conflicts(bay, booking.start_time, new_end, exclude_id=booking.pk)

            before = booking_snapshot(booking)
            booking.end_time = new_end
            booking.save(update_fields=["end_time", "updated_at"])
            previous, new = diff_fields(before, booking_snapshot(booking))
            log_change(
                self.facility, self.actor, AuditLog.Action.UPDATE, booking,
                f"Booking for {booking.member.full_name}",
                previous=previous, new=new, source=self.source,
            )

        logger.info(f"Extended booking {booking.pk} by {minutes} minutes")
        return booking

    def complete_expired(self, booking_id, now) -> bool:
        """Complete one checked-in booking whose end time is before ``now``.

        The booking is re-read under lock; returns False when it was already
        completed, canceled or extended past ``now`` in the meantime.
        """
        with transaction.atomic():
            booking = self._lock_booking(booking_id)
            if booking.status != Booking.Status.CHECKED_IN or booking.end_time >= now:
                return False
            self._apply_transition(booking, Booking.Status.COMPLETED)
        return True

    def sweep_expired_checkins(self, now=None) -> int:
        return sweep_expired_checkins(now=now, facility=self.facility)

    # ------------------------------------------------------------------
    # Bays
    # ------------------------------------------------------------------

    def set_bay_status(self, bay_id, status) -> Bay:
        """Manually take a bay out of service or return it to service.

        Returning a bay to service re-derives its status from its bookings.
        """
        if status not in (Bay.Status.MAINTENANCE, Bay.Status.AVAILABLE):
            raise InvalidBayStatusError(
                f"Bay status can only be set to {Bay.Status.MAINTENANCE} or {Bay.Status.AVAILABLE}"
            )

        with transaction.atomic():
            bay = self._lock_bay(bay_id)
            previous_status = bay.status
            if status == Bay.Status.MAINTENANCE:
                bay.status = Bay.Status.MAINTENANCE
                bay.save(update_fields=["status"])
            else:
                bay.status = Bay.Status.AVAILABLE
                self._refresh_bay_status(bay, force_save=True)
            log_change(
                self.facility, self.actor, AuditLog.Action.UPDATE, bay, bay.name,
                previous={"status": previous_status}, new={"status": bay.status},
                source=self.source,
            )

        logger.info(f"Bay {bay.name} status {previous_status} -> {bay.status}")
        return bay

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _apply_transition(self, booking, new_status):
        if not scheduling.can_transition(booking.status, new_status):
            raise InvalidTransitionError(booking.status, new_status)

        bay = self._lock_bay(booking.bay_id)
        before = booking_snapshot(booking)
        booking.status = new_status
        if new_status == Booking.Status.CANCELED and booking.payment_status == Booking.PaymentStatus.PAID:
            booking.payment_status = Booking.PaymentStatus.REFUNDED
        booking.save(update_fields=["status", "payment_status", "updated_at"])

        self._refresh_bay_status(bay)
        previous, new = diff_fields(before, booking_snapshot(booking))
        log_change(
            self.facility, self.actor, AuditLog.Action.UPDATE, booking,
            f"Booking for {booking.member.full_name}",
            previous=previous, new=new, source=self.source,
        )
        logger.info(f"Booking {booking.pk} {before['status']} -> {new_status}")

    def _validate(self, bay, member, start, end, bypass_checks, exclude_id=None, check_maintenance=True):
        if check_maintenance and bay.status == Bay.Status.MAINTENANCE:
            self._reject(BayUnavailableError(f"{bay.name} is under maintenance"))

        self._check_conflicts(bay, start, end, exclude_id)

        if not bypass_checks:
            hours = {h.weekday: h for h in self.facility.business_hours.all()}
            result = scheduling.check_business_hours(start, end, hours, self.facility.timezone)
            if result.outcome is scheduling.HoursOutcome.CLOSED_DAY:
                self._reject(ClosedDayError(result.reason))
            if result.outcome is scheduling.HoursOutcome.OUTSIDE_HOURS:
                self._reject(OutsideHoursError(result.reason))

        active = Booking.objects.filter(member=member, status__in=Booking.BLOCKING_STATUSES)
        limit = self.facility.max_concurrent_bookings
        if scheduling.exceeds_concurrency_limit(member.pk, active, limit, exclude_id):
            self._reject(ConcurrencyLimitError(limit, member.full_name))

    def _check_conflicts(self, bay, start, end, exclude_id=None):
        candidates = Booking.objects.filter(
            bay=bay,
            status__in=Booking.BLOCKING_STATUSES,
            start_time__lt=end,
            end_time__gt=start,
        )
        conflicts = scheduling.find_conflicts(bay.pk, start, end, candidates, exclude_id)
        if conflicts:
            self._reject(BookingConflictError(bay.name, [b.pk for b in conflicts]))

    def _reject(self, error):
        logger.warning(f"Booking rejected ({error.kind}) at {self.facility.slug}: {error}")
        raise error

    def _resolve_window(self, candidate):
        tz = ZoneInfo(self.facility.timezone)
        start = candidate.start_time
        if timezone.is_naive(start):
            start = timezone.make_aware(start, tz)
        end = candidate.end_time
        if end is None:
            end = start + timedelta(minutes=self.facility.default_booking_duration)
        elif timezone.is_naive(end):
            end = timezone.make_aware(end, tz)
        if end <= start:
            raise InvalidWindowError("end_time must be after start_time")
        return start, end

    def _refresh_bay_status(self, bay, force_save=False):
        statuses = bay.bookings.filter(
            status__in=Booking.BLOCKING_STATUSES
        ).values_list("status", flat=True)
        status = scheduling.derive_bay_status(bay.status, statuses)
        if force_save or status != bay.status:
            bay.status = status
            bay.save(update_fields=["status"])

    def _lock_booking(self, booking_id):
        try:
            return Booking.objects.select_for_update().get(pk=booking_id, facility=self.facility)
        except Booking.DoesNotExist:
            raise NotFoundError("Booking", booking_id)

    def _lock_bay(self, bay_id):
        try:
            return Bay.objects.select_for_update().get(pk=bay_id, facility=self.facility)
        except Bay.DoesNotExist:
            raise NotFoundError("Bay", bay_id)

    def _lock_bays(self, bay_ids):
        # Lock in primary-key order so concurrent edits cannot deadlock
        return {bay_id: self._lock_bay(bay_id) for bay_id in sorted(bay_ids)}

    def _lock_member(self, member_id):
        try:
            return Member.objects.select_for_update().get(pk=member_id, facility=self.facility)
        except Member.DoesNotExist:
            raise NotFoundError("Member", member_id)


def sweep_expired_checkins(now=None, facility=None) -> int:
    """Complete every checked-in booking whose end time has passed.

    Each booking is handled in its own transaction and re-checked after
    locking, so a booking completed manually in the meantime is skipped.
    A failure on one booking is logged and does not stop the sweep.
    """
    now = now or timezone.now()
    if timezone.is_naive(now):
        now = timezone.make_aware(now)
    expired = Booking.objects.filter(status=Booking.Status.CHECKED_IN, end_time__lt=now)
    if facility is not None:
        expired = expired.filter(facility=facility)

    completed = 0
    for booking in list(expired.select_related("facility")):
        engine = BookingEngine(booking.facility, SYSTEM_ACTOR, source="Scheduled sweep")
        try:
            if engine.complete_expired(booking.pk, now):
                completed += 1
        except Exception:
            logger.exception(f"Failed to auto-complete booking {booking.pk}")

    if completed:
        logger.info(f"Sweep completed {completed} expired booking(s)")
    return completed
