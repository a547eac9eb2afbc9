from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, time, timedelta, timezone as dt_timezone
from io import StringIO
from itertools import combinations
from types import SimpleNamespace
from unittest import mock

from django.contrib import admin
from django.contrib.auth.models import User
from django.core.management import call_command
from django.db import DatabaseError, connection
from django.test import SimpleTestCase, TestCase, TransactionTestCase
from django.urls import reverse
from django.utils import timezone
from rest_framework import status
from rest_framework.test import APIClient, APITestCase

from . import scheduling
from .admin import BayAdmin
from .audit import Actor, SYSTEM_ACTOR, diff_fields
from .engine import BookingCandidate, BookingEngine, sweep_expired_checkins
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
from .models import AuditLog, Bay, Booking, BusinessHours, Facility, Member, Weekday


def next_weekday(weekday, base=date(2030, 1, 1)):
    """First date on or after ``base`` falling on ``weekday``"""
    return base + timedelta(days=(weekday - base.weekday()) % 7)


def at(day, hour, minute=0):
    return datetime.combine(day, time(hour, minute), tzinfo=dt_timezone.utc)


MONDAY = next_weekday(Weekday.MONDAY)
SUNDAY = next_weekday(Weekday.SUNDAY)

STAFF = Actor(id="staff-1", display_name="Front Desk")


def create_facility(slug="downtown", **kwargs):
    """Facility open Mon-Sat 09:00-22:00, closed Sunday"""
    facility = Facility.objects.create(name=f"Facility {slug}", slug=slug, timezone="UTC", **kwargs)
    for weekday in Weekday:
        BusinessHours.objects.create(
            facility=facility,
            weekday=weekday,
            open=time(9, 0),
            close=time(22, 0),
            is_open=weekday != Weekday.SUNDAY,
        )
    return facility


class FacilityFixtureMixin:

    def setUp(self):
        self.facility = create_facility()
        self.bay1 = Bay.objects.create(facility=self.facility, name="Bay 1")
        self.bay2 = Bay.objects.create(facility=self.facility, name="Bay 2")
        self.m1 = Member.objects.create(facility=self.facility, full_name="Alex Morgan")
        self.m2 = Member.objects.create(facility=self.facility, full_name="Sam Rivera")
        self.engine = BookingEngine(self.facility, STAFF)

    def book(self, member, bay, start, end, bypass_checks=False, **kwargs):
        candidate = BookingCandidate(member_id=member.pk, bay_id=bay.pk, start_time=start, end_time=end, **kwargs)
        return self.engine.create_booking(candidate, bypass_checks=bypass_checks)

    def assertBayMirrorsBookings(self, bay):
        bay.refresh_from_db()
        if bay.status == Bay.Status.MAINTENANCE:
            return
        statuses = set(bay.bookings.filter(status__in=Booking.BLOCKING_STATUSES).values_list("status", flat=True))
        if Booking.Status.CHECKED_IN in statuses:
            self.assertEqual(bay.status, Bay.Status.IN_USE)
        elif statuses:
            self.assertEqual(bay.status, Bay.Status.BOOKED)
        else:
            self.assertEqual(bay.status, Bay.Status.AVAILABLE)


class SchedulingRulesTestCase(SimpleTestCase):
    """Pure rules, no database"""

    def booking(self, pk, start, end, status=Booking.Status.CONFIRMED, bay_id=1, member_id=1):
        return SimpleNamespace(pk=pk, bay_id=bay_id, member_id=member_id, start_time=start, end_time=end, status=status)

    def test_overlap_is_half_open(self):
        nine, ten, eleven = at(MONDAY, 9), at(MONDAY, 10), at(MONDAY, 11)
        self.assertFalse(scheduling.overlaps(nine, ten, ten, eleven))
        self.assertFalse(scheduling.overlaps(ten, eleven, nine, ten))
        self.assertTrue(scheduling.overlaps(nine, at(MONDAY, 10, 1), ten, eleven))

    def test_overlap_shapes(self):
        existing = (at(MONDAY, 12), at(MONDAY, 16))
        scenarios = {
            "starts before and overlaps": (at(MONDAY, 11), at(MONDAY, 13)),
            "starts during": (at(MONDAY, 15), at(MONDAY, 17)),
            "completely within": (at(MONDAY, 13), at(MONDAY, 14)),
            "completely encompasses": (at(MONDAY, 10), at(MONDAY, 18)),
            "identical": existing,
        }
        for description, (start, end) in scenarios.items():
            with self.subTest(scenario=description):
                self.assertTrue(scheduling.overlaps(start, end, *existing))

    def test_only_blocking_bookings_on_same_bay_conflict(self):
        start, end = at(MONDAY, 14), at(MONDAY, 15)
        bookings = [
            self.booking(1, start, end, status=Booking.Status.CANCELED),
            self.booking(2, start, end, status=Booking.Status.NO_SHOW),
            self.booking(3, start, end, status=Booking.Status.COMPLETED),
            self.booking(4, start, end, bay_id=2),
        ]
        self.assertFalse(scheduling.has_conflict(1, start, end, bookings))

        bookings.append(self.booking(5, start, end, status=Booking.Status.CHECKED_IN))
        self.assertEqual([b.pk for b in scheduling.find_conflicts(1, start, end, bookings)], [5])

    def test_excluded_booking_does_not_conflict_with_itself(self):
        start, end = at(MONDAY, 14), at(MONDAY, 15)
        bookings = [self.booking(7, start, end)]
        self.assertTrue(scheduling.has_conflict(1, start, end, bookings))
        self.assertFalse(scheduling.has_conflict(1, start, end, bookings, exclude_id=7))

    def test_available_bays_skips_maintenance_and_conflicts(self):
        start, end = at(MONDAY, 14), at(MONDAY, 15)
        bays = [
            SimpleNamespace(pk=1, status=Bay.Status.BOOKED),
            SimpleNamespace(pk=2, status=Bay.Status.MAINTENANCE),
            SimpleNamespace(pk=3, status=Bay.Status.AVAILABLE),
        ]
        bookings = [self.booking(1, at(MONDAY, 14, 30), at(MONDAY, 15, 30), bay_id=1)]
        available = scheduling.available_bays(bays, start, end, bookings)
        self.assertEqual([b.pk for b in available], [3])

        # A bay booked only outside the window is still offered
        later = scheduling.available_bays(bays, at(MONDAY, 16), at(MONDAY, 17), bookings)
        self.assertEqual([b.pk for b in later], [1, 3])

    def test_concurrency_limit(self):
        start, end = at(MONDAY, 14), at(MONDAY, 15)
        bookings = [
            self.booking(1, start, end),
            self.booking(2, start, end, status=Booking.Status.CHECKED_IN),
            self.booking(3, start, end, status=Booking.Status.CANCELED),
            self.booking(4, start, end, member_id=2),
        ]
        self.assertEqual(scheduling.count_active_bookings(1, bookings), 2)
        self.assertTrue(scheduling.exceeds_concurrency_limit(1, bookings, 2))
        self.assertFalse(scheduling.exceeds_concurrency_limit(1, bookings, 3))
        self.assertFalse(scheduling.exceeds_concurrency_limit(1, bookings, 2, exclude_id=1))
        self.assertFalse(scheduling.exceeds_concurrency_limit(1, bookings, None))

    def test_transitions_are_forward_only(self):
        S = Booking.Status
        allowed = [
            (S.CONFIRMED, S.CHECKED_IN), (S.CONFIRMED, S.NO_SHOW), (S.CONFIRMED, S.CANCELED),
            (S.CONFIRMED, S.COMPLETED), (S.CHECKED_IN, S.COMPLETED), (S.CHECKED_IN, S.CANCELED),
        ]
        for current in S:
            for target in S:
                with self.subTest(current=current, target=target):
                    self.assertEqual(scheduling.can_transition(current, target), (current, target) in allowed)

    def test_derive_bay_status(self):
        S = Booking.Status
        self.assertEqual(scheduling.derive_bay_status(Bay.Status.BOOKED, []), Bay.Status.AVAILABLE)
        self.assertEqual(scheduling.derive_bay_status(Bay.Status.AVAILABLE, [S.CONFIRMED]), Bay.Status.BOOKED)
        self.assertEqual(
            scheduling.derive_bay_status(Bay.Status.BOOKED, [S.CONFIRMED, S.CHECKED_IN]), Bay.Status.IN_USE
        )
        self.assertEqual(
            scheduling.derive_bay_status(Bay.Status.MAINTENANCE, [S.CHECKED_IN]), Bay.Status.MAINTENANCE
        )

    def test_diff_fields_keeps_only_changes(self):
        previous, new = diff_fields(
            {"bay": "Bay 1", "status": "confirmed", "payment_status": "paid"},
            {"bay": "Bay 2", "status": "confirmed", "payment_status": "paid"},
        )
        self.assertEqual(previous, {"bay": "Bay 1"})
        self.assertEqual(new, {"bay": "Bay 2"})


class BusinessHoursCheckTestCase(SimpleTestCase):

    def setUp(self):
        self.hours = {
            Weekday.MONDAY: SimpleNamespace(open=time(9, 0), close=time(22, 0), is_open=True),
            Weekday.SATURDAY: SimpleNamespace(open=time(10, 0), close=time(18, 0), is_open=False),
        }

    def check(self, start, end, tz="UTC"):
        return scheduling.check_business_hours(start, end, self.hours, tz)

    def test_within_hours_is_ok(self):
        self.assertTrue(self.check(at(MONDAY, 9), at(MONDAY, 22)).ok)

    def test_missing_or_closed_day(self):
        tuesday = MONDAY + timedelta(days=1)
        saturday = next_weekday(Weekday.SATURDAY)
        for day in (tuesday, saturday):
            with self.subTest(day=day):
                result = self.check(at(day, 12), at(day, 13))
                self.assertIs(result.outcome, scheduling.HoursOutcome.CLOSED_DAY)
                self.assertIn("closed", result.reason)

    def test_outside_hours(self):
        scenarios = {
            "starts before opening": (at(MONDAY, 8, 30), at(MONDAY, 9, 30)),
            "ends after closing": (at(MONDAY, 21, 30), at(MONDAY, 22, 30)),
            "runs past midnight": (at(MONDAY, 21), at(MONDAY + timedelta(days=1), 1)),
        }
        for description, (start, end) in scenarios.items():
            with self.subTest(scenario=description):
                result = self.check(start, end)
                self.assertIs(result.outcome, scheduling.HoursOutcome.OUTSIDE_HOURS)
                self.assertIn("09:00 - 22:00", result.reason)

    def test_uses_facility_timezone(self):
        # 14:00 UTC on a January Monday is 09:00 in New York
        self.assertTrue(self.check(at(MONDAY, 14), at(MONDAY, 15), tz="America/New_York").ok)
        result = self.check(at(MONDAY, 13), at(MONDAY, 14), tz="America/New_York")
        self.assertIs(result.outcome, scheduling.HoursOutcome.OUTSIDE_HOURS)


class BookingConflictTestCase(FacilityFixtureMixin, TestCase):
    """Double-booking prevention on a bay"""

    def test_overlapping_booking_is_rejected_and_adjacent_accepted(self):
        """Mon 14:00-15:00 blocks 14:30-15:30 but not 15:00-16:00"""
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

        with self.assertRaises(BookingConflictError) as ctx:
            self.book(self.m2, self.bay1, at(MONDAY, 14, 30), at(MONDAY, 15, 30))
        self.assertEqual(ctx.exception.kind, "conflict")

        booking = self.book(self.m2, self.bay1, at(MONDAY, 15), at(MONDAY, 16))
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)

    def test_half_open_boundary_on_both_sides(self):
        self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.book(self.m2, self.bay1, at(MONDAY, 9), at(MONDAY, 10))
        self.book(self.m2, self.bay1, at(MONDAY, 11), at(MONDAY, 12))
        self.assertEqual(Booking.objects.filter(bay=self.bay1).count(), 3)

    def test_other_bay_is_not_a_conflict(self):
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        booking = self.book(self.m2, self.bay2, at(MONDAY, 14), at(MONDAY, 15))
        self.assertEqual(booking.bay, self.bay2)

    def test_terminal_bookings_do_not_block(self):
        for terminal in (Booking.Status.CANCELED, Booking.Status.NO_SHOW, Booking.Status.COMPLETED):
            Booking.objects.create(
                facility=self.facility, member=self.m1, bay=self.bay1,
                start_time=at(MONDAY, 14), end_time=at(MONDAY, 15), status=terminal,
            )
        booking = self.book(self.m2, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)

    def test_override_never_bypasses_conflict(self):
        """An hours violation plus a conflict still fails with bypass_checks"""
        self.book(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11), bypass_checks=True)

        with self.assertRaises(BookingConflictError):
            self.book(self.m2, self.bay1, at(SUNDAY, 10, 30), at(SUNDAY, 11, 30), bypass_checks=True)
        self.assertEqual(Booking.objects.count(), 1)

    def test_edit_does_not_conflict_with_itself(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        candidate = BookingCandidate(
            member_id=self.m1.pk, bay_id=self.bay1.pk,
            start_time=at(MONDAY, 14, 30), end_time=at(MONDAY, 15, 30),
        )
        updated = self.engine.update_booking(booking.pk, candidate)
        self.assertEqual(updated.start_time, at(MONDAY, 14, 30))

    def test_edit_into_other_booking_is_rejected(self):
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        other = self.book(self.m2, self.bay1, at(MONDAY, 16), at(MONDAY, 17))
        candidate = BookingCandidate(
            member_id=self.m2.pk, bay_id=self.bay1.pk,
            start_time=at(MONDAY, 14, 30), end_time=at(MONDAY, 15, 30),
        )
        with self.assertRaises(BookingConflictError):
            self.engine.update_booking(other.pk, candidate)
        other.refresh_from_db()
        self.assertEqual(other.start_time, at(MONDAY, 16))

    def test_no_double_booking_after_many_attempts(self):
        members = [self.m1, self.m2]
        for i in range(24):
            start = at(MONDAY, 9) + timedelta(minutes=25 * i)
            try:
                self.book(members[i % 2], self.bay1, start, start + timedelta(minutes=60))
            except BookingConflictError:
                pass

        blocking = list(Booking.objects.filter(bay=self.bay1, status__in=Booking.BLOCKING_STATUSES))
        self.assertGreater(len(blocking), 1)
        for a, b in combinations(blocking, 2):
            self.assertFalse(scheduling.overlaps(a.start_time, a.end_time, b.start_time, b.end_time))


class BusinessHoursOverrideTestCase(FacilityFixtureMixin, TestCase):

    def test_closed_day_can_be_overridden(self):
        """Sunday is closed; the same request with bypass_checks goes through"""
        with self.assertRaises(ClosedDayError) as ctx:
            self.book(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11))
        self.assertTrue(ctx.exception.overridable)
        self.assertEqual(ctx.exception.kind, "closed-day")
        self.assertEqual(Booking.objects.count(), 0)

        booking = self.book(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11), bypass_checks=True)
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)

    def test_outside_hours_can_be_overridden(self):
        with self.assertRaises(OutsideHoursError) as ctx:
            self.book(self.m1, self.bay1, at(MONDAY, 21, 30), at(MONDAY, 22, 30))
        self.assertTrue(ctx.exception.overridable)

        booking = self.book(self.m1, self.bay1, at(MONDAY, 21, 30), at(MONDAY, 22, 30), bypass_checks=True)
        self.assertEqual(booking.end_time, at(MONDAY, 22, 30))

    def test_missing_day_entry_is_closed(self):
        BusinessHours.objects.filter(facility=self.facility, weekday=Weekday.MONDAY).delete()
        with self.assertRaises(ClosedDayError):
            self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

    def test_override_does_not_bypass_concurrency_limit(self):
        self.facility.max_concurrent_bookings = 1
        self.facility.save()
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        with self.assertRaises(ConcurrencyLimitError):
            self.book(self.m1, self.bay2, at(SUNDAY, 10), at(SUNDAY, 11), bypass_checks=True)


class ConcurrencyLimitTestCase(FacilityFixtureMixin, TestCase):

    def setUp(self):
        super().setUp()
        self.facility.max_concurrent_bookings = 2
        self.facility.save()

    def test_limit_enforced_exactly_at_boundary(self):
        first = self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.book(self.m1, self.bay1, at(MONDAY, 12), at(MONDAY, 13))

        with self.assertRaises(ConcurrencyLimitError) as ctx:
            self.book(self.m1, self.bay2, at(MONDAY, 14), at(MONDAY, 15))
        self.assertEqual(ctx.exception.limit, 2)
        self.assertEqual(ctx.exception.member_name, "Alex Morgan")
        self.assertFalse(ctx.exception.overridable)

        self.engine.cancel_booking(first.pk)
        booking = self.book(self.m1, self.bay2, at(MONDAY, 14), at(MONDAY, 15))
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)

    def test_checked_in_bookings_count(self):
        first = self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.engine.check_in(first.pk)
        self.book(self.m1, self.bay1, at(MONDAY, 12), at(MONDAY, 13))
        with self.assertRaises(ConcurrencyLimitError):
            self.book(self.m1, self.bay2, at(MONDAY, 14), at(MONDAY, 15))

    def test_limit_is_per_member(self):
        self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.book(self.m1, self.bay1, at(MONDAY, 12), at(MONDAY, 13))
        booking = self.book(self.m2, self.bay2, at(MONDAY, 10), at(MONDAY, 11))
        self.assertEqual(booking.member, self.m2)

    def test_edit_at_limit_excludes_itself(self):
        self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        second = self.book(self.m1, self.bay1, at(MONDAY, 12), at(MONDAY, 13))
        candidate = BookingCandidate(
            member_id=self.m1.pk, bay_id=self.bay2.pk,
            start_time=at(MONDAY, 12), end_time=at(MONDAY, 13),
        )
        updated = self.engine.update_booking(second.pk, candidate)
        self.assertEqual(updated.bay, self.bay2)

    def test_unset_limit_means_no_limit(self):
        self.facility.max_concurrent_bookings = None
        self.facility.save()
        for hour in range(9, 21):
            self.book(self.m1, self.bay1, at(MONDAY, hour), at(MONDAY, hour + 1))
        self.assertEqual(Booking.objects.filter(member=self.m1).count(), 12)


class BookingLifecycleTestCase(FacilityFixtureMixin, TestCase):

    def test_check_in_then_complete(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)

        self.engine.check_in(booking.pk)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.IN_USE)

        booking = self.engine.complete_booking(booking.pk)
        self.assertEqual(booking.status, Booking.Status.COMPLETED)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)

    def test_no_show_frees_bay(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        booking = self.engine.mark_no_show(booking.pk)
        self.assertEqual(booking.status, Booking.Status.NO_SHOW)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)

    def test_cancel_paid_booking_is_refunded(self):
        booking = self.book(
            self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15),
            payment_method=Booking.PaymentMethod.CARD,
            payment_status=Booking.PaymentStatus.PAID,
            payment_amount_cents=4500,
        )
        booking = self.engine.cancel_booking(booking.pk)
        self.assertEqual(booking.status, Booking.Status.CANCELED)
        self.assertEqual(booking.payment_status, Booking.PaymentStatus.REFUNDED)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)

    def test_cancel_unpaid_booking_stays_unpaid(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        booking = self.engine.cancel_booking(booking.pk)
        self.assertEqual(booking.payment_status, Booking.PaymentStatus.UNPAID)

    def test_cancel_checked_in_booking(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.check_in(booking.pk)
        booking = self.engine.cancel_booking(booking.pk)
        self.assertEqual(booking.status, Booking.Status.CANCELED)
        self.assertBayMirrorsBookings(self.bay1)

    def test_invalid_transitions_are_rejected(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.check_in(booking.pk)

        with self.assertRaises(InvalidTransitionError):
            self.engine.mark_no_show(booking.pk)
        with self.assertRaises(InvalidTransitionError):
            self.engine.transition_status(booking.pk, Booking.Status.CONFIRMED)

        self.engine.complete_booking(booking.pk)
        for target in (Booking.Status.CHECKED_IN, Booking.Status.CANCELED, Booking.Status.COMPLETED):
            with self.subTest(target=target):
                with self.assertRaises(InvalidTransitionError):
                    self.engine.transition_status(booking.pk, target)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.COMPLETED)

    def test_bay_stays_booked_while_other_bookings_remain(self):
        first = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.book(self.m2, self.bay1, at(MONDAY, 16), at(MONDAY, 17))

        self.engine.check_in(first.pk)
        self.assertBayMirrorsBookings(self.bay1)
        self.assertEqual(self.bay1.status, Bay.Status.IN_USE)

        self.engine.complete_booking(first.pk)
        self.assertBayMirrorsBookings(self.bay1)
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)

    def test_moving_booking_rederives_both_bays(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        candidate = BookingCandidate(
            member_id=self.m1.pk, bay_id=self.bay2.pk,
            start_time=at(MONDAY, 14), end_time=at(MONDAY, 15),
        )
        self.engine.update_booking(booking.pk, candidate)
        self.bay1.refresh_from_db()
        self.bay2.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)
        self.assertEqual(self.bay2.status, Bay.Status.BOOKED)

    def test_terminal_booking_cannot_be_edited(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.cancel_booking(booking.pk)
        candidate = BookingCandidate(
            member_id=self.m1.pk, bay_id=self.bay1.pk,
            start_time=at(MONDAY, 16), end_time=at(MONDAY, 17),
        )
        with self.assertRaises(InvalidTransitionError):
            self.engine.update_booking(booking.pk, candidate)

    def test_unknown_ids_are_not_found(self):
        with self.assertRaises(NotFoundError):
            self.engine.cancel_booking(999999)
        with self.assertRaises(NotFoundError):
            self.engine.extend_booking(999999, 15)
        with self.assertRaises(NotFoundError):
            self.book(self.m1, SimpleNamespace(pk=999999), at(MONDAY, 14), at(MONDAY, 15))

    def test_bay_and_member_must_belong_to_facility(self):
        other = create_facility(slug="uptown")
        foreign_member = Member.objects.create(facility=other, full_name="Visitor")
        foreign_bay = Bay.objects.create(facility=other, name="Bay 9")
        with self.assertRaises(NotFoundError):
            self.book(foreign_member, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        with self.assertRaises(NotFoundError):
            self.book(self.m1, foreign_bay, at(MONDAY, 14), at(MONDAY, 15))

    def test_default_duration_when_end_missing(self):
        self.facility.default_booking_duration = 90
        self.facility.save()
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), None)
        self.assertEqual(booking.end_time, at(MONDAY, 15, 30))

    def test_end_must_follow_start(self):
        with self.assertRaises(InvalidWindowError):
            self.book(self.m1, self.bay1, at(MONDAY, 15), at(MONDAY, 14))

    def test_naive_times_use_facility_timezone(self):
        self.facility.timezone = "America/New_York"
        self.facility.save()
        booking = self.book(
            self.m1, self.bay1,
            datetime.combine(MONDAY, time(10, 0)), datetime.combine(MONDAY, time(11, 0)),
        )
        # 10:00 EST is 15:00 UTC in January
        self.assertEqual(booking.start_time, at(MONDAY, 15))

    def test_bay_status_mirrors_bookings_through_sequence(self):
        a = self.book(self.m1, self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        b = self.book(self.m2, self.bay1, at(MONDAY, 12), at(MONDAY, 13))
        c = self.book(self.m1, self.bay2, at(MONDAY, 10), at(MONDAY, 11))
        steps = [
            lambda: self.engine.check_in(a.pk),
            lambda: self.engine.mark_no_show(c.pk),
            lambda: self.engine.complete_booking(a.pk),
            lambda: self.engine.check_in(b.pk),
            lambda: self.engine.extend_booking(b.pk, 30),
            lambda: self.engine.cancel_booking(b.pk),
        ]
        for step in steps:
            step()
            self.assertBayMirrorsBookings(self.bay1)
            self.assertBayMirrorsBookings(self.bay2)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)


class ExtendBookingTestCase(FacilityFixtureMixin, TestCase):

    def test_check_in_extend_then_sweep(self):
        """Extend +15 keeps the bay in use; the sweep past the new end completes it"""
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.check_in(booking.pk)

        booking = self.engine.extend_booking(booking.pk, 15)
        self.assertEqual(booking.end_time, at(MONDAY, 15, 15))
        self.assertEqual(booking.status, Booking.Status.CHECKED_IN)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.IN_USE)

        self.assertEqual(sweep_expired_checkins(now=at(MONDAY, 15, 10)), 0)
        self.assertEqual(sweep_expired_checkins(now=at(MONDAY, 15, 16)), 1)

        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.COMPLETED)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)

    def test_only_checked_in_bookings_can_be_extended(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        with self.assertRaises(InvalidTransitionError):
            self.engine.extend_booking(booking.pk, 15)

    def test_extension_into_next_booking_is_rejected(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.book(self.m2, self.bay1, at(MONDAY, 15), at(MONDAY, 16))
        self.engine.check_in(booking.pk)

        with self.assertRaises(BookingConflictError):
            self.engine.extend_booking(booking.pk, 15)
        booking.refresh_from_db()
        self.assertEqual(booking.end_time, at(MONDAY, 15))

    def test_extension_must_be_positive(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.check_in(booking.pk)
        with self.assertRaises(InvalidWindowError):
            self.engine.extend_booking(booking.pk, 0)


class ExpirySweepTestCase(FacilityFixtureMixin, TestCase):

    def checked_in(self, bay, start, end, facility=None, member=None):
        booking = Booking.objects.create(
            facility=facility or self.facility, member=member or self.m1, bay=bay,
            start_time=start, end_time=end, status=Booking.Status.CHECKED_IN,
        )
        bay.status = Bay.Status.IN_USE
        bay.save()
        return booking

    def test_sweep_is_idempotent(self):
        self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.checked_in(self.bay2, at(MONDAY, 10), at(MONDAY, 12))
        now = at(MONDAY, 13)

        self.assertEqual(sweep_expired_checkins(now=now), 2)
        snapshot = list(Booking.objects.order_by("pk").values_list("status", "end_time"))
        self.assertEqual(sweep_expired_checkins(now=now), 0)
        self.assertEqual(list(Booking.objects.order_by("pk").values_list("status", "end_time")), snapshot)

    def test_sweep_leaves_running_and_confirmed_bookings(self):
        running = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 12))
        confirmed = self.book(self.m2, self.bay2, at(MONDAY, 9), at(MONDAY, 10))

        self.assertEqual(sweep_expired_checkins(now=at(MONDAY, 11)), 0)
        running.refresh_from_db()
        confirmed.refresh_from_db()
        self.assertEqual(running.status, Booking.Status.CHECKED_IN)
        self.assertEqual(confirmed.status, Booking.Status.CONFIRMED)

    def test_booking_ending_exactly_now_is_not_expired(self):
        booking = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.assertEqual(sweep_expired_checkins(now=at(MONDAY, 11)), 0)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.CHECKED_IN)

    def test_sweep_writes_system_audit_entry(self):
        booking = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        sweep_expired_checkins(now=at(MONDAY, 12))
        entry = AuditLog.objects.get(object_type="Booking", object_id=str(booking.pk))
        self.assertEqual(entry.actor_id, SYSTEM_ACTOR.id)
        self.assertEqual(entry.previous_value, {"status": "checked-in"})
        self.assertEqual(entry.new_value, {"status": "completed"})

    def test_sweep_scoped_to_facility(self):
        other = create_facility(slug="uptown")
        other_bay = Bay.objects.create(facility=other, name="Bay 1")
        other_member = Member.objects.create(facility=other, full_name="Jordan Lee")
        self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        foreign = self.checked_in(other_bay, at(MONDAY, 10), at(MONDAY, 11), facility=other, member=other_member)

        self.assertEqual(self.engine.sweep_expired_checkins(now=at(MONDAY, 12)), 1)
        foreign.refresh_from_db()
        self.assertEqual(foreign.status, Booking.Status.CHECKED_IN)

    def test_failure_on_one_booking_does_not_stop_sweep(self):
        bad = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        good = self.checked_in(self.bay2, at(MONDAY, 10), at(MONDAY, 11))
        original = BookingEngine._apply_transition

        def flaky(engine, booking, new_status):
            if booking.pk == bad.pk:
                raise DatabaseError("write failed")
            return original(engine, booking, new_status)

        with mock.patch.object(BookingEngine, "_apply_transition", autospec=True, side_effect=flaky):
            with self.assertLogs("bay_booking.engine", level="ERROR"):
                completed = sweep_expired_checkins(now=at(MONDAY, 12))

        self.assertEqual(completed, 1)
        bad.refresh_from_db()
        good.refresh_from_db()
        self.assertEqual(bad.status, Booking.Status.CHECKED_IN)
        self.assertEqual(good.status, Booking.Status.COMPLETED)

    def test_sweep_skips_booking_completed_manually(self):
        booking = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        self.engine.complete_booking(booking.pk)
        entries = AuditLog.objects.count()

        self.assertEqual(sweep_expired_checkins(now=at(MONDAY, 12)), 0)
        self.assertEqual(AuditLog.objects.count(), entries)

    def test_management_command_runs_sweep(self):
        now = timezone.now()
        booking = self.checked_in(self.bay1, now - timedelta(hours=2), now - timedelta(hours=1))
        out = StringIO()
        call_command("sweep_expired_checkins", stdout=out)
        self.assertIn("Auto-completed 1 booking(s)", out.getvalue())
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.COMPLETED)

    def test_naive_now_is_read_in_server_timezone(self):
        booking = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        naive_now = timezone.make_naive(at(MONDAY, 12))

        self.assertEqual(sweep_expired_checkins(now=naive_now), 1)
        booking.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.COMPLETED)

    def test_complete_expired_rechecks_booking(self):
        booking = self.checked_in(self.bay1, at(MONDAY, 10), at(MONDAY, 11))
        engine = BookingEngine(self.facility, SYSTEM_ACTOR, source="Scheduled sweep")

        self.assertFalse(engine.complete_expired(booking.pk, at(MONDAY, 10, 30)))
        self.assertTrue(engine.complete_expired(booking.pk, at(MONDAY, 12)))
        self.assertFalse(engine.complete_expired(booking.pk, at(MONDAY, 12)))

        booking.refresh_from_db()
        self.bay1.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.COMPLETED)
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)


class BayMaintenanceTestCase(FacilityFixtureMixin, TestCase):

    def test_maintenance_blocks_new_bookings(self):
        self.engine.set_bay_status(self.bay1.pk, Bay.Status.MAINTENANCE)
        with self.assertRaises(BayUnavailableError):
            self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

    def test_maintenance_is_not_cleared_by_bookings(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.set_bay_status(self.bay1.pk, Bay.Status.MAINTENANCE)
        self.engine.cancel_booking(booking.pk)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.MAINTENANCE)

    def test_clearing_maintenance_rederives_status(self):
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.set_bay_status(self.bay1.pk, Bay.Status.MAINTENANCE)

        bay = self.engine.set_bay_status(self.bay1.pk, Bay.Status.AVAILABLE)
        self.assertEqual(bay.status, Bay.Status.BOOKED)

        bay = self.engine.set_bay_status(self.bay2.pk, Bay.Status.AVAILABLE)
        self.assertEqual(bay.status, Bay.Status.AVAILABLE)

    def test_only_maintenance_or_available_can_be_set(self):
        for target in (Bay.Status.BOOKED, Bay.Status.IN_USE, "closed"):
            with self.subTest(target=target):
                with self.assertRaises(InvalidBayStatusError):
                    self.engine.set_bay_status(self.bay1.pk, target)

    def test_status_change_is_audited(self):
        self.engine.set_bay_status(self.bay1.pk, Bay.Status.MAINTENANCE)
        entry = AuditLog.objects.get(object_type="Bay")
        self.assertEqual(entry.object_name, "Bay 1")
        self.assertEqual(entry.previous_value, {"status": "available"})
        self.assertEqual(entry.new_value, {"status": "maintenance"})


class AuditTrailTestCase(FacilityFixtureMixin, TestCase):

    def test_create_entry(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        entry = AuditLog.objects.get()
        self.assertEqual(entry.action, AuditLog.Action.CREATE)
        self.assertEqual(entry.actor_id, "staff-1")
        self.assertEqual(entry.actor_display_name, "Front Desk")
        self.assertEqual(entry.object_type, "Booking")
        self.assertEqual(entry.object_id, str(booking.pk))
        self.assertEqual(entry.object_name, "Booking for Alex Morgan on Bay 1")
        self.assertIsNone(entry.previous_value)
        self.assertEqual(entry.new_value["status"], "confirmed")

    def test_update_entry_holds_only_changed_fields(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        candidate = BookingCandidate(
            member_id=self.m1.pk, bay_id=self.bay2.pk,
            start_time=at(MONDAY, 14), end_time=at(MONDAY, 15),
        )
        self.engine.update_booking(booking.pk, candidate)
        entry = AuditLog.objects.filter(action=AuditLog.Action.UPDATE).get()
        self.assertEqual(entry.previous_value, {"bay": "Bay 1"})
        self.assertEqual(entry.new_value, {"bay": "Bay 2"})

    def test_refund_recorded_with_cancel(self):
        booking = self.book(
            self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15),
            payment_status=Booking.PaymentStatus.PAID,
        )
        self.engine.cancel_booking(booking.pk)
        entry = AuditLog.objects.filter(action=AuditLog.Action.UPDATE).get()
        self.assertEqual(entry.previous_value, {"status": "confirmed", "payment_status": "paid"})
        self.assertEqual(entry.new_value, {"status": "canceled", "payment_status": "refunded"})

    def test_extend_records_new_end(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        self.engine.check_in(booking.pk)
        self.engine.extend_booking(booking.pk, 30)
        entry = AuditLog.objects.order_by("-id").first()
        self.assertEqual(entry.new_value, {"end_time": at(MONDAY, 15, 30).isoformat()})

    def test_failed_audit_write_rolls_back_booking(self):
        with mock.patch("bay_booking.engine.log_change", side_effect=DatabaseError("audit write failed")):
            with self.assertRaises(DatabaseError):
                self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

        self.assertEqual(Booking.objects.count(), 0)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.AVAILABLE)

    def test_failed_audit_write_rolls_back_transition(self):
        booking = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        with mock.patch("bay_booking.engine.log_change", side_effect=DatabaseError("audit write failed")):
            with self.assertRaises(DatabaseError):
                self.engine.check_in(booking.pk)

        booking.refresh_from_db()
        self.bay1.refresh_from_db()
        self.assertEqual(booking.status, Booking.Status.CONFIRMED)
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)

    def test_rejected_booking_writes_nothing(self):
        with self.assertRaises(ClosedDayError):
            self.book(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11))
        self.assertEqual(AuditLog.objects.count(), 0)


class BookingApiTestCase(FacilityFixtureMixin, APITestCase):
    """HTTP surface over the engine"""

    def post_booking(self, member, bay, start, end, **extra):
        data = {
            'member_id': member.pk,
            'bay_id': bay.pk,
            'start_time': start.isoformat(),
            'end_time': end.isoformat(),
            **extra,
        }
        return self.client.post(
            '/api/bookings/', data, format='json',
            HTTP_X_ACTOR_ID='staff-9', HTTP_X_ACTOR_NAME='Casey',
        )

    def test_create_booking(self):
        response = self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15), payment_amount_cents=2500)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        self.assertEqual(response.data['status'], 'confirmed')
        self.assertEqual(response.data['member_name'], 'Alex Morgan')
        self.assertEqual(response.data['bay_name'], 'Bay 1')
        self.assertEqual(response.data['payment_amount'], 25.0)

        entry = AuditLog.objects.get()
        self.assertEqual(entry.actor_id, 'staff-9')
        self.assertEqual(entry.actor_display_name, 'Casey')

    def test_conflict_returns_409(self):
        self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        response = self.post_booking(self.m2, self.bay1, at(MONDAY, 14, 30), at(MONDAY, 15, 30))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['kind'], 'conflict')
        self.assertFalse(response.data['overridable'])

    def test_closed_day_offers_override(self):
        response = self.post_booking(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['kind'], 'closed-day')
        self.assertTrue(response.data['overridable'])

        response = self.post_booking(self.m1, self.bay1, at(SUNDAY, 10), at(SUNDAY, 11), bypass_checks=True)
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)

    def test_concurrency_limit_payload(self):
        self.facility.max_concurrent_bookings = 1
        self.facility.save()
        self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        response = self.post_booking(self.m1, self.bay2, at(MONDAY, 16), at(MONDAY, 17))
        self.assertEqual(response.status_code, status.HTTP_409_CONFLICT)
        self.assertEqual(response.data['kind'], 'concurrency-limit')
        self.assertEqual(response.data['limit'], 1)
        self.assertEqual(response.data['member_name'], 'Alex Morgan')

    def test_invalid_window_is_400(self):
        response = self.post_booking(self.m1, self.bay1, at(MONDAY, 15), at(MONDAY, 14))
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_unknown_bay_is_404(self):
        response = self.post_booking(self.m1, SimpleNamespace(pk=999999), at(MONDAY, 14), at(MONDAY, 15))
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.data['kind'], 'not-found')

    def test_lifecycle_actions(self):
        booking_id = self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15)).data['id']

        response = self.client.post(f'/api/bookings/{booking_id}/check_in/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'checked-in')

        response = self.client.post(f'/api/bookings/{booking_id}/extend/', {'minutes': 15}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(Booking.objects.get(pk=booking_id).end_time, at(MONDAY, 15, 15))

        response = self.client.post(f'/api/bookings/{booking_id}/no_show/')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)
        self.assertEqual(response.data['kind'], 'invalid-transition')

        response = self.client.post(f'/api/bookings/{booking_id}/complete/')
        self.assertEqual(response.data['status'], 'completed')
        self.assertEqual(Bay.objects.get(pk=self.bay1.pk).status, Bay.Status.AVAILABLE)

    def test_cancel_action_refunds(self):
        booking_id = self.post_booking(
            self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15), payment_status='paid',
        ).data['id']
        response = self.client.post(f'/api/bookings/{booking_id}/cancel/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'canceled')
        self.assertEqual(response.data['payment_status'], 'refunded')

    def test_patch_edits_booking(self):
        booking_id = self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15)).data['id']
        response = self.client.patch(f'/api/bookings/{booking_id}/', {'bay_id': self.bay2.pk}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['bay'], self.bay2.pk)
        self.assertEqual(Bay.objects.get(pk=self.bay1.pk).status, Bay.Status.AVAILABLE)

    def test_bookings_cannot_be_deleted(self):
        booking_id = self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15)).data['id']
        response = self.client.delete(f'/api/bookings/{booking_id}/')
        self.assertEqual(response.status_code, status.HTTP_405_METHOD_NOT_ALLOWED)
        self.assertTrue(Booking.objects.filter(pk=booking_id).exists())

    def test_missing_booking_action_is_404(self):
        response = self.client.post('/api/bookings/999999/cancel/')
        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)

    def test_bay_list_filters_by_window(self):
        self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        response = self.client.get('/api/bays/', {
            'facility': self.facility.pk,
            'start': at(MONDAY, 14, 30).isoformat(),
            'end': at(MONDAY, 15, 30).isoformat(),
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([b['name'] for b in response.data], ['Bay 2'])

        response = self.client.get('/api/bays/', {'facility': self.facility.pk})
        self.assertEqual([b['name'] for b in response.data], ['Bay 1', 'Bay 2'])

    def test_bay_list_rejects_bad_window(self):
        response = self.client.get('/api/bays/', {'start': 'tomorrow', 'end': 'later'})
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_set_bay_status(self):
        response = self.client.post(f'/api/bays/{self.bay1.pk}/set_status/', {'status': 'maintenance'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data['status'], 'maintenance')

        response = self.client.post(f'/api/bays/{self.bay1.pk}/set_status/', {'status': 'booked'}, format='json')
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_audit_log_listing(self):
        booking_id = self.post_booking(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15)).data['id']
        self.client.post(f'/api/bookings/{booking_id}/check_in/')

        response = self.client.get('/api/audit-logs/', {'object_type': 'Booking', 'object_id': booking_id})
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data), 2)
        self.assertEqual({e['action'] for e in response.data}, {'create', 'update'})

    def test_facility_detail_includes_hours(self):
        response = self.client.get(f'/api/facilities/{self.facility.pk}/')
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(len(response.data['business_hours']), 7)
        self.assertIsNone(response.data['max_concurrent_bookings'])

    def test_naive_times_are_facility_local(self):
        """09:00 at a New York facility is 14:00 UTC in January"""
        self.facility.timezone = 'America/New_York'
        self.facility.save()
        data = {
            'member_id': self.m1.pk,
            'bay_id': self.bay1.pk,
            'start_time': f'{MONDAY.isoformat()}T09:00:00',
            'end_time': f'{MONDAY.isoformat()}T10:00:00',
        }
        response = self.client.post('/api/bookings/', data, format='json')
        self.assertEqual(response.status_code, status.HTTP_201_CREATED)
        booking = Booking.objects.get(pk=response.data['id'])
        self.assertEqual(booking.start_time, at(MONDAY, 14))
        self.assertEqual(booking.end_time, at(MONDAY, 15))

        response = self.client.patch(
            f'/api/bookings/{booking.pk}/',
            {'start_time': f'{MONDAY.isoformat()}T21:00:00', 'end_time': f'{MONDAY.isoformat()}T22:00:00'},
            format='json',
        )
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        booking.refresh_from_db()
        self.assertEqual(booking.start_time, at(MONDAY + timedelta(days=1), 2))

    def test_bay_window_naive_times_are_facility_local(self):
        self.facility.timezone = 'America/New_York'
        self.facility.save()
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

        response = self.client.get('/api/bays/', {
            'facility': self.facility.pk,
            'start': f'{MONDAY.isoformat()}T09:30:00',
            'end': f'{MONDAY.isoformat()}T10:30:00',
        })
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual([b['name'] for b in response.data], ['Bay 2'])

    def test_bay_shows_next_confirmed_booking(self):
        later = self.book(self.m2, self.bay1, at(MONDAY, 18), at(MONDAY, 19))
        first = self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))
        canceled = self.book(self.m1, self.bay2, at(MONDAY, 10), at(MONDAY, 11))
        self.engine.cancel_booking(canceled.pk)

        response = self.client.get('/api/bays/', {'facility': self.facility.pk})
        bays = {b['name']: b for b in response.data}
        self.assertEqual(bays['Bay 1']['next_booking']['id'], first.pk)
        self.assertEqual(bays['Bay 1']['next_booking']['member_name'], 'Alex Morgan')
        self.assertIsNone(bays['Bay 2']['next_booking'])

        self.engine.check_in(first.pk)
        response = self.client.get('/api/bays/', {'facility': self.facility.pk})
        bays = {b['name']: b for b in response.data}
        self.assertEqual(bays['Bay 1']['next_booking']['id'], later.pk)

    def test_health(self):
        response = self.client.get('/health')
        self.assertEqual(response.json(), {'status': 'ok'})


class BayAdminTestCase(FacilityFixtureMixin, TestCase):
    """Bay status only changes through the engine from the admin"""

    def setUp(self):
        super().setUp()
        self.manager = User.objects.create_superuser('manager', 'manager@example.com', 'secret-pass')
        self.client.force_login(self.manager)
        self.changelist = reverse('admin:bay_booking_bay_changelist')

    def test_status_cannot_be_edited_directly(self):
        self.assertIn('status', BayAdmin(Bay, admin.site).get_readonly_fields(None))
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

        response = self.client.post(
            reverse('admin:bay_booking_bay_change', args=[self.bay1.pk]),
            {'facility': self.facility.pk, 'name': 'Bay 1', 'status': 'available', '_save': 'Save'},
        )
        self.assertEqual(response.status_code, 302)
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)

    def test_maintenance_actions_are_audited(self):
        self.book(self.m1, self.bay1, at(MONDAY, 14), at(MONDAY, 15))

        self.client.post(self.changelist, {'action': 'put_in_maintenance', '_selected_action': [self.bay1.pk]})
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.MAINTENANCE)
        entry = AuditLog.objects.filter(object_type='Bay').get()
        self.assertEqual(entry.actor_display_name, 'manager')
        self.assertEqual(entry.source, 'Admin')

        self.client.post(self.changelist, {'action': 'return_to_service', '_selected_action': [self.bay1.pk]})
        self.bay1.refresh_from_db()
        self.assertEqual(self.bay1.status, Bay.Status.BOOKED)


class PopulateCommandTestCase(TestCase):

    def test_populate_is_repeatable(self):
        call_command('populate_db', stdout=StringIO())
        call_command('populate_db', stdout=StringIO())
        facility = Facility.objects.get(slug='downtown-golf')
        self.assertEqual(facility.bays.count(), 4)
        self.assertEqual(facility.business_hours.count(), 7)
        self.assertFalse(facility.business_hours.get(weekday=Weekday.SUNDAY).is_open)


class RaceConditionTestCase(TransactionTestCase):
    """Concurrent creates for the same bay and time"""

    def setUp(self):
        self.facility = create_facility(slug="race")
        self.bay = Bay.objects.create(facility=self.facility, name="Bay 1")
        self.members = [
            Member.objects.create(facility=self.facility, full_name=f"Member {i}") for i in range(5)
        ]

    def test_concurrent_booking_attempts_race_condition(self):
        """Only one of several simultaneous bookings for one slot succeeds"""

        def create_booking(member):
            try:
                engine = BookingEngine(self.facility, STAFF)
                engine.create_booking(BookingCandidate(
                    member_id=member.pk, bay_id=self.bay.pk,
                    start_time=at(MONDAY, 14), end_time=at(MONDAY, 15),
                ))
                return 'ok'
            except BookingConflictError:
                return 'conflict'
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=len(self.members)) as executor:
            futures = [executor.submit(create_booking, m) for m in self.members]
            results = [f.result() for f in as_completed(futures)]

        self.assertEqual(results.count('ok'), 1)
        self.assertEqual(results.count('conflict'), len(self.members) - 1)
        self.assertEqual(Booking.objects.filter(bay=self.bay).count(), 1)

    def test_concurrent_api_requests_return_created_or_conflict(self):
        """Simultaneous POSTs for one slot answer 201 once and 409 otherwise"""

        def post_booking(member):
            try:
                response = APIClient().post('/api/bookings/', {
                    'member_id': member.pk,
                    'bay_id': self.bay.pk,
                    'start_time': at(MONDAY, 14).isoformat(),
                    'end_time': at(MONDAY, 15).isoformat(),
                }, format='json')
                return response.status_code
            finally:
                connection.close()

        with ThreadPoolExecutor(max_workers=len(self.members)) as executor:
            futures = [executor.submit(post_booking, m) for m in self.members]
            codes = [f.result() for f in as_completed(futures)]

        self.assertEqual(sorted(codes), [201] + [409] * (len(self.members) - 1))
        self.assertEqual(Booking.objects.filter(bay=self.bay).count(), 1)
