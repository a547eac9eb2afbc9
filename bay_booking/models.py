from django.conf import settings
from django.db import models
from django.core.validators import MinValueValidator


class Weekday(models.IntegerChoices):
    # Values match date.weekday()
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


def default_timezone():
    return settings.TIME_ZONE


class Facility(models.Model):
    name = models.CharField(max_length=150)
    slug = models.SlugField(max_length=80, unique=True)
    timezone = models.CharField(max_length=64, default=default_timezone)
    # Null means no limit
    max_concurrent_bookings = models.PositiveIntegerField(null=True, blank=True)
    default_booking_duration = models.PositiveIntegerField(default=60, validators=[MinValueValidator(1)])
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        verbose_name_plural = "facilities"

    def __str__(self):
        return self.name


class BusinessHours(models.Model):
    facility = models.ForeignKey(Facility, on_delete=models.CASCADE, related_name="business_hours")
    weekday = models.IntegerField(choices=Weekday.choices)
    open = models.TimeField()
    close = models.TimeField()
    is_open = models.BooleanField(default=True)

    class Meta:
        verbose_name_plural = "business hours"
        constraints = [
            models.UniqueConstraint(fields=["facility", "weekday"], name="uq_business_hours_facility_weekday"),
        ]

    def __str__(self):
        return f"{self.facility} {self.get_weekday_display()}"


class Bay(models.Model):
    class Status(models.TextChoices):
        AVAILABLE = "available"
        BOOKED = "booked"
        IN_USE = "in-use"
        MAINTENANCE = "maintenance"
    facility = models.ForeignKey(Facility, on_delete=models.CASCADE, related_name="bays")
    name = models.CharField(max_length=80)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.AVAILABLE)

    class Meta:
        ordering = ["name"]
        constraints = [
            models.UniqueConstraint(fields=["facility", "name"], name="uq_bay_facility_name"),
        ]

    def __str__(self):
        return self.name


class Member(models.Model):
    class Status(models.TextChoices):
        ACTIVE = "active"
        INACTIVE = "inactive"
    facility = models.ForeignKey(Facility, on_delete=models.CASCADE, related_name="members")
    full_name = models.CharField(max_length=150)
    email = models.EmailField(blank=True)
    phone = models.CharField(max_length=50, blank=True)
    status = models.CharField(max_length=10, choices=Status.choices, default=Status.ACTIVE)
    membership_expiry = models.DateField(null=True, blank=True)

    class Meta:
        ordering = ["full_name"]

    def __str__(self):
        return self.full_name


class Booking(models.Model):
    class Status(models.TextChoices):
        CONFIRMED = "confirmed"
        CHECKED_IN = "checked-in"
        NO_SHOW = "no-show"
        COMPLETED = "completed"
        CANCELED = "canceled"

    class PaymentMethod(models.TextChoices):
        CASH = "cash"
        CARD = "card"
        MEMBER_ACCOUNT = "member_account"

    class PaymentStatus(models.TextChoices):
        PAID = "paid"
        UNPAID = "unpaid"
        REFUNDED = "refunded"

    BLOCKING_STATUSES = (Status.CONFIRMED, Status.CHECKED_IN)
    TERMINAL_STATUSES = (Status.COMPLETED, Status.CANCELED, Status.NO_SHOW)

    facility = models.ForeignKey(Facility, on_delete=models.CASCADE, related_name="bookings")
    member = models.ForeignKey(Member, on_delete=models.PROTECT, related_name="bookings")
    bay = models.ForeignKey(Bay, on_delete=models.PROTECT, related_name="bookings")
    start_time = models.DateTimeField(db_index=True)
    end_time = models.DateTimeField()  # exclusive
    status = models.CharField(max_length=12, choices=Status.choices, default=Status.CONFIRMED)
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    payment_status = models.CharField(max_length=10, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    payment_amount_cents = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.CheckConstraint(
                condition=models.Q(start_time__lt=models.F("end_time")),
                name="ck_booking_start_before_end",
            ),
        ]

    def __str__(self):
        return f"Booking for {self.member.full_name} on {self.bay.name}"

    @property
    def is_blocking(self):
        return self.status in self.BLOCKING_STATUSES


class AuditLog(models.Model):
    class Action(models.TextChoices):
        CREATE = "create"
        UPDATE = "update"
        DELETE = "delete"
    facility = models.ForeignKey(Facility, on_delete=models.CASCADE, related_name="audit_logs")
    action = models.CharField(max_length=10, choices=Action.choices)
    actor_id = models.CharField(max_length=80)
    actor_display_name = models.CharField(max_length=150)
    timestamp = models.DateTimeField(auto_now_add=True, db_index=True)
    object_type = models.CharField(max_length=40)
    object_id = models.CharField(max_length=80)
    object_name = models.CharField(max_length=255, blank=True)
    source = models.CharField(max_length=80, blank=True)
    previous_value = models.JSONField(null=True, blank=True)
    new_value = models.JSONField(null=True, blank=True)

    class Meta:
        ordering = ["-timestamp", "-id"]
