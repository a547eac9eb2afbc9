from django.contrib import admin
from .audit import Actor
from .engine import BookingEngine
from .models import AuditLog, Bay, Booking, BusinessHours, Facility, Member


class BusinessHoursInline(admin.TabularInline):
    model = BusinessHours
    extra = 0


@admin.register(Facility)
class FacilityAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "slug", "timezone", "max_concurrent_bookings")
    search_fields = ("name", "slug")
    inlines = [BusinessHoursInline]


def _actor(request):
    return Actor(id=str(request.user.pk), display_name=request.user.get_username())


# Status is derived from bookings; maintenance goes through the engine
@admin.register(Bay)
class BayAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "facility", "status")
    list_filter = ("status", "facility")
    readonly_fields = ("status",)
    actions = ["put_in_maintenance", "return_to_service"]

    def _set_status(self, request, queryset, status):
        for bay in queryset.select_related("facility"):
            BookingEngine(bay.facility, _actor(request), source="Admin").set_bay_status(bay.pk, status)
        self.message_user(request, f"Updated {queryset.count()} bay(s)")

    @admin.action(description="Put selected bays in maintenance")
    def put_in_maintenance(self, request, queryset):
        self._set_status(request, queryset, Bay.Status.MAINTENANCE)

    @admin.action(description="Return selected bays to service")
    def return_to_service(self, request, queryset):
        self._set_status(request, queryset, Bay.Status.AVAILABLE)


@admin.register(Member)
class MemberAdmin(admin.ModelAdmin):
    list_display = ("id", "full_name", "facility", "status", "membership_expiry")
    search_fields = ("full_name", "email")


# Bookings change only through the engine so bay status and audit stay consistent
@admin.register(Booking)
class BookingAdmin(admin.ModelAdmin):
    list_display = ("id", "member", "bay", "start_time", "end_time", "status", "payment_status")
    list_filter = ("status", "payment_status", "facility")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("timestamp", "action", "object_type", "object_name", "actor_display_name")
    list_filter = ("action", "object_type")

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
