from dataclasses import dataclass

from .models import AuditLog


@dataclass(frozen=True)
class Actor:
    id: str
    display_name: str


SYSTEM_ACTOR = Actor(id="system", display_name="Scheduled sweep")


def booking_snapshot(booking):
    """Auditable view of a booking; names are captured as they are now."""
    return {
        "member": booking.member.full_name,
        "bay": booking.bay.name,
        "start_time": booking.start_time.isoformat(),
        "end_time": booking.end_time.isoformat(),
        "status": booking.status,
        "payment_method": booking.payment_method,
        "payment_status": booking.payment_status,
        "payment_amount_cents": booking.payment_amount_cents,
    }


def diff_fields(before, after):
    """Return ``(previous, new)`` holding only the keys whose values changed."""
    keys = [k for k in {**before, **after} if before.get(k) != after.get(k)]
    return (
        {k: before.get(k) for k in keys},
        {k: after.get(k) for k in keys},
    )


def log_change(facility, actor, action, obj, object_name, previous=None, new=None, source=""):
    """Append an audit entry. Must be called inside the caller's transaction."""
    return AuditLog.objects.create(
        facility=facility,
        action=action,
        actor_id=actor.id,
        actor_display_name=actor.display_name,
        object_type=type(obj).__name__,
        object_id=str(obj.pk),
        object_name=object_name[:255],
        source=source,
        previous_value=previous,
        new_value=new,
    )
