from zoneinfo import ZoneInfo

from django.utils import timezone
from rest_framework import serializers

from .engine import BookingCandidate
from .models import AuditLog, Bay, Booking, BusinessHours, Facility, Member


class BusinessHoursSerializer(serializers.ModelSerializer):
    weekday_name = serializers.CharField(source='get_weekday_display', read_only=True)

    class Meta:
        model = BusinessHours
        fields = ['weekday', 'weekday_name', 'open', 'close', 'is_open']


class FacilitySerializer(serializers.ModelSerializer):
    business_hours = BusinessHoursSerializer(many=True, read_only=True)

    class Meta:
        model = Facility
        fields = [
            'id', 'name', 'slug', 'timezone', 'max_concurrent_bookings',
            'default_booking_duration', 'business_hours',
        ]


class BaySerializer(serializers.ModelSerializer):
    next_booking = serializers.SerializerMethodField()

    class Meta:
        model = Bay
        fields = ['id', 'facility', 'name', 'status', 'next_booking']

    def get_next_booking(self, obj):
        """Earliest upcoming confirmed booking on the bay, if any"""
        booking = (
            obj.bookings.filter(status=Booking.Status.CONFIRMED, start_time__gte=timezone.now())
            .select_related('member')
            .order_by('start_time')
            .first()
        )
        if booking is None:
            return None
        return {
            'id': booking.pk,
            'start_time': serializers.DateTimeField().to_representation(booking.start_time),
            'member_name': booking.member.full_name,
        }


class BayStatusInput(serializers.Serializer):
    status = serializers.ChoiceField(choices=[Bay.Status.AVAILABLE, Bay.Status.MAINTENANCE])


class MemberSerializer(serializers.ModelSerializer):

    class Meta:
        model = Member
        fields = ['id', 'facility', 'full_name', 'email', 'phone', 'status', 'membership_expiry']


class BookingSerializer(serializers.ModelSerializer):
    # Names are resolved through the relations, never stored on the booking
    member_name = serializers.CharField(source='member.full_name', read_only=True)
    bay_name = serializers.CharField(source='bay.name', read_only=True)

    class Meta:
        model = Booking
        fields = [
            'id', 'facility', 'member', 'member_name', 'bay', 'bay_name',
            'start_time', 'end_time', 'status', 'payment_method',
            'payment_status', 'payment_amount_cents', 'created_at', 'updated_at',
        ]
        read_only_fields = fields

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data['payment_amount'] = instance.payment_amount_cents / 100.0
        return data


class BookingInput(serializers.Serializer):
    """Booking intent submitted for create or edit."""
    member_id = serializers.IntegerField()
    bay_id = serializers.IntegerField()
    start_time = serializers.DateTimeField()
    end_time = serializers.DateTimeField(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=Booking.PaymentMethod.choices, default=Booking.PaymentMethod.CASH)
    payment_status = serializers.ChoiceField(choices=Booking.PaymentStatus.choices, default=Booking.PaymentStatus.UNPAID)
    payment_amount_cents = serializers.IntegerField(min_value=0, default=0)
    bypass_checks = serializers.BooleanField(default=False)

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Naive times are wall-clock times at the facility
        facility = self.context.get('facility')
        if facility is not None:
            tz = ZoneInfo(facility.timezone)
            self.fields['start_time'].timezone = tz
            self.fields['end_time'].timezone = tz

    @classmethod
    def for_instance(cls, booking, data):
        """Bind an edit, falling back to the booking's current values."""
        initial = {
            'member_id': booking.member_id,
            'bay_id': booking.bay_id,
            'start_time': booking.start_time,
            'end_time': booking.end_time,
            'payment_method': booking.payment_method,
            'payment_status': booking.payment_status,
            'payment_amount_cents': booking.payment_amount_cents,
        }
        initial.update(data.items())
        return cls(data=initial, context={'facility': booking.facility})

    def validate(self, data):
        start = data.get('start_time')
        end = data.get('end_time')
        if start and end and end <= start:
            raise serializers.ValidationError("end_time must be after start_time")
        return data

    def to_candidate(self):
        data = self.validated_data
        return BookingCandidate(
            member_id=data['member_id'],
            bay_id=data['bay_id'],
            start_time=data['start_time'],
            end_time=data.get('end_time'),
            payment_method=data['payment_method'],
            payment_status=data['payment_status'],
            payment_amount_cents=data['payment_amount_cents'],
        )


class ExtendInput(serializers.Serializer):
    minutes = serializers.IntegerField(min_value=1, max_value=24 * 60)


class AuditLogSerializer(serializers.ModelSerializer):

    class Meta:
        model = AuditLog
        fields = [
            'id', 'facility', 'action', 'actor_id', 'actor_display_name',
            'timestamp', 'object_type', 'object_id', 'object_name', 'source',
            'previous_value', 'new_value',
        ]
