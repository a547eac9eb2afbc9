from zoneinfo import ZoneInfo

from django.http import JsonResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.response import Response

from . import scheduling
from .audit import Actor
from .engine import BookingEngine
from .exceptions import BookingEngineError, BookingValidationError, NotFoundError
from .models import AuditLog, Bay, Booking, Facility, Member
from .serializers import (
    AuditLogSerializer,
    BaySerializer,
    BayStatusInput,
    BookingInput,
    BookingSerializer,
    ExtendInput,
    FacilitySerializer,
    MemberSerializer,
)


def welcome(request):
    return JsonResponse({"message": "Welcome to the bay booking service"})


def health_check(request):
    return JsonResponse({"status": "ok"})


def _actor(request):
    # Authentication is handled upstream; callers identify themselves by header
    return Actor(
        id=request.headers.get('X-Actor-Id', 'anonymous'),
        display_name=request.headers.get('X-Actor-Name', 'Anonymous'),
    )


def _error_response(exc):
    if isinstance(exc, NotFoundError):
        code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, BookingValidationError):
        code = status.HTTP_409_CONFLICT
    else:
        code = status.HTTP_400_BAD_REQUEST
    return Response(exc.as_dict(), status=code)


def _parse_window(request, tz=None):
    """Optional ``start``/``end`` query params; ``None`` when absent.

    Naive values are read in ``tz`` (the server timezone when not given).
    """
    start_str = request.query_params.get('start')
    end_str = request.query_params.get('end')
    if not start_str or not end_str:
        return None
    start, end = parse_datetime(start_str), parse_datetime(end_str)
    if start is None or end is None:
        raise ValueError("start and end must be ISO datetimes with end after start")
    start, end = [timezone.make_aware(v, tz) if timezone.is_naive(v) else v for v in (start, end)]
    if end <= start:
        raise ValueError("start and end must be ISO datetimes with end after start")
    return start, end


class FacilityViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Facility.objects.prefetch_related('business_hours')
    serializer_class = FacilitySerializer


class MemberViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Member.objects.all()
    serializer_class = MemberSerializer

    def get_queryset(self):
        qs = super().get_queryset()
        facility_id = self.request.query_params.get('facility')
        if facility_id:
            qs = qs.filter(facility_id=facility_id)
        return qs


class BayViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = Bay.objects.all()
    serializer_class = BaySerializer

    def get_queryset(self):
        qs = super().get_queryset()
        facility_id = self.request.query_params.get('facility')
        if facility_id:
            qs = qs.filter(facility_id=facility_id)
        return qs

    def list(self, request, *args, **kwargs):
        """List bays; with ``start`` and ``end`` only bays free for that window"""
        facility_id = request.query_params.get('facility', '')
        facility = Facility.objects.filter(pk=facility_id).first() if facility_id.isdigit() else None
        tz = ZoneInfo(facility.timezone) if facility else None
        try:
            window = _parse_window(request, tz)
        except ValueError as exc:
            return Response({'error': str(exc)}, status=status.HTTP_400_BAD_REQUEST)

        bays = list(self.get_queryset())
        if window:
            start, end = window
            exclude = request.query_params.get('exclude_booking')
            bookings = Booking.objects.filter(
                bay__in=bays,
                status__in=Booking.BLOCKING_STATUSES,
                start_time__lt=end,
                end_time__gt=start,
            )
            bays = scheduling.available_bays(
                bays, start, end, bookings,
                exclude_id=int(exclude) if exclude and exclude.isdigit() else None,
            )
        serializer = self.get_serializer(bays, many=True)
        return Response(serializer.data)

    @action(detail=True, methods=['post'])
    def set_status(self, request, pk=None):
        """Put a bay into maintenance or return it to service"""
        bay = self.get_object()
        payload = BayStatusInput(data=request.data)
        payload.is_valid(raise_exception=True)
        engine = BookingEngine(bay.facility, _actor(request))
        try:
            bay = engine.set_bay_status(bay.pk, payload.validated_data['status'])
        except BookingEngineError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(bay).data)


class BookingViewSet(mixins.CreateModelMixin,
                     mixins.UpdateModelMixin,
                     viewsets.ReadOnlyModelViewSet):
    """Bookings are never deleted; they end in a terminal status."""
    queryset = Booking.objects.select_related('member', 'bay')
    serializer_class = BookingSerializer

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        for field in ('facility', 'bay', 'member', 'status'):
            value = params.get(field)
            if value:
                qs = qs.filter(**{field: value})
        return qs.order_by('start_time')

    def create(self, request, *args, **kwargs):
        payload = BookingInput(data=request.data)
        payload.is_valid(raise_exception=True)
        bay = Bay.objects.select_related('facility').filter(pk=payload.validated_data['bay_id']).first()
        if bay is None:
            return _error_response(NotFoundError("Bay", payload.validated_data['bay_id']))

        # Re-read the times now that the facility's timezone is known
        payload = BookingInput(data=request.data, context={'facility': bay.facility})
        payload.is_valid(raise_exception=True)
        engine = BookingEngine(bay.facility, _actor(request))
        try:
            booking = engine.create_booking(
                payload.to_candidate(),
                bypass_checks=payload.validated_data['bypass_checks'],
            )
        except BookingEngineError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(booking).data, status=status.HTTP_201_CREATED)

    def update(self, request, pk=None, **kwargs):
        """Edit a booking; PUT and PATCH both fall back to current values"""
        booking = self.get_object()
        payload = BookingInput.for_instance(booking, request.data)
        payload.is_valid(raise_exception=True)

        engine = BookingEngine(booking.facility, _actor(request))
        try:
            booking = engine.update_booking(
                booking.pk,
                payload.to_candidate(),
                bypass_checks=payload.validated_data['bypass_checks'],
            )
        except BookingEngineError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(booking).data)

    def partial_update(self, request, pk=None, **kwargs):
        return self.update(request, pk, **kwargs)

    def _transition(self, request, method_name):
        booking = self.get_object()
        engine = BookingEngine(booking.facility, _actor(request))
        try:
            booking = getattr(engine, method_name)(booking.pk)
        except BookingEngineError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(booking).data)

    @action(detail=True, methods=['post'])
    def cancel(self, request, pk=None):
        """Cancel a booking; paid bookings are marked refunded"""
        return self._transition(request, 'cancel_booking')

    @action(detail=True, methods=['post'])
    def check_in(self, request, pk=None):
        return self._transition(request, 'check_in')

    @action(detail=True, methods=['post'])
    def no_show(self, request, pk=None):
        return self._transition(request, 'mark_no_show')

    @action(detail=True, methods=['post'])
    def complete(self, request, pk=None):
        return self._transition(request, 'complete_booking')

    @action(detail=True, methods=['post'])
    def extend(self, request, pk=None):
        """Extend a checked-in booking by ``minutes``"""
        booking = self.get_object()
        payload = ExtendInput(data=request.data)
        payload.is_valid(raise_exception=True)
        engine = BookingEngine(booking.facility, _actor(request))
        try:
            booking = engine.extend_booking(booking.pk, payload.validated_data['minutes'])
        except BookingEngineError as exc:
            return _error_response(exc)
        return Response(self.get_serializer(booking).data)


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.all()
    serializer_class = AuditLogSerializer

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        for field in ('facility', 'object_type', 'object_id', 'action'):
            value = params.get(field)
            if value:
                qs = qs.filter(**{field: value})
        return qs
