from rest_framework.routers import DefaultRouter
from bay_booking.views import (
    AuditLogViewSet,
    BayViewSet,
    BookingViewSet,
    FacilityViewSet,
    MemberViewSet,
)

router = DefaultRouter()
router.register(r'facilities', FacilityViewSet)
router.register(r'bays', BayViewSet)
router.register(r'members', MemberViewSet)
router.register(r'bookings', BookingViewSet)
router.register(r'audit-logs', AuditLogViewSet)

urlpatterns = router.urls
