from rest_framework.routers import DefaultRouter

from .views import CustomerViewSet, MembershipCardViewSet, MembershipTypeViewSet, ServiceRecordViewSet

router = DefaultRouter()
router.register(r"customers", CustomerViewSet, basename="customers")
router.register(r"membership-types", MembershipTypeViewSet, basename="membership-types")
router.register(r"memberships", MembershipCardViewSet, basename="memberships")
router.register(r"services", ServiceRecordViewSet, basename="services")

urlpatterns = [
    *router.urls,
]
