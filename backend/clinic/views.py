import io

import qrcode
from django.core.exceptions import ValidationError
from django.db.models import Q
from django.http import HttpResponse
from django.shortcuts import get_object_or_404
from django.utils import timezone
from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError as BadRequest
from rest_framework.response import Response

from users.permissions import IsManagerOrAdminRole, IsStaffRole

from .exceptions import ChargeRejected
from .models import AuditAction, AuditLog, Customer, MembershipCard, MembershipType, ServiceRecord
from .serializers import (
    CardHistorySerializer,
    CardStatusSerializer,
    CustomerSerializer,
    MembershipCardCreateSerializer,
    MembershipCardSerializer,
    MembershipTypeSerializer,
    RechargeSerializer,
    ServiceRecordSerializer,
)
from .services import (
    change_card_status,
    delete_service,
    membership_stats,
    recharge_card,
    record_service,
    refresh_membership_status,
    update_service,
)
from .throttles import LookupRateThrottle, QrRateThrottle, StatsRateThrottle


def _truthy(value):
    return value in {"1", "true", "yes"}


def _charge_rejected(exc):
    return Response({"detail": exc.message, "code": exc.code}, status=status.HTTP_400_BAD_REQUEST)


def _invalid(exc):
    return Response({"detail": "，".join(exc.messages)}, status=status.HTTP_400_BAD_REQUEST)


def _parse_id(value, name):
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        parsed = 0
    if parsed < 1:
        raise BadRequest({"detail": f"Invalid {name}"})
    return parsed


class RolePermissionMixin:
    manager_actions = {"destroy"}

    def get_permissions(self):
        if self.action in self.manager_actions:
            permission_classes = [IsManagerOrAdminRole]
        else:
            permission_classes = [IsStaffRole]
        return [perm() for perm in permission_classes]


class CustomerViewSet(RolePermissionMixin, viewsets.ModelViewSet):
    queryset = Customer.objects.prefetch_related("cards").order_by("-created_at")
    serializer_class = CustomerSerializer

    def get_queryset(self):
        qs = super().get_queryset()
        query = self.request.query_params.get("q")
        if query:
            query = query.strip()
            qs = qs.filter(
                Q(child_name__icontains=query)
                | Q(parent_name__icontains=query)
                | Q(phone__icontains=query)
            )
        return qs

    def list(self, request, *args, **kwargs):
        status_filter = request.query_params.get("membership_status")
        if not status_filter:
            return super().list(request, *args, **kwargs)

        customers = [
            customer
            for customer in self.get_queryset()
            if refresh_membership_status(customer).aggregate == status_filter
        ]
        serializer = self.get_serializer(customers, many=True)
        return Response(serializer.data)


class MembershipTypeViewSet(RolePermissionMixin, viewsets.ModelViewSet):
    queryset = MembershipType.objects.order_by("category", "price")
    serializer_class = MembershipTypeSerializer
    manager_actions = {"create", "update", "partial_update", "destroy"}

    def get_queryset(self):
        qs = super().get_queryset()
        active = self.request.query_params.get("active")
        if active is not None:
            qs = qs.filter(is_active=_truthy(active))
        return qs


class MembershipCardViewSet(RolePermissionMixin, viewsets.ModelViewSet):
    queryset = MembershipCard.objects.select_related("customer", "membership_type").order_by("-issue_date", "-id")
    serializer_class = MembershipCardSerializer
    manager_actions = {"destroy", "set_status"}

    def get_serializer_class(self):
        if self.action == "create":
            return MembershipCardCreateSerializer
        return super().get_serializer_class()

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        card_number = params.get("card_number")
        if card_number:
            qs = qs.filter(card_number__icontains=card_number.strip())
        for field in ("card_type", "status"):
            value = params.get(field)
            if value:
                qs = qs.filter(**{field: value})
        customer = params.get("customer")
        if customer:
            qs = qs.filter(customer_id=_parse_id(customer, "customer"))
        expired = params.get("expired")
        if expired in {"true", "false"}:
            today = timezone.localdate()
            if expired == "true":
                qs = qs.filter(expiry_date__lt=today)
            else:
                qs = qs.filter(Q(expiry_date__gte=today) | Q(expiry_date__isnull=True))
        return qs

    def perform_destroy(self, instance):
        customer = instance.customer
        instance.delete()
        refresh_membership_status(customer)

    @action(detail=False, methods=["get"], url_path=r"customer/(?P<customer_id>\d+)")
    def customer_cards(self, request, customer_id=None):
        customer = get_object_or_404(Customer, pk=customer_id)
        cards = list(
            MembershipCard.objects.select_related("customer", "membership_type")
            .filter(customer=customer)
            .order_by("-issue_date", "-id")
        )
        evaluation = refresh_membership_status(customer, cards=cards)
        return Response(
            {
                "success": True,
                "count": len(cards),
                "membership_status": evaluation.aggregate,
                "data": MembershipCardSerializer(cards, many=True).data,
            }
        )

    @action(detail=True, methods=["patch"], url_path="status")
    def set_status(self, request, pk=None):
        card = self.get_object()
        serializer = CardStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        card = change_card_status(card, user=request.user, **serializer.validated_data)
        return Response(MembershipCardSerializer(card).data)

    @action(detail=True, methods=["post"], url_path="recharge")
    def recharge(self, request, pk=None):
        card = self.get_object()
        serializer = RechargeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        try:
            card = recharge_card(card, user=request.user, **serializer.validated_data)
        except ValidationError as exc:
            return _invalid(exc)
        return Response(MembershipCardSerializer(card).data)

    def _history(self, actions):
        card = self.get_object()
        entries = (
            AuditLog.objects.select_related("user")
            .filter(card=card, action__in=actions)
            .order_by("-created_at", "-id")
        )
        return Response(CardHistorySerializer(entries, many=True).data)

    @action(detail=True, methods=["get"], url_path="recharge-history")
    def recharges(self, request, pk=None):
        return self._history([AuditAction.RECHARGE])

    @action(detail=True, methods=["get"], url_path="consumption")
    def consumption(self, request, pk=None):
        return self._history([AuditAction.CHARGE, AuditAction.REFUND])

    @action(detail=False, methods=["get"], url_path="stats", throttle_classes=[StatsRateThrottle])
    def stats(self, request):
        data = membership_stats()
        data["expiring_cards"] = MembershipCardSerializer(data["expiring_cards"], many=True).data
        data["low_count_cards"] = MembershipCardSerializer(data["low_count_cards"], many=True).data
        return Response(data)

    @action(detail=False, methods=["get"], url_path="lookup", throttle_classes=[LookupRateThrottle])
    def lookup(self, request):
        identifier = request.query_params.get("q")
        if not identifier:
            return Response({"detail": "q is required"}, status=status.HTTP_400_BAD_REQUEST)
        identifier = identifier.strip().strip("/")

        cards = MembershipCard.objects.select_related("customer", "membership_type")
        card = cards.filter(card_number__iexact=identifier).first()
        if card is None:
            card = cards.filter(customer__phone=identifier).order_by("-issue_date", "-id").first()
        if card is None:
            return Response({"detail": "找不到该会员卡"}, status=status.HTTP_404_NOT_FOUND)
        return Response(MembershipCardSerializer(card).data)

    @action(detail=True, methods=["get"], url_path="qr", throttle_classes=[QrRateThrottle])
    def qr(self, request, pk=None):
        card = self.get_object()
        img = qrcode.make(card.card_number)
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")
        return HttpResponse(buffer.getvalue(), content_type="image/png")


class ServiceRecordViewSet(RolePermissionMixin, viewsets.ModelViewSet):
    queryset = ServiceRecord.objects.select_related("customer", "membership").all()
    serializer_class = ServiceRecordSerializer
    manager_actions = set()

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        customer = params.get("customer")
        if customer:
            qs = qs.filter(customer_id=_parse_id(customer, "customer"))
        payment_method = params.get("payment_method")
        if payment_method:
            qs = qs.filter(payment_method=payment_method)
        return qs

    def create(self, request, *args, **kwargs):
        try:
            return super().create(request, *args, **kwargs)
        except ChargeRejected as exc:
            return _charge_rejected(exc)

    def update(self, request, *args, **kwargs):
        try:
            return super().update(request, *args, **kwargs)
        except ChargeRejected as exc:
            return _charge_rejected(exc)

    def perform_create(self, serializer):
        serializer.instance = record_service(user=self.request.user, **serializer.validated_data)

    def perform_update(self, serializer):
        serializer.instance = update_service(serializer.instance, user=self.request.user, **serializer.validated_data)

    def perform_destroy(self, instance):
        delete_service(instance, user=self.request.user)
