from django.utils import timezone
from rest_framework import serializers

from .choices import CardStatus, CardType, PaymentMethod, PeriodType, RechargeType
from .models import AuditLog, Customer, MembershipCard, MembershipType, ServiceRecord
from .rules import capacity_display, effective_status, evaluate_status, remaining_capacity, required_fields
from .services import issue_card


class CustomerSerializer(serializers.ModelSerializer):
    membership_status = serializers.SerializerMethodField()
    age = serializers.IntegerField(read_only=True)

    class Meta:
        model = Customer
        fields = [
            "id",
            "child_name",
            "child_gender",
            "child_birthdate",
            "child_age",
            "age",
            "parent_name",
            "relationship",
            "phone",
            "email",
            "address",
            "constitution",
            "main_symptoms",
            "allergy_history",
            "medical_history",
            "notes",
            "membership_status",
            "created_at",
        ]
        read_only_fields = ["created_at"]

    def get_membership_status(self, obj):
        return evaluate_status(obj.cards.all()).aggregate


class MembershipTypeSerializer(serializers.ModelSerializer):
    class Meta:
        model = MembershipType
        fields = [
            "id",
            "name",
            "category",
            "price",
            "value_amount",
            "service_count",
            "validity_days",
            "description",
            "is_active",
        ]
        extra_kwargs = {"validity_days": {"min_value": 1}}


class MembershipCardSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.child_name", read_only=True)
    effective_status = serializers.SerializerMethodField()
    capacity = serializers.SerializerMethodField()

    class Meta:
        model = MembershipCard
        fields = [
            "id",
            "card_number",
            "card_type",
            "membership_type",
            "customer",
            "customer_name",
            "balance",
            "count",
            "issue_date",
            "expiry_date",
            "status",
            "effective_status",
            "capacity",
            "last_recharge_date",
            "last_consume_date",
            "notes",
        ]
        read_only_fields = [
            "card_number",
            "card_type",
            "membership_type",
            "customer",
            "balance",
            "count",
            "issue_date",
            "status",
            "last_recharge_date",
            "last_consume_date",
        ]

    def get_effective_status(self, obj):
        return effective_status(obj)

    def get_capacity(self, obj):
        capacity = remaining_capacity(obj)
        value = capacity.value
        return {
            "kind": capacity.kind,
            "value": str(value) if value is not None else None,
            "display": capacity_display(obj),
        }


class MembershipCardCreateSerializer(serializers.Serializer):
    customer = serializers.PrimaryKeyRelatedField(queryset=Customer.objects.all())
    card_type = serializers.ChoiceField(choices=CardType.choices, required=False)
    membership_type = serializers.PrimaryKeyRelatedField(
        queryset=MembershipType.objects.filter(is_active=True),
        required=False,
        allow_null=True,
    )
    service_count = serializers.IntegerField(min_value=0, required=False)
    unit_price = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    initial_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    bonus_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, required=False)
    period_type = serializers.ChoiceField(choices=PeriodType.choices, required=False)
    period_value = serializers.IntegerField(min_value=0, required=False)
    expiry_date = serializers.DateField(required=False, allow_null=True)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices, default=PaymentMethod.CASH)
    notes = serializers.CharField(required=False, allow_blank=True, default="")

    def validate(self, attrs):
        membership_type = attrs.get("membership_type")
        card_type = attrs.get("card_type") or (membership_type.category if membership_type else None)
        if not card_type:
            raise serializers.ValidationError({"card_type": "卡类型不能为空"})
        if membership_type and membership_type.category != card_type:
            raise serializers.ValidationError({"membership_type": "会员卡类型与卡类型不一致"})
        attrs["card_type"] = card_type

        if membership_type is None:
            needed = set(required_fields(card_type))
            if attrs.get("expiry_date"):
                needed -= {"period_type", "period_value"}
            missing = sorted(field for field in needed if attrs.get(field) is None)
            if missing:
                raise serializers.ValidationError({field: "该字段为必填项" for field in missing})

        expiry_date = attrs.get("expiry_date")
        if expiry_date and expiry_date < timezone.localdate():
            raise serializers.ValidationError({"expiry_date": "有效期不能早于今天"})
        return attrs

    def create(self, validated_data):
        request = self.context.get("request")
        return issue_card(user=request.user if request else None, **validated_data)

    def to_representation(self, instance):
        return MembershipCardSerializer(instance, context=self.context).data


class CardStatusSerializer(serializers.Serializer):
    status = serializers.ChoiceField(choices=CardStatus.choices)
    reason = serializers.CharField(required=False, allow_blank=True, default="")


class RechargeSerializer(serializers.Serializer):
    recharge_type = serializers.ChoiceField(choices=RechargeType.choices)
    total_amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0)
    count = serializers.IntegerField(min_value=0, default=0)
    amount = serializers.DecimalField(max_digits=12, decimal_places=2, min_value=0, default=0)
    extend_months = serializers.IntegerField(min_value=0, default=0)
    payment_method = serializers.ChoiceField(choices=PaymentMethod.choices)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ServiceRecordSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.child_name", read_only=True)
    card_number = serializers.CharField(source="membership.card_number", read_only=True, default=None)

    class Meta:
        model = ServiceRecord
        fields = [
            "id",
            "customer",
            "customer_name",
            "membership",
            "card_number",
            "therapist",
            "service_type",
            "service_date",
            "service_fee",
            "payment_method",
            "symptoms",
            "diagnosis",
            "treatment",
            "notes",
        ]
        extra_kwargs = {
            "membership": {"required": False, "allow_null": True},
            "service_fee": {"min_value": 0},
        }

    def validate(self, attrs):
        instance = self.instance
        method = attrs.get("payment_method", instance.payment_method if instance else PaymentMethod.CASH)
        attrs["payment_method"] = method
        if method != PaymentMethod.MEMBERSHIP:
            attrs["membership"] = None
        return attrs


class CardHistorySerializer(serializers.ModelSerializer):
    username = serializers.CharField(source="user.username", read_only=True, default=None)

    class Meta:
        model = AuditLog
        fields = ["id", "action", "username", "metadata", "created_at"]
