from django.conf import settings
from django.db import models
from django.utils import timezone

from .choices import CardStatus, CardType, MembershipStatus, PaymentMethod


class TimeStampedModel(models.Model):
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        abstract = True


class Customer(TimeStampedModel):
    class Gender(models.TextChoices):
        MALE = "male", "男"
        FEMALE = "female", "女"
        UNKNOWN = "unknown", "未知"

    class Relationship(models.TextChoices):
        MOTHER = "mother", "母亲"
        FATHER = "father", "父亲"
        GRANDPARENT = "grandparent", "祖父母"
        OTHER = "other", "其他"

    child_name = models.CharField(max_length=100)
    child_gender = models.CharField(max_length=10, choices=Gender.choices, default=Gender.UNKNOWN)
    child_birthdate = models.DateField(null=True, blank=True)
    child_age = models.PositiveSmallIntegerField(null=True, blank=True)

    parent_name = models.CharField(max_length=100)
    relationship = models.CharField(max_length=20, choices=Relationship.choices, blank=True, default="")
    phone = models.CharField(max_length=20)
    email = models.EmailField(blank=True, null=True)
    address = models.CharField(max_length=255, blank=True, default="")

    constitution = models.CharField(max_length=255, blank=True, default="")
    main_symptoms = models.TextField(blank=True, default="")
    allergy_history = models.TextField(blank=True, default="")
    medical_history = models.TextField(blank=True, default="")
    notes = models.TextField(blank=True, default="")

    # Cached copy of the status derived from the cards; refreshed whenever
    # the cards are loaded through the API.
    membership_status = models.CharField(
        max_length=20,
        choices=MembershipStatus.choices,
        default=MembershipStatus.NONE,
    )

    def __str__(self) -> str:
        return f"{self.child_name} ({self.parent_name} {self.phone})"

    @property
    def age(self) -> int | None:
        if self.child_birthdate is None:
            return self.child_age
        today = timezone.localdate()
        born = self.child_birthdate
        return today.year - born.year - ((today.month, today.day) < (born.month, born.day))


class MembershipType(TimeStampedModel):
    name = models.CharField(max_length=100)
    category = models.CharField(max_length=16, choices=CardType.choices, default=CardType.COUNT)
    price = models.DecimalField(max_digits=12, decimal_places=2)
    value_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    service_count = models.PositiveIntegerField(default=0)
    validity_days = models.PositiveIntegerField()
    description = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)

    def __str__(self) -> str:
        return f"{self.name} ({self.get_category_display()})"


class MembershipCard(TimeStampedModel):
    card_number = models.CharField(max_length=30, unique=True, editable=False)
    card_type = models.CharField(max_length=16, choices=CardType.choices, default=CardType.COUNT)
    membership_type = models.ForeignKey(
        MembershipType,
        on_delete=models.SET_NULL,
        related_name="cards",
        null=True,
        blank=True,
    )
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="cards")

    balance = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    count = models.PositiveIntegerField(default=0)

    issue_date = models.DateField(default=timezone.localdate)
    expiry_date = models.DateField(null=True, blank=True)

    status = models.CharField(max_length=20, choices=CardStatus.choices, default=CardStatus.ACTIVE)
    last_recharge_date = models.DateTimeField(null=True, blank=True)
    last_consume_date = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")

    def __str__(self) -> str:
        return f"{self.card_number} - {self.customer.child_name}"

    @classmethod
    def generate_card_number(cls, today=None) -> str:
        today = today or timezone.localdate()
        prefix = f"MK{today:%Y%m}"
        latest = (
            cls.objects.filter(card_number__startswith=prefix)
            .order_by("-card_number")
            .values_list("card_number", flat=True)
            .first()
        )
        sequence = int(latest[len(prefix):]) + 1 if latest else 1
        return f"{prefix}{sequence:03d}"

    def save(self, *args, **kwargs):
        if not self.card_number:
            self.card_number = self.generate_card_number()
        super().save(*args, **kwargs)


class ServiceRecord(TimeStampedModel):
    customer = models.ForeignKey(Customer, on_delete=models.CASCADE, related_name="services")
    membership = models.ForeignKey(
        MembershipCard,
        on_delete=models.SET_NULL,
        related_name="services",
        null=True,
        blank=True,
    )
    therapist = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        related_name="services",
        null=True,
        blank=True,
    )
    service_type = models.CharField(max_length=100)
    service_date = models.DateTimeField(default=timezone.now)
    service_fee = models.DecimalField(max_digits=12, decimal_places=2)
    payment_method = models.CharField(max_length=20, choices=PaymentMethod.choices, default=PaymentMethod.CASH)

    symptoms = models.TextField(blank=True, default="")
    diagnosis = models.TextField(blank=True, default="")
    treatment = models.TextField(blank=True, default="")
    notes = models.TextField(blank=True, default="")

    class Meta:
        ordering = ["-service_date", "-id"]

    def __str__(self) -> str:
        return f"{self.service_type} - {self.customer.child_name} ({self.service_date:%Y-%m-%d})"

    @property
    def charged_card(self):
        if self.payment_method == PaymentMethod.MEMBERSHIP:
            return self.membership
        return None


class AuditAction(models.TextChoices):
    ISSUE_CARD = "issue_card", "Issue Card"
    STATUS_CHANGE = "status_change", "Status Change"
    RECHARGE = "recharge", "Recharge"
    CHARGE = "charge", "Charge"
    REFUND = "refund", "Refund"


class AuditLog(TimeStampedModel):
    action = models.CharField(max_length=30, choices=AuditAction.choices)
    user = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    card = models.ForeignKey(
        MembershipCard,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="audit_logs",
    )
    metadata = models.JSONField(default=dict, blank=True)

    def __str__(self) -> str:
        return f"{self.action} ({self.created_at})"
