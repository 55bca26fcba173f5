import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


CARD_TYPES = [("count", "次卡"), ("period", "期限卡"), ("mixed", "混合卡"), ("value", "储值卡")]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("child_name", models.CharField(max_length=100)),
                (
                    "child_gender",
                    models.CharField(
                        choices=[("male", "男"), ("female", "女"), ("unknown", "未知")],
                        default="unknown",
                        max_length=10,
                    ),
                ),
                ("child_birthdate", models.DateField(blank=True, null=True)),
                ("child_age", models.PositiveSmallIntegerField(blank=True, null=True)),
                ("parent_name", models.CharField(max_length=100)),
                (
                    "relationship",
                    models.CharField(
                        blank=True,
                        choices=[("mother", "母亲"), ("father", "父亲"), ("grandparent", "祖父母"), ("other", "其他")],
                        default="",
                        max_length=20,
                    ),
                ),
                ("phone", models.CharField(max_length=20)),
                ("email", models.EmailField(blank=True, max_length=254, null=True)),
                ("address", models.CharField(blank=True, default="", max_length=255)),
                ("constitution", models.CharField(blank=True, default="", max_length=255)),
                ("main_symptoms", models.TextField(blank=True, default="")),
                ("allergy_history", models.TextField(blank=True, default="")),
                ("medical_history", models.TextField(blank=True, default="")),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "membership_status",
                    models.CharField(
                        choices=[("active", "有效"), ("expiring", "即将过期"), ("expired", "已过期"), ("none", "非会员")],
                        default="none",
                        max_length=20,
                    ),
                ),
            ],
            options={"abstract": False},
        ),
        migrations.CreateModel(
            name="MembershipType",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("name", models.CharField(max_length=100)),
                ("category", models.CharField(choices=CARD_TYPES, default="count", max_length=16)),
                ("price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("value_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("service_count", models.PositiveIntegerField(default=0)),
                ("validity_days", models.PositiveIntegerField()),
                ("description", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(default=True)),
            ],
            options={"abstract": False},
        ),
        migrations.CreateModel(
            name="MembershipCard",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("card_number", models.CharField(editable=False, max_length=30, unique=True)),
                ("card_type", models.CharField(choices=CARD_TYPES, default="count", max_length=16)),
                ("balance", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("count", models.PositiveIntegerField(default=0)),
                ("issue_date", models.DateField(default=django.utils.timezone.localdate)),
                ("expiry_date", models.DateField(blank=True, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("active", "正常"),
                            ("expired", "已过期"),
                            ("cancelled", "已作废"),
                            ("frozen", "已冻结"),
                            ("lost", "已挂失"),
                        ],
                        default="active",
                        max_length=20,
                    ),
                ),
                ("last_recharge_date", models.DateTimeField(blank=True, null=True)),
                ("last_consume_date", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="cards",
                        to="clinic.customer",
                    ),
                ),
                (
                    "membership_type",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="cards",
                        to="clinic.membershiptype",
                    ),
                ),
            ],
            options={"abstract": False},
        ),
        migrations.CreateModel(
            name="ServiceRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("service_type", models.CharField(max_length=100)),
                ("service_date", models.DateTimeField(default=django.utils.timezone.now)),
                ("service_fee", models.DecimalField(decimal_places=2, max_digits=12)),
                (
                    "payment_method",
                    models.CharField(
                        choices=[
                            ("cash", "现金"),
                            ("card", "银行卡"),
                            ("membership", "会员卡"),
                            ("wechat", "微信"),
                            ("alipay", "支付宝"),
                            ("other", "其他"),
                        ],
                        default="cash",
                        max_length=20,
                    ),
                ),
                ("symptoms", models.TextField(blank=True, default="")),
                ("diagnosis", models.TextField(blank=True, default="")),
                ("treatment", models.TextField(blank=True, default="")),
                ("notes", models.TextField(blank=True, default="")),
                (
                    "customer",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="services",
                        to="clinic.customer",
                    ),
                ),
                (
                    "membership",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="services",
                        to="clinic.membershipcard",
                    ),
                ),
                (
                    "therapist",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="services",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"ordering": ["-service_date", "-id"]},
        ),
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "action",
                    models.CharField(
                        choices=[
                            ("issue_card", "Issue Card"),
                            ("status_change", "Status Change"),
                            ("recharge", "Recharge"),
                            ("charge", "Charge"),
                            ("refund", "Refund"),
                        ],
                        max_length=30,
                    ),
                ),
                ("metadata", models.JSONField(blank=True, default=dict)),
                (
                    "card",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to="clinic.membershipcard",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="audit_logs",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={"abstract": False},
        ),
    ]
