from django.contrib import admin

from .models import AuditLog, Customer, MembershipCard, MembershipType, ServiceRecord


@admin.register(Customer)
class CustomerAdmin(admin.ModelAdmin):
    list_display = ("child_name", "parent_name", "phone", "membership_status", "created_at")
    search_fields = ("child_name", "parent_name", "phone")
    list_filter = ("membership_status", "child_gender")


@admin.register(MembershipType)
class MembershipTypeAdmin(admin.ModelAdmin):
    list_display = ("name", "category", "price", "value_amount", "service_count", "validity_days", "is_active")
    list_filter = ("category", "is_active")


@admin.register(MembershipCard)
class MembershipCardAdmin(admin.ModelAdmin):
    list_display = ("card_number", "customer", "card_type", "balance", "count", "expiry_date", "status")
    search_fields = ("card_number", "customer__child_name", "customer__phone")
    list_filter = ("card_type", "status")


@admin.register(ServiceRecord)
class ServiceRecordAdmin(admin.ModelAdmin):
    list_display = ("service_type", "customer", "service_date", "service_fee", "payment_method", "membership")
    search_fields = ("service_type", "customer__child_name", "membership__card_number")
    list_filter = ("payment_method", "service_date")


@admin.register(AuditLog)
class AuditLogAdmin(admin.ModelAdmin):
    list_display = ("action", "user", "card", "created_at")
    list_filter = ("action", "created_at")
    search_fields = ("card__card_number", "user__username")
