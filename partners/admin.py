from django.contrib import admin

from .models import Partner, PartnerFeeRule, Tenant


class PartnerFeeRuleInline(admin.TabularInline):
    model = PartnerFeeRule
    extra = 0


@admin.register(Partner)
class PartnerAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "name",
        "email",
        "stripe_account_id",
        "payouts_enabled",
        "is_active",
        "created_at",
    )
    list_filter = ("payouts_enabled", "is_active")
    search_fields = ("name", "email", "stripe_account_id")
    ordering = ("name",)
    inlines = [PartnerFeeRuleInline]


@admin.register(Tenant)
class TenantAdmin(admin.ModelAdmin):
    list_display = ("id", "name", "partner", "is_active", "created_at")
    list_filter = ("is_active",)
    search_fields = ("name", "partner__name")
