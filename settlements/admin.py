from django.contrib import admin

from settlements.models import Payout, Settlement


class PayoutInline(admin.TabularInline):
    model = Payout
    extra = 0
    can_delete = False
    readonly_fields = (
        "amount_cents",
        "payout_method",
        "client_reference",
        "provider_reference",
        "status",
        "executed_at",
        "failure_reason",
    )


@admin.register(Settlement)
class SettlementAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "partner",
        "period_start",
        "period_end",
        "status",
        "total_gross_cents",
        "total_platform_fee_cents",
        "total_partner_net_cents",
        "transaction_count",
        "paid_at",
    )
    list_filter = ("status", "currency")
    search_fields = ("partner__name",)
    readonly_fields = [f.name for f in Settlement._meta.fields]
    inlines = [PayoutInline]

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(Payout)
class PayoutAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "settlement",
        "amount_cents",
        "payout_method",
        "status",
        "provider_reference",
        "executed_at",
        "requires_review",
    )
    list_filter = ("status", "payout_method", "provider_environment", "requires_review")
    search_fields = ("client_reference", "provider_reference")
    readonly_fields = [f.name for f in Payout._meta.fields]

    def has_delete_permission(self, request, obj=None):
        return False
