from django.contrib import admin

from billing.models import BillingAccount, Invoice


class InvoiceInline(admin.TabularInline):
    model = Invoice
    extra = 0


@admin.register(BillingAccount)
class BillingAccountAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "partner",
        "tenant",
        "current_dunning_level",
        "access_override",
        "dunning_started_at",
    )
    list_filter = ("current_dunning_level", "access_override")
    readonly_fields = ("current_dunning_level", "dunning_started_at")
    inlines = [InvoiceInline]


@admin.register(Invoice)
class InvoiceAdmin(admin.ModelAdmin):
    list_display = ("invoice_number", "account", "amount_cents", "due_date", "status", "paid_at")
    list_filter = ("status",)
    search_fields = ("invoice_number",)
