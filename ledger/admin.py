from django.contrib import admin

from .models import TransactionRecord


@admin.register(TransactionRecord)
class TransactionRecordAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "partner",
        "tenant",
        "gross_cents",
        "payment_method",
        "occurred_at",
        "settled",
        "settlement",
    )
    list_filter = ("settled", "payment_method")
    search_fields = ("external_reference", "partner__name")
    ordering = ("-occurred_at",)
    readonly_fields = ("settled", "settlement", "settled_at", "created_at")
