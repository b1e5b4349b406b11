from django.contrib import admin

from dunning.models import DunningLog


@admin.register(DunningLog)
class DunningLogAdmin(admin.ModelAdmin):
    list_display = (
        "id",
        "account",
        "previous_level",
        "dunning_level",
        "action",
        "executed_at",
        "reversed_at",
    )
    list_filter = ("dunning_level", "action")
    readonly_fields = [f.name for f in DunningLog._meta.fields]

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False
