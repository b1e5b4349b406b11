from django.contrib import admin
from django.contrib.admin.views.decorators import staff_member_required
from django.db import DatabaseError, connection
from django.http import JsonResponse
from django.urls import include, path
from django.utils.timezone import now

from billing.models import BillingAccount
from settlements.models import Payout, PayoutStatus, Settlement, SettlementStatus


def health_view(request):
    db_status = "up"
    try:
        connection.ensure_connection()
    except DatabaseError:
        db_status = "down"

    return JsonResponse(
        {
            "status": "OK",
            "db": db_status,
            "timestamp": now().isoformat(),
        }
    )


@staff_member_required
def health_engine_view(request):
    return JsonResponse(
        {
            "settlements_pending": Settlement.objects.filter(status=SettlementStatus.PENDING).count(),
            "payouts_processing": Payout.objects.filter(status=PayoutStatus.PROCESSING).count(),
            "accounts_in_dunning": BillingAccount.objects.filter(current_dunning_level__gt=0).count(),
            "timestamp": now().isoformat(),
            "status": "ENGINE_OK",
        }
    )


urlpatterns = [
    path("admin/", admin.site.urls),
    path("health/", health_view),
    path("health/engine/", health_engine_view),
    path("settlements/", include("settlements.urls")),
    path("dunning/", include("dunning.urls")),
]
