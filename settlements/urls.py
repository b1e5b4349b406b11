from django.urls import path

from settlements.views import (
    partner_financial_summary,
    partner_payouts,
    partner_settlements,
)

urlpatterns = [
    path(
        "partner/<int:partner_id>/settlements/",
        partner_settlements,
        name="partner_settlements",
    ),
    path(
        "partner/<int:partner_id>/payouts/",
        partner_payouts,
        name="partner_payouts",
    ),
    path(
        "partner/<int:partner_id>/financial-summary/",
        partner_financial_summary,
        name="partner_financial_summary",
    ),
]
