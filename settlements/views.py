from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.utils.dateparse import parse_datetime
from django.views.decorators.http import require_GET

from partners.models import Partner
from settlements.services import (
    get_partner_financial_summary,
    list_payouts,
    list_settlements,
)


def can_view_partner_financials(user, partner) -> bool:
    if user.is_superuser or user.is_staff:
        return True

    user_email = (getattr(user, "email", None) or "").strip().lower()
    partner_email = (getattr(partner, "email", None) or "").strip().lower()
    if user_email and partner_email and user_email == partner_email:
        return True

    return False


def _get_partner_or_error(request, partner_id):
    try:
        partner = Partner.objects.get(pk=partner_id)
    except Partner.DoesNotExist:
        return None, JsonResponse({"detail": "Partner not found"}, status=404)

    if not can_view_partner_financials(request.user, partner):
        return None, JsonResponse({"detail": "Forbidden"}, status=403)

    return partner, None


def _iso(value):
    return value.isoformat() if value else None


@login_required
@require_GET
def partner_settlements(request, partner_id):
    partner, error = _get_partner_or_error(request, partner_id)
    if error:
        return error

    period_from = parse_datetime(request.GET.get("from", "") or "")
    period_to = parse_datetime(request.GET.get("to", "") or "")
    settlements = list_settlements(
        partner_id=partner.pk,
        status=request.GET.get("status") or None,
        period_from=period_from,
        period_to=period_to,
    )

    return JsonResponse(
        {
            "partner_id": partner.pk,
            "settlements": [
                {
                    "id": s.pk,
                    "period_start": _iso(s.period_start),
                    "period_end": _iso(s.period_end),
                    "currency": s.currency,
                    "status": s.status,
                    "total_gross_cents": s.total_gross_cents,
                    "total_platform_fee_cents": s.total_platform_fee_cents,
                    "total_partner_net_cents": s.total_partner_net_cents,
                    "transaction_count": s.transaction_count,
                    "failure_reason": s.failure_reason,
                    "created_at": _iso(s.created_at),
                    "paid_at": _iso(s.paid_at),
                }
                for s in settlements
            ],
        }
    )


@login_required
@require_GET
def partner_payouts(request, partner_id):
    partner, error = _get_partner_or_error(request, partner_id)
    if error:
        return error

    payouts = list_payouts(partner_id=partner.pk, status=request.GET.get("status") or None)

    return JsonResponse(
        {
            "partner_id": partner.pk,
            "payouts": [
                {
                    "id": p.pk,
                    "settlement_id": p.settlement_id,
                    "amount_cents": p.amount_cents,
                    "currency": p.currency,
                    "payout_method": p.payout_method,
                    "provider_reference": p.provider_reference,
                    "status": p.status,
                    "failure_reason": p.failure_reason,
                    "executed_at": _iso(p.executed_at),
                    "created_at": _iso(p.created_at),
                }
                for p in payouts
            ],
        }
    )


@login_required
@require_GET
def partner_financial_summary(request, partner_id):
    partner, error = _get_partner_or_error(request, partner_id)
    if error:
        return error

    return JsonResponse(get_partner_financial_summary(partner.pk))
