from django.contrib.auth.decorators import login_required
from django.http import JsonResponse
from django.views.decorators.http import require_GET

from billing.models import BillingAccount
from dunning.access import get_access_state
from dunning.services import get_dunning_history
from settlements.views import can_view_partner_financials


def _account_partner(account):
    if account.partner_id:
        return account.partner
    return account.tenant.partner


def _get_account_or_error(request, account_id):
    try:
        account = BillingAccount.objects.select_related("partner", "tenant__partner").get(
            pk=account_id
        )
    except BillingAccount.DoesNotExist:
        return None, JsonResponse({"detail": "Account not found"}, status=404)

    if not can_view_partner_financials(request.user, _account_partner(account)):
        return None, JsonResponse({"detail": "Forbidden"}, status=403)

    return account, None


@login_required
@require_GET
def account_access_state(request, account_id):
    account, error = _get_account_or_error(request, account_id)
    if error:
        return error

    return JsonResponse({"account_id": account.pk, **get_access_state(account.pk).as_dict()})


@login_required
@require_GET
def account_dunning_history(request, account_id):
    account, error = _get_account_or_error(request, account_id)
    if error:
        return error

    return JsonResponse(
        {
            "account_id": account.pk,
            "history": [
                {
                    "id": log.pk,
                    "previous_level": log.previous_level,
                    "dunning_level": log.dunning_level,
                    "action": log.action,
                    "description": log.description,
                    "overdue_count": log.overdue_count,
                    "total_overdue_cents": log.total_overdue_cents,
                    "max_days_overdue": log.max_days_overdue,
                    "executed_at": log.executed_at.isoformat(),
                    "reversed_at": log.reversed_at.isoformat() if log.reversed_at else None,
                }
                for log in get_dunning_history(account.pk)
            ],
        }
    )
