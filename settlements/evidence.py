import json
import os

from django.conf import settings
from django.utils import timezone


def _settlement_payload(settlement):
    return {
        "settlement_id": settlement.id,
        "partner_id": settlement.partner_id,
        "period_start": settlement.period_start.isoformat(),
        "period_end": settlement.period_end.isoformat(),
        "currency": settlement.currency,
        "status": settlement.status,
        "totals": {
            "gross_cents": settlement.total_gross_cents,
            "platform_fee_cents": settlement.total_platform_fee_cents,
            "partner_net_cents": settlement.total_partner_net_cents,
            "transaction_count": settlement.transaction_count,
        },
    }


def write_settlement_evidence(settlement, event_type, payout=None, extra=None):
    base_path = os.path.join(str(settings.EVIDENCE_DIR), "settlements")
    os.makedirs(base_path, exist_ok=True)

    timestamp = timezone.now().strftime("%Y%m%d_%H%M%S_%f")
    filename = f"{event_type}_{settlement.id}_{timestamp}.json"
    full_path = os.path.join(base_path, filename)

    payload = {
        "event_type": event_type,
        "timestamp": timezone.now().isoformat(),
        **_settlement_payload(settlement),
        "extra": extra or {},
    }
    if payout is not None:
        payload["payout"] = {
            "payout_id": payout.id,
            "amount_cents": payout.amount_cents,
            "payout_method": payout.payout_method,
            "client_reference": payout.client_reference,
            "provider_reference": payout.provider_reference,
            "status": payout.status,
            "failure_reason": payout.failure_reason,
        }

    with open(full_path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=4)

    return full_path
