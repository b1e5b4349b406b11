# partners/fees.py

from collections import defaultdict
from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from django.db import DatabaseError

from core.exceptions import DataInconsistency
from partners.models import PartnerFeeRule

DEFAULT_METHOD = PartnerFeeRule.DEFAULT_METHOD


@dataclass(frozen=True)
class FeeSchedule:
    partner_id: Optional[int]
    percent_by_method: Dict[str, int] = field(default_factory=dict)  # bps (500 = 5.00%)
    fixed_by_method: Dict[str, int] = field(default_factory=dict)    # cents per transaction

    def rule_for(self, payment_method: Optional[str]) -> Tuple[int, int]:
        """
        Returns (percent_bps, fixed_cents) for a payment method, falling back
        to the "default" rule. Raises DataInconsistency if neither exists.
        """
        method = (payment_method or "").strip().lower()
        for key in (method, DEFAULT_METHOD):
            if key and (key in self.percent_by_method or key in self.fixed_by_method):
                return (
                    int(self.percent_by_method.get(key, 0)),
                    int(self.fixed_by_method.get(key, 0)),
                )
        raise DataInconsistency(
            f"No fee rule for payment method '{method or '?'}' "
            f"(partner={self.partner_id}) and no default rule."
        )


def get_fee_schedule(partner_id: int) -> FeeSchedule:
    try:
        rules = list(
            PartnerFeeRule.objects.filter(partner_id=partner_id).values_list(
                "payment_method", "percent_bps", "fixed_cents"
            )
        )
    except DatabaseError as exc:
        raise DataInconsistency(f"Fee configuration unavailable for partner {partner_id}: {exc}") from exc

    if not rules:
        raise DataInconsistency(f"Partner {partner_id} has no fee schedule configured.")

    return FeeSchedule(
        partner_id=partner_id,
        percent_by_method={method: int(bps) for method, bps, _ in rules},
        fixed_by_method={method: int(cents) for method, _, cents in rules},
    )


def compute_fee_cents(subtotal_cents: int, percent_bps: int) -> int:
    if subtotal_cents < 0:
        raise ValueError("subtotal_cents must be >= 0")
    if percent_bps < 0:
        raise ValueError("percent_bps must be >= 0")
    # redondeo normal (half-up)
    return int((subtotal_cents * percent_bps + 5000) // 10000)


def compute_platform_fee_cents(records: Iterable, schedule: FeeSchedule) -> int:
    """
    Percentage is applied once per payment method over the method subtotal;
    the fixed component is charged per transaction.
    """
    gross_by_method: Dict[str, int] = defaultdict(int)
    count_by_method: Dict[str, int] = defaultdict(int)
    for record in records:
        method = (record.payment_method or "").strip().lower()
        gross_by_method[method] += int(record.gross_cents or 0)
        count_by_method[method] += 1

    total_fee = 0
    for method in sorted(gross_by_method):
        percent_bps, fixed_cents = schedule.rule_for(method)
        total_fee += compute_fee_cents(gross_by_method[method], percent_bps)
        total_fee += fixed_cents * count_by_method[method]

    return total_fee
