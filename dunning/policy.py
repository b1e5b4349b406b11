from dataclasses import asdict, dataclass
from datetime import date
from typing import Iterable

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured

from dunning.models import DunningLevel


@dataclass(frozen=True)
class DunningPolicy:
    """Day thresholds are inclusive: a level applies once days overdue reach it."""

    grace_days: int = 15
    block_days: int = 30
    suspend_days: int = 60

    def __post_init__(self):
        if not (0 <= self.grace_days < self.block_days < self.suspend_days):
            raise ImproperlyConfigured(
                "Dunning thresholds must satisfy 0 <= grace_days < block_days < suspend_days "
                f"(got {self.grace_days}, {self.block_days}, {self.suspend_days})."
            )

    def level_for(self, max_days_overdue: int, overdue_count: int) -> int:
        if overdue_count <= 0:
            return DunningLevel.NONE
        if max_days_overdue >= self.suspend_days:
            return DunningLevel.SUSPENDED
        if max_days_overdue >= self.block_days:
            return DunningLevel.BLOCKED
        if max_days_overdue >= self.grace_days:
            return DunningLevel.READ_ONLY
        return DunningLevel.WARNING

    def as_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class OverdueSummary:
    overdue_count: int = 0
    total_overdue_cents: int = 0
    max_days_overdue: int = 0


def get_effective_policy(account) -> DunningPolicy:
    """Deployment defaults from settings, overridden by the account's own thresholds."""
    values = dict(settings.DUNNING_POLICY)
    for key in ("grace_days", "block_days", "suspend_days"):
        override = getattr(account, key, None)
        if override is not None:
            values[key] = override
    return DunningPolicy(
        grace_days=int(values["grace_days"]),
        block_days=int(values["block_days"]),
        suspend_days=int(values["suspend_days"]),
    )


def summarize_overdue(invoices: Iterable, today: date) -> OverdueSummary:
    count = 0
    total = 0
    max_days = 0
    for invoice in invoices:
        if not invoice.is_overdue(today):
            continue
        count += 1
        total += invoice.outstanding_cents
        max_days = max(max_days, invoice.days_overdue(today))
    return OverdueSummary(
        overdue_count=count,
        total_overdue_cents=total,
        max_days_overdue=max_days,
    )
