import logging
from dataclasses import dataclass
from datetime import date

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.models import BillingAccount, Invoice
from billing.store import list_open_invoices, mark_invoice_paid
from core.exceptions import ConcurrencyConflict, InvalidState
from dunning.access import AccessState, latest_dunning_level, resolve_access_state
from dunning.models import DunningLevel, DunningLog, action_for_transition
from dunning.policy import DunningPolicy, OverdueSummary, get_effective_policy, summarize_overdue

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DunningStatus:
    account_id: int
    current_level: int
    suggested_level: int
    overdue: OverdueSummary
    policy: DunningPolicy
    access_state: AccessState

    @property
    def needs_update(self) -> bool:
        return self.current_level != self.suggested_level


def _describe(summary: OverdueSummary, new_level: int) -> str:
    if summary.overdue_count == 0:
        return "No overdue invoices."
    return (
        f"{summary.overdue_count} overdue invoice(s), {summary.total_overdue_cents} cents outstanding, "
        f"oldest {summary.max_days_overdue} day(s) past due; level {DunningLevel(new_level).label}."
    )


def _evaluate_once(account_id: int, today: date) -> tuple[int, bool]:
    with transaction.atomic():
        account = BillingAccount.objects.select_for_update().get(pk=account_id)
        known_level = account.current_dunning_level
        current_level = latest_dunning_level(account_id)
        if known_level != current_level:
            logger.warning(
                "dunning level cache drift account_id=%s cached=%s log=%s",
                account_id,
                known_level,
                current_level,
            )

        summary = summarize_overdue(list_open_invoices(account_id), today)
        policy = get_effective_policy(account)
        new_level = int(policy.level_for(summary.max_days_overdue, summary.overdue_count))

        if new_level == current_level:
            if known_level != current_level:
                BillingAccount.objects.filter(
                    pk=account_id, current_dunning_level=known_level
                ).update(current_dunning_level=current_level)
            return current_level, False

        now = timezone.now()
        log = DunningLog.objects.create(
            account=account,
            previous_level=current_level,
            dunning_level=new_level,
            action=action_for_transition(current_level, new_level),
            description=_describe(summary, new_level),
            overdue_count=summary.overdue_count,
            total_overdue_cents=summary.total_overdue_cents,
            max_days_overdue=summary.max_days_overdue,
            executed_at=now,
        )

        reversed_count = 0
        if new_level < current_level:
            reversed_count = (
                DunningLog.objects.filter(
                    account_id=account_id,
                    reversed_at__isnull=True,
                    dunning_level__gt=new_level,
                )
                .exclude(pk=log.pk)
                .update(reversed_at=now, reversed_by_log=log)
            )

        if new_level == DunningLevel.NONE:
            started_at = None
        elif current_level == DunningLevel.NONE or account.dunning_started_at is None:
            started_at = now
        else:
            started_at = account.dunning_started_at

        updated = BillingAccount.objects.filter(
            pk=account_id,
            current_dunning_level=known_level,
        ).update(
            current_dunning_level=new_level,
            dunning_started_at=started_at,
            updated_at=now,
        )
        if updated != 1:
            raise ConcurrencyConflict(
                f"Dunning level of account {account_id} changed during evaluation."
            )

    logger.info(
        "dunning transition account_id=%s %s->%s action=%s overdue=%s max_days=%s reversed=%s",
        account_id,
        current_level,
        new_level,
        log.action,
        summary.overdue_count,
        summary.max_days_overdue,
        reversed_count,
    )
    return new_level, True


def evaluate_dunning(account_id: int, *, today: date | None = None) -> tuple[int, bool]:
    """
    Recomputes the account's dunning level from its open invoices.

    Returns (new_level, changed). A change appends exactly one DunningLog and,
    when the level drops, reverses the entries that introduced the lifted
    restrictions. Evaluations of one account are serialized by a row lock
    plus a conditional update on the last-known level; a lost race is
    retried against fresh state.
    """
    today = today or timezone.localdate()
    attempts = max(int(settings.DUNNING_EVALUATION_MAX_ATTEMPTS), 1)

    for attempt in range(1, attempts + 1):
        try:
            return _evaluate_once(account_id, today)
        except ConcurrencyConflict:
            logger.warning(
                "dunning evaluation conflict account_id=%s attempt=%s/%s",
                account_id,
                attempt,
                attempts,
            )
            if attempt == attempts:
                raise

    raise ConcurrencyConflict(f"Dunning evaluation for account {account_id} did not complete.")


def get_dunning_status(account_id: int, *, today: date | None = None) -> DunningStatus:
    today = today or timezone.localdate()
    account = BillingAccount.objects.get(pk=account_id)

    current_level = latest_dunning_level(account_id)
    summary = summarize_overdue(list_open_invoices(account_id), today)
    policy = get_effective_policy(account)

    return DunningStatus(
        account_id=account_id,
        current_level=current_level,
        suggested_level=int(policy.level_for(summary.max_days_overdue, summary.overdue_count)),
        overdue=summary,
        policy=policy,
        access_state=resolve_access_state(current_level, account.access_override),
    )


def reactivate_on_payment(account_id: int, invoice_ids, *, today: date | None = None) -> tuple[int, bool]:
    ids = sorted(set(int(pk) for pk in invoice_ids))
    foreign = Invoice.objects.filter(pk__in=ids).exclude(account_id=account_id)
    if foreign.exists():
        raise InvalidState(
            f"Invoices {list(foreign.values_list('pk', flat=True))} do not belong to account {account_id}."
        )
    found = set(Invoice.objects.filter(pk__in=ids).values_list("pk", flat=True))
    missing = [pk for pk in ids if pk not in found]
    if missing:
        raise Invoice.DoesNotExist(f"Invoices not found: {missing}")

    for invoice_id in ids:
        mark_invoice_paid(invoice_id)

    return evaluate_dunning(account_id, today=today)


def get_dunning_history(account_id: int):
    return DunningLog.objects.filter(account_id=account_id).order_by("executed_at", "id")
