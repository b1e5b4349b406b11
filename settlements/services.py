import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Sum
from django.utils import timezone

from core.exceptions import (
    ConcurrencyConflict,
    DataInconsistency,
    InvalidPeriod,
    InvalidState,
    SettlementEngineError,
)
from ledger.models import TransactionRecord
from ledger.reader import fetch_unsettled, mark_settled
from partners.fees import FeeSchedule, compute_platform_fee_cents, get_fee_schedule
from partners.models import Partner
from settlements.evidence import write_settlement_evidence
from settlements.models import Payout, PayoutStatus, Settlement, SettlementStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SettlementTotals:
    gross_cents: int
    platform_fee_cents: int
    transaction_count: int

    @property
    def partner_net_cents(self) -> int:
        return self.gross_cents - self.platform_fee_cents


def _validate_period(period_start: datetime, period_end: datetime) -> None:
    if period_start is None or period_end is None:
        raise InvalidPeriod("period_start and period_end are required.")
    if timezone.is_naive(period_start) or timezone.is_naive(period_end):
        raise InvalidPeriod("period bounds must be timezone-aware.")
    if period_end <= period_start:
        raise InvalidPeriod("period_end must be after period_start.")


def _find_active_settlement(partner_id, period_start, period_end):
    return (
        Settlement.objects.filter(
            partner_id=partner_id,
            period_start=period_start,
            period_end=period_end,
        )
        .exclude(status=SettlementStatus.CANCELLED)
        .first()
    )


def _ensure_no_overlap(partner_id, period_start, period_end) -> None:
    overlapping = (
        Settlement.objects.filter(
            partner_id=partner_id,
            period_start__lt=period_end,
            period_end__gt=period_start,
        )
        .exclude(status=SettlementStatus.CANCELLED)
        .exclude(period_start=period_start, period_end=period_end)
        .order_by("period_start")
        .first()
    )
    if overlapping:
        raise InvalidPeriod(
            f"Period overlaps settlement {overlapping.pk} "
            f"({overlapping.period_start.isoformat()} - {overlapping.period_end.isoformat()})."
        )


def compute_settlement_totals(records, schedule: FeeSchedule) -> SettlementTotals:
    gross = sum(int(r.gross_cents) for r in records)
    fee = compute_platform_fee_cents(records, schedule)
    if fee > gross:
        raise DataInconsistency(
            f"Platform fee {fee} exceeds gross {gross} (partner={schedule.partner_id})."
        )
    return SettlementTotals(
        gross_cents=gross,
        platform_fee_cents=fee,
        transaction_count=len(records),
    )


def generate_settlement(
    partner_id: int,
    period_start: datetime,
    period_end: datetime,
    *,
    fee_schedule: FeeSchedule | None = None,
    allow_empty: bool = True,
    currency: str | None = None,
):
    """
    Consolidates the partner's unsettled records in [period_start, period_end)
    into a pending Settlement.

    Idempotent by (partner, period_start, period_end): when a non-cancelled
    settlement already exists for the exact period it is returned unchanged.
    A concurrent generator that loses the race gets the winner's row; one
    that loses to an overlapping period gets InvalidPeriod.
    With allow_empty=False an empty period returns None and writes nothing.
    """
    _validate_period(period_start, period_end)

    existing = _find_active_settlement(partner_id, period_start, period_end)
    if existing:
        logger.info(
            "settlement exists partner_id=%s settlement_id=%s status=%s",
            partner_id,
            existing.pk,
            existing.status,
        )
        return existing

    _ensure_no_overlap(partner_id, period_start, period_end)

    if not Partner.objects.filter(pk=partner_id).exists():
        raise DataInconsistency(f"Partner {partner_id} does not exist.")

    schedule = fee_schedule if fee_schedule is not None else get_fee_schedule(partner_id)

    try:
        with transaction.atomic():
            # Generations for one partner are serialized on the partner row;
            # the checks above are repeated under that lock.
            Partner.objects.select_for_update().only("pk").get(pk=partner_id)
            existing = _find_active_settlement(partner_id, period_start, period_end)
            if existing:
                logger.info(
                    "settlement exists partner_id=%s settlement_id=%s status=%s",
                    partner_id,
                    existing.pk,
                    existing.status,
                )
                return existing
            _ensure_no_overlap(partner_id, period_start, period_end)

            records = fetch_unsettled(partner_id, period_start, period_end, lock=True)
            if not records and not allow_empty:
                logger.info(
                    "settlement skipped partner_id=%s period=%s..%s reason=no_transactions",
                    partner_id,
                    period_start.isoformat(),
                    period_end.isoformat(),
                )
                return None

            totals = compute_settlement_totals(records, schedule)

            settlement = Settlement.objects.create(
                partner_id=partner_id,
                period_start=period_start,
                period_end=period_end,
                currency=currency or settings.SETTLEMENT_CURRENCY,
                total_gross_cents=totals.gross_cents,
                total_platform_fee_cents=totals.platform_fee_cents,
                total_partner_net_cents=totals.partner_net_cents,
                transaction_count=totals.transaction_count,
                status=SettlementStatus.PENDING,
            )
            mark_settled([r.pk for r in records], settlement)
    except (IntegrityError, ConcurrencyConflict) as exc:
        winner = _find_active_settlement(partner_id, period_start, period_end)
        if winner:
            logger.warning(
                "settlement race lost partner_id=%s winner_id=%s error=%s",
                partner_id,
                winner.pk,
                exc,
            )
            return winner
        if isinstance(exc, ConcurrencyConflict):
            raise InvalidPeriod(
                "Transactions in this period were settled by an overlapping settlement."
            ) from exc
        raise

    write_settlement_evidence(settlement, "SETTLEMENT_CREATED")
    logger.info(
        "settlement created settlement_id=%s partner_id=%s gross=%s fee=%s net=%s count=%s",
        settlement.pk,
        partner_id,
        settlement.total_gross_cents,
        settlement.total_platform_fee_cents,
        settlement.total_partner_net_cents,
        settlement.transaction_count,
    )
    return settlement


def generate_settlements_for_period(
    period_start: datetime,
    period_end: datetime,
    *,
    allow_empty: bool = False,
    currency: str | None = None,
) -> dict:
    """
    Runs generate_settlement for every active partner. A partner whose
    generation fails is reported and the batch continues.
    """
    _validate_period(period_start, period_end)

    result = {"created": [], "existing": [], "skipped": [], "errors": {}}
    partner_ids = list(
        Partner.objects.filter(is_active=True).order_by("id").values_list("pk", flat=True)
    )
    for partner_id in partner_ids:
        existed = _find_active_settlement(partner_id, period_start, period_end) is not None
        try:
            settlement = generate_settlement(
                partner_id,
                period_start,
                period_end,
                allow_empty=allow_empty,
                currency=currency,
            )
        except SettlementEngineError as exc:
            result["errors"][partner_id] = f"{type(exc).__name__}: {exc}"
            logger.warning(
                "batch settlement failed partner_id=%s error=%s", partner_id, exc
            )
            continue

        if settlement is None:
            result["skipped"].append(partner_id)
        elif existed:
            result["existing"].append(settlement)
        else:
            result["created"].append(settlement)

    logger.info(
        "batch settlement finished period=%s..%s created=%s existing=%s skipped=%s errors=%s",
        period_start.isoformat(),
        period_end.isoformat(),
        len(result["created"]),
        len(result["existing"]),
        len(result["skipped"]),
        len(result["errors"]),
    )
    return result


@transaction.atomic
def cancel_settlement(settlement_id: int, reason: str) -> Settlement:
    if not reason or not reason.strip():
        raise ValueError("Cancellation reason is required")

    settlement = Settlement.objects.select_for_update().get(pk=settlement_id)

    if settlement.status != SettlementStatus.PENDING:
        raise InvalidState(f"Only pending settlements can be cancelled (status={settlement.status}).")
    if settlement.transactions.exists():
        raise InvalidState("Settlement has settled transactions and cannot be cancelled.")

    settlement.status = SettlementStatus.CANCELLED
    settlement.cancelled_at = timezone.now()
    settlement.cancellation_reason = reason.strip()
    settlement.save(
        update_fields=["status", "cancelled_at", "cancellation_reason", "updated_at"]
    )

    write_settlement_evidence(settlement, "SETTLEMENT_CANCELLED", extra={"reason": reason.strip()})
    logger.info("settlement cancelled settlement_id=%s", settlement.pk)
    return settlement


def list_settlements(partner_id=None, status=None, period_from=None, period_to=None):
    qs = Settlement.objects.select_related("partner")
    if partner_id is not None:
        qs = qs.filter(partner_id=partner_id)
    if status:
        qs = qs.filter(status=status)
    if period_from is not None:
        qs = qs.filter(period_end__gt=period_from)
    if period_to is not None:
        qs = qs.filter(period_start__lt=period_to)
    return qs.order_by("-period_start", "-id")


def list_payouts(partner_id=None, status=None):
    qs = Payout.objects.select_related("settlement")
    if partner_id is not None:
        qs = qs.filter(settlement__partner_id=partner_id)
    if status:
        qs = qs.filter(status=status)
    return qs.order_by("-created_at", "-id")


def get_partner_financial_summary(partner_id: int, now=None) -> dict:
    """
    available_balance: net of settlements awaiting payout.
    in_chargeback_window: gross of unsettled records newer than the
    chargeback window; pending_settlement: the older unsettled gross.
    total_paid: sum of paid payouts.
    """
    now = now or timezone.now()
    window_start = now - timedelta(days=settings.CHARGEBACK_WINDOW_DAYS)

    available = (
        Settlement.objects.filter(
            partner_id=partner_id,
            status__in=[SettlementStatus.PENDING, SettlementStatus.FAILED],
        ).aggregate(total=Sum("total_partner_net_cents"))["total"]
        or 0
    )

    unsettled = TransactionRecord.objects.filter(partner_id=partner_id, settled=False)
    in_window = (
        unsettled.filter(occurred_at__gte=window_start).aggregate(total=Sum("gross_cents"))["total"]
        or 0
    )
    pending = (
        unsettled.filter(occurred_at__lt=window_start).aggregate(total=Sum("gross_cents"))["total"]
        or 0
    )

    total_paid = (
        Payout.objects.filter(
            settlement__partner_id=partner_id,
            status=PayoutStatus.PAID,
        ).aggregate(total=Sum("amount_cents"))["total"]
        or 0
    )

    return {
        "partner_id": partner_id,
        "available_balance_cents": int(available),
        "in_chargeback_window_cents": int(in_window),
        "pending_settlement_cents": int(pending),
        "total_paid_cents": int(total_paid),
        "chargeback_window_days": settings.CHARGEBACK_WINDOW_DAYS,
    }
