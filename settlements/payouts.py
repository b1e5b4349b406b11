import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from core.exceptions import (
    DataInconsistency,
    InvalidState,
    ProviderError,
    ProviderTimeout,
)
from settlements.evidence import write_settlement_evidence
from settlements.models import (
    Payout,
    PayoutMethod,
    PayoutStatus,
    Settlement,
    SettlementStatus,
)
from settlements.payout_provider import (
    TRANSFER_FAILED,
    TRANSFER_NOT_FOUND,
    TRANSFER_PAID,
    TRANSFER_PENDING,
    get_payout_provider,
)

logger = logging.getLogger(__name__)

CLIENT_REFERENCE_PREFIX = "stl_"

DISCREPANCY_MISSING_AT_PROVIDER = "missing_at_provider"
DISCREPANCY_MISSING_LOCALLY = "missing_locally"
DISCREPANCY_AMOUNT_MISMATCH = "amount_mismatch"
DISCREPANCY_STATUS_MISMATCH = "status_mismatch"


@dataclass(frozen=True)
class PayoutDiscrepancy:
    kind: str
    client_reference: str
    payout_id: int | None = None
    provider_reference: str = ""
    local_amount_cents: int | None = None
    provider_amount_cents: int | None = None
    local_status: str = ""
    provider_status: str = ""


def _new_client_reference(settlement_id) -> str:
    return f"{CLIENT_REFERENCE_PREFIX}{settlement_id}_{uuid.uuid4().hex[:20]}"


def _start_payout(settlement_id, *, payout_method, executed_by=None, environment="test"):
    """
    Locks a pending settlement, moves it to processing and opens a Payout
    for its net amount. Must run inside a transaction.
    """
    settlement = (
        Settlement.objects.select_for_update()
        .select_related("partner")
        .get(pk=settlement_id)
    )
    if settlement.status != SettlementStatus.PENDING:
        raise InvalidState(
            f"Settlement {settlement.pk} is {settlement.status}; only pending settlements can be paid."
        )

    settlement.status = SettlementStatus.PROCESSING
    settlement.save(update_fields=["status", "updated_at"])

    payout = Payout.objects.create(
        settlement=settlement,
        amount_cents=settlement.total_partner_net_cents,
        currency=settlement.currency,
        payout_method=payout_method,
        client_reference=_new_client_reference(settlement.pk),
        provider_environment=environment,
        status=PayoutStatus.PENDING,
        executed_by=executed_by,
    )
    return settlement, payout


def _flag_late_success(payout: Payout, provider_reference) -> None:
    """
    The provider paid a transfer whose payout was already recorded as failed.
    The payout stays failed but keeps the provider reference and is flagged;
    its settlement cannot be paid through the provider until reviewed.
    """
    payout.provider_reference = provider_reference or payout.provider_reference
    payout.requires_review = True
    payout.save(update_fields=["provider_reference", "requires_review", "updated_at"])

    settlement = Settlement.objects.get(pk=payout.settlement_id)
    write_settlement_evidence(
        settlement,
        "PAYOUT_PAID_AFTER_FAILURE",
        payout=payout,
        extra={"provider_reference": payout.provider_reference},
    )
    logger.error(
        "payout paid after failure payout_id=%s settlement_id=%s provider_reference=%s",
        payout.pk,
        settlement.pk,
        payout.provider_reference,
    )


def _complete_payout(payout_id, provider_reference) -> Payout:
    with transaction.atomic():
        payout = Payout.objects.select_for_update().get(pk=payout_id)
        if payout.status == PayoutStatus.PAID:
            return payout

        if payout.status != PayoutStatus.FAILED:
            settlement = Settlement.objects.select_for_update().get(pk=payout.settlement_id)
            now = timezone.now()

            payout.status = PayoutStatus.PAID
            payout.provider_reference = provider_reference or payout.provider_reference
            payout.executed_at = now
            payout.save(update_fields=["status", "provider_reference", "executed_at", "updated_at"])

            settlement.status = SettlementStatus.PAID
            settlement.paid_at = now
            settlement.failure_reason = ""
            settlement.save(update_fields=["status", "paid_at", "failure_reason", "updated_at"])

            write_settlement_evidence(settlement, "PAYOUT_PAID", payout=payout)
            logger.info(
                "payout paid payout_id=%s settlement_id=%s amount=%s provider_reference=%s",
                payout.pk,
                settlement.pk,
                payout.amount_cents,
                payout.provider_reference,
            )
            return payout

        _flag_late_success(payout, provider_reference)

    raise DataInconsistency(
        f"Payout {payout_id} was paid by the provider after it was marked failed; flagged for review."
    )


@transaction.atomic
def _fail_payout(payout_id, reason) -> Payout:
    payout = Payout.objects.select_for_update().get(pk=payout_id)
    if payout.status == PayoutStatus.FAILED:
        return payout
    if payout.status == PayoutStatus.PAID:
        raise InvalidState(f"Payout {payout.pk} is already paid and cannot be marked failed.")

    settlement = Settlement.objects.select_for_update().get(pk=payout.settlement_id)

    payout.status = PayoutStatus.FAILED
    payout.failed_at = timezone.now()
    payout.failure_reason = reason
    payout.save(update_fields=["status", "failed_at", "failure_reason", "updated_at"])

    settlement.status = SettlementStatus.PENDING
    settlement.failure_reason = reason
    settlement.save(update_fields=["status", "failure_reason", "updated_at"])

    write_settlement_evidence(settlement, "PAYOUT_FAILED", payout=payout)
    logger.warning(
        "payout failed payout_id=%s settlement_id=%s reason=%s",
        payout.pk,
        settlement.pk,
        reason,
    )
    return payout


def _record_unknown_outcome(payout: Payout, detail: str) -> None:
    settlement = Settlement.objects.get(pk=payout.settlement_id)
    write_settlement_evidence(
        settlement, "PAYOUT_OUTCOME_UNKNOWN", payout=payout, extra={"detail": detail}
    )


def _resolve_unknown_outcome(payout: Payout, provider) -> Payout:
    """
    Asks the provider what happened to a transfer whose outcome is unknown.
    Only a definite answer moves the payout out of processing.
    """
    try:
        result = provider.query_status(payout.client_reference)
    except ProviderError as exc:
        logger.warning(
            "payout status query failed payout_id=%s error=%s", payout.pk, exc
        )
        _record_unknown_outcome(payout, str(exc))
        raise ProviderTimeout(
            f"Payout {payout.pk} outcome unknown; left processing for reconciliation.",
            retryable=False,
            payout_id=payout.pk,
        ) from exc

    if result.status == TRANSFER_PAID:
        return _complete_payout(payout.pk, result.reference)

    if result.status in (TRANSFER_FAILED, TRANSFER_NOT_FOUND):
        reason = f"Provider reported transfer {result.status}."
        failed = _fail_payout(payout.pk, reason)
        raise ProviderError(reason, retryable=True, payout_id=failed.pk)

    if result.status == TRANSFER_PENDING:
        logger.info("payout still pending at provider payout_id=%s", payout.pk)
    else:
        logger.warning(
            "payout has unexpected provider status payout_id=%s provider_status=%s",
            payout.pk,
            result.status,
        )
    _record_unknown_outcome(payout, f"provider status {result.status}")
    raise ProviderTimeout(
        f"Payout {payout.pk} is still {result.status} at the provider.",
        retryable=False,
        payout_id=payout.pk,
    )


def execute_payout(settlement_id, *, provider=None, executed_by=None) -> Payout:
    """
    Pays a pending settlement's net amount through the payout provider.

    The settlement is moved to processing and the Payout is committed before
    the provider is called; the call itself runs outside any database
    transaction. A definite failure reverts the settlement to pending and
    raises ProviderError. A timeout is reconciled with a status query before
    anything is declared failed.
    """
    provider = provider or get_payout_provider()

    with transaction.atomic():
        settlement, payout = _start_payout(
            settlement_id,
            payout_method=PayoutMethod.STRIPE_TRANSFER,
            executed_by=executed_by,
            environment=getattr(provider, "environment", "test"),
        )
        partner = settlement.partner
        if settlement.total_partner_net_cents <= 0:
            raise InvalidState("Settlement has no net amount to pay out.")
        if not partner.stripe_account_id:
            raise InvalidState(f"Partner {partner.pk} has no payout destination.")
        if not partner.payouts_enabled:
            raise InvalidState(f"Partner {partner.pk} has payouts disabled.")
        if settlement.payouts.filter(requires_review=True).exists():
            raise InvalidState(f"Settlement {settlement.pk} has a payout awaiting review.")

        payout.status = PayoutStatus.PROCESSING
        payout.save(update_fields=["status", "updated_at"])

    logger.info(
        "payout started payout_id=%s settlement_id=%s amount=%s client_reference=%s",
        payout.pk,
        settlement.pk,
        payout.amount_cents,
        payout.client_reference,
    )

    try:
        result = provider.transfer(
            amount_cents=payout.amount_cents,
            destination=partner.stripe_account_id,
            currency=payout.currency,
            client_reference=payout.client_reference,
        )
    except ProviderTimeout:
        return _resolve_unknown_outcome(payout, provider)
    except ProviderError as exc:
        _fail_payout(payout.pk, str(exc))
        exc.payout_id = payout.pk
        raise

    if result.status == TRANSFER_PAID:
        return _complete_payout(payout.pk, result.reference)

    if result.status == TRANSFER_FAILED:
        reason = "Provider reported transfer failed."
        _fail_payout(payout.pk, reason)
        raise ProviderError(reason, payout_id=payout.pk)

    Payout.objects.filter(pk=payout.pk, status=PayoutStatus.PROCESSING).update(
        provider_reference=result.reference or None
    )
    payout.refresh_from_db()
    return _resolve_unknown_outcome(payout, provider)


@transaction.atomic
def mark_settlement_paid_manually(
    settlement_id,
    method: str = PayoutMethod.MANUAL,
    reference: str | None = None,
    executed_by=None,
) -> Payout:
    if method not in PayoutMethod.values:
        raise ValueError(f"Unknown payout method: {method}")

    settlement, payout = _start_payout(
        settlement_id,
        payout_method=method,
        executed_by=executed_by,
        environment="manual",
    )
    now = timezone.now()

    payout.status = PayoutStatus.PAID
    payout.provider_reference = (reference or "").strip() or None
    payout.executed_at = now
    payout.save(update_fields=["status", "provider_reference", "executed_at", "updated_at"])

    settlement.status = SettlementStatus.PAID
    settlement.paid_at = now
    settlement.failure_reason = ""
    settlement.save(update_fields=["status", "paid_at", "failure_reason", "updated_at"])

    write_settlement_evidence(settlement, "SETTLEMENT_PAID_MANUALLY", payout=payout)
    logger.info(
        "settlement marked paid manually settlement_id=%s payout_id=%s method=%s",
        settlement.pk,
        payout.pk,
        method,
    )
    return payout


def reconcile_processing_payouts(provider=None, *, now=None) -> dict:
    """
    Resolves payouts left processing by an unknown transfer outcome.

    Payouts updated less than PAYOUT_RECONCILE_MIN_AGE_SECONDS ago are left
    alone: their transfer call may still be in flight, and the provider
    would report it not_found.
    """
    provider = provider or get_payout_provider()
    now = now or timezone.now()
    cutoff = now - timedelta(seconds=settings.PAYOUT_RECONCILE_MIN_AGE_SECONDS)
    summary = {"checked": 0, "paid": 0, "failed": 0, "unresolved": 0, "flagged": 0, "in_flight": 0}

    processing = Payout.objects.filter(status=PayoutStatus.PROCESSING)
    summary["in_flight"] = processing.filter(updated_at__gte=cutoff).count()
    payout_ids = list(
        processing.filter(updated_at__lt=cutoff)
        .order_by("created_at", "id")
        .values_list("pk", flat=True)
    )
    for payout_id in payout_ids:
        payout = Payout.objects.get(pk=payout_id)
        if payout.status != PayoutStatus.PROCESSING:
            continue
        summary["checked"] += 1
        try:
            _resolve_unknown_outcome(payout, provider)
        except ProviderTimeout:
            summary["unresolved"] += 1
        except ProviderError:
            summary["failed"] += 1
        except DataInconsistency:
            summary["flagged"] += 1
        else:
            summary["paid"] += 1

    logger.info("payout reconciliation finished %s", summary)
    return summary


def audit_paid_payouts(provider=None) -> list[PayoutDiscrepancy]:
    """
    Compares paid provider payouts with the provider's transfers: missing on
    either side, amount differences, and transfers reversed after payment.
    Read-only; discrepancies are reported, never corrected.
    """
    provider = provider or get_payout_provider()

    remote = {}
    for transfer in provider.list_transfers():
        if transfer.client_reference.startswith(CLIENT_REFERENCE_PREFIX):
            remote[transfer.client_reference] = transfer

    discrepancies: list[PayoutDiscrepancy] = []
    paid = Payout.objects.filter(
        status=PayoutStatus.PAID,
        payout_method=PayoutMethod.STRIPE_TRANSFER,
        provider_environment=provider.environment,
    ).order_by("id")

    for payout in paid:
        transfer = remote.pop(payout.client_reference, None)
        if transfer is None:
            discrepancies.append(
                PayoutDiscrepancy(
                    kind=DISCREPANCY_MISSING_AT_PROVIDER,
                    client_reference=payout.client_reference,
                    payout_id=payout.pk,
                    provider_reference=payout.provider_reference or "",
                    local_amount_cents=payout.amount_cents,
                    local_status=payout.status,
                )
            )
            continue

        if transfer.amount_cents != payout.amount_cents:
            discrepancies.append(
                PayoutDiscrepancy(
                    kind=DISCREPANCY_AMOUNT_MISMATCH,
                    client_reference=payout.client_reference,
                    payout_id=payout.pk,
                    provider_reference=transfer.reference,
                    local_amount_cents=payout.amount_cents,
                    provider_amount_cents=transfer.amount_cents,
                )
            )
        if transfer.status != TRANSFER_PAID:
            discrepancies.append(
                PayoutDiscrepancy(
                    kind=DISCREPANCY_STATUS_MISMATCH,
                    client_reference=payout.client_reference,
                    payout_id=payout.pk,
                    provider_reference=transfer.reference,
                    local_status=payout.status,
                    provider_status=transfer.status,
                )
            )

    local = {
        ref: (pk, status)
        for ref, pk, status in Payout.objects.filter(client_reference__in=list(remote)).values_list(
            "client_reference", "pk", "status"
        )
    }
    for client_reference in sorted(remote):
        transfer = remote[client_reference]
        if client_reference not in local:
            discrepancies.append(
                PayoutDiscrepancy(
                    kind=DISCREPANCY_MISSING_LOCALLY,
                    client_reference=client_reference,
                    provider_reference=transfer.reference,
                    provider_amount_cents=transfer.amount_cents,
                    provider_status=transfer.status,
                )
            )
            continue
        payout_id, status = local[client_reference]
        if status == PayoutStatus.FAILED and transfer.status == TRANSFER_PAID:
            discrepancies.append(
                PayoutDiscrepancy(
                    kind=DISCREPANCY_STATUS_MISMATCH,
                    client_reference=client_reference,
                    payout_id=payout_id,
                    provider_reference=transfer.reference,
                    local_status=status,
                    provider_status=transfer.status,
                )
            )

    for d in discrepancies:
        logger.warning(
            "payout audit discrepancy kind=%s payout_id=%s client_reference=%s provider_reference=%s",
            d.kind,
            d.payout_id,
            d.client_reference,
            d.provider_reference,
        )
    logger.info("payout audit finished discrepancies=%s", len(discrepancies))
    return discrepancies


def pay_pending_settlements(provider=None, *, partner_id=None, limit=None, executed_by=None) -> dict:
    """
    Pays every eligible pending settlement, oldest period first. A failure
    on one settlement is counted and the batch continues.
    """
    provider = provider or get_payout_provider()

    eligible = (
        Settlement.objects.filter(
            status=SettlementStatus.PENDING,
            total_partner_net_cents__gt=0,
            partner__payouts_enabled=True,
            partner__stripe_account_id__isnull=False,
        )
        .exclude(partner__stripe_account_id="")
        .exclude(payouts__requires_review=True)
        .order_by("period_end", "id")
    )
    if partner_id is not None:
        eligible = eligible.filter(partner_id=partner_id)

    settlement_ids = list(eligible.values_list("pk", flat=True))
    if limit is not None:
        settlement_ids = settlement_ids[:limit]

    summary = {
        "eligible": len(settlement_ids),
        "paid": 0,
        "failed": 0,
        "unresolved": 0,
        "skipped": 0,
        "flagged": 0,
        "paid_ids": [],
    }
    for settlement_id in settlement_ids:
        try:
            execute_payout(settlement_id, provider=provider, executed_by=executed_by)
        except ProviderTimeout as exc:
            summary["unresolved"] += 1
            logger.warning("batch payout unresolved settlement_id=%s error=%s", settlement_id, exc)
        except ProviderError as exc:
            summary["failed"] += 1
            logger.warning("batch payout failed settlement_id=%s error=%s", settlement_id, exc)
        except InvalidState as exc:
            summary["skipped"] += 1
            logger.info("batch payout skipped settlement_id=%s reason=%s", settlement_id, exc)
        except DataInconsistency as exc:
            summary["flagged"] += 1
            logger.error("batch payout flagged settlement_id=%s error=%s", settlement_id, exc)
        else:
            summary["paid"] += 1
            summary["paid_ids"].append(settlement_id)

    logger.info(
        "batch payout finished eligible=%s paid=%s failed=%s unresolved=%s skipped=%s flagged=%s",
        summary["eligible"],
        summary["paid"],
        summary["failed"],
        summary["unresolved"],
        summary["skipped"],
        summary["flagged"],
    )
    return summary
