from __future__ import annotations

from django.core.management.base import BaseCommand, CommandError
from django.db.models import Count, F, Q, Sum

from ledger.models import TransactionRecord
from settlements.models import Payout, PayoutStatus, Settlement, SettlementStatus


class Command(BaseCommand):
    help = (
        "Run global financial integrity checks: "
        "net conservation, ledger/settlement gross parity, payout/settlement consistency "
        "and payouts flagged for review."
    )

    def handle(self, *args, **options):
        errors: list[str] = []

        broken_net = Settlement.objects.exclude(
            total_partner_net_cents=F("total_gross_cents") - F("total_platform_fee_cents")
        )
        if broken_net.exists():
            sample_ids = list(broken_net.values_list("id", flat=True)[:10])
            errors.append(f"Net conservation violated (sample_settlement_ids={sample_ids}).")

        linked = (
            TransactionRecord.objects.filter(settlement__isnull=False)
            .values("settlement_id")
            .annotate(gross=Sum("gross_cents"), count=Count("id"))
        )
        linked_map = {
            int(r["settlement_id"]): (int(r["gross"] or 0), int(r["count"])) for r in linked
        }
        mismatched: list[int] = []
        for s in Settlement.objects.exclude(status=SettlementStatus.CANCELLED).only(
            "id", "total_gross_cents", "transaction_count"
        ):
            gross, count = linked_map.get(s.id, (0, 0))
            if gross != s.total_gross_cents or count != s.transaction_count:
                mismatched.append(s.id)
        if mismatched:
            errors.append(
                "Ledger/Settlement gross mismatch "
                f"(settlements={len(mismatched)}, sample={mismatched[:10]})."
            )

        paid_without_payout = Settlement.objects.filter(
            status=SettlementStatus.PAID
        ).exclude(payouts__status=PayoutStatus.PAID)
        if paid_without_payout.exists():
            sample_ids = list(paid_without_payout.values_list("id", flat=True)[:10])
            errors.append(f"Paid settlement without paid payout (sample={sample_ids}).")

        amount_mismatch = Payout.objects.exclude(
            amount_cents=F("settlement__total_partner_net_cents")
        )
        if amount_mismatch.exists():
            sample_ids = list(amount_mismatch.values_list("id", flat=True)[:10])
            errors.append(f"Payout amount differs from settlement net (sample={sample_ids}).")

        stale_processing = Settlement.objects.filter(status=SettlementStatus.PROCESSING).filter(
            ~Q(payouts__status__in=[PayoutStatus.PENDING, PayoutStatus.PROCESSING])
        )
        if stale_processing.exists():
            sample_ids = list(stale_processing.values_list("id", flat=True)[:10])
            errors.append(f"Processing settlement without open payout (sample={sample_ids}).")

        flagged = Payout.objects.filter(requires_review=True)
        if flagged.exists():
            sample_ids = list(flagged.values_list("id", flat=True)[:10])
            errors.append(f"Failed payout later paid by provider, review required (sample={sample_ids}).")

        if errors:
            for msg in errors:
                self.stderr.write(self.style.ERROR(f"FAIL: {msg}"))
            raise CommandError(f"financial_integrity_check failed ({len(errors)} issue(s)).")

        self.stdout.write(
            self.style.SUCCESS(
                "OK financial_integrity_check: "
                f"settlements={Settlement.objects.count()} payouts={Payout.objects.count()}"
            )
        )
