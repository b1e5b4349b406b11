from django.core.management.base import BaseCommand
from django.db.models import Sum

from settlements.models import SettlementStatus
from settlements.services import list_settlements


class Command(BaseCommand):
    help = "Global settlement financial report"

    def add_arguments(self, parser):
        parser.add_argument("--partner_id", type=int, default=None)
        parser.add_argument("--status", type=str, default=None, choices=SettlementStatus.values)

    def handle(self, *args, **options):
        settlements = list_settlements(
            partner_id=options["partner_id"],
            status=options["status"],
        )

        if not settlements.exists():
            self.stdout.write("No settlements found.")
            return

        self.stdout.write(self.style.SUCCESS("=== SETTLEMENT REPORT ==="))
        self.stdout.write("")

        for s in settlements:
            line = (
                f"ID={s.id} "
                f"Partner={s.partner_id} "
                f"Period={s.period_start.date()}→{s.period_end.date()} "
                f"Status={s.status} "
                f"Gross={s.total_gross_cents} "
                f"Fee={s.total_platform_fee_cents} "
                f"Net={s.total_partner_net_cents} "
                f"Transactions={s.transaction_count}"
            )
            if s.failure_reason:
                line += f" LastFailure={s.failure_reason}"
            self.stdout.write(line)

        self.stdout.write("")
        self.stdout.write("---- CONSOLIDATED TOTALS ----")

        totals = settlements.exclude(status=SettlementStatus.CANCELLED).aggregate(
            total_net=Sum("total_partner_net_cents"),
            total_fee=Sum("total_platform_fee_cents"),
        )

        def net_for(*statuses):
            return settlements.filter(status__in=statuses).aggregate(
                total=Sum("total_partner_net_cents")
            )["total"] or 0

        self.stdout.write(f"Total Net (All): {totals['total_net'] or 0}")
        self.stdout.write(f"Total Platform Fee: {totals['total_fee'] or 0}")
        self.stdout.write(f"Pending: {net_for(SettlementStatus.PENDING, SettlementStatus.FAILED)}")
        self.stdout.write(f"Processing: {net_for(SettlementStatus.PROCESSING)}")
        self.stdout.write(f"Paid: {net_for(SettlementStatus.PAID, SettlementStatus.COMPLETED)}")
