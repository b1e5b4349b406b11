from django.core.management.base import BaseCommand

from settlements.payouts import pay_pending_settlements


class Command(BaseCommand):
    help = "Pay every eligible pending settlement through the payout provider."

    def add_arguments(self, parser):
        parser.add_argument("--partner_id", type=int, default=None)
        parser.add_argument("--limit", type=int, default=None, help="Maximum settlements to pay in this run.")

    def handle(self, *args, **options):
        summary = pay_pending_settlements(
            partner_id=options["partner_id"],
            limit=options["limit"],
        )

        self.stdout.write(
            f"Eligible={summary['eligible']} Paid={summary['paid']} "
            f"Failed={summary['failed']} Unresolved={summary['unresolved']} "
            f"Skipped={summary['skipped']} Flagged={summary['flagged']}"
        )
        if summary["paid_ids"]:
            self.stdout.write(f"IDs: {summary['paid_ids']}")

        if summary["failed"] or summary["unresolved"] or summary["flagged"]:
            self.stdout.write(self.style.WARNING("Some payouts did not complete; see logs."))
        else:
            self.stdout.write(self.style.SUCCESS("Batch payout finished."))
