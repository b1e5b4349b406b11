from django.core.management.base import BaseCommand
from django.utils.dateparse import parse_datetime

from core.exceptions import SettlementEngineError
from settlements.services import generate_settlement


class Command(BaseCommand):
    help = "Create a partner settlement for a specific period"

    def add_arguments(self, parser):
        parser.add_argument("--partner_id", type=int, required=True)
        parser.add_argument("--start", type=str, required=True)
        parser.add_argument("--end", type=str, required=True)
        parser.add_argument("--currency", type=str, default=None)
        parser.add_argument(
            "--skip-empty",
            action="store_true",
            help="Do not create a zero-amount settlement when the period has no transactions.",
        )

    def handle(self, *args, **options):
        partner_id = options["partner_id"]
        start = parse_datetime(options["start"])
        end = parse_datetime(options["end"])

        if not start or not end:
            self.stderr.write("Invalid datetime format. Use ISO format with timezone.")
            return

        try:
            settlement = generate_settlement(
                partner_id,
                start,
                end,
                allow_empty=not options["skip_empty"],
                currency=options["currency"],
            )
        except SettlementEngineError as e:
            self.stderr.write(f"{type(e).__name__}: {e}")
            return

        if settlement is None:
            self.stdout.write("No transactions in period; nothing created.")
            return

        self.stdout.write(
            self.style.SUCCESS(
                f"Settlement ID={settlement.id} "
                f"Partner={partner_id} "
                f"Status={settlement.status} "
                f"Transactions={settlement.transaction_count} "
                f"Net={settlement.total_partner_net_cents} {settlement.currency}"
            )
        )
