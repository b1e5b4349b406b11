from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_datetime

from core.exceptions import InvalidPeriod
from settlements.services import generate_settlements_for_period


class Command(BaseCommand):
    help = "Generate settlements for every active partner for a period"

    def add_arguments(self, parser):
        parser.add_argument("--start", type=str, required=True)
        parser.add_argument("--end", type=str, required=True)
        parser.add_argument("--currency", type=str, default=None)
        parser.add_argument(
            "--include-empty",
            action="store_true",
            help="Create zero-amount settlements for partners without transactions.",
        )

    def handle(self, *args, **options):
        start = parse_datetime(options["start"])
        end = parse_datetime(options["end"])
        if not start or not end:
            raise CommandError("Invalid datetime format. Use ISO format with timezone.")

        self.stdout.write(self.style.WARNING("Starting settlement generation..."))
        try:
            result = generate_settlements_for_period(
                start,
                end,
                allow_empty=options["include_empty"],
                currency=options["currency"],
            )
        except InvalidPeriod as e:
            raise CommandError(str(e))

        for settlement in result["created"]:
            self.stdout.write(
                f" - Partner {settlement.partner_id} | "
                f"{settlement.period_start} -> {settlement.period_end} | "
                f"Net: {settlement.total_partner_net_cents}"
            )
        for partner_id, message in result["errors"].items():
            self.stderr.write(self.style.ERROR(f"Partner {partner_id}: {message}"))

        self.stdout.write(
            self.style.SUCCESS(
                f"Created={len(result['created'])} Existing={len(result['existing'])} "
                f"Skipped={len(result['skipped'])} Errors={len(result['errors'])}"
            )
        )
