from django.core.management.base import BaseCommand, CommandError

from core.exceptions import InvalidState
from settlements.models import PayoutMethod, Settlement
from settlements.payouts import mark_settlement_paid_manually


class Command(BaseCommand):
    help = "Mark a pending settlement as paid outside the payout provider"

    def add_arguments(self, parser):
        parser.add_argument("--settlement_id", type=int, required=True)
        parser.add_argument(
            "--method",
            type=str,
            default=PayoutMethod.MANUAL,
            choices=PayoutMethod.values,
        )
        parser.add_argument("--reference", type=str, default=None)

    def handle(self, *args, **options):
        try:
            payout = mark_settlement_paid_manually(
                options["settlement_id"],
                method=options["method"],
                reference=options["reference"],
            )
        except Settlement.DoesNotExist:
            raise CommandError("Settlement not found")
        except InvalidState as e:
            raise CommandError(str(e))

        self.stdout.write(
            self.style.SUCCESS(
                f"Settlement {options['settlement_id']} marked paid "
                f"(payout={payout.id}, method={payout.payout_method})"
            )
        )
