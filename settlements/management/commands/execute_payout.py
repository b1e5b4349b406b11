from django.core.management.base import BaseCommand, CommandError

from core.exceptions import InvalidState, ProviderError, ProviderTimeout
from settlements.models import Settlement
from settlements.payouts import execute_payout


class Command(BaseCommand):
    help = "Execute the payout of a pending settlement through the payout provider"

    def add_arguments(self, parser):
        parser.add_argument("--settlement_id", type=int, required=True)

    def handle(self, *args, **options):
        settlement_id = options["settlement_id"]

        try:
            payout = execute_payout(settlement_id)
        except Settlement.DoesNotExist:
            raise CommandError("Settlement not found")
        except InvalidState as e:
            raise CommandError(str(e))
        except ProviderTimeout as e:
            self.stderr.write(
                self.style.WARNING(
                    f"Outcome unknown for payout {e.payout_id}; run reconcile_payouts later. {e}"
                )
            )
            return
        except ProviderError as e:
            raise CommandError(f"Payout {e.payout_id} failed: {e}")

        self.stdout.write(
            self.style.SUCCESS(
                f"Payout ID={payout.id} Settlement={settlement_id} "
                f"Amount={payout.amount_cents} Reference={payout.provider_reference}"
            )
        )
