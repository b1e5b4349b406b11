from django.core.management.base import BaseCommand, CommandError

from core.exceptions import ProviderError
from settlements.payouts import audit_paid_payouts, reconcile_processing_payouts


class Command(BaseCommand):
    help = "Resolve payouts left processing by querying the payout provider"

    def add_arguments(self, parser):
        parser.add_argument(
            "--audit",
            action="store_true",
            help="Also compare paid payouts with the provider's transfers (read-only).",
        )

    def handle(self, *args, **options):
        summary = reconcile_processing_payouts()

        self.stdout.write(
            f"Checked={summary['checked']} Paid={summary['paid']} "
            f"Failed={summary['failed']} Unresolved={summary['unresolved']} "
            f"Flagged={summary['flagged']} InFlight={summary['in_flight']}"
        )
        if summary["unresolved"]:
            self.stdout.write(
                self.style.WARNING(f"{summary['unresolved']} payout(s) still unresolved.")
            )
        else:
            self.stdout.write(self.style.SUCCESS("No unresolved payouts."))
        if summary["flagged"]:
            self.stdout.write(
                self.style.ERROR(f"{summary['flagged']} payout(s) paid after failure; review required.")
            )

        if not options["audit"]:
            return

        self.stdout.write("Auditing paid payouts against provider transfers...")
        try:
            discrepancies = audit_paid_payouts()
        except ProviderError as e:
            raise CommandError(f"Audit failed: {e}")

        for d in discrepancies:
            label = d.kind.upper().replace("_", " ")
            self.stdout.write(
                self.style.WARNING(
                    f"[{label}] payout={d.payout_id} reference={d.client_reference} "
                    f"provider={d.provider_reference or '-'} "
                    f"amount local={d.local_amount_cents} provider={d.provider_amount_cents} "
                    f"status local={d.local_status or '-'} provider={d.provider_status or '-'}"
                )
            )

        if discrepancies:
            self.stdout.write(self.style.ERROR(f"Inconsistencies found: {len(discrepancies)}"))
        else:
            self.stdout.write(self.style.SUCCESS("No inconsistencies detected."))
