from django.core.management.base import BaseCommand, CommandError
from django.utils.dateparse import parse_date

from billing.models import BillingAccount
from core.exceptions import SettlementEngineError
from dunning.services import evaluate_dunning


class Command(BaseCommand):
    help = "Evaluate dunning levels for one or all billing accounts"

    def add_arguments(self, parser):
        parser.add_argument("--account-id", type=int, default=None)
        parser.add_argument("--today", type=str, default=None, help="Evaluation date (YYYY-MM-DD)")

    def handle(self, *args, **options):
        today = None
        if options["today"]:
            today = parse_date(options["today"])
            if today is None:
                raise CommandError("Invalid date format. Use YYYY-MM-DD.")

        if options["account_id"] is not None:
            if not BillingAccount.objects.filter(pk=options["account_id"]).exists():
                raise CommandError("Account not found")
            account_ids = [options["account_id"]]
        else:
            account_ids = list(BillingAccount.objects.order_by("pk").values_list("pk", flat=True))

        changed_count = 0
        errors = 0
        for account_id in account_ids:
            try:
                level, changed = evaluate_dunning(account_id, today=today)
            except SettlementEngineError as e:
                errors += 1
                self.stderr.write(self.style.ERROR(f"Account {account_id}: {type(e).__name__}: {e}"))
                continue
            if changed:
                changed_count += 1
                self.stdout.write(f"Account {account_id}: level -> {level}")

        self.stdout.write(
            self.style.SUCCESS(
                f"Evaluated={len(account_ids)} Changed={changed_count} Errors={errors}"
            )
        )
        if errors:
            raise CommandError(f"evaluate_dunning failed for {errors} account(s).")
