from django.conf import settings
from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("partners", "0001_initial"),
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Settlement",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("period_start", models.DateTimeField()),
                ("period_end", models.DateTimeField()),
                ("currency", models.CharField(max_length=10)),
                ("total_gross_cents", models.BigIntegerField(default=0)),
                ("total_platform_fee_cents", models.BigIntegerField(default=0)),
                ("total_partner_net_cents", models.BigIntegerField(default=0)),
                ("transaction_count", models.IntegerField(default=0)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("paid", "Paid"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("cancelled_at", models.DateTimeField(blank=True, null=True)),
                ("cancellation_reason", models.TextField(blank=True, default="")),
                (
                    "partner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="settlements",
                        to="partners.partner",
                    ),
                ),
            ],
            options={
                "db_table": "settlement",
                "ordering": ["-period_start", "-id"],
                "indexes": [
                    models.Index(fields=["partner", "status"], name="settlement_partner_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "cancelled"), _negated=True),
                        fields=("partner", "period_start", "period_end"),
                        name="uq_settlement_partner_period_active",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("period_end__gt", models.F("period_start"))),
                        name="ck_settlement_period_order",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            (
                                "total_partner_net_cents",
                                models.F("total_gross_cents") - models.F("total_platform_fee_cents"),
                            )
                        ),
                        name="ck_settlement_net_conservation",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status__in", ["paid", "completed"]), ("paid_at__isnull", False)),
                            models.Q(
                                models.Q(("status__in", ["paid", "completed"]), _negated=True),
                                ("paid_at__isnull", True),
                            ),
                            _connector="OR",
                        ),
                        name="ck_settlement_paid_at_consistency",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Payout",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("amount_cents", models.BigIntegerField()),
                ("currency", models.CharField(max_length=10)),
                (
                    "payout_method",
                    models.CharField(
                        choices=[
                            ("stripe_transfer", "Stripe transfer"),
                            ("pix", "PIX"),
                            ("ted", "TED"),
                            ("manual", "Manual"),
                        ],
                        default="stripe_transfer",
                        max_length=20,
                    ),
                ),
                ("client_reference", models.CharField(max_length=64, unique=True)),
                ("provider_reference", models.CharField(blank=True, db_index=True, max_length=255, null=True)),
                ("provider_environment", models.CharField(db_index=True, default="test", max_length=10)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("processing", "Processing"),
                            ("paid", "Paid"),
                            ("failed", "Failed"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("executed_at", models.DateTimeField(blank=True, null=True)),
                ("failed_at", models.DateTimeField(blank=True, null=True)),
                ("failure_reason", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "executed_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="executed_payouts",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
                (
                    "settlement",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payouts",
                        to="settlements.settlement",
                    ),
                ),
            ],
            options={
                "db_table": "settlement_payout",
                "ordering": ["-created_at", "-id"],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("status", "failed"), _negated=True),
                        fields=("settlement",),
                        name="uq_payout_settlement_active",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gte", 0)),
                        name="ck_payout_amount_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("status", "paid"), _negated=True),
                            ("executed_at__isnull", False),
                            _connector="OR",
                        ),
                        name="ck_payout_paid_executed_at",
                    ),
                ],
            },
        ),
    ]
