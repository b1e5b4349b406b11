from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("partners", "0001_initial"),
        ("settlements", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="TransactionRecord",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("gross_cents", models.PositiveBigIntegerField()),
                ("payment_method", models.CharField(max_length=40)),
                ("occurred_at", models.DateTimeField()),
                ("external_reference", models.CharField(blank=True, max_length=255, null=True, unique=True)),
                ("settled", models.BooleanField(default=False)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "partner",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="partners.partner",
                    ),
                ),
                (
                    "tenant",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="partners.tenant",
                    ),
                ),
                (
                    "settlement",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="settlements.settlement",
                    ),
                ),
            ],
            options={
                "db_table": "ledger_transaction_record",
                "ordering": ["occurred_at", "id"],
                "indexes": [
                    models.Index(
                        fields=["partner", "settled", "occurred_at"],
                        name="ledger_tx_partner_settled_idx",
                    ),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=(
                            models.Q(
                                ("settled", True),
                                ("settlement__isnull", False),
                                ("settled_at__isnull", False),
                            )
                            | models.Q(
                                ("settled", False),
                                ("settlement__isnull", True),
                                ("settled_at__isnull", True),
                            )
                        ),
                        name="ck_transaction_settled_link_consistency",
                    ),
                ],
            },
        ),
    ]
