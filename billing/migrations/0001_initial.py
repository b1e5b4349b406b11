from django.db import migrations, models
import django.db.models.deletion


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("partners", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="BillingAccount",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("grace_days", models.PositiveIntegerField(blank=True, null=True)),
                ("block_days", models.PositiveIntegerField(blank=True, null=True)),
                ("suspend_days", models.PositiveIntegerField(blank=True, null=True)),
                (
                    "access_override",
                    models.CharField(
                        blank=True,
                        choices=[
                            ("normal", "Normal"),
                            ("read_only", "Read only"),
                            ("blocked", "Blocked"),
                        ],
                        max_length=20,
                        null=True,
                    ),
                ),
                ("current_dunning_level", models.PositiveSmallIntegerField(default=0)),
                ("dunning_started_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "partner",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_account",
                        to="partners.partner",
                    ),
                ),
                (
                    "tenant",
                    models.OneToOneField(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="billing_account",
                        to="partners.tenant",
                    ),
                ),
            ],
            options={
                "db_table": "billing_account",
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("partner__isnull", False), ("tenant__isnull", True)),
                            models.Q(("partner__isnull", True), ("tenant__isnull", False)),
                            _connector="OR",
                        ),
                        name="ck_billing_account_single_owner",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("invoice_number", models.CharField(max_length=64, unique=True)),
                ("amount_cents", models.BigIntegerField()),
                ("amount_paid_cents", models.BigIntegerField(default=0)),
                ("due_date", models.DateField()),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("paid", "Paid"),
                            ("overdue", "Overdue"),
                            ("partially_paid", "Partially paid"),
                            ("canceled", "Canceled"),
                        ],
                        db_index=True,
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("paid_at", models.DateTimeField(blank=True, null=True)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="billing.billingaccount",
                    ),
                ),
            ],
            options={
                "db_table": "billing_invoice",
                "ordering": ["due_date", "id"],
                "indexes": [
                    models.Index(fields=["account", "status"], name="billing_inv_acct_status_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount_cents__gte", 0)),
                        name="ck_invoice_amount_non_negative",
                    ),
                    models.CheckConstraint(
                        condition=models.Q(
                            ("amount_paid_cents__gte", 0),
                            ("amount_paid_cents__lte", models.F("amount_cents")),
                        ),
                        name="ck_invoice_paid_within_amount",
                    ),
                ],
            },
        ),
    ]
