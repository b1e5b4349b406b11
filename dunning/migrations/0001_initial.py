from django.db import migrations, models
import django.db.models.deletion
import django.utils.timezone


LEVEL_CHOICES = [
    (0, "None"),
    (1, "Warning"),
    (2, "Read only"),
    (3, "Blocked"),
    (4, "Suspended"),
]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("billing", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="DunningLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("previous_level", models.PositiveSmallIntegerField(choices=LEVEL_CHOICES)),
                ("dunning_level", models.PositiveSmallIntegerField(choices=LEVEL_CHOICES)),
                ("action", models.CharField(max_length=40)),
                ("description", models.TextField(blank=True, default="")),
                ("overdue_count", models.PositiveIntegerField(default=0)),
                ("total_overdue_cents", models.BigIntegerField(default=0)),
                ("max_days_overdue", models.PositiveIntegerField(default=0)),
                ("executed_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("reversed_at", models.DateTimeField(blank=True, null=True)),
                (
                    "account",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="dunning_logs",
                        to="billing.billingaccount",
                    ),
                ),
                (
                    "reversed_by_log",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="reversed_logs",
                        to="dunning.dunninglog",
                    ),
                ),
            ],
            options={
                "db_table": "dunning_log",
                "ordering": ["executed_at", "id"],
                "indexes": [
                    models.Index(fields=["account", "executed_at"], name="dunning_log_account_exec_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("dunning_level", models.F("previous_level")), _negated=True),
                        name="ck_dunning_log_level_changes",
                    ),
                ],
            },
        ),
    ]
