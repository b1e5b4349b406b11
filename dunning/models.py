from django.core.exceptions import ValidationError
from django.db import models
from django.utils import timezone


class DunningLevel(models.IntegerChoices):
    NONE = 0, "None"
    WARNING = 1, "Warning"
    READ_ONLY = 2, "Read only"
    BLOCKED = 3, "Blocked"
    SUSPENDED = 4, "Suspended"


ESCALATION_ACTIONS = {
    DunningLevel.WARNING: "escalated_to_warning",
    DunningLevel.READ_ONLY: "escalated_to_read_only",
    DunningLevel.BLOCKED: "escalated_to_blocked",
    DunningLevel.SUSPENDED: "escalated_to_suspended",
}

REVERSION_ACTIONS = {
    DunningLevel.NONE: "reverted_to_normal",
    DunningLevel.WARNING: "reverted_to_warning",
    DunningLevel.READ_ONLY: "reverted_to_read_only",
    DunningLevel.BLOCKED: "reverted_to_blocked",
}


def action_for_transition(previous_level: int, new_level: int) -> str:
    if new_level == previous_level:
        raise ValueError("A dunning log requires a level change.")
    if new_level > previous_level:
        return ESCALATION_ACTIONS[DunningLevel(new_level)]
    return REVERSION_ACTIONS[DunningLevel(new_level)]


class DunningLog(models.Model):
    """
    One row per dunning level transition. Append-only: only the reversal
    markers may be written after creation, and only once.
    """

    REVERSAL_FIELDS = ("reversed_at", "reversed_by_log")

    account = models.ForeignKey(
        "billing.BillingAccount",
        on_delete=models.PROTECT,
        related_name="dunning_logs",
    )
    previous_level = models.PositiveSmallIntegerField(choices=DunningLevel.choices)
    dunning_level = models.PositiveSmallIntegerField(choices=DunningLevel.choices)
    action = models.CharField(max_length=40)
    description = models.TextField(blank=True, default="")

    # Snapshot of the overdue position that triggered the transition.
    overdue_count = models.PositiveIntegerField(default=0)
    total_overdue_cents = models.BigIntegerField(default=0)
    max_days_overdue = models.PositiveIntegerField(default=0)

    executed_at = models.DateTimeField(default=timezone.now)
    reversed_at = models.DateTimeField(null=True, blank=True)
    reversed_by_log = models.ForeignKey(
        "self",
        on_delete=models.PROTECT,
        related_name="reversed_logs",
        null=True,
        blank=True,
    )

    class Meta:
        db_table = "dunning_log"
        ordering = ["executed_at", "id"]
        indexes = [
            models.Index(fields=["account", "executed_at"], name="dunning_log_account_exec_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                name="ck_dunning_log_level_changes",
                condition=~models.Q(dunning_level=models.F("previous_level")),
            ),
        ]

    def __str__(self):
        return (
            f"DunningLog {self.pk} account={self.account_id} "
            f"{self.previous_level}->{self.dunning_level} ({self.action})"
        )

    def clean(self):
        super().clean()
        if self.dunning_level == self.previous_level:
            raise ValidationError({"dunning_level": "Level must differ from previous_level."})

    def save(self, *args, **kwargs):
        if self.pk:
            previous = type(self).objects.filter(pk=self.pk).first()
            if previous:
                if previous.reversed_at is not None:
                    raise ValidationError("Cannot modify a reversed dunning log.")
                for field in self._meta.concrete_fields:
                    if field.name in self.REVERSAL_FIELDS:
                        continue
                    if getattr(previous, field.attname) != getattr(self, field.attname):
                        raise ValidationError(
                            f"Dunning logs are append-only ({field.name} cannot change)."
                        )
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Dunning logs cannot be deleted.")
