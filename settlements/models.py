from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models

from core.exceptions import InvalidState


class SettlementStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PAID = "paid", "Paid"
    COMPLETED = "completed", "Completed"
    FAILED = "failed", "Failed"
    CANCELLED = "cancelled", "Cancelled"


class PayoutStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PROCESSING = "processing", "Processing"
    PAID = "paid", "Paid"
    FAILED = "failed", "Failed"


class PayoutMethod(models.TextChoices):
    STRIPE_TRANSFER = "stripe_transfer", "Stripe transfer"
    PIX = "pix", "PIX"
    TED = "ted", "TED"
    MANUAL = "manual", "Manual"


SETTLEMENT_TRANSITIONS = {
    SettlementStatus.PENDING: {SettlementStatus.PROCESSING, SettlementStatus.CANCELLED},
    SettlementStatus.PROCESSING: {
        SettlementStatus.PAID,
        SettlementStatus.PENDING,
        SettlementStatus.FAILED,
    },
    SettlementStatus.FAILED: {SettlementStatus.PENDING},
    SettlementStatus.PAID: set(),
    SettlementStatus.COMPLETED: set(),
    SettlementStatus.CANCELLED: set(),
}

SETTLEMENT_TERMINAL_STATUSES = frozenset(
    status for status, targets in SETTLEMENT_TRANSITIONS.items() if not targets
)

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {PayoutStatus.PROCESSING, PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.PROCESSING: {PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.PAID: set(),
    PayoutStatus.FAILED: set(),
}


def assert_settlement_transition(old: str, new: str) -> None:
    if new not in SETTLEMENT_TRANSITIONS.get(old, set()):
        raise InvalidState(f"Illegal settlement transition: {str(old)} -> {str(new)}")


def assert_payout_transition(old: str, new: str) -> None:
    if new not in PAYOUT_TRANSITIONS.get(old, set()):
        raise InvalidState(f"Illegal payout transition: {str(old)} -> {str(new)}")


class Settlement(models.Model):
    # --- Identidad ---
    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.PROTECT,
        related_name="settlements",
    )

    period_start = models.DateTimeField()
    period_end = models.DateTimeField()  # exclusive

    currency = models.CharField(max_length=10)

    # --- Totales consolidados (snapshot) ---
    total_gross_cents = models.BigIntegerField(default=0)
    total_platform_fee_cents = models.BigIntegerField(default=0)
    total_partner_net_cents = models.BigIntegerField(default=0)
    transaction_count = models.IntegerField(default=0)

    # --- Estado ---
    status = models.CharField(
        max_length=20,
        choices=SettlementStatus.choices,
        default=SettlementStatus.PENDING,
    )
    failure_reason = models.TextField(blank=True, default="")

    # --- Auditoria ---
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)
    paid_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    cancellation_reason = models.TextField(blank=True, default="")

    class Meta:
        db_table = "settlement"
        ordering = ["-period_start", "-id"]
        indexes = [
            models.Index(fields=["partner", "status"], name="settlement_partner_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["partner", "period_start", "period_end"],
                condition=~models.Q(status="cancelled"),
                name="uq_settlement_partner_period_active",
            ),
            models.CheckConstraint(
                name="ck_settlement_period_order",
                condition=models.Q(period_end__gt=models.F("period_start")),
            ),
            models.CheckConstraint(
                name="ck_settlement_net_conservation",
                condition=models.Q(
                    total_partner_net_cents=models.F("total_gross_cents")
                    - models.F("total_platform_fee_cents")
                ),
            ),
            models.CheckConstraint(
                name="ck_settlement_paid_at_consistency",
                condition=(
                    (
                        models.Q(status__in=["paid", "completed"])
                        & models.Q(paid_at__isnull=False)
                    )
                    | (
                        ~models.Q(status__in=["paid", "completed"])
                        & models.Q(paid_at__isnull=True)
                    )
                ),
            ),
        ]

    def __str__(self):
        return (
            f"Settlement {self.pk} partner={self.partner_id} "
            f"{self.period_start.date()} - {self.period_end.date()} ({self.status})"
        )

    def clean(self):
        super().clean()
        if self.period_start and self.period_end and self.period_end <= self.period_start:
            raise ValidationError({"period_end": "period_end must be after period_start."})
        if self.total_partner_net_cents != self.total_gross_cents - self.total_platform_fee_cents:
            raise ValidationError(
                {"total_partner_net_cents": "net must equal gross minus platform fee."}
            )
        is_paid = self.status in (SettlementStatus.PAID, SettlementStatus.COMPLETED)
        if is_paid and self.paid_at is None:
            raise ValidationError({"paid_at": "paid_at is required when status is paid."})
        if not is_paid and self.paid_at is not None:
            raise ValidationError({"status": "status must be paid when paid_at is set."})

    def save(self, *args, **kwargs):
        # FINANCIAL INVARIANT - DO NOT MODIFY:
        # terminal settlements (paid, completed, cancelled) are immutable historical records.
        if self.pk:
            previous = type(self).objects.only("status").filter(pk=self.pk).first()
            if previous:
                if previous.status in SETTLEMENT_TERMINAL_STATUSES:
                    raise ValidationError(f"Cannot modify a {previous.status} settlement.")
                if previous.status != self.status:
                    assert_settlement_transition(previous.status, self.status)
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)


class Payout(models.Model):
    settlement = models.ForeignKey(
        "settlements.Settlement",
        on_delete=models.PROTECT,
        related_name="payouts",
    )
    amount_cents = models.BigIntegerField()
    currency = models.CharField(max_length=10)
    payout_method = models.CharField(
        max_length=20,
        choices=PayoutMethod.choices,
        default=PayoutMethod.STRIPE_TRANSFER,
    )

    # Generated before the provider call; idempotency key and lookup key.
    client_reference = models.CharField(max_length=64, unique=True)
    provider_reference = models.CharField(max_length=255, null=True, blank=True, db_index=True)
    provider_environment = models.CharField(max_length=10, default="test", db_index=True)

    status = models.CharField(
        max_length=20,
        choices=PayoutStatus.choices,
        default=PayoutStatus.PENDING,
        db_index=True,
    )

    executed_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        related_name="executed_payouts",
        null=True,
        blank=True,
    )
    executed_at = models.DateTimeField(null=True, blank=True)
    failed_at = models.DateTimeField(null=True, blank=True)
    failure_reason = models.TextField(blank=True, default="")
    # Set when the provider reports a transfer paid after the payout was failed.
    requires_review = models.BooleanField(default=False, db_index=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "settlement_payout"
        ordering = ["-created_at", "-id"]
        constraints = [
            models.UniqueConstraint(
                fields=["settlement"],
                condition=~models.Q(status="failed"),
                name="uq_payout_settlement_active",
            ),
            models.CheckConstraint(
                name="ck_payout_amount_non_negative",
                condition=models.Q(amount_cents__gte=0),
            ),
            models.CheckConstraint(
                name="ck_payout_paid_executed_at",
                condition=~models.Q(status="paid") | models.Q(executed_at__isnull=False),
            ),
        ]

    def __str__(self):
        return (
            f"Payout {self.pk} settlement={self.settlement_id} "
            f"amount={self.amount_cents} status={self.status}"
        )

    def clean(self):
        super().clean()
        if self.amount_cents is not None and self.amount_cents < 0:
            raise ValidationError({"amount_cents": "Cannot be negative."})
        if self.status == PayoutStatus.PAID and self.executed_at is None:
            raise ValidationError({"executed_at": "executed_at is required when status is paid."})

    def save(self, *args, **kwargs):
        if self.pk:
            previous = type(self).objects.only("status").filter(pk=self.pk).first()
            if previous and previous.status != self.status:
                assert_payout_transition(previous.status, self.status)
        self.full_clean(validate_constraints=False)
        return super().save(*args, **kwargs)
