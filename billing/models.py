from django.core.exceptions import ValidationError
from django.db import models


class AccessOverride(models.TextChoices):
    NORMAL = "normal", "Normal"
    READ_ONLY = "read_only", "Read only"
    BLOCKED = "blocked", "Blocked"


class InvoiceStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PAID = "paid", "Paid"
    OVERDUE = "overdue", "Overdue"
    PARTIALLY_PAID = "partially_paid", "Partially paid"
    CANCELED = "canceled", "Canceled"


CLOSED_INVOICE_STATUSES = (InvoiceStatus.PAID, InvoiceStatus.CANCELED)


class BillingAccount(models.Model):
    """
    The account dunning is evaluated for: one partner or one tenant.
    Null policy fields fall back to settings.DUNNING_POLICY.
    """

    partner = models.OneToOneField(
        "partners.Partner",
        on_delete=models.PROTECT,
        related_name="billing_account",
        null=True,
        blank=True,
    )
    tenant = models.OneToOneField(
        "partners.Tenant",
        on_delete=models.PROTECT,
        related_name="billing_account",
        null=True,
        blank=True,
    )

    grace_days = models.PositiveIntegerField(null=True, blank=True)
    block_days = models.PositiveIntegerField(null=True, blank=True)
    suspend_days = models.PositiveIntegerField(null=True, blank=True)
    access_override = models.CharField(
        max_length=20,
        choices=AccessOverride.choices,
        null=True,
        blank=True,
    )

    # Cached copy of the latest DunningLog level.
    current_dunning_level = models.PositiveSmallIntegerField(default=0)
    dunning_started_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_account"
        constraints = [
            models.CheckConstraint(
                name="ck_billing_account_single_owner",
                condition=(
                    (models.Q(partner__isnull=False) & models.Q(tenant__isnull=True))
                    | (models.Q(partner__isnull=True) & models.Q(tenant__isnull=False))
                ),
            ),
        ]

    def __str__(self):
        owner = f"partner={self.partner_id}" if self.partner_id else f"tenant={self.tenant_id}"
        return f"BillingAccount {self.pk} {owner} level={self.current_dunning_level}"

    def clean(self):
        super().clean()
        if bool(self.partner_id) == bool(self.tenant_id):
            raise ValidationError("Exactly one of partner or tenant must be set.")


class Invoice(models.Model):
    account = models.ForeignKey(
        "billing.BillingAccount",
        on_delete=models.PROTECT,
        related_name="invoices",
    )
    invoice_number = models.CharField(max_length=64, unique=True)
    amount_cents = models.BigIntegerField()
    amount_paid_cents = models.BigIntegerField(default=0)
    due_date = models.DateField()
    status = models.CharField(
        max_length=20,
        choices=InvoiceStatus.choices,
        default=InvoiceStatus.PENDING,
        db_index=True,
    )
    paid_at = models.DateTimeField(null=True, blank=True)
    canceled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_invoice"
        ordering = ["due_date", "id"]
        indexes = [
            models.Index(fields=["account", "status"], name="billing_inv_acct_status_idx"),
        ]
        constraints = [
            models.CheckConstraint(
                name="ck_invoice_amount_non_negative",
                condition=models.Q(amount_cents__gte=0),
            ),
            models.CheckConstraint(
                name="ck_invoice_paid_within_amount",
                condition=models.Q(amount_paid_cents__gte=0)
                & models.Q(amount_paid_cents__lte=models.F("amount_cents")),
            ),
        ]

    def __str__(self):
        return f"Invoice {self.invoice_number} account={self.account_id} ({self.status})"

    @property
    def outstanding_cents(self) -> int:
        return max(int(self.amount_cents) - int(self.amount_paid_cents), 0)

    def is_overdue(self, today) -> bool:
        return self.status not in CLOSED_INVOICE_STATUSES and today > self.due_date

    def days_overdue(self, today) -> int:
        if not self.is_overdue(today):
            return 0
        return (today - self.due_date).days
