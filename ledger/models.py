from django.core.exceptions import ValidationError
from django.db import models


class TransactionRecord(models.Model):
    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.PROTECT,
        related_name="transactions",
    )
    tenant = models.ForeignKey(
        "partners.Tenant",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )

    gross_cents = models.PositiveBigIntegerField()
    payment_method = models.CharField(max_length=40)
    occurred_at = models.DateTimeField()
    external_reference = models.CharField(max_length=255, null=True, blank=True, unique=True)

    # --- Liquidacion (flips exactly once) ---
    settled = models.BooleanField(default=False)
    settlement = models.ForeignKey(
        "settlements.Settlement",
        on_delete=models.PROTECT,
        related_name="transactions",
        null=True,
        blank=True,
    )
    settled_at = models.DateTimeField(null=True, blank=True)

    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "ledger_transaction_record"
        ordering = ["occurred_at", "id"]
        indexes = [
            models.Index(
                fields=["partner", "settled", "occurred_at"],
                name="ledger_tx_partner_settled_idx",
            ),
        ]
        constraints = [
            models.CheckConstraint(
                name="ck_transaction_settled_link_consistency",
                condition=(
                    (
                        models.Q(settled=True)
                        & models.Q(settlement__isnull=False)
                        & models.Q(settled_at__isnull=False)
                    )
                    | (
                        models.Q(settled=False)
                        & models.Q(settlement__isnull=True)
                        & models.Q(settled_at__isnull=True)
                    )
                ),
            ),
        ]

    def __str__(self):
        return (
            f"Transaction {self.pk} partner={self.partner_id} "
            f"gross={self.gross_cents} method={self.payment_method} settled={self.settled}"
        )

    def save(self, *args, **kwargs):
        # Settled records are immutable.
        if self.pk:
            previous = type(self).objects.only("settled").filter(pk=self.pk).first()
            if previous and previous.settled:
                raise ValidationError("Cannot modify a settled transaction record.")
        self.payment_method = (self.payment_method or "").strip().lower()
        return super().save(*args, **kwargs)
