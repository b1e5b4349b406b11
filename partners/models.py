from django.core.exceptions import ValidationError
from django.db import models


class Partner(models.Model):
    name = models.CharField(max_length=255)
    email = models.EmailField(blank=True, default="")

    # --- Payout destination ---
    stripe_account_id = models.CharField(max_length=255, null=True, blank=True)
    payouts_enabled = models.BooleanField(default=False)

    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "partner"
        ordering = ["name", "id"]

    def __str__(self):
        return f"Partner {self.pk} {self.name}"


class Tenant(models.Model):
    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.PROTECT,
        related_name="tenants",
    )
    name = models.CharField(max_length=255)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "partner_tenant"
        ordering = ["name", "id"]

    def __str__(self):
        return f"Tenant {self.pk} {self.name} (partner={self.partner_id})"


class PartnerFeeRule(models.Model):
    DEFAULT_METHOD = "default"

    partner = models.ForeignKey(
        "partners.Partner",
        on_delete=models.CASCADE,
        related_name="fee_rules",
    )
    payment_method = models.CharField(max_length=40)
    percent_bps = models.PositiveIntegerField(default=0)  # 500 = 5.00%
    fixed_cents = models.PositiveIntegerField(default=0)

    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "partner_fee_rule"
        constraints = [
            models.UniqueConstraint(
                fields=["partner", "payment_method"],
                name="uq_partner_fee_rule_method",
            ),
        ]

    def __str__(self):
        return (
            f"FeeRule partner={self.partner_id} method={self.payment_method} "
            f"bps={self.percent_bps} fixed={self.fixed_cents}"
        )

    def clean(self):
        super().clean()
        if not (self.payment_method or "").strip():
            raise ValidationError({"payment_method": "payment_method is required."})
        if self.percent_bps > 10_000:
            raise ValidationError({"percent_bps": "percent_bps cannot exceed 10000 (100%)."})

    def save(self, *args, **kwargs):
        self.payment_method = (self.payment_method or "").strip().lower()
        self.full_clean()
        return super().save(*args, **kwargs)
