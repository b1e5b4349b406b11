from django.core.exceptions import ValidationError
from django.test import SimpleTestCase, TestCase

from core.exceptions import DataInconsistency
from partners.fees import (
    FeeSchedule,
    compute_fee_cents,
    compute_platform_fee_cents,
    get_fee_schedule,
)
from partners.models import Partner, PartnerFeeRule


class _Record:
    def __init__(self, gross_cents, payment_method):
        self.gross_cents = gross_cents
        self.payment_method = payment_method


class FeeMathTests(SimpleTestCase):
    def test_compute_fee_rounds_half_up(self):
        self.assertEqual(compute_fee_cents(15_000, 500), 750)
        self.assertEqual(compute_fee_cents(10, 500), 1)  # 0.5 -> 1
        self.assertEqual(compute_fee_cents(9, 500), 0)  # 0.45 -> 0
        self.assertEqual(compute_fee_cents(0, 500), 0)

    def test_compute_fee_rejects_negative_inputs(self):
        with self.assertRaises(ValueError):
            compute_fee_cents(-1, 500)
        with self.assertRaises(ValueError):
            compute_fee_cents(100, -1)

    def test_percentage_applies_to_method_subtotal(self):
        schedule = FeeSchedule(
            partner_id=1,
            percent_by_method={"pix": 100, "default": 500},
            fixed_by_method={"pix": 0, "default": 25},
        )
        records = [
            _Record(50, "pix"),
            _Record(50, "PIX"),
            _Record(1_000, "boleto"),
        ]

        # pix: 1% of 100 = 1; boleto falls back to default: 50 + 25
        self.assertEqual(compute_platform_fee_cents(records, schedule), 76)

    def test_method_without_rule_or_default_is_fatal(self):
        schedule = FeeSchedule(partner_id=1, percent_by_method={"pix": 100})

        with self.assertRaisesRegex(DataInconsistency, "credit_card"):
            compute_platform_fee_cents([_Record(100, "credit_card")], schedule)


class FeeScheduleLoadingTests(TestCase):
    def setUp(self):
        self.partner = Partner.objects.create(name="Fees Partner", email="fees@test.local")

    def test_get_fee_schedule_reads_rules(self):
        PartnerFeeRule.objects.create(partner=self.partner, payment_method=" PIX ", percent_bps=150)
        PartnerFeeRule.objects.create(
            partner=self.partner, payment_method="default", percent_bps=500, fixed_cents=30
        )

        schedule = get_fee_schedule(self.partner.pk)

        self.assertEqual(schedule.rule_for("pix"), (150, 0))
        self.assertEqual(schedule.rule_for("ted"), (500, 30))

    def test_get_fee_schedule_without_rules_is_fatal(self):
        with self.assertRaisesRegex(DataInconsistency, "no fee schedule"):
            get_fee_schedule(self.partner.pk)

    def test_fee_rule_rejects_percent_above_100(self):
        with self.assertRaises(ValidationError):
            PartnerFeeRule.objects.create(
                partner=self.partner, payment_method="pix", percent_bps=10_001
            )
