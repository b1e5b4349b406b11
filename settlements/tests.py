import tempfile
from datetime import datetime, timedelta, timezone as dt_timezone
from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import TestCase, override_settings
from django.utils import timezone

from core.exceptions import ConcurrencyConflict, DataInconsistency, InvalidPeriod, InvalidState
from ledger.models import TransactionRecord
from partners.fees import FeeSchedule, get_fee_schedule
from partners.models import Partner, PartnerFeeRule
from settlements.models import Payout, Settlement, SettlementStatus
from settlements.payouts import mark_settlement_paid_manually
from settlements.services import (
    cancel_settlement,
    generate_settlement,
    generate_settlements_for_period,
    get_partner_financial_summary,
    list_settlements,
)

User = get_user_model()

EVIDENCE_DIR = tempfile.mkdtemp(prefix="settlement-evidence-")

JAN_START = datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
FEB_START = datetime(2024, 2, 1, tzinfo=dt_timezone.utc)
MAR_START = datetime(2024, 3, 1, tzinfo=dt_timezone.utc)


@override_settings(EVIDENCE_DIR=EVIDENCE_DIR)
class SettlementTestCase(TestCase):
    def setUp(self):
        super().setUp()
        self._seq = 0

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _make_partner(self, *, fee_bps: int = 500, fixed_cents: int = 0) -> Partner:
        seq = self._next_seq()
        partner = Partner.objects.create(
            name=f"Partner {seq}",
            email=f"partner.{seq}@test.local",
            stripe_account_id=f"acct_test_{seq}",
            payouts_enabled=True,
        )
        if fee_bps is not None:
            PartnerFeeRule.objects.create(
                partner=partner,
                payment_method=PartnerFeeRule.DEFAULT_METHOD,
                percent_bps=fee_bps,
                fixed_cents=fixed_cents,
            )
        return partner

    def _make_transaction(
        self,
        partner: Partner,
        gross_cents: int,
        *,
        occurred_at=None,
        payment_method: str = "pix",
    ) -> TransactionRecord:
        return TransactionRecord.objects.create(
            partner=partner,
            gross_cents=gross_cents,
            payment_method=payment_method,
            occurred_at=occurred_at or JAN_START + timedelta(days=10),
        )


class GenerateSettlementTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)

    def test_two_transactions_with_five_percent_fee(self):
        self._make_transaction(self.partner, 10_000)
        self._make_transaction(self.partner, 5_000)

        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertEqual(settlement.status, SettlementStatus.PENDING)
        self.assertEqual(settlement.total_gross_cents, 15_000)
        self.assertEqual(settlement.total_platform_fee_cents, 750)
        self.assertEqual(settlement.total_partner_net_cents, 14_250)
        self.assertEqual(settlement.transaction_count, 2)
        self.assertEqual(settlement.currency, "BRL")

    def test_second_call_returns_same_settlement(self):
        self._make_transaction(self.partner, 10_000)
        self._make_transaction(self.partner, 5_000)
        first = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        # Arrives after the period was settled; must not be picked up.
        late = self._make_transaction(self.partner, 7_000)

        second = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertEqual(first.pk, second.pk)
        self.assertEqual(Settlement.objects.filter(partner=self.partner).count(), 1)
        self.assertEqual(second.total_gross_cents, 15_000)
        late.refresh_from_db()
        self.assertFalse(late.settled)

    def test_marks_exactly_the_consumed_records(self):
        inside = [
            self._make_transaction(self.partner, 1_000, occurred_at=JAN_START),
            self._make_transaction(self.partner, 2_000, occurred_at=FEB_START - timedelta(seconds=1)),
        ]
        boundary = self._make_transaction(self.partner, 4_000, occurred_at=FEB_START)
        other_partner = self._make_partner()
        foreign = self._make_transaction(other_partner, 8_000)

        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        linked = TransactionRecord.objects.filter(settlement=settlement)
        self.assertEqual(
            sorted(linked.values_list("pk", flat=True)),
            sorted(r.pk for r in inside),
        )
        self.assertEqual(sum(r.gross_cents for r in linked), settlement.total_gross_cents)
        self.assertTrue(all(r.settled and r.settled_at for r in linked))
        boundary.refresh_from_db()
        foreign.refresh_from_db()
        self.assertFalse(boundary.settled)
        self.assertFalse(foreign.settled)

    def test_fee_uses_method_rule_and_fixed_component(self):
        PartnerFeeRule.objects.create(
            partner=self.partner,
            payment_method="credit_card",
            percent_bps=399,
            fixed_cents=30,
        )
        self._make_transaction(self.partner, 10_001, payment_method="credit_card")
        self._make_transaction(self.partner, 9_999, payment_method="CREDIT_CARD")
        self._make_transaction(self.partner, 3_333, payment_method="pix")

        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        # credit_card: round(20000 * 3.99%) = 798 + 2 * 30; pix falls back to 5%: 167
        self.assertEqual(settlement.total_platform_fee_cents, 798 + 60 + 167)
        self.assertEqual(
            settlement.total_partner_net_cents,
            settlement.total_gross_cents - settlement.total_platform_fee_cents,
        )

    def test_injected_fee_schedule_overrides_partner_rules(self):
        self._make_transaction(self.partner, 10_000)
        schedule = FeeSchedule(partner_id=self.partner.pk, percent_by_method={"default": 1_000})

        settlement = generate_settlement(
            self.partner.pk, JAN_START, FEB_START, fee_schedule=schedule
        )

        self.assertEqual(settlement.total_platform_fee_cents, 1_000)

    def test_missing_fee_schedule_is_fatal(self):
        partner = self._make_partner(fee_bps=None)
        record = self._make_transaction(partner, 10_000)

        with self.assertRaisesRegex(DataInconsistency, "no fee schedule"):
            generate_settlement(partner.pk, JAN_START, FEB_START)

        self.assertFalse(Settlement.objects.filter(partner=partner).exists())
        record.refresh_from_db()
        self.assertFalse(record.settled)

    def test_fee_above_gross_is_rejected(self):
        self._make_transaction(self.partner, 10)
        schedule = FeeSchedule(
            partner_id=self.partner.pk,
            percent_by_method={"default": 0},
            fixed_by_method={"default": 50},
        )

        with self.assertRaisesRegex(DataInconsistency, "exceeds gross"):
            generate_settlement(self.partner.pk, JAN_START, FEB_START, fee_schedule=schedule)

        self.assertFalse(Settlement.objects.filter(partner=self.partner).exists())

    def test_empty_period_creates_zero_amount_settlement(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertEqual(settlement.status, SettlementStatus.PENDING)
        self.assertEqual(settlement.total_gross_cents, 0)
        self.assertEqual(settlement.total_partner_net_cents, 0)
        self.assertEqual(settlement.transaction_count, 0)

    def test_empty_period_can_be_skipped(self):
        result = generate_settlement(self.partner.pk, JAN_START, FEB_START, allow_empty=False)

        self.assertIsNone(result)
        self.assertFalse(Settlement.objects.exists())

    def test_rejects_inverted_and_empty_periods(self):
        with self.assertRaises(InvalidPeriod):
            generate_settlement(self.partner.pk, FEB_START, JAN_START)
        with self.assertRaises(InvalidPeriod):
            generate_settlement(self.partner.pk, JAN_START, JAN_START)

    def test_rejects_naive_period_bounds(self):
        with self.assertRaisesRegex(InvalidPeriod, "timezone-aware"):
            generate_settlement(self.partner.pk, datetime(2024, 1, 1), datetime(2024, 2, 1))

    def test_rejects_overlapping_period(self):
        generate_settlement(self.partner.pk, JAN_START, FEB_START)

        with self.assertRaisesRegex(InvalidPeriod, "overlaps"):
            generate_settlement(
                self.partner.pk,
                JAN_START + timedelta(days=15),
                FEB_START + timedelta(days=15),
            )

    def test_adjacent_period_is_allowed(self):
        january = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        february = generate_settlement(self.partner.pk, FEB_START, MAR_START)

        self.assertNotEqual(january.pk, february.pk)

    def test_overlap_with_cancelled_settlement_is_allowed(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        cancel_settlement(settlement.pk, "wrong period")

        other = generate_settlement(
            self.partner.pk,
            JAN_START + timedelta(days=15),
            FEB_START + timedelta(days=15),
        )

        self.assertEqual(other.status, SettlementStatus.PENDING)

    def test_winner_found_under_partner_lock_is_returned(self):
        winner = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        with patch(
            "settlements.services._find_active_settlement",
            side_effect=[None, winner],
        ):
            result = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertEqual(result.pk, winner.pk)
        self.assertEqual(Settlement.objects.filter(partner=self.partner).count(), 1)

    def test_lost_insert_race_returns_winner(self):
        winner = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        with patch(
            "settlements.services._find_active_settlement",
            side_effect=[None, None, winner],
        ):
            result = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertEqual(result.pk, winner.pk)
        self.assertEqual(Settlement.objects.filter(partner=self.partner).count(), 1)

    def test_overlapping_generation_committed_meanwhile_is_rejected(self):
        early = self._make_transaction(self.partner, 10_000, occurred_at=JAN_START + timedelta(days=5))
        shared = self._make_transaction(self.partner, 20_000, occurred_at=JAN_START + timedelta(days=20))
        mid_jan = JAN_START + timedelta(days=15)
        mid_feb = FEB_START + timedelta(days=15)

        competitor = {}

        def fee_schedule_after_competitor(partner_id):
            # The competing generation commits after this call passed its
            # unlocked overlap check.
            if "started" not in competitor:
                competitor["started"] = True
                competitor["settlement"] = generate_settlement(partner_id, mid_jan, mid_feb)
            return get_fee_schedule(partner_id)

        with patch(
            "settlements.services.get_fee_schedule",
            side_effect=fee_schedule_after_competitor,
        ):
            with self.assertRaisesRegex(InvalidPeriod, "overlaps"):
                generate_settlement(self.partner.pk, JAN_START, FEB_START)

        active = Settlement.objects.filter(partner=self.partner).exclude(
            status=SettlementStatus.CANCELLED
        )
        self.assertEqual(list(active), [competitor["settlement"]])
        self.assertEqual(
            (active[0].period_start, active[0].period_end),
            (mid_jan, mid_feb),
        )

        early.refresh_from_db()
        shared.refresh_from_db()
        self.assertFalse(early.settled)
        self.assertEqual(shared.settlement_id, competitor["settlement"].pk)

    def test_concurrent_marking_without_winner_rolls_back(self):
        record = self._make_transaction(self.partner, 10_000)

        with patch(
            "settlements.services.mark_settled",
            side_effect=ConcurrencyConflict("1 transaction(s) were settled concurrently."),
        ):
            with self.assertRaises(InvalidPeriod):
                generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertFalse(Settlement.objects.exists())
        record.refresh_from_db()
        self.assertFalse(record.settled)

    def test_failure_while_marking_leaves_nothing_behind(self):
        record = self._make_transaction(self.partner, 10_000)

        with patch("settlements.services.mark_settled", side_effect=RuntimeError("feed_down")):
            with self.assertRaisesRegex(RuntimeError, "feed_down"):
                generate_settlement(self.partner.pk, JAN_START, FEB_START)

        self.assertFalse(Settlement.objects.exists())
        record.refresh_from_db()
        self.assertFalse(record.settled)


class GenerateSettlementsForPeriodTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.active = self._make_partner()
        self._make_transaction(self.active, 10_000)

        self.quiet = self._make_partner()

        self.unconfigured = self._make_partner(fee_bps=None)
        self._make_transaction(self.unconfigured, 3_000)

        self.inactive = self._make_partner()
        self.inactive.is_active = False
        self.inactive.save(update_fields=["is_active"])
        self._make_transaction(self.inactive, 8_000)

        self.already = self._make_partner()
        self._make_transaction(self.already, 2_000)
        self.previous = generate_settlement(self.already.pk, JAN_START, FEB_START)

    def test_generates_for_every_active_partner_and_reports_failures(self):
        result = generate_settlements_for_period(JAN_START, FEB_START)

        created = Settlement.objects.get(partner=self.active)
        self.assertEqual(result["created"], [created])
        self.assertEqual(result["existing"], [self.previous])
        self.assertEqual(result["skipped"], [self.quiet.pk])
        self.assertEqual(list(result["errors"]), [self.unconfigured.pk])
        self.assertIn("DataInconsistency", result["errors"][self.unconfigured.pk])
        self.assertFalse(Settlement.objects.filter(partner=self.inactive).exists())
        self.assertFalse(Settlement.objects.filter(partner=self.unconfigured).exists())

    def test_include_empty_creates_zero_amount_settlements(self):
        result = generate_settlements_for_period(JAN_START, FEB_START, allow_empty=True)

        self.assertEqual(result["skipped"], [])
        quiet = Settlement.objects.get(partner=self.quiet)
        self.assertEqual(quiet.total_gross_cents, 0)

    def test_generate_settlements_command(self):
        out = StringIO()

        call_command(
            "generate_settlements",
            start="2024-01-01T00:00:00+00:00",
            end="2024-02-01T00:00:00+00:00",
            stdout=out,
            stderr=StringIO(),
        )

        self.assertIn("Created=1 Existing=1 Skipped=1 Errors=1", out.getvalue())
        self.assertTrue(Settlement.objects.filter(partner=self.active).exists())


class SettlementModelTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner()

    def test_net_must_equal_gross_minus_fee(self):
        with self.assertRaises(ValidationError):
            Settlement.objects.create(
                partner=self.partner,
                period_start=JAN_START,
                period_end=FEB_START,
                currency="BRL",
                total_gross_cents=1_000,
                total_platform_fee_cents=100,
                total_partner_net_cents=950,
            )

    def test_illegal_status_transition_is_rejected(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        settlement.status = SettlementStatus.PAID
        settlement.paid_at = timezone.now()

        with self.assertRaisesRegex(InvalidState, "pending -> paid"):
            settlement.save()

    def test_paid_settlement_is_immutable_on_save(self):
        self._make_transaction(self.partner, 5_000)
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        mark_settlement_paid_manually(settlement.pk, reference="BANK-REF-001")
        settlement.refresh_from_db()

        settlement.failure_reason = "mutated"
        with self.assertRaisesRegex(ValidationError, "Cannot modify a paid settlement."):
            settlement.save()


class CancelSettlementTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner()

    def test_cancel_frees_the_period(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        cancelled = cancel_settlement(settlement.pk, "opened by mistake")

        self.assertEqual(cancelled.status, SettlementStatus.CANCELLED)
        self.assertIsNotNone(cancelled.cancelled_at)
        self.assertEqual(cancelled.cancellation_reason, "opened by mistake")

        regenerated = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        self.assertNotEqual(regenerated.pk, settlement.pk)

    def test_cancel_rejects_settlement_with_transactions(self):
        self._make_transaction(self.partner, 1_000)
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        with self.assertRaisesRegex(InvalidState, "settled transactions"):
            cancel_settlement(settlement.pk, "no")

    def test_cancel_requires_reason(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        with self.assertRaisesRegex(ValueError, "reason is required"):
            cancel_settlement(settlement.pk, "  ")

    def test_cancel_rejects_paid_settlement(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        mark_settlement_paid_manually(settlement.pk)

        with self.assertRaises(InvalidState):
            cancel_settlement(settlement.pk, "too late")


class SettlementReadApiTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner()

    def test_list_settlements_filters(self):
        january = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        february = generate_settlement(self.partner.pk, FEB_START, MAR_START)
        mark_settlement_paid_manually(february.pk)
        generate_settlement(self._make_partner().pk, JAN_START, FEB_START)

        self.assertEqual(
            list(list_settlements(partner_id=self.partner.pk).values_list("pk", flat=True)),
            [february.pk, january.pk],
        )
        self.assertEqual(
            list(list_settlements(partner_id=self.partner.pk, status="pending")),
            [january],
        )
        self.assertEqual(
            list(list_settlements(partner_id=self.partner.pk, period_from=FEB_START)),
            [february],
        )

    def test_financial_summary(self):
        now = timezone.now()
        self._make_transaction(self.partner, 10_000)
        pending = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        self._make_transaction(self.partner, 2_000, occurred_at=FEB_START + timedelta(days=1))
        paid = generate_settlement(self.partner.pk, FEB_START, MAR_START)
        mark_settlement_paid_manually(paid.pk)

        self._make_transaction(self.partner, 3_000, occurred_at=now - timedelta(days=1))
        self._make_transaction(self.partner, 4_000, occurred_at=now - timedelta(days=90))

        summary = get_partner_financial_summary(self.partner.pk, now=now)

        self.assertEqual(summary["available_balance_cents"], pending.total_partner_net_cents)
        self.assertEqual(summary["in_chargeback_window_cents"], 3_000)
        self.assertEqual(summary["pending_settlement_cents"], 4_000)
        self.assertEqual(summary["total_paid_cents"], 1_900)


class PartnerFinancialViewsTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner()
        self.partner.email = "owner.partner@test.local"
        self.partner.save(update_fields=["email"])
        self._make_transaction(self.partner, 10_000)
        generate_settlement(self.partner.pk, JAN_START, FEB_START)
        self.base_url = f"/settlements/partner/{self.partner.pk}"

    def _make_user(self, username: str, email: str, *, is_staff=False, is_superuser=False):
        return User.objects.create_user(
            username=username,
            email=email,
            password="testpass123",
            is_staff=is_staff,
            is_superuser=is_superuser,
        )

    def test_settlements_allow_staff(self):
        self.client.force_login(self._make_user("staff", "staff@test.local", is_staff=True))

        response = self.client.get(f"{self.base_url}/settlements/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(len(body["settlements"]), 1)
        self.assertEqual(body["settlements"][0]["total_partner_net_cents"], 9_500)

    def test_summary_allows_partner_owner_email(self):
        self.client.force_login(self._make_user("owner", "Owner.Partner@test.local"))

        response = self.client.get(f"{self.base_url}/financial-summary/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["available_balance_cents"], 9_500)

    def test_payouts_reject_non_owner(self):
        self.client.force_login(self._make_user("worker", "worker@test.local"))

        response = self.client.get(f"{self.base_url}/payouts/")

        self.assertEqual(response.status_code, 403)

    def test_unknown_partner_is_404(self):
        self.client.force_login(self._make_user("admin", "admin@test.local", is_superuser=True))

        response = self.client.get("/settlements/partner/999999/settlements/")

        self.assertEqual(response.status_code, 404)

    def test_anonymous_is_redirected_to_login(self):
        response = self.client.get(f"{self.base_url}/settlements/")

        self.assertEqual(response.status_code, 302)


class SettlementCommandTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner()

    def test_settlement_create_command(self):
        self._make_transaction(self.partner, 10_000)

        call_command(
            "settlement_create",
            partner_id=self.partner.pk,
            start="2024-01-01T00:00:00+00:00",
            end="2024-02-01T00:00:00+00:00",
        )

        settlement = Settlement.objects.get(partner=self.partner)
        self.assertEqual(settlement.total_partner_net_cents, 9_500)

    def test_settlement_mark_paid_command(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

        call_command("settlement_mark_paid", settlement_id=settlement.pk, method="pix", reference="E2E-1")

        settlement.refresh_from_db()
        self.assertEqual(settlement.status, SettlementStatus.PAID)
        payout = Payout.objects.get(settlement=settlement)
        self.assertEqual(payout.payout_method, "pix")
        self.assertEqual(payout.provider_reference, "E2E-1")

    def test_settlement_mark_paid_command_rejects_paid(self):
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        mark_settlement_paid_manually(settlement.pk)

        with self.assertRaises(CommandError):
            call_command("settlement_mark_paid", settlement_id=settlement.pk)

    def test_settlement_report_runs(self):
        generate_settlement(self.partner.pk, JAN_START, FEB_START)

        call_command("settlement_report")


class FinancialIntegrityCommandTests(SettlementTestCase):
    def test_financial_integrity_check_runs(self):
        partner = self._make_partner()
        self._make_transaction(partner, 10_000)
        settlement = generate_settlement(partner.pk, JAN_START, FEB_START)
        mark_settlement_paid_manually(settlement.pk)

        call_command("financial_integrity_check")

    def test_financial_integrity_check_detects_gross_mismatch(self):
        partner = self._make_partner()
        self._make_transaction(partner, 10_000)
        settlement = generate_settlement(partner.pk, JAN_START, FEB_START)
        Settlement.objects.filter(pk=settlement.pk).update(
            total_gross_cents=20_000,
            total_partner_net_cents=19_500,
        )

        with self.assertRaisesRegex(CommandError, "financial_integrity_check failed"):
            call_command("financial_integrity_check")
