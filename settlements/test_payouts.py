from datetime import timedelta
from io import StringIO
from unittest.mock import MagicMock, patch

import stripe
from django.conf import settings
from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.core.management.base import CommandError
from django.test import override_settings
from django.utils import timezone

from core.exceptions import DataInconsistency, InvalidState, ProviderError, ProviderTimeout
from settlements.models import Payout, PayoutStatus, Settlement, SettlementStatus
from settlements.payout_provider import (
    TRANSFER_FAILED,
    TRANSFER_NOT_FOUND,
    TRANSFER_PAID,
    TRANSFER_PENDING,
    StripePayoutProvider,
    TransferResult,
)
from settlements.payouts import (
    DISCREPANCY_AMOUNT_MISMATCH,
    DISCREPANCY_MISSING_AT_PROVIDER,
    DISCREPANCY_MISSING_LOCALLY,
    DISCREPANCY_STATUS_MISMATCH,
    PayoutDiscrepancy,
    audit_paid_payouts,
    execute_payout,
    mark_settlement_paid_manually,
    pay_pending_settlements,
    reconcile_processing_payouts,
)
from settlements.services import generate_settlement
from settlements.tests import FEB_START, JAN_START, SettlementTestCase

User = get_user_model()


class FakeProvider:
    environment = "test"

    def __init__(self, *, transfer=None, query=None, transfers=(), during_transfer=None):
        self._transfer = transfer
        self._query = query
        self._transfers = list(transfers)
        # Runs while the transfer call is still in flight.
        self._during_transfer = during_transfer
        self.transfer_calls = []
        self.query_calls = []

    def transfer(self, *, amount_cents, destination, currency, client_reference):
        call = {
            "amount_cents": amount_cents,
            "destination": destination,
            "currency": currency,
            "client_reference": client_reference,
        }
        self.transfer_calls.append(call)
        if self._during_transfer is not None:
            self._during_transfer()
        if callable(self._transfer):
            return self._transfer(call)
        if isinstance(self._transfer, Exception):
            raise self._transfer
        return self._transfer

    def query_status(self, client_reference):
        self.query_calls.append(client_reference)
        if isinstance(self._query, Exception):
            raise self._query
        return self._query

    def list_transfers(self):
        return iter(self._transfers)


class ExecutePayoutTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)
        self._make_transaction(self.partner, 10_000)
        self._make_transaction(self.partner, 5_000)
        self.settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        self.actor_user = User.objects.create_user(
            username="finance_executor",
            email="finance.executor@test.local",
            password="testpass123",
        )

    def test_successful_transfer_marks_both_paid(self):
        provider = FakeProvider(transfer=TransferResult(reference="tr_123", status=TRANSFER_PAID))

        payout = execute_payout(self.settlement.pk, provider=provider, executed_by=self.actor_user)

        self.settlement.refresh_from_db()
        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.assertEqual(payout.provider_reference, "tr_123")
        self.assertEqual(payout.amount_cents, 14_250)
        self.assertEqual(payout.executed_by_id, self.actor_user.pk)
        self.assertIsNotNone(payout.executed_at)
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)
        self.assertIsNotNone(self.settlement.paid_at)

        call = provider.transfer_calls[0]
        self.assertEqual(call["amount_cents"], 14_250)
        self.assertEqual(call["destination"], self.partner.stripe_account_id)
        self.assertEqual(call["client_reference"], payout.client_reference)

    def test_timeout_then_status_query_paid_ends_paid(self):
        provider = FakeProvider(
            transfer=ProviderTimeout("read timed out"),
            query=TransferResult(reference="tr_late", status=TRANSFER_PAID),
        )

        payout = execute_payout(self.settlement.pk, provider=provider)

        self.settlement.refresh_from_db()
        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.assertEqual(payout.provider_reference, "tr_late")
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)
        self.assertEqual(provider.query_calls, [payout.client_reference])

    def test_definite_failure_reverts_settlement_to_pending(self):
        provider = FakeProvider(transfer=ProviderError("insufficient platform balance"))

        with self.assertRaisesRegex(ProviderError, "insufficient platform balance") as ctx:
            execute_payout(self.settlement.pk, provider=provider)

        self.settlement.refresh_from_db()
        payout = Payout.objects.get(pk=ctx.exception.payout_id)
        self.assertEqual(payout.status, PayoutStatus.FAILED)
        self.assertIsNotNone(payout.failed_at)
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)
        self.assertEqual(self.settlement.failure_reason, "insufficient platform balance")
        self.assertIsNone(self.settlement.paid_at)

    def test_failed_payout_can_be_retried(self):
        execute_failure = FakeProvider(transfer=ProviderError("destination closed"))
        with self.assertRaises(ProviderError):
            execute_payout(self.settlement.pk, provider=execute_failure)

        retry = FakeProvider(transfer=TransferResult(reference="tr_retry", status=TRANSFER_PAID))
        payout = execute_payout(self.settlement.pk, provider=retry)

        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)
        self.assertEqual(self.settlement.failure_reason, "")
        self.assertEqual(
            list(self.settlement.payouts.order_by("id").values_list("status", flat=True)),
            [PayoutStatus.FAILED, PayoutStatus.PAID],
        )
        self.assertNotEqual(
            execute_failure.transfer_calls[0]["client_reference"],
            payout.client_reference,
        )

    def test_timeout_then_not_found_fails_payout(self):
        provider = FakeProvider(
            transfer=ProviderTimeout("connection reset"),
            query=TransferResult(reference="", status=TRANSFER_NOT_FOUND),
        )

        with self.assertRaises(ProviderError) as ctx:
            execute_payout(self.settlement.pk, provider=provider)

        self.assertNotIsInstance(ctx.exception, ProviderTimeout)
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)
        self.assertEqual(Payout.objects.get(pk=ctx.exception.payout_id).status, PayoutStatus.FAILED)

    def test_unresolved_timeout_stays_processing(self):
        provider = FakeProvider(
            transfer=ProviderTimeout("read timed out"),
            query=ProviderTimeout("status query failed"),
        )

        with self.assertRaises(ProviderTimeout) as ctx:
            execute_payout(self.settlement.pk, provider=provider)

        self.assertFalse(ctx.exception.retryable)
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PROCESSING)
        self.assertEqual(
            Payout.objects.get(pk=ctx.exception.payout_id).status,
            PayoutStatus.PROCESSING,
        )

        with self.assertRaises(InvalidState):
            execute_payout(self.settlement.pk, provider=provider)

    def test_transfer_still_pending_at_provider_stays_processing(self):
        provider = FakeProvider(
            transfer=ProviderTimeout("read timed out"),
            query=TransferResult(reference="tr_wait", status=TRANSFER_PENDING),
        )

        with self.assertLogs("settlements.payouts", level="INFO") as logs:
            with self.assertRaisesRegex(ProviderTimeout, "still pending") as ctx:
                execute_payout(self.settlement.pk, provider=provider)

        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(
            Payout.objects.get(pk=ctx.exception.payout_id).status,
            PayoutStatus.PROCESSING,
        )
        self.assertTrue(any("still pending at provider" in line for line in logs.output))
        self.assertFalse(any("unexpected provider status" in line for line in logs.output))

    def test_pending_transfer_is_reconciled(self):
        provider = FakeProvider(
            transfer=TransferResult(reference="tr_slow", status=TRANSFER_PENDING),
            query=TransferResult(reference="tr_slow", status=TRANSFER_PAID),
        )

        payout = execute_payout(self.settlement.pk, provider=provider)

        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.assertEqual(payout.provider_reference, "tr_slow")

    def test_rejects_non_pending_settlement(self):
        mark_settlement_paid_manually(self.settlement.pk)
        provider = FakeProvider(transfer=TransferResult(reference="tr_x", status=TRANSFER_PAID))

        with self.assertRaisesRegex(InvalidState, "only pending settlements can be paid"):
            execute_payout(self.settlement.pk, provider=provider)

        self.assertEqual(provider.transfer_calls, [])
        self.assertEqual(self.settlement.payouts.count(), 1)

    def test_rejects_partner_without_payouts_enabled(self):
        self.partner.payouts_enabled = False
        self.partner.save(update_fields=["payouts_enabled"])
        provider = FakeProvider(transfer=TransferResult(reference="tr_x", status=TRANSFER_PAID))

        with self.assertRaisesRegex(InvalidState, "payouts disabled"):
            execute_payout(self.settlement.pk, provider=provider)

        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)
        self.assertFalse(self.settlement.payouts.exists())

    def test_rejects_zero_amount_settlement(self):
        empty = generate_settlement(self._make_partner().pk, JAN_START, FEB_START)
        provider = FakeProvider(transfer=TransferResult(reference="tr_x", status=TRANSFER_PAID))

        with self.assertRaisesRegex(InvalidState, "no net amount"):
            execute_payout(empty.pk, provider=provider)

        self.assertFalse(Payout.objects.filter(settlement=empty).exists())


class ManualPaymentTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)
        self._make_transaction(self.partner, 20_000)
        self.settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

    def test_marks_settlement_and_payout_paid(self):
        payout = mark_settlement_paid_manually(self.settlement.pk, method="ted", reference=" TED-991 ")

        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)
        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.assertEqual(payout.payout_method, "ted")
        self.assertEqual(payout.provider_reference, "TED-991")
        self.assertEqual(payout.amount_cents, 19_000)

    def test_rejects_unknown_method(self):
        with self.assertRaisesRegex(ValueError, "Unknown payout method"):
            mark_settlement_paid_manually(self.settlement.pk, method="cash")

        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)


class ReconcilePayoutsTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)
        self._make_transaction(self.partner, 10_000)
        self.settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        stuck = FakeProvider(
            transfer=ProviderTimeout("read timed out"),
            query=ProviderTimeout("status query failed"),
        )
        with self.assertRaises(ProviderTimeout):
            execute_payout(self.settlement.pk, provider=stuck)
        Payout.objects.filter(status=PayoutStatus.PROCESSING).update(
            updated_at=timezone.now() - timedelta(hours=1)
        )

    def test_reconcile_resolves_paid(self):
        provider = FakeProvider(query=TransferResult(reference="tr_found", status=TRANSFER_PAID))

        summary = reconcile_processing_payouts(provider=provider)

        self.assertEqual(
            summary,
            {"checked": 1, "paid": 1, "failed": 0, "unresolved": 0, "flagged": 0, "in_flight": 0},
        )
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)

    def test_reconcile_resolves_failed(self):
        provider = FakeProvider(query=TransferResult(reference="tr_found", status=TRANSFER_FAILED))

        summary = reconcile_processing_payouts(provider=provider)

        self.assertEqual(summary["failed"], 1)
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)

    def test_reconcile_leaves_unknown_processing(self):
        provider = FakeProvider(query=TransferResult(reference="", status=TRANSFER_PENDING))

        summary = reconcile_processing_payouts(provider=provider)

        self.assertEqual(summary["unresolved"], 1)
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PROCESSING)

    @patch("settlements.management.commands.reconcile_payouts.reconcile_processing_payouts")
    def test_reconcile_command(self, reconcile_mock):
        reconcile_mock.return_value = {
            "checked": 1,
            "paid": 1,
            "failed": 0,
            "unresolved": 0,
            "flagged": 0,
            "in_flight": 0,
        }

        call_command("reconcile_payouts")

        reconcile_mock.assert_called_once_with()

    def test_reconcile_skips_recently_started_payout(self):
        Payout.objects.filter(status=PayoutStatus.PROCESSING).update(updated_at=timezone.now())
        provider = FakeProvider(query=TransferResult(reference="", status=TRANSFER_NOT_FOUND))

        summary = reconcile_processing_payouts(provider=provider)

        self.assertEqual(summary["checked"], 0)
        self.assertEqual(summary["in_flight"], 1)
        self.assertEqual(provider.query_calls, [])
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PROCESSING)

    @patch("settlements.management.commands.reconcile_payouts.audit_paid_payouts")
    @patch("settlements.management.commands.reconcile_payouts.reconcile_processing_payouts")
    def test_reconcile_command_audit(self, reconcile_mock, audit_mock):
        reconcile_mock.return_value = {
            "checked": 0,
            "paid": 0,
            "failed": 0,
            "unresolved": 0,
            "flagged": 0,
            "in_flight": 0,
        }
        audit_mock.return_value = [
            PayoutDiscrepancy(
                kind=DISCREPANCY_AMOUNT_MISMATCH,
                client_reference="stl_1_abc",
                payout_id=1,
                provider_reference="tr_1",
                local_amount_cents=9_500,
                provider_amount_cents=9_000,
            )
        ]
        out = StringIO()

        call_command("reconcile_payouts", "--audit", stdout=out)

        audit_mock.assert_called_once_with()
        self.assertIn("[AMOUNT MISMATCH]", out.getvalue())
        self.assertIn("Inconsistencies found: 1", out.getvalue())


class InFlightPayoutTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)
        self._make_transaction(self.partner, 10_000)
        self.settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)

    def test_reconcile_during_transfer_does_not_fail_the_payout(self):
        summaries = []
        provider = FakeProvider(
            transfer=TransferResult(reference="tr_slow_ok", status=TRANSFER_PAID),
            query=TransferResult(reference="", status=TRANSFER_NOT_FOUND),
            during_transfer=lambda: summaries.append(reconcile_processing_payouts(provider=provider)),
        )

        payout = execute_payout(self.settlement.pk, provider=provider)

        self.assertEqual(summaries[0]["checked"], 0)
        self.assertEqual(summaries[0]["in_flight"], 1)
        self.assertEqual(provider.query_calls, [])
        self.assertEqual(payout.status, PayoutStatus.PAID)
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)
        self.assertEqual(
            list(self.settlement.payouts.values_list("status", flat=True)),
            [PayoutStatus.PAID],
        )

    def test_success_after_failure_is_flagged_and_blocks_provider_retry(self):
        summaries = []
        late = timezone.now() + timedelta(seconds=settings.PAYOUT_RECONCILE_MIN_AGE_SECONDS + 1)
        provider = FakeProvider(
            transfer=TransferResult(reference="tr_late_ok", status=TRANSFER_PAID),
            query=TransferResult(reference="", status=TRANSFER_NOT_FOUND),
            during_transfer=lambda: summaries.append(
                reconcile_processing_payouts(provider=provider, now=late)
            ),
        )

        with self.assertRaisesRegex(DataInconsistency, "flagged for review"):
            execute_payout(self.settlement.pk, provider=provider)

        self.assertEqual(summaries[0]["failed"], 1)
        payout = Payout.objects.get(settlement=self.settlement)
        self.assertEqual(payout.status, PayoutStatus.FAILED)
        self.assertTrue(payout.requires_review)
        self.assertEqual(payout.provider_reference, "tr_late_ok")
        self.settlement.refresh_from_db()
        self.assertEqual(self.settlement.status, SettlementStatus.PENDING)

        retry = FakeProvider(transfer=TransferResult(reference="tr_twice", status=TRANSFER_PAID))
        with self.assertRaisesRegex(InvalidState, "awaiting review"):
            execute_payout(self.settlement.pk, provider=retry)
        self.assertEqual(retry.transfer_calls, [])

        manual = mark_settlement_paid_manually(self.settlement.pk, reference="tr_late_ok")
        self.settlement.refresh_from_db()
        self.assertEqual(manual.status, PayoutStatus.PAID)
        self.assertEqual(self.settlement.status, SettlementStatus.PAID)

    def test_flagged_payout_fails_integrity_check(self):
        provider = FakeProvider(
            transfer=ProviderTimeout("read timed out"),
            query=TransferResult(reference="", status=TRANSFER_NOT_FOUND),
        )
        with self.assertRaises(ProviderError) as ctx:
            execute_payout(self.settlement.pk, provider=provider)
        Payout.objects.filter(pk=ctx.exception.payout_id).update(requires_review=True)

        with self.assertRaisesRegex(CommandError, "financial_integrity_check failed"):
            call_command("financial_integrity_check", stdout=StringIO(), stderr=StringIO())


class AuditPaidPayoutsTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.partner = self._make_partner(fee_bps=500)
        self._make_transaction(self.partner, 10_000)
        settlement = generate_settlement(self.partner.pk, JAN_START, FEB_START)
        self.payout = execute_payout(
            settlement.pk,
            provider=FakeProvider(transfer=TransferResult(reference="tr_ok", status=TRANSFER_PAID)),
        )

    def _transfer(self, **overrides):
        values = {
            "reference": "tr_ok",
            "status": TRANSFER_PAID,
            "amount_cents": self.payout.amount_cents,
            "client_reference": self.payout.client_reference,
        }
        values.update(overrides)
        return TransferResult(**values)

    def test_matching_transfer_reports_nothing(self):
        provider = FakeProvider(transfers=[self._transfer()])

        self.assertEqual(audit_paid_payouts(provider=provider), [])

    def test_reports_amount_difference_and_reversal(self):
        provider = FakeProvider(
            transfers=[self._transfer(amount_cents=self.payout.amount_cents - 100, status=TRANSFER_FAILED)]
        )

        discrepancies = audit_paid_payouts(provider=provider)

        self.assertEqual(
            sorted(d.kind for d in discrepancies),
            [DISCREPANCY_AMOUNT_MISMATCH, DISCREPANCY_STATUS_MISMATCH],
        )
        self.assertTrue(all(d.payout_id == self.payout.pk for d in discrepancies))

    def test_reports_missing_on_either_side(self):
        other = self._make_partner()
        self._make_transaction(other, 4_000)
        manual_settlement = generate_settlement(other.pk, JAN_START, FEB_START)
        mark_settlement_paid_manually(manual_settlement.pk, method="pix", reference="E2E-1")
        provider = FakeProvider(
            transfers=[
                TransferResult(
                    reference="tr_orphan",
                    status=TRANSFER_PAID,
                    amount_cents=5_000,
                    client_reference="stl_999_deadbeef",
                ),
                TransferResult(
                    reference="tr_unrelated",
                    status=TRANSFER_PAID,
                    amount_cents=1,
                    client_reference="invoice-42",
                ),
            ]
        )

        discrepancies = audit_paid_payouts(provider=provider)

        self.assertEqual(
            [(d.kind, d.client_reference) for d in discrepancies],
            [
                (DISCREPANCY_MISSING_AT_PROVIDER, self.payout.client_reference),
                (DISCREPANCY_MISSING_LOCALLY, "stl_999_deadbeef"),
            ],
        )


class PayPendingSettlementsTests(SettlementTestCase):
    def setUp(self):
        super().setUp()
        self.ok_partner = self._make_partner()
        self.closed_partner = self._make_partner()
        self.slow_partner = self._make_partner()
        self.disabled_partner = self._make_partner()
        self.disabled_partner.payouts_enabled = False
        self.disabled_partner.save(update_fields=["payouts_enabled"])
        self.empty_partner = self._make_partner()

        self.settlements = {}
        for name in ("ok", "closed", "slow", "disabled"):
            partner = getattr(self, f"{name}_partner")
            self._make_transaction(partner, 10_000)
            self.settlements[name] = generate_settlement(partner.pk, JAN_START, FEB_START)
        self.settlements["empty"] = generate_settlement(self.empty_partner.pk, JAN_START, FEB_START)

    def _provider(self):
        def transfer(call):
            if call["destination"] == self.closed_partner.stripe_account_id:
                raise ProviderError("destination account closed")
            if call["destination"] == self.slow_partner.stripe_account_id:
                raise ProviderTimeout("read timed out")
            return TransferResult(reference=f"tr_{call['client_reference']}", status=TRANSFER_PAID)

        return FakeProvider(transfer=transfer, query=ProviderTimeout("status query failed"))

    def test_batch_continues_past_failures(self):
        summary = pay_pending_settlements(provider=self._provider())

        self.assertEqual(summary["eligible"], 3)
        self.assertEqual(summary["paid"], 1)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(summary["unresolved"], 1)
        self.assertEqual(summary["paid_ids"], [self.settlements["ok"].pk])

        statuses = {
            name: Settlement.objects.get(pk=s.pk).status for name, s in self.settlements.items()
        }
        self.assertEqual(
            statuses,
            {
                "ok": SettlementStatus.PAID,
                "closed": SettlementStatus.PENDING,
                "slow": SettlementStatus.PROCESSING,
                "disabled": SettlementStatus.PENDING,
                "empty": SettlementStatus.PENDING,
            },
        )
        self.assertFalse(Payout.objects.filter(settlement=self.settlements["disabled"]).exists())

    def test_partner_filter_and_limit(self):
        provider = self._provider()

        summary = pay_pending_settlements(provider=provider, partner_id=self.ok_partner.pk, limit=1)

        self.assertEqual(summary["eligible"], 1)
        self.assertEqual(summary["paid_ids"], [self.settlements["ok"].pk])
        self.assertEqual(len(provider.transfer_calls), 1)

    @patch("settlements.management.commands.pay_pending_settlements.pay_pending_settlements")
    def test_pay_pending_settlements_command(self, pay_mock):
        pay_mock.return_value = {
            "eligible": 2,
            "paid": 1,
            "failed": 1,
            "unresolved": 0,
            "skipped": 0,
            "flagged": 0,
            "paid_ids": [7],
        }
        out = StringIO()

        call_command("pay_pending_settlements", "--limit", "5", stdout=out)

        pay_mock.assert_called_once_with(partner_id=None, limit=5)
        self.assertIn("Paid=1", out.getvalue())
        self.assertIn("Failed=1", out.getvalue())


class StripePayoutProviderTests(SettlementTestCase):
    def _stripe_mock(self):
        stripe_mock = MagicMock()
        get_stripe_patch = patch(
            "settlements.payout_provider.get_stripe", return_value=stripe_mock
        )
        get_stripe_patch.start()
        self.addCleanup(get_stripe_patch.stop)
        return stripe_mock

    def test_transfer_uses_client_reference_as_idempotency_key(self):
        stripe_mock = self._stripe_mock()
        transfer_mock = {"reversed": False}
        transfer = MagicMock()
        transfer.id = "tr_test_123"
        transfer.get.side_effect = transfer_mock.get
        stripe_mock.Transfer.create.return_value = transfer

        result = StripePayoutProvider().transfer(
            amount_cents=14_250,
            destination="acct_test_1",
            currency="BRL",
            client_reference="stl_1_abc",
        )

        self.assertEqual(result, TransferResult(reference="tr_test_123", status=TRANSFER_PAID))
        kwargs = stripe_mock.Transfer.create.call_args.kwargs
        self.assertEqual(kwargs["amount"], 14_250)
        self.assertEqual(kwargs["currency"], "brl")
        self.assertEqual(kwargs["destination"], "acct_test_1")
        self.assertEqual(kwargs["transfer_group"], "stl_1_abc")
        self.assertEqual(kwargs["idempotency_key"], "stl_1_abc")

    def test_connection_error_is_unknown_outcome(self):
        stripe_mock = self._stripe_mock()
        stripe_mock.Transfer.create.side_effect = stripe.APIConnectionError("timed out")

        with self.assertRaises(ProviderTimeout):
            StripePayoutProvider().transfer(
                amount_cents=100,
                destination="acct_test_1",
                currency="BRL",
                client_reference="stl_1_abc",
            )

    def test_invalid_request_is_definite_failure(self):
        stripe_mock = self._stripe_mock()
        stripe_mock.Transfer.create.side_effect = stripe.InvalidRequestError(
            "No such destination", param="destination"
        )

        with self.assertRaises(ProviderError) as ctx:
            StripePayoutProvider().transfer(
                amount_cents=100,
                destination="acct_missing",
                currency="BRL",
                client_reference="stl_1_abc",
            )

        self.assertNotIsInstance(ctx.exception, ProviderTimeout)

    def test_query_status_not_found(self):
        stripe_mock = self._stripe_mock()
        stripe_mock.Transfer.list.return_value = MagicMock(data=[])

        result = StripePayoutProvider().query_status("stl_1_abc")

        self.assertEqual(result.status, TRANSFER_NOT_FOUND)
        stripe_mock.Transfer.list.assert_called_once_with(transfer_group="stl_1_abc", limit=1)

    def test_query_status_reversed_transfer_is_failed(self):
        stripe_mock = self._stripe_mock()
        transfer = MagicMock()
        transfer.id = "tr_rev"
        transfer.get.side_effect = {"reversed": True}.get
        stripe_mock.Transfer.list.return_value = MagicMock(data=[transfer])

        result = StripePayoutProvider().query_status("stl_1_abc")

        self.assertEqual(result, TransferResult(reference="tr_rev", status=TRANSFER_FAILED))

    def test_list_transfers_follows_pagination(self):
        stripe_mock = self._stripe_mock()

        def make_transfer(transfer_id, amount, group, reversed_=False):
            transfer = MagicMock()
            transfer.id = transfer_id
            transfer.amount = amount
            transfer.get.side_effect = {"reversed": reversed_, "transfer_group": group}.get
            return transfer

        stripe_mock.Transfer.list.side_effect = [
            MagicMock(data=[make_transfer("tr_1", 500, "stl_1_a")], has_more=True),
            MagicMock(data=[make_transfer("tr_2", 700, None, reversed_=True)], has_more=False),
        ]

        results = list(StripePayoutProvider().list_transfers())

        self.assertEqual(
            results,
            [
                TransferResult(
                    reference="tr_1", status=TRANSFER_PAID, amount_cents=500, client_reference="stl_1_a"
                ),
                TransferResult(reference="tr_2", status=TRANSFER_FAILED, amount_cents=700, client_reference=""),
            ],
        )
        self.assertEqual(
            stripe_mock.Transfer.list.call_args_list[1].kwargs,
            {"limit": 100, "starting_after": "tr_1"},
        )

    @override_settings(STRIPE_MODE="live", DEBUG=True)
    def test_live_mode_refused_in_debug(self):
        with self.assertRaisesRegex(RuntimeError, "LIVE Stripe not allowed in DEBUG mode"):
            StripePayoutProvider()
