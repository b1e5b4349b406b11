from datetime import date, timedelta
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured, ValidationError
from django.core.management import call_command
from django.test import SimpleTestCase, TestCase

from billing.models import AccessOverride, BillingAccount, Invoice, InvoiceStatus
from billing.store import list_open_invoices, mark_invoice_paid
from core.exceptions import AccessRestricted, InvalidState
from dunning.access import assert_write_allowed, get_access_state, resolve_access_state
from dunning.models import DunningLevel, DunningLog
from dunning.policy import DunningPolicy, get_effective_policy
from dunning.services import (
    evaluate_dunning,
    get_dunning_history,
    get_dunning_status,
    reactivate_on_payment,
)
from partners.models import Partner, Tenant

User = get_user_model()

TODAY = date(2024, 3, 21)


class ResolveAccessStateTests(SimpleTestCase):
    def test_levels_map_to_access(self):
        expectations = {
            0: (False, False),
            1: (False, False),
            2: (False, True),
            3: (True, True),
            4: (True, True),
            7: (True, True),
        }
        for level, (blocked, read_only) in expectations.items():
            with self.subTest(level=level):
                state = resolve_access_state(level)
                self.assertEqual(state.dunning_level, level)
                self.assertEqual(state.is_blocked, blocked)
                self.assertEqual(state.is_read_only, read_only)

    def test_blocked_always_implies_read_only(self):
        for level in range(0, 10):
            for override in (None, *AccessOverride.values):
                state = resolve_access_state(level, override)
                if state.is_blocked:
                    self.assertTrue(state.is_read_only, (level, override))

    def test_override_replaces_level_mapping(self):
        self.assertFalse(resolve_access_state(3, AccessOverride.NORMAL).is_read_only)
        self.assertTrue(resolve_access_state(0, AccessOverride.BLOCKED).is_blocked)
        read_only = resolve_access_state(0, AccessOverride.READ_ONLY)
        self.assertTrue(read_only.is_read_only)
        self.assertFalse(read_only.is_blocked)

    def test_status_label(self):
        self.assertEqual(resolve_access_state(0).status, "normal")
        self.assertEqual(resolve_access_state(2).status, "read_only")
        self.assertEqual(resolve_access_state(3).status, "blocked")

    def test_negative_level_is_rejected(self):
        with self.assertRaises(ValueError):
            resolve_access_state(-1)

    def test_unknown_override_is_rejected(self):
        with self.assertRaises(ValueError):
            resolve_access_state(0, "frozen")


class DunningPolicyTests(SimpleTestCase):
    def test_thresholds_are_inclusive(self):
        policy = DunningPolicy(grace_days=15, block_days=30, suspend_days=60)

        self.assertEqual(policy.level_for(0, 0), DunningLevel.NONE)
        self.assertEqual(policy.level_for(1, 1), DunningLevel.WARNING)
        self.assertEqual(policy.level_for(14, 1), DunningLevel.WARNING)
        self.assertEqual(policy.level_for(15, 1), DunningLevel.READ_ONLY)
        self.assertEqual(policy.level_for(29, 1), DunningLevel.READ_ONLY)
        self.assertEqual(policy.level_for(30, 2), DunningLevel.BLOCKED)
        self.assertEqual(policy.level_for(59, 1), DunningLevel.BLOCKED)
        self.assertEqual(policy.level_for(60, 1), DunningLevel.SUSPENDED)

    def test_level_is_monotonic_in_days_overdue(self):
        policy = DunningPolicy()
        levels = [policy.level_for(days, 1) for days in range(0, 120)]

        self.assertEqual(levels, sorted(levels))

    def test_rejects_non_monotonic_thresholds(self):
        with self.assertRaises(ImproperlyConfigured):
            DunningPolicy(grace_days=30, block_days=15, suspend_days=60)


class DunningTestCase(TestCase):
    def setUp(self):
        super().setUp()
        self._seq = 0
        self.partner = Partner.objects.create(
            name="Dunning Partner",
            email="owner.dunning@test.local",
        )
        self.account = BillingAccount.objects.create(partner=self.partner)

    def _make_invoice(
        self,
        *,
        days_overdue: int,
        amount_cents: int = 10_000,
        account=None,
        status: str = InvoiceStatus.PENDING,
        today: date = TODAY,
    ) -> Invoice:
        self._seq += 1
        return Invoice.objects.create(
            account=account or self.account,
            invoice_number=f"INV-{self._seq:05d}",
            amount_cents=amount_cents,
            due_date=today - timedelta(days=days_overdue),
            status=status,
        )


class EvaluateDunningTests(DunningTestCase):
    def test_read_only_then_reverted_after_payment(self):
        invoice = self._make_invoice(days_overdue=20)

        level, changed = evaluate_dunning(self.account.pk, today=TODAY)

        self.assertEqual((level, changed), (DunningLevel.READ_ONLY, True))
        state = get_access_state(self.account.pk)
        self.assertTrue(state.is_read_only)
        self.assertFalse(state.is_blocked)
        first_log = DunningLog.objects.get(account=self.account)
        self.assertEqual(first_log.action, "escalated_to_read_only")
        self.assertEqual(first_log.overdue_count, 1)
        self.assertEqual(first_log.total_overdue_cents, 10_000)
        self.assertEqual(first_log.max_days_overdue, 20)

        mark_invoice_paid(invoice.pk)
        level, changed = evaluate_dunning(self.account.pk, today=TODAY)

        self.assertEqual((level, changed), (DunningLevel.NONE, True))
        first_log.refresh_from_db()
        last_log = DunningLog.objects.filter(account=self.account).latest("id")
        self.assertEqual(last_log.action, "reverted_to_normal")
        self.assertIsNotNone(first_log.reversed_at)
        self.assertEqual(first_log.reversed_by_log_id, last_log.pk)
        self.assertIsNone(last_log.reversed_at)
        self.assertFalse(get_access_state(self.account.pk).is_read_only)

    def test_unchanged_level_writes_nothing(self):
        self._make_invoice(days_overdue=5)

        self.assertEqual(evaluate_dunning(self.account.pk, today=TODAY), (DunningLevel.WARNING, True))
        self.assertEqual(evaluate_dunning(self.account.pk, today=TODAY), (DunningLevel.WARNING, False))

        self.assertEqual(DunningLog.objects.filter(account=self.account).count(), 1)

    def test_reaching_grace_days_exactly_is_read_only(self):
        self._make_invoice(days_overdue=15)

        self.assertEqual(
            evaluate_dunning(self.account.pk, today=TODAY),
            (DunningLevel.READ_ONLY, True),
        )
        self.assertTrue(get_access_state(self.account.pk).is_read_only)

    def test_clean_account_stays_at_zero_without_logs(self):
        self._make_invoice(days_overdue=-10)

        self.assertEqual(evaluate_dunning(self.account.pk, today=TODAY), (0, False))
        self.assertFalse(DunningLog.objects.exists())

    def test_audit_trail_never_skips(self):
        self._make_invoice(days_overdue=0, today=date(2024, 1, 1))
        schedule = [
            date(2024, 1, 5),
            date(2024, 1, 20),
            date(2024, 2, 10),
            date(2024, 3, 15),
            date(2024, 3, 15),
        ]
        for day in schedule:
            evaluate_dunning(self.account.pk, today=day)
        for invoice in Invoice.objects.filter(account=self.account):
            mark_invoice_paid(invoice.pk)
        evaluate_dunning(self.account.pk, today=date(2024, 3, 16))

        logs = list(get_dunning_history(self.account.pk))
        self.assertEqual(
            [(log.previous_level, log.dunning_level) for log in logs],
            [(0, 1), (1, 2), (2, 3), (3, 4), (4, 0)],
        )
        for previous, current in zip(logs, logs[1:]):
            self.assertEqual(current.previous_level, previous.dunning_level)
        self.assertTrue(all(log.reversed_at for log in logs[:-1]))

    def test_partial_payment_reverses_only_lifted_levels(self):
        old = self._make_invoice(days_overdue=40)
        self._make_invoice(days_overdue=20)
        evaluate_dunning(self.account.pk, today=TODAY)
        self.assertTrue(get_access_state(self.account.pk).is_blocked)

        mark_invoice_paid(old.pk)
        level, changed = evaluate_dunning(self.account.pk, today=TODAY)

        self.assertEqual((level, changed), (DunningLevel.READ_ONLY, True))
        blocked_log, reverted_log = list(get_dunning_history(self.account.pk))
        self.assertEqual(reverted_log.action, "reverted_to_read_only")
        self.assertEqual(blocked_log.reversed_by_log_id, reverted_log.pk)
        state = get_access_state(self.account.pk)
        self.assertTrue(state.is_read_only)
        self.assertFalse(state.is_blocked)

    def test_canceled_and_paid_invoices_are_ignored(self):
        self._make_invoice(days_overdue=90, status=InvoiceStatus.CANCELED)
        self._make_invoice(days_overdue=90, status=InvoiceStatus.PAID)

        self.assertEqual(evaluate_dunning(self.account.pk, today=TODAY), (0, False))

    def test_partially_paid_counts_outstanding_amount(self):
        invoice = self._make_invoice(days_overdue=20, amount_cents=10_000)
        Invoice.objects.filter(pk=invoice.pk).update(
            status=InvoiceStatus.PARTIALLY_PAID,
            amount_paid_cents=4_000,
        )

        evaluate_dunning(self.account.pk, today=TODAY)

        self.assertEqual(DunningLog.objects.get(account=self.account).total_overdue_cents, 6_000)

    def test_account_override_of_grace_days(self):
        self.account.grace_days = 25
        self.account.save(update_fields=["grace_days"])
        self._make_invoice(days_overdue=20)

        self.assertEqual(evaluate_dunning(self.account.pk, today=TODAY), (DunningLevel.WARNING, True))
        self.assertEqual(get_effective_policy(self.account).block_days, 30)

    def test_started_at_tracks_dunning_episode(self):
        invoice = self._make_invoice(days_overdue=5)
        evaluate_dunning(self.account.pk, today=TODAY)
        self.account.refresh_from_db()
        started_at = self.account.dunning_started_at
        self.assertIsNotNone(started_at)
        self.assertEqual(self.account.current_dunning_level, DunningLevel.WARNING)

        evaluate_dunning(self.account.pk, today=TODAY + timedelta(days=20))
        self.account.refresh_from_db()
        self.assertEqual(self.account.dunning_started_at, started_at)

        mark_invoice_paid(invoice.pk)
        evaluate_dunning(self.account.pk, today=TODAY + timedelta(days=20))
        self.account.refresh_from_db()
        self.assertIsNone(self.account.dunning_started_at)
        self.assertEqual(self.account.current_dunning_level, 0)

    def test_lost_race_is_retried_against_fresh_state(self):
        self._make_invoice(days_overdue=20)
        calls = []

        def concurrent_writer(account):
            calls.append(account.pk)
            if len(calls) == 1:
                BillingAccount.objects.filter(pk=account.pk).update(current_dunning_level=9)
            return DunningPolicy()

        with patch("dunning.services.get_effective_policy", side_effect=concurrent_writer):
            level, changed = evaluate_dunning(self.account.pk, today=TODAY)

        self.assertEqual((level, changed), (DunningLevel.READ_ONLY, True))
        self.assertEqual(len(calls), 2)
        self.assertEqual(DunningLog.objects.filter(account=self.account).count(), 1)
        self.account.refresh_from_db()
        self.assertEqual(self.account.current_dunning_level, DunningLevel.READ_ONLY)


class AccessGateTests(DunningTestCase):
    def test_assert_write_allowed(self):
        self.assertEqual(assert_write_allowed(self.account.pk).status, "normal")

        self._make_invoice(days_overdue=20)
        evaluate_dunning(self.account.pk, today=TODAY)

        with self.assertRaises(AccessRestricted) as ctx:
            assert_write_allowed(self.account.pk)
        self.assertTrue(ctx.exception.access_state.is_read_only)
        self.assertIsInstance(ctx.exception, PermissionError)

    def test_override_unblocks_account(self):
        self._make_invoice(days_overdue=45)
        evaluate_dunning(self.account.pk, today=TODAY)
        self.assertTrue(get_access_state(self.account.pk).is_blocked)

        self.account.access_override = AccessOverride.NORMAL
        self.account.save(update_fields=["access_override"])

        state = assert_write_allowed(self.account.pk)
        self.assertEqual(state.dunning_level, DunningLevel.BLOCKED)
        self.assertFalse(state.is_read_only)


class DunningStatusAndReactivationTests(DunningTestCase):
    def test_status_preview_does_not_write(self):
        self._make_invoice(days_overdue=35, amount_cents=3_000)
        self._make_invoice(days_overdue=2, amount_cents=2_000)

        status = get_dunning_status(self.account.pk, today=TODAY)

        self.assertEqual(status.current_level, 0)
        self.assertEqual(status.suggested_level, DunningLevel.BLOCKED)
        self.assertTrue(status.needs_update)
        self.assertEqual(status.overdue.overdue_count, 2)
        self.assertEqual(status.overdue.total_overdue_cents, 5_000)
        self.assertEqual(status.overdue.max_days_overdue, 35)
        self.assertFalse(status.access_state.is_read_only)
        self.assertFalse(DunningLog.objects.exists())

    def test_reactivate_on_payment(self):
        invoices = [self._make_invoice(days_overdue=40), self._make_invoice(days_overdue=10)]
        evaluate_dunning(self.account.pk, today=TODAY)

        level, changed = reactivate_on_payment(
            self.account.pk, [i.pk for i in invoices], today=TODAY
        )

        self.assertEqual((level, changed), (0, True))
        self.assertEqual(list_open_invoices(self.account.pk), [])
        self.assertFalse(get_access_state(self.account.pk).is_blocked)

    def test_reactivate_rejects_foreign_invoice(self):
        other_partner = Partner.objects.create(name="Other", email="other@test.local")
        other_account = BillingAccount.objects.create(partner=other_partner)
        foreign = self._make_invoice(days_overdue=20, account=other_account)

        with self.assertRaises(InvalidState):
            reactivate_on_payment(self.account.pk, [foreign.pk], today=TODAY)

        foreign.refresh_from_db()
        self.assertEqual(foreign.status, InvoiceStatus.PENDING)

    def test_mark_canceled_invoice_paid_is_rejected(self):
        invoice = self._make_invoice(days_overdue=5, status=InvoiceStatus.CANCELED)

        with self.assertRaises(InvalidState):
            mark_invoice_paid(invoice.pk)


class DunningLogImmutabilityTests(DunningTestCase):
    def setUp(self):
        super().setUp()
        self._make_invoice(days_overdue=20)
        evaluate_dunning(self.account.pk, today=TODAY)
        self.log = DunningLog.objects.get(account=self.account)

    def test_log_fields_cannot_change(self):
        self.log.action = "rewritten"

        with self.assertRaisesRegex(ValidationError, "append-only"):
            self.log.save()

    def test_log_cannot_be_deleted(self):
        with self.assertRaises(ValidationError):
            self.log.delete()

    def test_billing_account_requires_single_owner(self):
        tenant = Tenant.objects.create(partner=self.partner, name="Store 1")

        with self.assertRaises(ValidationError):
            BillingAccount(partner=self.partner, tenant=tenant).full_clean()


class DunningViewsAndCommandTests(DunningTestCase):
    def setUp(self):
        super().setUp()
        self._make_invoice(days_overdue=20)
        evaluate_dunning(self.account.pk, today=TODAY)

    def test_access_state_allows_owner(self):
        user = User.objects.create_user(
            username="owner", email="owner.dunning@test.local", password="testpass123"
        )
        self.client.force_login(user)

        response = self.client.get(f"/dunning/account/{self.account.pk}/access-state/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "read_only")

    def test_tenant_account_history_allows_partner_owner(self):
        tenant = Tenant.objects.create(partner=self.partner, name="Store 1")
        tenant_account = BillingAccount.objects.create(tenant=tenant)
        user = User.objects.create_user(
            username="owner", email="owner.dunning@test.local", password="testpass123"
        )
        self.client.force_login(user)

        response = self.client.get(f"/dunning/account/{tenant_account.pk}/history/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["history"], [])

    def test_history_rejects_other_users(self):
        user = User.objects.create_user(
            username="worker", email="worker@test.local", password="testpass123"
        )
        self.client.force_login(user)

        response = self.client.get(f"/dunning/account/{self.account.pk}/history/")

        self.assertEqual(response.status_code, 403)

    def test_evaluate_dunning_command(self):
        call_command("evaluate_dunning", today="2024-05-01")

        self.assertEqual(get_access_state(self.account.pk).dunning_level, DunningLevel.SUSPENDED)
