from datetime import datetime, timedelta, timezone as dt_timezone

from django.core.exceptions import ValidationError
from django.test import TestCase

from core.exceptions import ConcurrencyConflict
from ledger.models import TransactionRecord
from ledger.reader import fetch_unsettled, mark_settled
from partners.models import Partner
from settlements.models import Settlement

START = datetime(2024, 1, 1, tzinfo=dt_timezone.utc)
END = datetime(2024, 2, 1, tzinfo=dt_timezone.utc)


class LedgerReaderTests(TestCase):
    def setUp(self):
        self.partner = Partner.objects.create(name="Ledger Partner", email="ledger@test.local")
        self.settlement = Settlement.objects.create(
            partner=self.partner,
            period_start=START,
            period_end=END,
            currency="BRL",
        )

    def _make_record(self, gross_cents=1_000, occurred_at=None, partner=None):
        return TransactionRecord.objects.create(
            partner=partner or self.partner,
            gross_cents=gross_cents,
            payment_method="pix",
            occurred_at=occurred_at or START + timedelta(days=1),
        )

    def test_fetch_unsettled_uses_half_open_period(self):
        first = self._make_record(occurred_at=START)
        last = self._make_record(occurred_at=END - timedelta(microseconds=1))
        self._make_record(occurred_at=END)
        self._make_record(occurred_at=START - timedelta(microseconds=1))

        records = fetch_unsettled(self.partner.pk, START, END)

        self.assertEqual([r.pk for r in records], [first.pk, last.pk])

    def test_fetch_unsettled_skips_settled_and_other_partners(self):
        settled = self._make_record()
        mark_settled([settled.pk], self.settlement)
        other = Partner.objects.create(name="Other", email="other@test.local")
        self._make_record(partner=other)
        pending = self._make_record()

        records = fetch_unsettled(self.partner.pk, START, END, lock=True)

        self.assertEqual([r.pk for r in records], [pending.pk])

    def test_mark_settled_links_records(self):
        records = [self._make_record(), self._make_record()]

        updated = mark_settled([r.pk for r in records], self.settlement)

        self.assertEqual(updated, 2)
        for record in records:
            record.refresh_from_db()
            self.assertTrue(record.settled)
            self.assertEqual(record.settlement_id, self.settlement.pk)
            self.assertIsNotNone(record.settled_at)

    def test_mark_settled_detects_concurrent_settlement(self):
        record = self._make_record()
        mark_settled([record.pk], self.settlement)

        with self.assertRaises(ConcurrencyConflict):
            mark_settled([record.pk], self.settlement)

    def test_mark_settled_with_no_ids(self):
        self.assertEqual(mark_settled([], self.settlement), 0)

    def test_settled_record_is_immutable(self):
        record = self._make_record()
        mark_settled([record.pk], self.settlement)
        record.refresh_from_db()

        record.gross_cents = 1
        with self.assertRaisesRegex(ValidationError, "settled transaction"):
            record.save()
