from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable

from django.db import DatabaseError
from django.utils import timezone

from core.exceptions import ConcurrencyConflict, DataInconsistency
from ledger.models import TransactionRecord

logger = logging.getLogger(__name__)


def fetch_unsettled(
    partner_id: int,
    period_start: datetime,
    period_end: datetime,
    *,
    lock: bool = False,
) -> list[TransactionRecord]:
    """
    Unsettled records of a partner with occurred_at in [period_start, period_end).
    With lock=True the rows are locked until the surrounding transaction ends.
    """
    qs = TransactionRecord.objects.filter(
        partner_id=partner_id,
        settled=False,
        occurred_at__gte=period_start,
        occurred_at__lt=period_end,
    ).order_by("occurred_at", "id")
    if lock:
        qs = qs.select_for_update()

    try:
        return list(qs)
    except DatabaseError as exc:
        raise DataInconsistency(
            f"Transaction feed unavailable for partner {partner_id}: {exc}"
        ) from exc


def mark_settled(transaction_ids: Iterable[int], settlement) -> int:
    """
    Flips settled=True and links the records to the settlement. Only rows
    still unsettled are touched; if any of them was already settled by a
    concurrent writer, ConcurrencyConflict is raised so the caller can roll
    back its transaction.
    """
    ids = sorted(set(int(pk) for pk in transaction_ids))
    if not ids:
        return 0

    updated = TransactionRecord.objects.filter(pk__in=ids, settled=False).update(
        settled=True,
        settlement=settlement,
        settled_at=timezone.now(),
    )
    if updated != len(ids):
        logger.warning(
            "mark_settled conflict settlement_id=%s expected=%s updated=%s",
            getattr(settlement, "pk", None),
            len(ids),
            updated,
        )
        raise ConcurrencyConflict(
            f"{len(ids) - updated} transaction(s) were settled concurrently."
        )
    return updated
