import logging

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.models import CLOSED_INVOICE_STATUSES, Invoice, InvoiceStatus
from core.exceptions import DataInconsistency, InvalidState

logger = logging.getLogger(__name__)


def list_open_invoices(account_id: int) -> list[Invoice]:
    """Invoices of the account that are neither paid nor canceled."""
    try:
        return list(
            Invoice.objects.filter(account_id=account_id)
            .exclude(status__in=CLOSED_INVOICE_STATUSES)
            .order_by("due_date", "id")
        )
    except DatabaseError as exc:
        raise DataInconsistency(
            f"Invoice store unavailable for account {account_id}: {exc}"
        ) from exc


@transaction.atomic
def mark_invoice_paid(invoice_id: int) -> Invoice:
    invoice = Invoice.objects.select_for_update().get(pk=invoice_id)

    if invoice.status == InvoiceStatus.PAID:
        return invoice
    if invoice.status == InvoiceStatus.CANCELED:
        raise InvalidState(f"Invoice {invoice.invoice_number} is canceled.")

    invoice.status = InvoiceStatus.PAID
    invoice.amount_paid_cents = invoice.amount_cents
    invoice.paid_at = timezone.now()
    invoice.save(update_fields=["status", "amount_paid_cents", "paid_at", "updated_at"])

    logger.info(
        "invoice paid invoice_id=%s account_id=%s amount=%s",
        invoice.pk,
        invoice.account_id,
        invoice.amount_cents,
    )
    return invoice
