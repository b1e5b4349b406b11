import logging
from dataclasses import dataclass
from typing import Iterable, Protocol

import stripe
from django.conf import settings

from core.exceptions import ProviderError, ProviderTimeout
from core.stripe_client import get_stripe

logger = logging.getLogger(__name__)

TRANSFER_PAID = "paid"
TRANSFER_FAILED = "failed"
TRANSFER_PENDING = "pending"
TRANSFER_NOT_FOUND = "not_found"


@dataclass(frozen=True)
class TransferResult:
    reference: str
    status: str
    amount_cents: int | None = None
    client_reference: str = ""


class PayoutProvider(Protocol):
    environment: str

    def transfer(
        self,
        *,
        amount_cents: int,
        destination: str,
        currency: str,
        client_reference: str,
    ) -> TransferResult: ...

    def query_status(self, client_reference: str) -> TransferResult: ...

    def list_transfers(self) -> Iterable[TransferResult]: ...


def _transfer_status(transfer) -> str:
    if transfer.get("reversed"):
        return TRANSFER_FAILED
    return TRANSFER_PAID


class StripePayoutProvider:
    """
    Stripe Connect transfers. The engine's client_reference is used both as
    the idempotency key and as transfer_group, so an unknown outcome can be
    looked up later without the Stripe transfer id.
    """

    def __init__(self):
        if settings.STRIPE_MODE == "live" and settings.DEBUG:
            raise RuntimeError("LIVE Stripe not allowed in DEBUG mode")
        self.environment = settings.STRIPE_MODE

    def transfer(self, *, amount_cents, destination, currency, client_reference):
        client = get_stripe()
        try:
            transfer = client.Transfer.create(
                amount=int(amount_cents),
                currency=currency.lower(),
                destination=destination,
                transfer_group=client_reference,
                metadata={"client_reference": client_reference},
                idempotency_key=client_reference,
            )
        except (stripe.APIConnectionError, stripe.APIError) as exc:
            logger.warning(
                "stripe transfer outcome unknown client_reference=%s error=%s",
                client_reference,
                exc,
            )
            raise ProviderTimeout(f"Stripe transfer outcome unknown: {exc}") from exc
        except stripe.StripeError as exc:
            logger.warning(
                "stripe transfer rejected client_reference=%s error=%s",
                client_reference,
                exc,
            )
            raise ProviderError(f"Stripe transfer failed: {exc}") from exc

        return TransferResult(reference=transfer.id, status=_transfer_status(transfer))

    def query_status(self, client_reference):
        client = get_stripe()
        try:
            page = client.Transfer.list(transfer_group=client_reference, limit=1)
        except stripe.StripeError as exc:
            raise ProviderTimeout(f"Stripe status query failed: {exc}") from exc

        transfers = list(page.data)
        if not transfers:
            return TransferResult(reference="", status=TRANSFER_NOT_FOUND)
        transfer = transfers[0]
        return TransferResult(reference=transfer.id, status=_transfer_status(transfer))

    def list_transfers(self):
        client = get_stripe()
        starting_after = None
        has_more = True

        while has_more:
            params = {"limit": 100}
            if starting_after:
                params["starting_after"] = starting_after
            try:
                response = client.Transfer.list(**params)
            except stripe.StripeError as exc:
                raise ProviderError(f"Stripe transfer listing failed: {exc}") from exc

            for transfer in response.data:
                yield TransferResult(
                    reference=transfer.id,
                    status=_transfer_status(transfer),
                    amount_cents=int(transfer.amount),
                    client_reference=transfer.get("transfer_group") or "",
                )

            has_more = bool(response.has_more) and bool(response.data)
            if has_more:
                starting_after = response.data[-1].id


def get_payout_provider() -> PayoutProvider:
    return StripePayoutProvider()
