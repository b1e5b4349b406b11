import stripe
from django.conf import settings

stripe.api_key = settings.STRIPE_SECRET_KEY
stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
stripe.default_http_client = stripe.RequestsClient(
    timeout=settings.PAYOUT_PROVIDER_TIMEOUT_SECONDS,
)


def get_stripe():
    return stripe
