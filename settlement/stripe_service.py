import stripe

from settlement.config import (
    CURRENCY,
    GATEWAY_MAX_NETWORK_RETRIES,
    GATEWAY_TIMEOUT_SECONDS,
    STRIPE_SECRET_KEY,
    STRIPE_WEBHOOK_SECRET,
)

stripe.api_key = STRIPE_SECRET_KEY
# Every gateway call is bounded; a timeout surfaces as stripe.APIConnectionError
stripe.default_http_client = stripe.RequestsClient(timeout=GATEWAY_TIMEOUT_SECONDS)
stripe.max_network_retries = GATEWAY_MAX_NETWORK_RETRIES


def create_charge(amount_cents: int, payment_id: str, payment_method_id: str):
    # payment_id doubles as idempotency key: a replayed request cannot charge twice
    return stripe.PaymentIntent.create(
        amount=amount_cents,
        currency=CURRENCY,
        payment_method=payment_method_id,
        confirm=True,
        automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
        metadata={"payment_id": payment_id},
        idempotency_key=payment_id
    )


def refund_charge(payment_intent_id: str, payment_id: str):
    return stripe.Refund.create(
        payment_intent=payment_intent_id,
        reason="requested_by_customer",
        idempotency_key=f"refund-{payment_id}"
    )


def construct_event(payload: bytes, signature: str):
    return stripe.Webhook.construct_event(payload, signature, STRIPE_WEBHOOK_SECRET)
