"""Stripe SDK wrappers: checkout sessions, refunds, transfers and webhook verification."""

import json
import os
from typing import Any, Dict, Optional

import stripe
from dotenv import load_dotenv
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from src.utils.logger import stripe_logger

load_dotenv()

WEBHOOK_TOLERANCE_SECONDS = 300

# Connection drops and 429s are safe to resend: every call carries an idempotency key
_RETRYABLE = (stripe.APIConnectionError, stripe.RateLimitError)

stripe_retry = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(min=0.5, max=4),
    retry=retry_if_exception_type(_RETRYABLE),
    reraise=True,
)


def _configure() -> None:
    stripe.api_key = os.environ.get("STRIPE_SECRET_KEY", "")


def get_webhook_secret() -> str:
    return os.environ.get("STRIPE_WEBHOOK_SECRET", "")


@stripe_retry
def stripe_create_checkout_session(
    params: Dict[str, Any], idempotency_key: str
) -> Dict[str, Any]:
    _configure()
    session = stripe.checkout.Session.create(idempotency_key=idempotency_key, **params)
    stripe_logger.info(f"💳 Checkout session created: {session['id']}")
    return session


@stripe_retry
def stripe_create_refund(
    payment_intent: str,
    idempotency_key: str,
    amount: Optional[int] = None,
    reason: str = "requested_by_customer",
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    _configure()
    params: Dict[str, Any] = {"payment_intent": payment_intent, "reason": reason}
    if amount is not None:
        params["amount"] = int(amount)
    if metadata:
        params["metadata"] = metadata
    refund = stripe.Refund.create(idempotency_key=idempotency_key, **params)
    stripe_logger.info(
        f"💳 Refund {refund['id']} for {payment_intent} ({refund.get('amount')} cents)"
    )
    return refund


@stripe_retry
def stripe_create_transfer(
    amount: int,
    destination: str,
    transfer_group: str,
    idempotency_key: str,
    currency: str = "usd",
    metadata: Optional[Dict[str, str]] = None,
) -> Dict[str, Any]:
    _configure()
    transfer = stripe.Transfer.create(
        idempotency_key=idempotency_key,
        amount=int(amount),
        currency=currency,
        destination=destination,
        transfer_group=transfer_group,
        metadata=metadata or {},
    )
    stripe_logger.info(f"💳 Transfer {transfer['id']} -> {destination} ({amount} cents)")
    return transfer


def stripe_verify_webhook(payload: bytes, sig_header: Optional[str]) -> Dict[str, Any]:
    """
    Verify a webhook body against STRIPE_WEBHOOK_SECRET and decode it.

    Raises:
        ValueError: secret not configured, header missing or body not JSON
        stripe.SignatureVerificationError: signature mismatch or stale timestamp
    """
    secret = get_webhook_secret()
    if not secret:
        raise ValueError("STRIPE_WEBHOOK_SECRET is not configured")
    if not sig_header:
        raise ValueError("Missing stripe-signature header")

    text = payload.decode("utf-8")
    stripe.WebhookSignature.verify_header(
        text, sig_header, secret, WEBHOOK_TOLERANCE_SECONDS
    )
    event = json.loads(text)
    if not isinstance(event, dict):
        raise ValueError("Webhook body is not a JSON object")
    return event
