"""
Razorpay payment gateway.

Amounts cross this boundary in rupees and are converted to paise for the
gateway.
"""

import logging
import os
from typing import Any, Dict

logger = logging.getLogger(__name__)

RAZORPAY_KEY_ID = os.getenv("RAZORPAY_KEY_ID")
RAZORPAY_KEY_SECRET = os.getenv("RAZORPAY_KEY_SECRET")
CURRENCY = "INR"


class PaymentError(Exception):
    pass


def get_client():
    if not (RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET):
        raise PaymentError("Payment gateway not configured")
    import razorpay  # type: ignore
    return razorpay.Client(auth=(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET))


def create_payment_order(amount: float, receipt: str) -> Dict[str, Any]:
    client = get_client()
    from razorpay.errors import BadRequestError, GatewayError, ServerError  # type: ignore
    try:
        order = client.order.create({
            "amount": to_paise(amount),
            "currency": CURRENCY,
            "receipt": receipt,
            "payment_capture": 1,
        })
    except (BadRequestError, GatewayError, ServerError) as e:
        logger.error("Razorpay order creation failed: %s", e)
        raise PaymentError(f"Failed to create payment order: {e}") from e
    return {
        "order_id": order["id"],
        "amount": order["amount"],
        "currency": order.get("currency", CURRENCY),
        "key_id": RAZORPAY_KEY_ID,
    }


def verify_payment_signature(razorpay_order_id: str, razorpay_payment_id: str, razorpay_signature: str) -> bool:
    client = get_client()
    from razorpay.errors import SignatureVerificationError  # type: ignore
    try:
        client.utility.verify_payment_signature({
            "razorpay_order_id": razorpay_order_id,
            "razorpay_payment_id": razorpay_payment_id,
            "razorpay_signature": razorpay_signature,
        })
    except SignatureVerificationError:
        logger.warning("Razorpay signature mismatch for order %s", razorpay_order_id)
        return False
    return True


def fetch_payment_order(razorpay_order_id: str) -> Dict[str, Any]:
    """Gateway view of an order: amount (paise), amount_paid and status."""
    client = get_client()
    from razorpay.errors import BadRequestError, GatewayError, ServerError  # type: ignore
    try:
        order = client.order.fetch(razorpay_order_id)
    except BadRequestError as e:
        logger.warning("Razorpay order %s not found: %s", razorpay_order_id, e)
        raise PaymentError("Payment order not found") from e
    except (GatewayError, ServerError) as e:
        logger.error("Razorpay order fetch failed: %s", e)
        raise PaymentError(f"Failed to fetch payment order: {e}") from e
    return {
        "order_id": order["id"],
        "amount": order["amount"],
        "amount_paid": order.get("amount_paid", 0),
        "status": order.get("status"),
    }


def to_paise(amount: float) -> int:
    return int(round(amount * 100))
