"""
Razorpay adapter.

Only the three gateway calls the store needs: order creation, checkout
signature verification and webhook signature verification.
"""
import logging
from typing import Any, Dict, Optional

import razorpay
from razorpay.errors import SignatureVerificationError

import config
from errors import GatewayError, ServiceUnavailable

logger = logging.getLogger(__name__)

RECEIPT_MAX_LENGTH = 40


class PaymentGateway:
    def __init__(self, key_id: str, key_secret: str, webhook_secret: Optional[str] = None):
        self.key_id = key_id
        self.webhook_secret = webhook_secret
        self.client = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, receipt: str, notes: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        """Create a gateway order. ``amount`` is in paise."""
        payload = {
            "amount": amount,
            "currency": config.CURRENCY,
            "receipt": receipt[:RECEIPT_MAX_LENGTH],
            "payment_capture": 1,
            "notes": notes or {},
        }
        try:
            order = self.client.order.create(data=payload)
        except Exception as e:
            logger.error("Razorpay order creation failed for receipt %s: %s", payload["receipt"], e)
            raise GatewayError(f"Failed to create payment order: {e}")
        logger.info("Razorpay order %s created (%s paise)", order.get("id"), amount)
        return {"id": order["id"], "amount": order.get("amount", amount), "currency": order.get("currency", config.CURRENCY)}

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        try:
            self.client.utility.verify_payment_signature({
                "razorpay_order_id": order_id,
                "razorpay_payment_id": payment_id,
                "razorpay_signature": signature,
            })
        except SignatureVerificationError:
            logger.warning("Invalid payment signature for gateway order %s", order_id)
            return False
        return True

    def verify_webhook_signature(self, body: str, signature: str) -> bool:
        if not self.webhook_secret:
            raise ServiceUnavailable("Webhook secret not configured")
        try:
            self.client.utility.verify_webhook_signature(body, signature, self.webhook_secret)
        except SignatureVerificationError:
            logger.warning("Invalid webhook signature")
            return False
        return True


_gateway: Optional[PaymentGateway] = None


def get_gateway() -> PaymentGateway:
    global _gateway
    if _gateway is None:
        if not (config.RAZORPAY_KEY_ID and config.RAZORPAY_KEY_SECRET):
            raise ServiceUnavailable("Payment gateway not configured")
        _gateway = PaymentGateway(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET, config.RAZORPAY_WEBHOOK_SECRET)
    return _gateway
