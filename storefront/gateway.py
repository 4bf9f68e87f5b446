import hashlib
import hmac
import logging
from typing import NamedTuple, Optional

import razorpay
import requests
from razorpay.errors import BadRequestError, ServerError
from razorpay.errors import GatewayError as RazorpayGatewayError

from storefront import config
from storefront.errors import GatewayError, PaymentGatewayUnavailable

logger = logging.getLogger(__name__)


class GatewayOrder(NamedTuple):
    id: str
    amount: int  # minor units
    currency: str


def _signature_matches(secret: str, message: bytes, signature: Optional[str]) -> bool:
    if not signature:
        return False
    expected = hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()
    # Compare bytes: str comparison refuses non-ASCII input.
    return hmac.compare_digest(
        expected.encode("ascii"),
        signature.encode("utf-8", "surrogateescape"),
    )


class RazorpayClient:
    """Creates remote orders and checks callback signatures.

    Built once at startup from the environment and passed into the order
    functions.
    """

    def __init__(self, key_id: str, key_secret: str, webhook_secret: str = ""):
        if not key_id or not key_secret:
            raise PaymentGatewayUnavailable()
        self.key_id = key_id
        self._key_secret = key_secret
        self._webhook_secret = webhook_secret
        self.sdk = razorpay.Client(auth=(key_id, key_secret))

    def create_order(self, amount: int, currency: str, receipt: str, notes: dict) -> GatewayOrder:
        try:
            data = self.sdk.order.create(data={
                "amount": amount,
                "currency": currency,
                "receipt": receipt,
                "notes": notes,
            })
            return GatewayOrder(id=data["id"], amount=int(data["amount"]), currency=data["currency"])
        except (BadRequestError, RazorpayGatewayError, ServerError,
                requests.RequestException, KeyError, TypeError, ValueError) as e:
            logger.exception("gateway order creation failed")
            raise GatewayError() from e

    def verify_payment_signature(self, order_id: str, payment_id: str, signature: Optional[str]) -> bool:
        return _signature_matches(
            self._key_secret,
            f"{order_id}|{payment_id}".encode("utf-8"),
            signature,
        )

    def verify_webhook_signature(self, body: bytes, signature: Optional[str]) -> bool:
        if not self._webhook_secret:
            raise PaymentGatewayUnavailable()
        return _signature_matches(self._webhook_secret, body, signature)

    def close(self) -> None:
        self.sdk.session.close()


def build_gateway() -> RazorpayClient:
    return RazorpayClient(
        key_id=config.RAZORPAY_KEY_ID,
        key_secret=config.RAZORPAY_KEY_SECRET,
        webhook_secret=config.RAZORPAY_WEBHOOK_SECRET,
    )
