"""
Razorpay payment gateway client.

Constructed with explicit credentials and handed to the checkout service;
there is no module-level client. Every transport or HTTP failure surfaces as
UpstreamFailureError so callers can leave local state untouched.
"""
import hmac
import hashlib
import logging
from functools import lru_cache
from typing import Any, Dict, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from config import GATEWAY_TIMEOUT, RAZORPAY_API_URL, RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET
from errors import UpstreamFailureError

logger = logging.getLogger(__name__)


def compute_signature(secret: str, gateway_order_id: str, gateway_payment_id: str) -> str:
    """HMAC-SHA256 over "<order id>|<payment id>", hex encoded."""
    message = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, base_url: str = RAZORPAY_API_URL,
                 timeout: float = GATEWAY_TIMEOUT, session: Optional[requests.Session] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (key_id, key_secret)
        # Only idempotent reads are retried; creating an order is not.
        retries = Retry(total=2, backoff_factor=0.3, status_forcelist=(502, 503, 504), allowed_methods=("GET",))
        self.session.mount("https://", HTTPAdapter(max_retries=retries))

    def _call(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        logger.debug("Gateway %s %s", method, url)
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.RequestException as e:
            logger.warning("Gateway %s %s failed: %s", method, path, e)
            raise UpstreamFailureError("Payment gateway request failed", {"path": path}) from e
        except ValueError as e:
            raise UpstreamFailureError("Payment gateway returned an invalid response", {"path": path}) from e

    def create_order(self, amount: int, currency: str, receipt: str) -> Dict[str, Any]:
        """Create a gateway order for `amount` minor currency units."""
        data = self._call("POST", "/orders", json={"amount": amount, "currency": currency, "receipt": receipt})
        if not data.get("id"):
            raise UpstreamFailureError("Payment gateway order creation failed", data)
        return data

    def fetch_payment(self, payment_id: str) -> Dict[str, Any]:
        return self._call("GET", f"/payments/{payment_id}")

    def verify_signature(self, gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
        expected = compute_signature(self.key_secret, gateway_order_id, gateway_payment_id)
        return hmac.compare_digest(expected.encode(), (signature or "").encode())


@lru_cache(maxsize=1)
def get_gateway() -> RazorpayClient:
    """FastAPI dependency building the gateway client from configuration."""
    return RazorpayClient(RAZORPAY_KEY_ID, RAZORPAY_KEY_SECRET)
