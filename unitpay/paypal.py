# unitpay/paypal.py

import os
import time
import logging
from decimal import Decimal, InvalidOperation

import requests
from requests.auth import HTTPBasicAuth

from unitpay.errors import NetworkError
from unitpay.metadata import AMOUNT_TOLERANCE
from unitpay.models import VerificationRequest

SANDBOX_API = "https://api-m.sandbox.paypal.com"
LIVE_API = "https://api-m.paypal.com"

DEFAULT_TOKEN_TTL = 3600
TOKEN_EXPIRY_MARGIN = 60


class PayPalModule:
    def __init__(self, sandbox=True, client_id=None, client_secret=None, session=None, timeout=15):
        self.client_id = client_id or os.getenv("PAYPAL_CLIENT_ID")
        self.client_secret = client_secret or os.getenv("PAYPAL_CLIENT_SECRET")
        if not self.client_id or not self.client_secret:
            raise RuntimeError("Missing PayPal credentials in environment variables")

        self.api_base = SANDBOX_API if sandbox else LIVE_API
        self.session = session or requests.Session()
        self.timeout = timeout
        self._access_token = None
        self._token_expires_at = 0.0

        self.logger = logging.getLogger("UnitPayPayPal")

    @property
    def access_token(self):
        if self._access_token is None or time.monotonic() >= self._token_expires_at:
            self._access_token, expires_in = self._get_access_token()
            self._token_expires_at = time.monotonic() + max(expires_in - TOKEN_EXPIRY_MARGIN, 0)
        return self._access_token

    def _get_access_token(self):
        try:
            res = self.session.post(
                f"{self.api_base}/v1/oauth2/token",
                headers={"Accept": "application/json", "Accept-Language": "en_US"},
                data={"grant_type": "client_credentials"},
                auth=HTTPBasicAuth(self.client_id, self.client_secret),
                timeout=self.timeout,
            )
            res.raise_for_status()
            body = res.json()
            token = body["access_token"]
            expires_in = float(body.get("expires_in", DEFAULT_TOKEN_TTL))
        except requests.RequestException as e:
            raise NetworkError(f"PayPal token request failed: {e}") from e
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            raise NetworkError(f"PayPal token response is malformed: {e!r}") from e
        if not isinstance(token, str) or not token:
            raise NetworkError("PayPal token response has no access_token")
        return token, expires_in

    def _fetch_order(self, order_id):
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.access_token}"
        }
        return self.session.get(f"{self.api_base}/v2/checkout/orders/{order_id}", headers=headers, timeout=self.timeout)

    def get_order(self, order_id: str):
        try:
            res = self._fetch_order(order_id)
            if res.status_code == 401:
                # token revoked or expired early
                self.logger.warning(f"[PayPal] Token rejected fetching order {order_id}, refreshing")
                self._access_token = None
                res = self._fetch_order(order_id)
            res.raise_for_status()
            order = res.json()
        except requests.RequestException as e:
            raise NetworkError(f"PayPal order {order_id} lookup failed: {e}") from e
        except ValueError as e:
            raise NetworkError(f"PayPal order {order_id} response is not JSON: {e}") from e
        if not isinstance(order, dict):
            raise NetworkError(f"PayPal order {order_id} response is not an object")
        self.logger.info(f"[PayPal] Order {order_id} status = {order.get('status')}")
        return order


def summarize_order(order):
    """Pulls payer, payee, amount and status out of a PayPal order payload."""
    unit = (order.get("purchase_units") or [{}])[0]
    return {
        "payer_email": (order.get("payer") or {}).get("email_address"),
        "merchant_email": (unit.get("payee") or {}).get("email_address"),
        "amount": (unit.get("amount") or {}).get("value"),
        "currency": (unit.get("amount") or {}).get("currency_code"),
        "status": order.get("status"),
    }


class PayPalOrderVerifier:
    """
    Checks a PayPal order against a verification request.

    The order must be COMPLETED, paid by the counterparty to the merchant, for the requested
    amount within one cent.
    """

    def __init__(self, paypal: PayPalModule, tolerance=AMOUNT_TOLERANCE):
        self.paypal = paypal
        self.tolerance = Decimal(str(tolerance))
        self.logger = logging.getLogger("UnitPayPayPal")

    def __call__(self, request: VerificationRequest) -> bool:
        try:
            order = self.paypal.get_order(request.order_id)
        except NetworkError as e:
            self.logger.warning(f"[PayPal] Could not load order {request.order_id}: {e}")
            return False

        if not isinstance(order, dict):
            self.logger.warning(f"[PayPal] Order {request.order_id} response is not an object")
            return False
        try:
            summary = summarize_order(order)
        except (AttributeError, TypeError, IndexError) as e:
            self.logger.warning(f"[PayPal] Order {request.order_id} response has an unexpected shape: {e}")
            return False
        if not all(isinstance(summary[k], str) and summary[k] for k in ("payer_email", "merchant_email", "status")) \
                or not summary["amount"]:
            self.logger.warning(f"[PayPal] Order {request.order_id} response is missing fields: {summary}")
            return False

        if summary["merchant_email"].lower() != request.merchant_email.lower():
            self.logger.info(f"[PayPal] Merchant mismatch on {request.order_id}: {summary['merchant_email']}")
            return False
        if summary["payer_email"].lower() != request.counterparty_email.lower():
            self.logger.info(f"[PayPal] Payer mismatch on {request.order_id}: {summary['payer_email']}")
            return False

        try:
            paid = Decimal(str(summary["amount"]))
        except InvalidOperation:
            paid = None
        if paid is None or not paid.is_finite():
            self.logger.warning(f"[PayPal] Unparseable amount on {request.order_id}: {summary['amount']}")
            return False
        if abs(paid - request.amount) > self.tolerance:
            self.logger.info(f"[PayPal] Amount mismatch on {request.order_id}: expected {request.amount}, got {paid}")
            return False

        if summary["status"] != "COMPLETED":
            self.logger.info(f"[PayPal] Order {request.order_id} is {summary['status']}, not COMPLETED")
            return False

        return True
