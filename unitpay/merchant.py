import os
import time
import logging

import requests

from unitpay.errors import NetworkError
from unitpay.metadata import MERCHANT_INFO_PATH

logger = logging.getLogger("UnitPayMerchant")


class LoggingNotifier:
    """UI signal sink that writes to the log; swap in a real UI adapter where one exists."""

    def show_spinner(self, text):
        logger.info(f"[ui] {text}")

    def hide_spinner(self):
        logger.debug("[ui] spinner hidden")

    def show_error(self, text):
        logger.error(f"[ui] {text}")

    def show_success(self, text):
        logger.info(f"[ui] {text}")


def _get_with_retry(session, url, retries, backoff, timeout):
    for attempt in range(retries + 1):
        try:
            return session.get(url, timeout=timeout)
        except requests.RequestException as e:
            if attempt >= retries:
                raise NetworkError(str(e)) from e
            wait = backoff * 2 ** attempt
            logger.warning(f"[merchant] Request to {url} failed ({e}) - retrying in {wait:.1f}s")
            time.sleep(wait)


def fetch_merchant_info(payment_intent_id, api_base_url=None, notifier=None, session=None,
                        retries=2, backoff=0.5, timeout=10):
    """
    Resolves the merchant PayPal email for a payment intent.

    Returns the email, or None when the backend answers non-2xx, the payload has no
    ``data.email``, or the request cannot be completed. Never raises; each failed resolution
    reports exactly one error to the notifier.
    """
    notifier = notifier or LoggingNotifier()
    session = session or requests.Session()
    base = (api_base_url or os.getenv("API_BASE_URL", "http://localhost:4000/api")).rstrip("/")
    url = base + MERCHANT_INFO_PATH.format(payment_intent_id=payment_intent_id)

    logger.info(f"[merchant] Fetching merchant info for payment intent {payment_intent_id}")
    notifier.show_spinner("Fetching merchant info...")
    try:
        response = _get_with_retry(session, url, retries, backoff, timeout)
    except NetworkError as e:
        notifier.hide_spinner()
        notifier.show_error(f"Error fetching merchant info: {e}")
        return None
    notifier.hide_spinner()

    try:
        body = response.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        body = {}

    if not 200 <= response.status_code < 300:
        logger.error(f"[merchant] {url} returned {response.status_code}: {body}")
        notifier.show_error(f"Failed to fetch merchant info: {body.get('message') or 'unknown error'}")
        return None

    data = body.get("data")
    email = data.get("email") if isinstance(data, dict) else None
    if not email or not isinstance(email, str):
        notifier.show_error("Could not get a valid merchant email")
        return None

    return email
