"""
QRIS payment requests against the payment processor REST API.

Env vars:
  PAYMENT_GATEWAY_URL            API base (default: https://api.xendit.co)
  PAYMENT_GATEWAY_SECRET_KEY     secret key, sent as the basic-auth user
  PAYMENT_CURRENCY               single settlement currency (default: IDR)
  PAYMENT_GATEWAY_TIMEOUT        seconds per attempt (default: 15)
  PAYMENT_GATEWAY_MAX_ATTEMPTS   attempts for retryable failures (default: 2)
  PAYMENT_DRY_RUN                '1' to return fake QR payloads without network
"""
import logging
import os
import time
from typing import Any, Dict, NamedTuple, Optional

import requests

from pos_errors import GatewayRejected, GatewayTimeout, GatewayUnavailable

logger = logging.getLogger(__name__)

GATEWAY_URL = os.environ.get("PAYMENT_GATEWAY_URL", "https://api.xendit.co")
GATEWAY_SECRET_KEY = os.environ.get("PAYMENT_GATEWAY_SECRET_KEY")
CURRENCY = os.environ.get("PAYMENT_CURRENCY", "IDR")
try:
    REQUEST_TIMEOUT = float(os.environ.get("PAYMENT_GATEWAY_TIMEOUT", "15"))
except ValueError:
    REQUEST_TIMEOUT = 15.0
try:
    MAX_ATTEMPTS = max(1, int(os.environ.get("PAYMENT_GATEWAY_MAX_ATTEMPTS", "2")))
except ValueError:
    MAX_ATTEMPTS = 2
RETRY_BACKOFF_SECONDS = 0.5
DRY_RUN = os.environ.get("PAYMENT_DRY_RUN", "0") == "1"

PAYMENT_REQUESTS_PATH = "/payment_requests"


class PaymentRequest(NamedTuple):
    external_id: str
    payment_method_id: str
    qr_payload: str


def idempotency_key(order_id: str) -> str:
    return f"order-{order_id}"


def _request_body(amount: int, order_id: str) -> Dict[str, Any]:
    return {
        "reference_id": order_id,
        "amount": amount,
        "currency": CURRENCY,
        "country": "ID",
        "payment_method": {
            "type": "QR_CODE",
            "reusability": "ONE_TIME_USE",
            "qr_code": {"channel_code": "QRIS"},
        },
        "metadata": {"order_id": order_id},
    }


def _error_message_from_response(resp: requests.Response) -> str:
    try:
        j = resp.json()
        return j.get("message") or j.get("error_code") or resp.text
    except ValueError:
        return resp.text


def _parse_payment_request(body: Dict[str, Any]) -> PaymentRequest:
    method = body.get("payment_method") or {}
    qr_string = ((method.get("qr_code") or {}).get("channel_properties") or {}).get("qr_string")
    external_id = body.get("id")
    method_id = method.get("id")
    if not external_id or not method_id or not qr_string:
        raise GatewayRejected("Payment request response is missing id, payment method or QR string")
    return PaymentRequest(str(external_id), str(method_id), str(qr_string))


def _dry_run_request(amount: int, order_id: str) -> PaymentRequest:
    return PaymentRequest(
        external_id=f"pr-dry-{order_id}",
        payment_method_id=f"pm-dry-{order_id}",
        qr_payload=f"DRYRUN|{CURRENCY}|{amount}|{order_id}",
    )


def _post_once(amount: int, order_id: str) -> PaymentRequest:
    url = GATEWAY_URL.rstrip("/") + PAYMENT_REQUESTS_PATH
    headers = {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "idempotency-key": idempotency_key(order_id),
    }
    try:
        resp = requests.post(
            url,
            json=_request_body(amount, order_id),
            headers=headers,
            auth=(GATEWAY_SECRET_KEY or "", ""),
            timeout=REQUEST_TIMEOUT,
        )
    except requests.Timeout as exc:
        raise GatewayTimeout(f"Payment gateway timed out after {REQUEST_TIMEOUT}s") from exc
    except requests.RequestException as exc:
        raise GatewayUnavailable(f"Payment gateway unreachable: {exc}") from exc

    if resp.status_code >= 500 or resp.status_code == 429:
        raise GatewayUnavailable(
            f"Payment gateway error {resp.status_code}: {_error_message_from_response(resp)}",
            status_code=resp.status_code,
        )
    if resp.status_code >= 400:
        raise GatewayRejected(
            f"Payment gateway rejected request ({resp.status_code}): {_error_message_from_response(resp)}",
            status_code=resp.status_code,
        )
    try:
        body = resp.json()
    except ValueError as exc:
        raise GatewayRejected("Payment gateway returned a non-JSON body", status_code=resp.status_code) from exc
    if not isinstance(body, dict):
        raise GatewayRejected("Payment gateway returned an unexpected body", status_code=resp.status_code)
    return _parse_payment_request(body)


def create_qr_payment_request(amount: int, order_id: str, max_attempts: Optional[int] = None) -> PaymentRequest:
    """Create a one-time QRIS payment request tagged with ``order_id``.

    Retryable failures (timeouts, connection errors, 5xx) are retried with the
    same idempotency key, so the processor sees one request per order.
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise GatewayRejected(f"Invalid payment amount: {amount!r}")
    if DRY_RUN:
        return _dry_run_request(amount, order_id)
    if not GATEWAY_SECRET_KEY:
        raise GatewayUnavailable("Missing PAYMENT_GATEWAY_SECRET_KEY in environment")

    attempts = max_attempts or MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        try:
            result = _post_once(amount, order_id)
            logger.info("Payment request %s created for order %s", result.external_id, order_id)
            return result
        except (GatewayUnavailable, GatewayTimeout) as exc:
            if attempt >= attempts:
                raise
            logger.warning("Payment request for order %s failed (attempt %d/%d): %s",
                           order_id, attempt, attempts, exc)
            time.sleep(RETRY_BACKOFF_SECONDS * attempt)
    raise GatewayUnavailable("Payment gateway retries exhausted")
