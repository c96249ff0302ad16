"""Order creation and payment initiation.

The order and its items are committed first; the payment request is a
separate step afterwards. A failed gateway call leaves a durable, unlinked
order that can be retried with ``retry_payment``.
"""
import datetime as dt
import json
import logging
import os
import sqlite3
from pathlib import Path
from typing import Any, Dict, List, Optional

import payment_gateway as pg
import pos_service as ps
from pos_errors import (
    GatewayTimeout,
    GatewayUnavailable,
    NotFoundError,
    PaymentInitiationError,
    PosError,
    ReconciliationError,
    ValidationError,
)
from pricing import price_order

logger = logging.getLogger(__name__)

RECONCILE_DIR = Path(os.environ.get("POS_RECONCILE_DIR", os.path.join("invoices", "reconcile")))

MAX_LINE_QUANTITY = 9999
# SQLite INTEGER is a signed 64-bit value
MAX_STORED_AMOUNT = 2 ** 63 - 1
RETRYABLE_PAYMENT_ERROR_CODES = (GatewayUnavailable.code, GatewayTimeout.code)


def validate_order_items(order_items: Any) -> List[Dict[str, Any]]:
    """Check the client ``orderItems`` list and return it normalized.

    All problems are collected into one ValidationError.
    """
    if not isinstance(order_items, list) or not order_items:
        raise ValidationError.single("orderItems", "At least one order item is required")
    errors: List[Dict[str, str]] = []
    cleaned: List[Dict[str, Any]] = []
    seen = set()
    for idx, item in enumerate(order_items):
        prefix = f"orderItems[{idx}]"
        if not isinstance(item, dict):
            errors.append({"field": prefix, "message": "Order item must be an object"})
            continue
        product_id = item.get("productId")
        quantity = item.get("quantity")
        if not isinstance(product_id, str) or not product_id.strip():
            errors.append({"field": f"{prefix}.productId", "message": "productId is required"})
            product_id = None
        else:
            product_id = product_id.strip()
            if product_id in seen:
                errors.append({"field": f"{prefix}.productId", "message": f"Duplicate productId {product_id}"})
            seen.add(product_id)
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            errors.append({"field": f"{prefix}.quantity", "message": "quantity must be an integer"})
        elif quantity < 1:
            errors.append({"field": f"{prefix}.quantity", "message": "quantity must be at least 1"})
        elif quantity > MAX_LINE_QUANTITY:
            errors.append({"field": f"{prefix}.quantity", "message": f"quantity must be at most {MAX_LINE_QUANTITY}"})
        if product_id:
            cleaned.append({"productId": product_id, "quantity": quantity})
    if errors:
        raise ValidationError(errors)
    return cleaned


def _write_reconcile_file(order_id: str, payload: Dict[str, Any]) -> None:
    try:
        RECONCILE_DIR.mkdir(parents=True, exist_ok=True)
        with open(RECONCILE_DIR / f"{order_id}.json", "w", encoding="utf-8") as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
    except OSError:
        logger.exception("Failed to write reconciliation record for order %s", order_id)


def _reconcile(conn: sqlite3.Connection, order_id: str, payment: pg.PaymentRequest) -> None:
    """Write gateway ids back onto the order. Any failure is a ReconciliationError."""
    try:
        linked = ps.set_payment_reference(
            conn, order_id, payment.external_id, payment.payment_method_id, payment.qr_payload
        )
        reason = None if linked else "order missing or linked to another payment request"
    except sqlite3.Error as exc:
        linked = False
        reason = str(exc)
    if linked:
        return
    logger.critical(
        "RECONCILIATION REQUIRED: payment request %s (method %s) was created for order %s "
        "but could not be linked: %s",
        payment.external_id, payment.payment_method_id, order_id, reason
    )
    _write_reconcile_file(order_id, {
        "order_id": order_id,
        "external_transaction_id": payment.external_id,
        "payment_method_id": payment.payment_method_id,
        "reason": reason,
        "logged_utc": ps.iso_now(),
    })
    raise ReconciliationError(
        f"Payment request {payment.external_id} could not be linked to order {order_id}: {reason}",
        order_id=order_id,
        external_id=payment.external_id,
        payment_method_id=payment.payment_method_id,
    )


def _check_amounts(priced: Dict[str, Any]) -> None:
    for key in ("subtotal", "tax", "grandTotal"):
        if priced[key] > MAX_STORED_AMOUNT:
            raise ValidationError.single("orderItems", f"Order {key} is too large to record")


def _note_payment_failure(conn: sqlite3.Connection, order_id: str, exc: PosError) -> None:
    try:
        ps.record_payment_attempt(conn, order_id, exc.code, str(exc))
    except sqlite3.Error:
        logger.exception("Failed to record payment failure for order %s", order_id)


def _initiate_payment(conn: sqlite3.Connection, order: Dict[str, Any]) -> str:
    order_id = order["id"]
    try:
        payment = pg.create_qr_payment_request(amount=order["grandTotal"], order_id=order_id)
    except PaymentInitiationError as exc:
        exc.order_id = order_id
        logger.warning("Payment initiation failed for order %s (%s, retryable=%s): %s",
                       order_id, exc.code, exc.retryable, exc)
        _note_payment_failure(conn, order_id, exc)
        raise
    try:
        _reconcile(conn, order_id, payment)
    except ReconciliationError as exc:
        # counts toward the retry limit; the sweep never retries this code
        _note_payment_failure(conn, order_id, exc)
        raise
    try:
        ps.record_payment_attempt(conn, order_id)
    except sqlite3.Error:
        logger.warning("Failed to count payment attempt for order %s", order_id)
    return payment.qr_payload


def _order_response(conn: sqlite3.Connection, order_id: str, qr_payload: Optional[str]) -> Dict[str, Any]:
    return {
        "order": ps.get_order(conn, order_id),
        "orderItems": ps.get_order_items(conn, order_id),
        "qrPayload": qr_payload,
    }


def create_order(conn: sqlite3.Connection, order_items: Any) -> Dict[str, Any]:
    """Price, persist and start payment for a client order.

    Returns {'order', 'orderItems', 'qrPayload'}. Raises ValidationError or
    NotFoundError before anything is written, PersistenceError if the order
    transaction rolled back, PaymentInitiationError (carrying ``order_id``) if
    the committed order could not get a payment request, and
    ReconciliationError if the gateway ids could not be stored.
    """
    items = validate_order_items(order_items)
    requested_ids = [item["productId"] for item in items]
    products = ps.get_products_by_ids(conn, requested_ids)
    found = {p["id"] for p in products}
    unknown = [pid for pid in requested_ids if pid not in found]
    if unknown:
        raise NotFoundError("Product", unknown)

    priced = price_order(products, items)
    _check_amounts(priced)
    order_id = ps.record_order(conn, priced)
    order = ps.get_order(conn, order_id)
    qr_payload = _initiate_payment(conn, order)
    return _order_response(conn, order_id, qr_payload)


def retry_payment(conn: sqlite3.Connection, order_id: str) -> Dict[str, Any]:
    """Request payment again for an order left unlinked by a gateway failure.

    Already linked orders return their stored QR payload without a new
    gateway call.
    """
    order = ps.get_order(conn, order_id)
    if order["externalTransactionId"]:
        return _order_response(conn, order_id, order["qrPayload"])
    qr_payload = _initiate_payment(conn, order)
    return _order_response(conn, order_id, qr_payload)


def retry_unlinked_orders(conn: sqlite3.Connection, max_attempts: int, limit: int = 20,
                          min_age_seconds: int = 60) -> Dict[str, int]:
    """Retry payment for unlinked orders whose last failure was retryable.

    Orders are taken oldest first. Orders younger than ``min_age_seconds``
    are left alone since their checkout request may still be talking to the
    gateway; those and orders out of attempts or with a non-retryable last
    error are counted as skipped.
    """
    cutoff = (dt.datetime.utcnow() - dt.timedelta(seconds=min_age_seconds)).replace(microsecond=0).isoformat() + "Z"
    candidates = ps.list_retryable_orders(
        conn, max_attempts=max_attempts, retryable_codes=RETRYABLE_PAYMENT_ERROR_CODES,
        created_before=cutoff, limit=limit
    )
    summary = {
        "linked": 0,
        "failed": 0,
        "skipped": max(0, ps.count_unlinked_orders(conn) - len(candidates)),
    }
    for order in candidates:
        try:
            retry_payment(conn, order["id"])
            summary["linked"] += 1
        except (PaymentInitiationError, ReconciliationError) as exc:
            logger.warning("Payment retry for order %s failed: %s", order["id"], exc)
            summary["failed"] += 1
    return summary
