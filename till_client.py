#!/usr/bin/env python3
"""
Till client: logs in, builds a cart from product ids and checks out.

Environment:
  TILL_SERVER_URL       POS server base URL (default: http://localhost:5000)
  TILL_CASHIER_CODE     cashier code used when --code is not given
  TILL_CLIENT_TIMEOUT   HTTP timeout in seconds (default: 20)

Examples:
  python till_client.py --code 19 <product-id> <product-id> <other-id>
  python till_client.py --code 19 --retry <order-id>
"""
import argparse
import logging
import os
from typing import Any, Dict, List, Optional, Sequence

import requests

from cart import CartStore, display_subtotal, to_order_items

logging.basicConfig(level=logging.INFO, format='[till] %(asctime)s %(levelname)s %(message)s')

SERVER_URL = os.environ.get('TILL_SERVER_URL', 'http://localhost:5000')
CASHIER_CODE = os.environ.get('TILL_CASHIER_CODE', '')
REQUEST_TIMEOUT = float(os.environ.get('TILL_CLIENT_TIMEOUT', '20'))
SESSION_HEADER = 'X-POS-Session'


class TillRequestError(Exception):
    """Raised when the POS server answers with an error body."""

    def __init__(self, status_code: int, body: Dict[str, Any]):
        self.status_code = status_code
        self.body = body
        self.code = body.get('code') or 'UNKNOWN'
        super().__init__(f"{self.code}: {body.get('message') or status_code}")

    @property
    def order_id(self) -> Optional[str]:
        return self.body.get('orderId')

    @property
    def retryable(self) -> bool:
        return bool(self.body.get('retryable'))


def _call(http: requests.Session, method: str, path: str, session: Optional[str] = None,
          payload: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    headers = {'Accept': 'application/json'}
    if session:
        headers[SESSION_HEADER] = session
    resp = http.request(method, SERVER_URL.rstrip('/') + path, json=payload, headers=headers,
                        timeout=REQUEST_TIMEOUT)
    try:
        body = resp.json()
    except ValueError:
        body = {'status': 'error', 'message': resp.text[:200]}
    if resp.status_code >= 400 or body.get('status') != 'success':
        raise TillRequestError(resp.status_code, body)
    return body


def login(http: requests.Session, code: str) -> str:
    body = _call(http, 'POST', '/api/cashier/login', payload={'code': code})
    logging.info("Logged in as %s", (body.get('cashier') or {}).get('name'))
    return body['session']


def fetch_products(http: requests.Session, session: str) -> List[Dict[str, Any]]:
    return _call(http, 'GET', '/api/products', session=session).get('products') or []


def build_cart(products: Sequence[Dict[str, Any]], product_ids: Sequence[str]) -> CartStore:
    """Add one unit per id occurrence, as if each id were a scan."""
    by_id = {p['id']: p for p in products}
    store = CartStore()
    for pid in product_ids:
        product = by_id.get(pid)
        if not product:
            logging.warning("Unknown product %s, skipping scan", pid)
            continue
        store.add_to_cart(product)
    return store


def place_order(http: requests.Session, session: str, store: CartStore) -> Dict[str, Any]:
    return _call(http, 'POST', '/api/orders', session=session,
                 payload={'orderItems': to_order_items(store.cart)})


def retry_payment(http: requests.Session, session: str, order_id: str) -> Dict[str, Any]:
    return _call(http, 'POST', f'/api/orders/{order_id}/payment', session=session)


def _show_result(body: Dict[str, Any]) -> None:
    order = body.get('order') or {}
    logging.info("Order %s: subtotal=%s tax=%s total=%s status=%s",
                 order.get('id'), order.get('subtotal'), order.get('tax'),
                 order.get('grandTotal'), order.get('status'))
    logging.info("QR payload: %s", body.get('qrPayload'))


def main() -> int:
    ap = argparse.ArgumentParser(description="POS till client")
    ap.add_argument('product_ids', nargs='*', help="Product ids, one per scanned unit")
    ap.add_argument('--code', default=CASHIER_CODE, help="Cashier code")
    ap.add_argument('--retry', metavar='ORDER_ID', help="Retry payment for an existing order")
    args = ap.parse_args()
    if not args.code:
        ap.error("cashier code is required (--code or TILL_CASHIER_CODE)")

    with requests.Session() as http:
        try:
            session = login(http, args.code)
            if args.retry:
                _show_result(retry_payment(http, session, args.retry))
                return 0
            store = build_cart(fetch_products(http, session), args.product_ids)
            if not store.items:
                logging.error("Cart is empty")
                return 1
            logging.info("Cart: %d line(s), display subtotal %s", len(store.items), display_subtotal(store.cart))
            _show_result(place_order(http, session, store))
            return 0
        except TillRequestError as exc:
            if exc.order_id:
                logging.error("Payment could not be started for order %s (%s). Retry with --retry %s",
                              exc.order_id, exc.code, exc.order_id)
            else:
                logging.error("Request failed: %s", exc)
            return 2
        except requests.RequestException as exc:
            logging.error("POS server unreachable: %s", exc)
            return 3


if __name__ == '__main__':
    raise SystemExit(main())
