"""Authoritative order pricing.

Prices come from the catalog, quantities from the client. Amounts are
integers in the smallest currency unit; tax is rounded half-up with Decimal so
no float rounding leaks into stored totals.
"""
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Mapping, Sequence

from pos_errors import InternalInconsistencyError

TAX_RATE = Decimal("0.10")


def compute_tax(subtotal: int) -> int:
    """Return ``subtotal * TAX_RATE`` rounded half-up to a whole unit.

    Examples:
      compute_tax(25000) -> 2500
      compute_tax(1005)  -> 101
    """
    return int((Decimal(subtotal) * TAX_RATE).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _client_quantity(client_items: Sequence[Mapping[str, Any]], product_id: str) -> int:
    for item in client_items:
        if item.get("productId") == product_id:
            return int(item["quantity"])
    raise InternalInconsistencyError(f"No client quantity for product {product_id}")


def price_order(server_products: Sequence[Mapping[str, Any]],
                client_order_items: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    server_products    = [ {'id': 'p1', 'price': 10000, ...}, ... ]   # from the catalog
    client_order_items = [ {'productId': 'p1', 'quantity': 2}, ... ]   # untrusted

    Returns {'subtotal', 'tax', 'grandTotal', 'lines'} where each line carries
    the authoritative unit price. Client ids with no catalog product are not
    priced here; the order ledger decides what to do with them.
    """
    lines: List[Dict[str, Any]] = []
    subtotal = 0
    for product in server_products:
        quantity = _client_quantity(client_order_items, product["id"])
        price = int(product["price"])
        line_total = price * quantity
        subtotal += line_total
        lines.append({
            "productId": product["id"],
            "price": price,
            "quantity": quantity,
            "lineTotal": line_total,
        })
    tax = compute_tax(subtotal)
    return {
        "subtotal": subtotal,
        "tax": tax,
        "grandTotal": subtotal + tax,
        "lines": lines,
    }
