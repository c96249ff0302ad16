#!/usr/bin/env python3
# POS service layer: SQLite catalog + order ledger
import os, json, uuid, sqlite3, argparse, logging, datetime as dt
from typing import List, Dict, Any, Optional, Sequence
from urllib.parse import urlparse

from pos_errors import ConflictError, NotFoundError, PersistenceError, ValidationError

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("POS_DB_PATH", "pos.db")
SCHEMA_PATH = os.environ.get(
    "POS_SCHEMA_PATH",
    os.path.join(os.path.dirname(os.path.abspath(__file__)), "schema.sql")
)

ORDER_STATUS_AWAITING_PAYMENT = "awaiting_payment"
MIN_NAME_LENGTH = 3
MIN_PRODUCT_PRICE = 1000


def iso_now() -> str:
    return dt.datetime.utcnow().replace(microsecond=0).isoformat() + "Z"

def new_id() -> str:
    return str(uuid.uuid4())

def connect(db_path: str = DB_PATH) -> sqlite3.Connection:
    conn = sqlite3.connect(db_path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn

def init_db(conn: sqlite3.Connection, schema_path: str = SCHEMA_PATH):
    with open(schema_path, "r", encoding="utf-8") as f:
        conn.executescript(f.read())
    conn.commit()

def ensure_schema(conn: sqlite3.Connection, schema_path: str = SCHEMA_PATH) -> bool:
    """Apply schema.sql when the ledger tables are missing. Returns True if applied."""
    row = conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name='orders'"
    ).fetchone()
    if row:
        return False
    init_db(conn, schema_path)
    return True


# ---------- VALIDATION ----------
def _clean_name(value: Any, field: str, errors: List[Dict[str, str]]) -> str:
    if not isinstance(value, str) or len(value.strip()) < MIN_NAME_LENGTH:
        errors.append({"field": field, "message": f"Minimum of {MIN_NAME_LENGTH} characters"})
        return ""
    return value.strip()

def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str) or not value.strip():
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


# ---------- CASHIERS ----------
def upsert_cashier(conn: sqlite3.Connection, code: str, name: str, active: bool = True):
    with conn:
        conn.execute("""
            INSERT INTO cashiers (code, name, active) VALUES (?,?,?)
            ON CONFLICT(code) DO UPDATE SET name=excluded.name, active=excluded.active
        """, (code, name, 1 if active else 0))

def find_active_cashier(conn: sqlite3.Connection, code: str) -> Optional[Dict[str, str]]:
    """Look up an active cashier by code. Leading zeros are ignored."""
    code = (code or "").strip()
    if not code:
        return None
    row = conn.execute(
        "SELECT code, name FROM cashiers WHERE active=1 AND (code = ? OR code = ltrim(?, '0'))",
        (code, code)
    ).fetchone()
    return {"code": row["code"], "name": row["name"]} if row else None


# ---------- CATEGORIES ----------
def _category_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {"id": row["id"], "name": row["name"], "productCount": int(row["product_count"] or 0)}

_CATEGORY_SELECT = """
    SELECT c.id, c.name, COUNT(p.id) AS product_count
    FROM categories c LEFT JOIN products p ON p.category_id = c.id
"""

def get_categories(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(
        _CATEGORY_SELECT + " GROUP BY c.id ORDER BY c.created_utc DESC, c.rowid DESC"
    ).fetchall()
    return [_category_row(r) for r in rows]

def get_category(conn: sqlite3.Connection, category_id: str) -> Dict[str, Any]:
    row = conn.execute(_CATEGORY_SELECT + " WHERE c.id=? GROUP BY c.id", (category_id,)).fetchone()
    if not row:
        raise NotFoundError("Category", category_id)
    return _category_row(row)

def create_category(conn: sqlite3.Connection, name: Any) -> Dict[str, Any]:
    errors: List[Dict[str, str]] = []
    clean = _clean_name(name, "name", errors)
    if errors:
        raise ValidationError(errors)
    category_id = new_id()
    now = iso_now()
    try:
        with conn:
            conn.execute(
                "INSERT INTO categories (id, name, created_utc, updated_utc) VALUES (?,?,?,?)",
                (category_id, clean, now, now)
            )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Category '{clean}' already exists") from exc
    return {"id": category_id, "name": clean, "productCount": 0}

def edit_category(conn: sqlite3.Connection, category_id: str, name: Any) -> Dict[str, Any]:
    errors: List[Dict[str, str]] = []
    clean = _clean_name(name, "name", errors)
    if errors:
        raise ValidationError(errors)
    try:
        with conn:
            cur = conn.execute(
                "UPDATE categories SET name=?, updated_utc=? WHERE id=?",
                (clean, iso_now(), category_id)
            )
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Category '{clean}' already exists") from exc
    if cur.rowcount == 0:
        raise NotFoundError("Category", category_id)
    return get_category(conn, category_id)

def delete_category(conn: sqlite3.Connection, category_id: str) -> None:
    """Delete an empty category; categories still referenced by products are kept."""
    category = get_category(conn, category_id)
    if category["productCount"]:
        raise ConflictError(
            f"Category '{category['name']}' still has {category['productCount']} product(s)"
        )
    try:
        with conn:
            conn.execute("DELETE FROM categories WHERE id=?", (category_id,))
    except sqlite3.IntegrityError as exc:
        raise ConflictError(f"Category '{category['name']}' is still referenced") from exc


# ---------- PRODUCTS ----------
_PRODUCT_SELECT = """
    SELECT p.id, p.name, p.price, p.image_url, p.category_id, p.created_utc,
           c.name AS category_name
    FROM products p JOIN categories c ON c.id = p.category_id
"""

def _product_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "name": row["name"],
        "price": int(row["price"]),
        "imageUrl": row["image_url"],
        "category": {"id": row["category_id"], "name": row["category_name"]},
    }

def get_products(conn: sqlite3.Connection) -> List[Dict[str, Any]]:
    rows = conn.execute(_PRODUCT_SELECT + " ORDER BY p.created_utc DESC, p.rowid DESC").fetchall()
    return [_product_row(r) for r in rows]

def get_product(conn: sqlite3.Connection, product_id: str) -> Dict[str, Any]:
    row = conn.execute(_PRODUCT_SELECT + " WHERE p.id=?", (product_id,)).fetchone()
    if not row:
        raise NotFoundError("Product", product_id)
    return _product_row(row)

def get_products_by_ids(conn: sqlite3.Connection, ids: Sequence[str]) -> List[Dict[str, Any]]:
    unique_ids = list(dict.fromkeys(ids))
    if not unique_ids:
        return []
    placeholders = ",".join("?" for _ in unique_ids)
    rows = conn.execute(
        _PRODUCT_SELECT + f" WHERE p.id IN ({placeholders})", unique_ids
    ).fetchall()
    return [_product_row(r) for r in rows]

def create_product(conn: sqlite3.Connection, name: Any, price: Any, image_url: Any, category_id: Any) -> Dict[str, Any]:
    errors: List[Dict[str, str]] = []
    clean_name = _clean_name(name, "name", errors)
    if isinstance(price, bool) or not isinstance(price, int):
        errors.append({"field": "price", "message": "Price must be an integer amount"})
    elif price < MIN_PRODUCT_PRICE:
        errors.append({"field": "price", "message": f"Price must be at least {MIN_PRODUCT_PRICE}."})
    if not _is_http_url(image_url):
        errors.append({"field": "imageUrl", "message": "Please provide a valid image URL."})
    if not isinstance(category_id, str) or not category_id.strip():
        errors.append({"field": "categoryId", "message": "Category is required"})
    if errors:
        raise ValidationError(errors)

    category_id = category_id.strip()
    get_category(conn, category_id)
    product_id = new_id()
    try:
        with conn:
            conn.execute("""
                INSERT INTO products (id, name, price, image_url, category_id, created_utc)
                VALUES (?,?,?,?,?,?)
            """, (product_id, clean_name, price, image_url.strip(), category_id, iso_now()))
    except sqlite3.IntegrityError as exc:
        # category deleted between the lookup and the insert
        raise NotFoundError("Category", category_id) from exc
    return {"id": product_id, "name": clean_name}


# ---------- ORDERS (transactional) ----------
def begin_order_txn(conn: sqlite3.Connection):
    conn.execute("BEGIN IMMEDIATE")

def commit_order_txn(conn: sqlite3.Connection):
    conn.commit()

def rollback_order_txn(conn: sqlite3.Connection):
    conn.rollback()

def _insert_order_lines(conn: sqlite3.Connection, order_id: str, lines: Sequence[Dict[str, Any]]):
    for idx, line in enumerate(lines, start=1):
        conn.execute("""
            INSERT INTO order_items (order_id, line_no, product_id, price, quantity, line_total)
            VALUES (?,?,?,?,?,?)
        """, (order_id, idx, line["productId"], int(line["price"]), int(line["quantity"]),
              int(line["lineTotal"])))

def record_order(conn: sqlite3.Connection, priced: Dict[str, Any]) -> str:
    """
    priced = {
      'subtotal': 25000, 'tax': 2500, 'grandTotal': 27500,
      'lines': [ {'productId': 'p1', 'price': 10000, 'quantity': 2, 'lineTotal': 20000}, ... ]
    }
    Writes the order header and its items in one transaction; nothing is left
    behind if any insert fails.
    """
    lines = priced.get("lines") or []
    if not lines:
        raise PersistenceError("Refusing to record an order without items")
    order_id = new_id()
    created = iso_now()
    try:
        begin_order_txn(conn)
        conn.execute("""
            INSERT INTO orders (id, subtotal, tax, grand_total, status, created_utc, updated_utc)
            VALUES (?,?,?,?,?,?,?)
        """, (order_id, int(priced["subtotal"]), int(priced["tax"]), int(priced["grandTotal"]),
              ORDER_STATUS_AWAITING_PAYMENT, created, created))
        _insert_order_lines(conn, order_id, lines)
        commit_order_txn(conn)
    except sqlite3.Error as exc:
        rollback_order_txn(conn)
        raise PersistenceError(f"Failed to record order: {exc}") from exc
    except Exception:
        rollback_order_txn(conn)
        raise
    logger.info("Recorded order %s (%d line(s), grand total %s)", order_id, len(lines), priced["grandTotal"])
    return order_id

def _order_row(row: sqlite3.Row) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "subtotal": int(row["subtotal"]),
        "tax": int(row["tax"]),
        "grandTotal": int(row["grand_total"]),
        "status": row["status"],
        "externalTransactionId": row["external_transaction_id"],
        "paymentMethodId": row["payment_method_id"],
        "qrPayload": row["qr_payload"],
        "paymentAttempts": int(row["payment_attempts"] or 0),
        "paymentErrorCode": row["payment_error_code"],
        "paymentError": row["payment_error"],
        "createdAt": row["created_utc"],
        "updatedAt": row["updated_utc"],
    }

def find_order(conn: sqlite3.Connection, order_id: str) -> Optional[Dict[str, Any]]:
    row = conn.execute("SELECT * FROM orders WHERE id=?", (order_id,)).fetchone()
    return _order_row(row) if row else None

def get_order(conn: sqlite3.Connection, order_id: str) -> Dict[str, Any]:
    order = find_order(conn, order_id)
    if not order:
        raise NotFoundError("Order", order_id)
    return order

def get_order_items(conn: sqlite3.Connection, order_id: str) -> List[Dict[str, Any]]:
    rows = conn.execute("""
        SELECT order_id, line_no, product_id, price, quantity, line_total
        FROM order_items WHERE order_id=? ORDER BY line_no
    """, (order_id,)).fetchall()
    return [{
        "orderId": r["order_id"],
        "lineNo": r["line_no"],
        "productId": r["product_id"],
        "price": int(r["price"]),
        "quantity": int(r["quantity"]),
        "lineTotal": int(r["line_total"]),
    } for r in rows]

def list_orders(conn: sqlite3.Connection, status: Optional[str] = None,
                unlinked_only: bool = False, limit: int = 100) -> List[Dict[str, Any]]:
    clauses = []
    params: List[Any] = []
    if status:
        clauses.append("status = ?")
        params.append(status)
    if unlinked_only:
        clauses.append("external_transaction_id IS NULL")
    where = (" WHERE " + " AND ".join(clauses)) if clauses else ""
    params.append(int(limit))
    rows = conn.execute(
        f"SELECT * FROM orders{where} ORDER BY created_utc DESC, rowid DESC LIMIT ?", params
    ).fetchall()
    return [_order_row(r) for r in rows]

def list_retryable_orders(conn: sqlite3.Connection, max_attempts: int, retryable_codes: Sequence[str],
                          created_before: str, limit: int = 20) -> List[Dict[str, Any]]:
    """Unlinked orders still eligible for another payment request, oldest first.

    Eligible: under ``max_attempts``, created at or before ``created_before``,
    and either never failed or last failed with one of ``retryable_codes``.
    """
    codes = list(retryable_codes)
    code_clause = "payment_error_code IS NULL"
    if codes:
        code_clause += " OR payment_error_code IN (" + ",".join("?" for _ in codes) + ")"
    rows = conn.execute(f"""
        SELECT * FROM orders
        WHERE status = ? AND external_transaction_id IS NULL
          AND payment_attempts < ? AND created_utc <= ?
          AND ({code_clause})
        ORDER BY created_utc ASC, rowid ASC LIMIT ?
    """, [ORDER_STATUS_AWAITING_PAYMENT, int(max_attempts), created_before, *codes, int(limit)]).fetchall()
    return [_order_row(r) for r in rows]

def count_unlinked_orders(conn: sqlite3.Connection) -> int:
    row = conn.execute(
        "SELECT COUNT(*) AS c FROM orders WHERE status = ? AND external_transaction_id IS NULL",
        (ORDER_STATUS_AWAITING_PAYMENT,)
    ).fetchone()
    return int(row["c"]) if row else 0

def set_payment_reference(conn: sqlite3.Connection, order_id: str, external_id: str,
                          payment_method_id: str, qr_payload: Optional[str]) -> bool:
    """Link gateway ids to an order. Returns False when no row accepted the link
    (order missing, or already linked to a different payment request)."""
    with conn:
        cur = conn.execute("""
            UPDATE orders
            SET external_transaction_id=?, payment_method_id=?, qr_payload=?,
                payment_error_code=NULL, payment_error=NULL, updated_utc=?
            WHERE id=? AND (external_transaction_id IS NULL OR external_transaction_id=?)
        """, (external_id, payment_method_id, qr_payload, iso_now(), order_id, external_id))
    return cur.rowcount == 1

def record_payment_attempt(conn: sqlite3.Connection, order_id: str,
                           error_code: Optional[str] = None, error: Optional[str] = None):
    with conn:
        conn.execute("""
            UPDATE orders
            SET payment_attempts = payment_attempts + 1, payment_error_code=?, payment_error=?, updated_utc=?
            WHERE id=?
        """, (error_code, error, iso_now(), order_id))


# ---------- DEMO ----------
def demo_seed(conn: sqlite3.Connection):
    """Seed one cashier (code 19) and a small cafe catalog when the catalog is empty."""
    upsert_cashier(conn, "19", "Josh")
    row = conn.execute("SELECT COUNT(*) AS c FROM products").fetchone()
    if row and row["c"]:
        return
    catalog = {
        "Coffee": [
            ("Kopi Susu", 18000, "https://images.unsplash.com/photo-1509042239860-f550ce710b93?w=800"),
            ("Americano", 15000, "https://images.unsplash.com/photo-1551030173-122aabc4489c?w=800"),
        ],
        "Pastry": [
            ("Croissant", 22000, "https://images.unsplash.com/photo-1555507036-ab1f4038808a?w=800"),
            ("Banana Bread", 19000, "https://images.unsplash.com/photo-1606101273945-e9eba91c0dc4?w=800"),
        ],
    }
    for category_name, products in catalog.items():
        existing = conn.execute("SELECT id FROM categories WHERE name=?", (category_name,)).fetchone()
        category_id = existing["id"] if existing else create_category(conn, category_name)["id"]
        for name, price, image in products:
            create_product(conn, name, price, image, category_id)
    print("Seeded demo cashier, categories and products")

def status_counts(conn: sqlite3.Connection) -> Dict[str, int]:
    counts = {}
    for name, sql in {
        "categories": "SELECT COUNT(*) AS c FROM categories",
        "products": "SELECT COUNT(*) AS c FROM products",
        "orders": "SELECT COUNT(*) AS c FROM orders",
        "orders_unlinked": "SELECT COUNT(*) AS c FROM orders WHERE external_transaction_id IS NULL",
        "cashiers": "SELECT COUNT(*) AS c FROM cashiers WHERE active=1",
    }.items():
        row = conn.execute(sql).fetchone()
        counts[name] = int(row["c"]) if row else 0
    return counts

def main():
    ap = argparse.ArgumentParser(description="POS catalog + order ledger service")
    ap.add_argument("--init", action="store_true", help="Initialize database schema")
    ap.add_argument("--schema", default=SCHEMA_PATH, help="Path to schema.sql")
    ap.add_argument("--seed", action="store_true", help="Insert demo cashier and catalog")
    ap.add_argument("--status", action="store_true", help="Print table counts")
    ap.add_argument("--db", default=DB_PATH, help="Path to SQLite DB")
    args = ap.parse_args()

    conn = connect(args.db)
    try:
        if args.init:
            init_db(conn, args.schema)
            print("Initialized schema from", args.schema)

        if args.seed:
            demo_seed(conn)

        if args.status:
            print(json.dumps(status_counts(conn), indent=2))
    finally:
        conn.close()

if __name__ == "__main__":
    main()
