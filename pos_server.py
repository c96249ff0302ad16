from flask import Flask, request, jsonify, g
from dotenv import load_dotenv
from werkzeug.exceptions import HTTPException
import os
import sqlite3
from pathlib import Path
from functools import wraps
from uuid import uuid4
import threading
import time
import logging
from typing import Any, Dict, List, Optional

# Load environment variables before the service modules read them
load_dotenv()

import checkout
import pos_service as ps
import storage_upload
from pos_errors import (
    PosError,
    ReconciliationError,
    UnauthorizedError,
    ValidationError,
)

def _env_string(name: str, default: Optional[str] = None) -> Optional[str]:
    """Return trimmed string-valued env vars, normalizing empty strings to None."""
    raw = os.getenv(name, default)
    if raw is None:
        return default
    if isinstance(raw, str):
        clean = raw.strip()
        return clean if clean else default
    return raw

app = Flask(__name__)
app.json.sort_keys = False

_LOG_LEVEL_NAME = (os.getenv('POS_LOG_LEVEL') or 'INFO').strip().upper()
app.logger.setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))
logging.getLogger('werkzeug').setLevel(getattr(logging, _LOG_LEVEL_NAME, logging.INFO))

POS_DB_PATH = _env_string('POS_DB_PATH', 'pos.db')
SCHEMA_PATH = _env_string('POS_SCHEMA_PATH', ps.SCHEMA_PATH)

try:
    SESSION_PING_INTERVAL = int(os.getenv('POS_SESSION_PING_INTERVAL', '60'))
except ValueError:
    SESSION_PING_INTERVAL = 60
SESSION_PING_INTERVAL = max(15, SESSION_PING_INTERVAL)
try:
    SESSION_TTL_SECONDS = int(os.getenv('POS_SESSION_TTL_SECONDS', '28800'))
except ValueError:
    SESSION_TTL_SECONDS = 28800
SESSION_TTL_SECONDS = max(SESSION_TTL_SECONDS, SESSION_PING_INTERVAL * 2, 120)

SESSION_HEADER = 'X-POS-Session'

# Till sessions issued by /api/cashier/login
_ACTIVE_CASHIER_SESSIONS: Dict[str, Dict[str, Any]] = {}
_SESSION_LOCK = threading.Lock()

_SCHEMA_LOCK = threading.Lock()
_SCHEMA_READY_FOR: Optional[str] = None


def _purge_expired_sessions_locked(now_ts: Optional[float] = None) -> None:
    """Drop cashier sessions that have not pinged recently."""
    cutoff = now_ts or time.time()
    expired: List[str] = []
    for sess_id, meta in list(_ACTIVE_CASHIER_SESSIONS.items()):
        last_seen = float(meta.get('last_seen') or 0)
        if cutoff - last_seen > SESSION_TTL_SECONDS:
            expired.append(sess_id)
    for sess_id in expired:
        _ACTIVE_CASHIER_SESSIONS.pop(sess_id, None)
        app.logger.info("Cashier session %s expired after inactivity (active=%d)", sess_id, len(_ACTIVE_CASHIER_SESSIONS))


def _remove_sessions_for_code_locked(code: Optional[str], skip_session: Optional[str] = None) -> None:
    if not code:
        return
    targets = [sid for sid, meta in _ACTIVE_CASHIER_SESSIONS.items()
               if meta.get('code') == code and sid != skip_session]
    for sid in targets:
        _ACTIVE_CASHIER_SESSIONS.pop(sid, None)
        app.logger.info("Removed stale session %s for cashier %s (active=%d)", sid, code, len(_ACTIVE_CASHIER_SESSIONS))


def _register_cashier_session(code: str) -> str:
    session_id = uuid4().hex
    now_ts = time.time()
    with _SESSION_LOCK:
        _purge_expired_sessions_locked(now_ts)
        _remove_sessions_for_code_locked(code)
        _ACTIVE_CASHIER_SESSIONS[session_id] = {'code': code, 'last_seen': now_ts}
    return session_id


def _touch_cashier_session(session_id: str) -> Optional[Dict[str, Any]]:
    """Refresh presence timestamp; returns None if the session is unknown or expired."""
    if not session_id:
        return None
    with _SESSION_LOCK:
        _purge_expired_sessions_locked()
        meta = _ACTIVE_CASHIER_SESSIONS.get(session_id)
        if meta is None:
            return None
        meta['last_seen'] = time.time()
        return dict(meta)


def _remove_cashier_session(session_id: str) -> bool:
    if not session_id:
        return False
    with _SESSION_LOCK:
        removed = _ACTIVE_CASHIER_SESSIONS.pop(session_id, None)
        return removed is not None


def _active_session_count() -> int:
    with _SESSION_LOCK:
        _purge_expired_sessions_locked()
        return len(_ACTIVE_CASHIER_SESSIONS)


def _session_token_from_request() -> str:
    token = (request.headers.get(SESSION_HEADER) or '').strip()
    if token:
        return token
    auth = (request.headers.get('Authorization') or '').strip()
    if auth.lower().startswith('bearer '):
        return auth[7:].strip()
    return ''


def require_session(view):
    """Reject the request with UNAUTHORIZED unless it carries a live till session."""
    @wraps(view)
    def wrapper(*args, **kwargs):
        meta = _touch_cashier_session(_session_token_from_request())
        if not meta:
            raise UnauthorizedError('A valid till session is required')
        g.cashier_code = meta.get('code')
        return view(*args, **kwargs)
    return wrapper


def _db_connect() -> sqlite3.Connection:
    """Open (once per request) the SQLite connection, applying schema.sql on first use."""
    global _SCHEMA_READY_FOR
    conn = g.get('db_conn')
    if conn is not None:
        return conn
    conn = ps.connect(POS_DB_PATH)
    if _SCHEMA_READY_FOR != POS_DB_PATH:
        with _SCHEMA_LOCK:
            if _SCHEMA_READY_FOR != POS_DB_PATH:
                if ps.ensure_schema(conn, SCHEMA_PATH):
                    app.logger.info("Initialized schema in %s", POS_DB_PATH)
                _SCHEMA_READY_FOR = POS_DB_PATH
    g.db_conn = conn
    return conn


@app.teardown_appcontext
def _close_db(exc):
    conn = g.pop('db_conn', None)
    if conn is not None:
        conn.close()


def _json_body() -> Dict[str, Any]:
    payload = request.get_json(silent=True)
    if not isinstance(payload, dict):
        raise ValidationError.single('body', 'Invalid JSON payload')
    return payload


@app.errorhandler(PosError)
def _handle_pos_error(exc: PosError):
    # reconciliation failures are logged at CRITICAL by checkout
    if exc.http_status >= 500 and not isinstance(exc, ReconciliationError):
        app.logger.error("%s %s failed: %s", request.method, request.path, exc)
    return jsonify(exc.payload()), exc.http_status


@app.errorhandler(Exception)
def _handle_unexpected_error(exc: Exception):
    if isinstance(exc, HTTPException):
        return jsonify({'status': 'error', 'code': exc.name.upper().replace(' ', '_'),
                        'message': exc.description}), exc.code
    app.logger.exception("Unhandled error on %s %s", request.method, request.path)
    return jsonify({'status': 'error', 'code': 'INTERNAL_SERVER_ERROR', 'message': 'Internal server error'}), 500


# Disable caching for all API responses
@app.after_request
def add_no_cache_headers(response):
    response.headers['Cache-Control'] = 'no-store, no-cache, must-revalidate, max-age=0'
    response.headers['Pragma'] = 'no-cache'
    if 'Expires' in response.headers:
        del response.headers['Expires']
    response.headers['X-Content-Type-Options'] = 'nosniff'
    return response


@app.route('/api/health')
def api_health():
    return jsonify({'status': 'success', 'active_sessions': _active_session_count()})


# ---------- Cashier sessions ----------

@app.route('/api/cashier/login', methods=['POST'])
def api_cashier_login():
    """Login a cashier by code. Leading zeros are ignored."""
    data = request.get_json(silent=True) or {}
    code = str(data.get('code') or '').strip()
    if not code:
        raise ValidationError.single('code', 'Missing code')
    cashier = ps.find_active_cashier(_db_connect(), code)
    if not cashier:
        raise UnauthorizedError('Invalid code')
    session_id = _register_cashier_session(cashier['code'])
    app.logger.info("Cashier %s session started (active=%d)", cashier['code'], _active_session_count())
    return jsonify({
        'status': 'success',
        'cashier': cashier,
        'session': session_id,
        'session_ping_interval': SESSION_PING_INTERVAL,
        'session_ttl': SESSION_TTL_SECONDS
    })


@app.route('/api/cashier/ping', methods=['POST'])
def api_cashier_ping():
    """Heartbeat endpoint so the till session does not expire."""
    data = request.get_json(silent=True) or {}
    session_id = str(data.get('session') or '').strip() or _session_token_from_request()
    if not session_id:
        raise ValidationError.single('session', 'Missing session')
    if not _touch_cashier_session(session_id):
        raise UnauthorizedError('Session not found')
    return jsonify({'status': 'success'})


@app.route('/api/cashier/logout', methods=['POST'])
def api_cashier_logout():
    data = request.get_json(silent=True) or {}
    session_id = str(data.get('session') or '').strip() or _session_token_from_request()
    if not session_id:
        raise ValidationError.single('session', 'Missing session')
    if _remove_cashier_session(session_id):
        app.logger.info("Cashier session closed (active=%d)", _active_session_count())
    return jsonify({'status': 'success', 'active_sessions': _active_session_count()})


# ---------- Database ----------

@app.route('/api/db/init', methods=['POST'])
def api_db_init():
    conn = _db_connect()
    ps.init_db(conn, SCHEMA_PATH)
    Path(POS_DB_PATH).touch(exist_ok=True)
    return jsonify({'status': 'success', 'message': 'Database initialized', 'path': POS_DB_PATH})


@app.route('/api/db/status')
def api_db_status():
    counts = ps.status_counts(_db_connect())
    return jsonify({'status': 'success', 'present': True, 'counts': counts, 'db_path': POS_DB_PATH})


# ---------- Catalog ----------

@app.route('/api/categories')
@require_session
def api_get_categories():
    return jsonify({'status': 'success', 'categories': ps.get_categories(_db_connect())})


@app.route('/api/categories', methods=['POST'])
@require_session
def api_create_category():
    data = _json_body()
    category = ps.create_category(_db_connect(), data.get('name'))
    app.logger.info("Category %s created by cashier %s", category['id'], g.cashier_code)
    return jsonify({'status': 'success', 'category': category})


@app.route('/api/categories/<category_id>', methods=['PUT'])
@require_session
def api_edit_category(category_id: str):
    data = _json_body()
    category = ps.edit_category(_db_connect(), category_id, data.get('name'))
    return jsonify({'status': 'success', 'category': category})


@app.route('/api/categories/<category_id>', methods=['DELETE'])
@require_session
def api_delete_category(category_id: str):
    ps.delete_category(_db_connect(), category_id)
    app.logger.info("Category %s deleted by cashier %s", category_id, g.cashier_code)
    return jsonify({'status': 'success', 'deleted': True})


@app.route('/api/products')
@require_session
def api_get_products():
    return jsonify({'status': 'success', 'products': ps.get_products(_db_connect())})


@app.route('/api/products', methods=['POST'])
@require_session
def api_create_product():
    data = _json_body()
    product = ps.create_product(
        _db_connect(),
        name=data.get('name'),
        price=data.get('price'),
        image_url=data.get('imageUrl'),
        category_id=data.get('categoryId'),
    )
    app.logger.info("Product %s created by cashier %s", product['id'], g.cashier_code)
    return jsonify({'status': 'success', 'product': product})


@app.route('/api/products/image-upload', methods=['POST'])
@require_session
def api_create_product_image_upload():
    """Issue a single-use signed upload URL; the till uploads the image directly to storage."""
    authorization = storage_upload.create_upload_authorization()
    return jsonify({'status': 'success', **authorization})


# ---------- Orders ----------

@app.route('/api/orders', methods=['POST'])
@require_session
def api_create_order():
    """Create an order from {orderItems: [{productId, quantity}]} and request a QRIS payment."""
    data = _json_body()
    result = checkout.create_order(_db_connect(), data.get('orderItems'))
    app.logger.info("Order %s created by cashier %s (grand total %s)",
                    result['order']['id'], g.cashier_code, result['order']['grandTotal'])
    return jsonify({'status': 'success', **result})


@app.route('/api/orders')
@require_session
def api_list_orders():
    status = (request.args.get('status') or '').strip() or None
    unlinked = request.args.get('unlinked', '0') == '1'
    try:
        limit = int(request.args.get('limit', '100'))
    except ValueError:
        raise ValidationError.single('limit', 'limit must be an integer')
    limit = min(max(limit, 1), 500)
    orders = ps.list_orders(_db_connect(), status=status, unlinked_only=unlinked, limit=limit)
    return jsonify({'status': 'success', 'orders': orders})


@app.route('/api/orders/<order_id>')
@require_session
def api_get_order(order_id: str):
    conn = _db_connect()
    order = ps.get_order(conn, order_id)
    return jsonify({'status': 'success', 'order': order, 'orderItems': ps.get_order_items(conn, order_id)})


@app.route('/api/orders/<order_id>/payment', methods=['POST'])
@require_session
def api_retry_order_payment(order_id: str):
    """Retry payment initiation for an order the gateway failed on."""
    result = checkout.retry_payment(_db_connect(), order_id)
    return jsonify({'status': 'success', **result})


if __name__ == '__main__':
    debug = os.getenv('FLASK_DEBUG', '0') == '1'
    port = int(os.getenv('PORT', '5000'))
    host = os.getenv('HOST', '0.0.0.0')
    app.run(host=host, port=port, debug=debug)
