#!/usr/bin/env python3
"""
Payment retry worker

Finds orders that were committed but never got a payment request (gateway
down or timed out during checkout) and asks the gateway again, using the
order id as idempotency key.

Env vars:
  POS_DB_PATH            SQLite DB path (default: pos.db)
  SYNC_INTERVAL          seconds between loops (default: 30)
  PAYMENT_RETRY_LIMIT    max payment attempts per order (default: 5)
  PAYMENT_RETRY_MIN_AGE  seconds an order must exist before a retry (default: 60)

Run:
  python sync_worker.py            # loop forever
  python sync_worker.py --once     # single pass
"""
import argparse
import logging
import os
import sqlite3
import time
from typing import Dict

from dotenv import load_dotenv

load_dotenv()

import checkout
import pos_service as ps

logging.basicConfig(level=logging.INFO, format='[sync] %(asctime)s %(levelname)s %(message)s')

POS_DB_PATH = os.environ.get('POS_DB_PATH', 'pos.db')
SYNC_INTERVAL = float(os.environ.get('SYNC_INTERVAL', '30'))
try:
    PAYMENT_RETRY_LIMIT = int(os.environ.get('PAYMENT_RETRY_LIMIT', '5'))
except ValueError:
    PAYMENT_RETRY_LIMIT = 5
try:
    PAYMENT_RETRY_MIN_AGE = int(os.environ.get('PAYMENT_RETRY_MIN_AGE', '60'))
except ValueError:
    PAYMENT_RETRY_MIN_AGE = 60


def connect_db() -> sqlite3.Connection:
    conn = ps.connect(POS_DB_PATH)
    ps.ensure_schema(conn)
    return conn


def run_once(conn: sqlite3.Connection) -> Dict[str, int]:
    summary = checkout.retry_unlinked_orders(
        conn, max_attempts=PAYMENT_RETRY_LIMIT, min_age_seconds=PAYMENT_RETRY_MIN_AGE
    )
    if summary['linked'] or summary['failed']:
        logging.info("payment retry linked=%d failed=%d skipped=%d",
                     summary['linked'], summary['failed'], summary['skipped'])
    return summary


def main():
    ap = argparse.ArgumentParser(description="Retry payment initiation for unlinked orders")
    ap.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = ap.parse_args()

    logging.info("starting payment retry worker, interval=%ss, db=%s", SYNC_INTERVAL, POS_DB_PATH)
    conn = connect_db()
    try:
        while True:
            try:
                run_once(conn)
            except sqlite3.Error as exc:
                logging.error("payment retry pass failed: %s", exc)
            if args.once:
                break
            time.sleep(SYNC_INTERVAL)
    except KeyboardInterrupt:
        logging.info("exiting on Ctrl+C")
    finally:
        conn.close()


if __name__ == '__main__':
    main()
