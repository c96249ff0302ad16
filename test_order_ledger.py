import json
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

import checkout
import payment_gateway as pg
import pos_service as ps
from pos_errors import (
    GatewayRejected,
    GatewayTimeout,
    GatewayUnavailable,
    NotFoundError,
    PersistenceError,
    ReconciliationError,
    ValidationError,
)


def _fake_payment(amount, order_id, max_attempts=None):
    return pg.PaymentRequest(f"pr-{order_id}", f"pm-{order_id}", f"QRIS|{amount}|{order_id}")


class OrderLedgerTestBase(unittest.TestCase):
    def setUp(self):
        self.conn = ps.connect(":memory:")
        ps.init_db(self.conn, ps.SCHEMA_PATH)
        category = ps.create_category(self.conn, "Coffee")
        self.latte = ps.create_product(self.conn, "Latte", 10000, "https://img.test/latte.jpeg", category["id"])["id"]
        self.cookie = ps.create_product(self.conn, "Cookie", 5000, "https://img.test/cookie.jpeg", category["id"])["id"]

    def tearDown(self):
        self.conn.close()

    def _count(self, table):
        return self.conn.execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"]

    def _items(self):
        return [
            {"productId": self.latte, "quantity": 2},
            {"productId": self.cookie, "quantity": 1},
        ]


class CreateOrderTest(OrderLedgerTestBase):
    def test_order_is_priced_persisted_and_linked(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment) as gw:
            result = checkout.create_order(self.conn, self._items())

        order = result["order"]
        self.assertEqual((order["subtotal"], order["tax"], order["grandTotal"]), (25000, 2500, 27500))
        self.assertEqual(order["status"], "awaiting_payment")
        self.assertEqual(order["externalTransactionId"], f"pr-{order['id']}")
        self.assertEqual(order["paymentMethodId"], f"pm-{order['id']}")
        self.assertEqual(order["paymentAttempts"], 1)
        self.assertIsNone(order["paymentErrorCode"])
        self.assertEqual(result["qrPayload"], f"QRIS|27500|{order['id']}")
        gw.assert_called_once_with(amount=27500, order_id=order["id"])

        lines = result["orderItems"]
        self.assertEqual([(l["productId"], l["price"], l["quantity"]) for l in lines],
                         [(self.latte, 10000, 2), (self.cookie, 5000, 1)])
        self.assertTrue(all(l["orderId"] == order["id"] for l in lines))

    def test_client_supplied_price_is_ignored(self):
        items = [{"productId": self.latte, "quantity": 1, "price": 1}]
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            result = checkout.create_order(self.conn, items)
        self.assertEqual(result["orderItems"][0]["price"], 10000)
        self.assertEqual(result["order"]["grandTotal"], 11000)

    def test_invalid_items_write_nothing(self):
        bad_inputs = [
            [],
            None,
            [{"productId": self.latte, "quantity": 0}],
            [{"productId": self.latte, "quantity": True}],
            [{"productId": self.latte, "quantity": "2"}],
            [{"quantity": 1}],
            [{"productId": self.latte, "quantity": 1}, {"productId": self.latte, "quantity": 2}],
        ]
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            for items in bad_inputs:
                with self.subTest(items=items):
                    with self.assertRaises(ValidationError):
                        checkout.create_order(self.conn, items)
            gw.assert_not_called()
        self.assertEqual(self._count("orders"), 0)

    def test_validation_error_names_the_field(self):
        with self.assertRaises(ValidationError) as ctx:
            checkout.validate_order_items([
                {"productId": self.latte, "quantity": 1},
                {"productId": self.cookie, "quantity": -3},
            ])
        self.assertEqual([e["field"] for e in ctx.exception.errors], ["orderItems[1].quantity"])

    def test_oversized_quantity_is_a_validation_error(self):
        items = [{"productId": self.latte, "quantity": 10 ** 16}]
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            with self.assertRaises(ValidationError) as ctx:
                checkout.create_order(self.conn, items)
            gw.assert_not_called()
        self.assertEqual([e["field"] for e in ctx.exception.errors], ["orderItems[0].quantity"])
        self.assertEqual(self._count("orders"), 0)

    def test_largest_quantity_is_accepted(self):
        items = [{"productId": self.cookie, "quantity": checkout.MAX_LINE_QUANTITY}]
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            result = checkout.create_order(self.conn, items)
        self.assertEqual(result["order"]["subtotal"], 5000 * checkout.MAX_LINE_QUANTITY)

    def test_totals_beyond_integer_range_are_rejected(self):
        category_id = ps.get_product(self.conn, self.latte)["category"]["id"]
        pricey = ps.create_product(self.conn, "Gold Bar", 2 ** 62, "https://img.test/gold.jpeg", category_id)["id"]
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            with self.assertRaises(ValidationError):
                checkout.create_order(self.conn, [{"productId": pricey, "quantity": 2}])
            gw.assert_not_called()
        self.assertEqual(self._count("orders"), 0)

    def test_unknown_product_rejects_whole_order(self):
        items = [{"productId": self.latte, "quantity": 1}, {"productId": "no-such-product", "quantity": 1}]
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            with self.assertRaises(NotFoundError) as ctx:
                checkout.create_order(self.conn, items)
            gw.assert_not_called()
        self.assertEqual(ctx.exception.ids, ["no-such-product"])
        self.assertEqual(self._count("orders"), 0)
        self.assertEqual(self._count("order_items"), 0)


class AtomicityTest(OrderLedgerTestBase):
    def test_failed_item_insert_leaves_no_order(self):
        with mock.patch.object(ps, "_insert_order_lines", side_effect=sqlite3.OperationalError("disk I/O error")), \
                mock.patch.object(pg, "create_qr_payment_request") as gw:
            with self.assertRaises(PersistenceError):
                checkout.create_order(self.conn, self._items())
            gw.assert_not_called()
        self.assertEqual(self._count("orders"), 0)
        self.assertEqual(self._count("order_items"), 0)

    def test_failure_on_second_line_rolls_back_first(self):
        priced = {
            "subtotal": 10000, "tax": 1000, "grandTotal": 11000,
            "lines": [
                {"productId": self.latte, "price": 10000, "quantity": 1, "lineTotal": 10000},
                {"productId": "missing-product", "price": 1000, "quantity": 1, "lineTotal": 1000},
            ],
        }
        with self.assertRaises(PersistenceError):
            ps.record_order(self.conn, priced)
        self.assertEqual(self._count("orders"), 0)
        self.assertEqual(self._count("order_items"), 0)

    def test_order_without_lines_is_refused(self):
        with self.assertRaises(PersistenceError):
            ps.record_order(self.conn, {"subtotal": 0, "tax": 0, "grandTotal": 0, "lines": []})
        self.assertEqual(self._count("orders"), 0)


class PriceSnapshotTest(OrderLedgerTestBase):
    def test_catalog_price_change_does_not_touch_existing_items(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            order_id = checkout.create_order(self.conn, [{"productId": self.latte, "quantity": 1}])["order"]["id"]
        with self.conn:
            self.conn.execute("UPDATE products SET price=20000 WHERE id=?", (self.latte,))
        items = ps.get_order_items(self.conn, order_id)
        self.assertEqual(items[0]["price"], 10000)
        self.assertEqual(ps.get_order(self.conn, order_id)["grandTotal"], 11000)

    def test_item_price_cannot_be_updated(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            order_id = checkout.create_order(self.conn, [{"productId": self.latte, "quantity": 1}])["order"]["id"]
        with self.assertRaises(sqlite3.DatabaseError):
            with self.conn:
                self.conn.execute("UPDATE order_items SET price=1 WHERE order_id=?", (order_id,))
        self.assertEqual(ps.get_order_items(self.conn, order_id)[0]["price"], 10000)


class PaymentFailureTest(OrderLedgerTestBase):
    def test_gateway_failure_keeps_durable_unlinked_order(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=GatewayUnavailable("gateway down")):
            with self.assertRaises(GatewayUnavailable) as ctx:
                checkout.create_order(self.conn, self._items())

        order_id = ctx.exception.order_id
        self.assertIsNotNone(order_id)
        self.assertTrue(ctx.exception.payload()["retryable"])
        order = ps.get_order(self.conn, order_id)
        self.assertEqual(order["status"], "awaiting_payment")
        self.assertIsNone(order["externalTransactionId"])
        self.assertIsNone(order["paymentMethodId"])
        self.assertEqual(order["paymentAttempts"], 1)
        self.assertEqual(order["paymentErrorCode"], "GATEWAY_UNAVAILABLE")
        self.assertEqual(len(ps.get_order_items(self.conn, order_id)), 2)

    def test_retry_payment_links_order_once(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=GatewayTimeout("slow")):
            with self.assertRaises(GatewayTimeout) as ctx:
                checkout.create_order(self.conn, self._items())
        order_id = ctx.exception.order_id

        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment) as gw:
            first = checkout.retry_payment(self.conn, order_id)
            second = checkout.retry_payment(self.conn, order_id)
        self.assertEqual(gw.call_count, 1)
        self.assertEqual(first["order"]["externalTransactionId"], f"pr-{order_id}")
        self.assertEqual(first["order"]["paymentAttempts"], 2)
        self.assertIsNone(first["order"]["paymentErrorCode"])
        self.assertEqual(second["qrPayload"], first["qrPayload"])

    def test_retry_payment_unknown_order(self):
        with self.assertRaises(NotFoundError):
            checkout.retry_payment(self.conn, "missing-order")


class ReconciliationTest(OrderLedgerTestBase):
    def setUp(self):
        super().setUp()
        self.tmp = tempfile.TemporaryDirectory()
        patcher = mock.patch.object(checkout, "RECONCILE_DIR", Path(self.tmp.name))
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self.tmp.cleanup)

    def test_failed_write_back_raises_and_records_ids(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment), \
                mock.patch.object(ps, "set_payment_reference", return_value=False):
            with self.assertLogs("checkout", level="CRITICAL"):
                with self.assertRaises(ReconciliationError) as ctx:
                    checkout.create_order(self.conn, self._items())

        exc = ctx.exception
        self.assertEqual(exc.external_id, f"pr-{exc.order_id}")
        self.assertEqual(exc.payment_method_id, f"pm-{exc.order_id}")
        record_path = Path(self.tmp.name) / f"{exc.order_id}.json"
        self.assertTrue(record_path.exists())
        with open(record_path, encoding="utf-8") as f:
            record = json.load(f)
        self.assertEqual(record["external_transaction_id"], exc.external_id)
        order = ps.get_order(self.conn, exc.order_id)
        self.assertIsNone(order["externalTransactionId"])
        self.assertEqual(order["paymentAttempts"], 1)
        self.assertEqual(order["paymentErrorCode"], "RECONCILIATION_ERROR")

    def test_database_error_during_write_back(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment), \
                mock.patch.object(ps, "set_payment_reference", side_effect=sqlite3.OperationalError("locked")):
            with self.assertLogs("checkout", level="CRITICAL"):
                with self.assertRaises(ReconciliationError) as ctx:
                    checkout.create_order(self.conn, self._items())
        self.assertIn("locked", str(ctx.exception))

    def test_order_linked_to_other_request_is_not_overwritten(self):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            order_id = checkout.create_order(self.conn, self._items())["order"]["id"]
        linked = ps.set_payment_reference(self.conn, order_id, "pr-other", "pm-other", "QR")
        self.assertFalse(linked)
        self.assertEqual(ps.get_order(self.conn, order_id)["externalTransactionId"], f"pr-{order_id}")


class RetryUnlinkedOrdersTest(OrderLedgerTestBase):
    def _failed_order(self, exc):
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=exc):
            with self.assertRaises(type(exc)) as ctx:
                checkout.create_order(self.conn, self._items())
        return ctx.exception.order_id

    def test_retryable_failures_are_linked(self):
        order_id = self._failed_order(GatewayUnavailable("down"))
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment):
            summary = checkout.retry_unlinked_orders(self.conn, max_attempts=5, min_age_seconds=0)
        self.assertEqual(summary, {"linked": 1, "failed": 0, "skipped": 0})
        self.assertEqual(ps.get_order(self.conn, order_id)["externalTransactionId"], f"pr-{order_id}")

    def test_rejected_orders_are_skipped(self):
        self._failed_order(GatewayRejected("amount too large"))
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            summary = checkout.retry_unlinked_orders(self.conn, max_attempts=5, min_age_seconds=0)
            gw.assert_not_called()
        self.assertEqual(summary["skipped"], 1)

    def test_attempt_limit_and_age_are_respected(self):
        self._failed_order(GatewayTimeout("slow"))
        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            at_limit = checkout.retry_unlinked_orders(self.conn, max_attempts=1, min_age_seconds=0)
            too_young = checkout.retry_unlinked_orders(self.conn, max_attempts=5, min_age_seconds=3600)
            gw.assert_not_called()
        self.assertEqual(at_limit["skipped"], 1)
        self.assertEqual(too_young["skipped"], 1)

    def test_old_retryable_order_is_not_crowded_out(self):
        old_id = self._failed_order(GatewayUnavailable("down"))
        with self.conn:
            self.conn.execute("UPDATE orders SET created_utc='2000-01-01T00:00:00Z' WHERE id=?", (old_id,))
        for _ in range(25):
            self._failed_order(GatewayRejected("rejected"))

        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment) as gw:
            summary = checkout.retry_unlinked_orders(self.conn, max_attempts=5, limit=20, min_age_seconds=0)
        self.assertEqual(summary, {"linked": 1, "failed": 0, "skipped": 25})
        gw.assert_called_once_with(amount=27500, order_id=old_id)
        self.assertEqual(ps.get_order(self.conn, old_id)["externalTransactionId"], f"pr-{old_id}")

    def test_oldest_orders_are_retried_first(self):
        first = self._failed_order(GatewayTimeout("slow"))
        second = self._failed_order(GatewayTimeout("slow"))
        with self.conn:
            self.conn.execute("UPDATE orders SET created_utc='2000-01-02T00:00:00Z' WHERE id=?", (first,))
            self.conn.execute("UPDATE orders SET created_utc='2000-01-01T00:00:00Z' WHERE id=?", (second,))
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment) as gw:
            checkout.retry_unlinked_orders(self.conn, max_attempts=5, limit=1, min_age_seconds=0)
        gw.assert_called_once_with(amount=27500, order_id=second)
        self.assertIsNone(ps.get_order(self.conn, first)["externalTransactionId"])

    def test_reconciliation_failures_are_not_swept(self):
        tmp = tempfile.TemporaryDirectory()
        self.addCleanup(tmp.cleanup)
        with mock.patch.object(checkout, "RECONCILE_DIR", Path(tmp.name)), \
                mock.patch.object(pg, "create_qr_payment_request", side_effect=_fake_payment), \
                mock.patch.object(ps, "set_payment_reference", return_value=False):
            with self.assertLogs("checkout", level="CRITICAL"):
                with self.assertRaises(ReconciliationError):
                    checkout.create_order(self.conn, self._items())

        with mock.patch.object(pg, "create_qr_payment_request") as gw:
            summary = checkout.retry_unlinked_orders(self.conn, max_attempts=5, min_age_seconds=0)
            gw.assert_not_called()
        self.assertEqual(summary, {"linked": 0, "failed": 0, "skipped": 1})

    def test_failed_retry_is_counted(self):
        order_id = self._failed_order(GatewayUnavailable("down"))
        with mock.patch.object(pg, "create_qr_payment_request", side_effect=GatewayUnavailable("still down")):
            summary = checkout.retry_unlinked_orders(self.conn, max_attempts=5, min_age_seconds=0)
        self.assertEqual(summary["failed"], 1)
        self.assertEqual(ps.get_order(self.conn, order_id)["paymentAttempts"], 2)


if __name__ == "__main__":
    unittest.main()
