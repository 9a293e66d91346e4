"""
Threaded concurrency tests against a file-backed SQLite database.

Each worker runs in its own thread with its own app context (and therefore
its own session and connection), so writers genuinely race on the same rows.
"""
import os
import tempfile
import threading
import unittest

from stockledger import create_app
from stockledger.errors import InsufficientStockError
from stockledger.extensions import db
from stockledger.models import Location, Product, StockMovement, Supplier
from stockledger.services import purchase_order_service, settings_service, stock_service


class ConcurrencyTests(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.TemporaryDirectory()
        db_path = os.path.join(self.tmpdir.name, "concurrency.db")
        self.app = create_app({
            "TESTING": True,
            "SQLALCHEMY_DATABASE_URI": f"sqlite:///{db_path}",
            "TRANSACTION_RETRY_ATTEMPTS": 10,
        })

        with self.app.app_context():
            db.drop_all()
            db.create_all()

            supplier = Supplier(name="Race Supplies", status="active", payment_terms_days=30)
            db.session.add(supplier)
            db.session.commit()
            self.supplier_id = supplier.id

            location = Location(name="Race Warehouse", type="warehouse")
            db.session.add(location)
            db.session.commit()
            self.location_id = location.id

            product = Product(
                sku="RACE-1",
                name="Contended Product",
                status="active",
                cost_price_cents=400,
                supplier_id=self.supplier_id,
            )
            db.session.add(product)
            db.session.commit()
            self.product_id = product.id

    def tearDown(self):
        with self.app.app_context():
            db.session.remove()
            db.drop_all()
            db.session.remove()
            db.engine.dispose()
        self.tmpdir.cleanup()

    def _seed(self, quantity):
        with self.app.app_context():
            stock_service.post_movement(
                product_id=self.product_id,
                location_id=self.location_id,
                movement_type=stock_service.MOVEMENT_PURCHASE,
                delta=quantity,
                reason="Seed inventory",
            )

    def _run_threads(self, target, count):
        barrier = threading.Barrier(count)
        results = []
        errors = []
        lock = threading.Lock()

        def worker(index):
            with self.app.app_context():
                barrier.wait()
                try:
                    value = target(index)
                    with lock:
                        results.append(value)
                except Exception as exc:  # collected for assertions
                    with lock:
                        errors.append(exc)
                finally:
                    db.session.remove()

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results, errors

    def test_last_unit_sold_once(self):
        self._seed(1)

        def sell(index):
            return stock_service.record_sale(
                product_id=self.product_id,
                quantity=1,
                sale_id=f"S-{index}",
                location_id=self.location_id,
            ).id

        results, errors = self._run_threads(sell, 2)

        self.assertEqual(len(results), 1)
        self.assertEqual(len(errors), 1)
        self.assertIsInstance(errors[0], InsufficientStockError)

        with self.app.app_context():
            level = stock_service.get_stock_level(self.product_id, location_id=self.location_id)
            self.assertEqual(level.quantity, 0)
            self.assertEqual(
                db.session.query(StockMovement).filter_by(type=stock_service.MOVEMENT_SALE).count(),
                1,
            )
            self.assertTrue(stock_service.verify_ledger()["ok"])

    def test_concurrent_sales_never_lose_updates(self):
        self._seed(20)

        def sell(index):
            return stock_service.record_sale(
                product_id=self.product_id,
                quantity=2,
                sale_id=f"S-{index}",
                location_id=self.location_id,
            ).id

        results, errors = self._run_threads(sell, 5)

        self.assertEqual(errors, [])
        self.assertEqual(len(results), 5)
        with self.app.app_context():
            level = stock_service.get_stock_level(self.product_id, location_id=self.location_id)
            self.assertEqual(level.quantity, 10)
            report = stock_service.verify_ledger()
            self.assertTrue(report["ok"], report["problems"])

    def test_document_sequence_concurrency(self):
        def create_order(index):
            po = purchase_order_service.create_purchase_order(
                supplier_id=self.supplier_id,
                items=[{"product_id": self.product_id, "quantity": 1 + index, "unit_cost_cents": 400}],
            )
            return po.po_number

        results, errors = self._run_threads(create_order, 5)

        self.assertEqual(errors, [])
        self.assertEqual(len(set(results)), 5)
        self.assertEqual(sorted(results), [f"PO-{n:06d}" for n in range(1, 6)])

    def test_concurrent_receipts_keep_weighted_average_serial(self):
        with self.app.app_context():
            settings_service.update_inventory_settings("weighted_average")
            product = db.session.get(Product, self.product_id)
            product.cost_price_cents = 500
            second = Location(name="Race Annex", type="warehouse")
            db.session.add(second)
            db.session.commit()
            location_ids = [self.location_id, second.id]

            orders = []
            for _ in location_ids:
                po = purchase_order_service.create_purchase_order(
                    supplier_id=self.supplier_id,
                    items=[{"product_id": self.product_id, "quantity": 5, "unit_cost_cents": 800}],
                )
                purchase_order_service.approve_purchase_order(po.id)
                orders.append((po.id, po.items[0].id))
        self._seed(10)

        def receive(index):
            po_id, item_id = orders[index]
            return purchase_order_service.receive_purchase_order(
                po_id,
                [{"item_id": item_id, "received_quantity": 5}],
                location_id=location_ids[index],
            )["status"]

        results, errors = self._run_threads(receive, 2)

        self.assertEqual(errors, [])
        self.assertEqual(results, ["received", "received"])
        with self.app.app_context():
            # 10 @ 500 then 5 @ 800 gives 600; another 5 @ 800 gives 650
            self.assertEqual(db.session.get(Product, self.product_id).cost_price_cents, 650)
            self.assertEqual(stock_service.total_on_hand(self.product_id), 20)


if __name__ == "__main__":
    unittest.main()
