import threading
import unittest
import uuid
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.core.cache import cache
from django.db import DatabaseError, IntegrityError, connection, connections
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework.test import APIClient

from common.errors import (
    ConnectivityError,
    ConsistencyError,
    EmptyReason,
    InsufficientStock,
    InvalidQuantity,
    LedgerValidationError,
    ProductNotFound,
)
from core.models import AuditLog
from inventory.catalog import get_product
from inventory.ledger import QUICK_SALE_REASON, purge_movements, record_movement, record_movement_batch
from inventory.models import Movement, Product
from inventory.services import (
    Severity,
    get_movements_for_product,
    inventory_totals,
    low_stock_alerts,
    verify_stock_journal,
)
from sync.models import SyncOutbox


def make_product(name="Producto", quantity=10, price="100.00", cost="60.00", min_stock=0, **extra):
    return Product.objects.create(
        name=name,
        quantity=quantity,
        price=Decimal(price),
        cost=Decimal(cost),
        min_stock=min_stock,
        **extra,
    )


class StockLedgerTests(TestCase):
    def setUp(self):
        self.product = make_product(name="Yerba", quantity=10, price="6.50")

    def test_salida_decrements_stock_and_journals_movement(self):
        movement = record_movement(self.product.id, Movement.Type.SALIDA, 3, "Venta mostrador")

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 7)
        self.assertEqual(movement.previous_quantity, 10)
        self.assertEqual(movement.new_quantity, 7)
        self.assertEqual(movement.sequence, 1)
        self.assertEqual(movement.unit_price, Decimal("6.50"))
        self.assertEqual(movement.total_value, Decimal("19.50"))
        self.assertEqual(movement.reason, "Venta mostrador")

    def test_entrada_increments_stock(self):
        movement = record_movement(self.product.id, Movement.Type.ENTRADA, 5, "Compra proveedor")

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 15)
        self.assertEqual(movement.new_quantity, 15)

    def test_movement_emits_change_feed_rows(self):
        movement = record_movement(self.product.id, Movement.Type.SALIDA, 1, "Venta")

        self.assertTrue(SyncOutbox.objects.filter(entity="movement", entity_id=movement.id, op="upsert").exists())
        stock_row = SyncOutbox.objects.get(entity="product_stock", entity_id=self.product.id)
        self.assertEqual(stock_row.payload["payload"]["quantity"], 9)

    def test_overdraft_is_rejected_and_nothing_changes(self):
        with self.assertRaises(InsufficientStock) as ctx:
            record_movement(self.product.id, Movement.Type.SALIDA, 11, "Venta")

        self.assertEqual(ctx.exception.details["available"], 10)
        self.assertEqual(ctx.exception.details["requested"], 11)
        self.assertIn("Available: 10", ctx.exception.message)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertFalse(Movement.objects.exists())
        self.assertFalse(SyncOutbox.objects.exists())

    def test_selling_exactly_the_available_stock_reaches_zero(self):
        record_movement(self.product.id, Movement.Type.SALIDA, 10, "Venta")

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 0)

    def test_non_positive_or_non_integer_quantities_are_rejected(self):
        for quantity in (0, -1, True, 1.5, "2", None):
            with self.subTest(quantity=quantity):
                with self.assertRaises(InvalidQuantity):
                    record_movement(self.product.id, Movement.Type.ENTRADA, quantity, "Ajuste")

        self.assertFalse(Movement.objects.exists())

    def test_blank_reason_is_rejected(self):
        for reason in ("", "   ", None):
            with self.subTest(reason=reason):
                with self.assertRaises(EmptyReason):
                    record_movement(self.product.id, Movement.Type.ENTRADA, 1, reason)

    def test_unknown_movement_type_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            record_movement(self.product.id, "ajuste", 1, "Ajuste")

    def test_unknown_or_malformed_product_is_not_found(self):
        with self.assertRaises(ProductNotFound):
            record_movement(uuid.uuid4(), Movement.Type.ENTRADA, 1, "Compra")
        with self.assertRaises(ProductNotFound):
            record_movement("not-a-uuid", Movement.Type.ENTRADA, 1, "Compra")

    def test_quantity_equals_initial_plus_entradas_minus_salidas(self):
        record_movement(self.product.id, Movement.Type.ENTRADA, 4, "Compra")
        record_movement(self.product.id, Movement.Type.SALIDA, 6, "Venta")
        record_movement(self.product.id, Movement.Type.SALIDA, 2, "Venta")
        record_movement(self.product.id, Movement.Type.ENTRADA, 1, "Devolucion")

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10 + 4 - 6 - 2 + 1)

        movements = list(Movement.objects.filter(product=self.product).order_by("sequence"))
        self.assertEqual([movement.sequence for movement in movements], [1, 2, 3, 4])
        for previous, current in zip(movements, movements[1:]):
            self.assertEqual(current.previous_quantity, previous.new_quantity)
        self.assertEqual(movements[-1].new_quantity, self.product.quantity)

    def test_batch_applies_every_item(self):
        other = make_product(name="Azucar", quantity=5)

        movements = record_movement_batch(
            [
                {"product_id": self.product.id, "quantity": 2},
                {"product_id": other.id, "quantity": 5, "reason": "Venta mayorista"},
            ]
        )

        self.assertEqual(len(movements), 2)
        self.assertEqual(movements[0].type, Movement.Type.SALIDA)
        self.assertEqual(movements[0].reason, QUICK_SALE_REASON)
        self.assertEqual(movements[1].reason, "Venta mayorista")
        self.product.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.product.quantity, 8)
        self.assertEqual(other.quantity, 0)

    def test_batch_is_all_or_nothing(self):
        other = make_product(name="Azucar", quantity=1)

        with self.assertRaises(InsufficientStock):
            record_movement_batch(
                [
                    {"product_id": self.product.id, "quantity": 2},
                    {"product_id": other.id, "quantity": 2},
                ]
            )

        self.product.refresh_from_db()
        other.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertEqual(other.quantity, 1)
        self.assertFalse(Movement.objects.exists())

    def test_batch_checks_cumulative_quantity_of_repeated_product(self):
        with self.assertRaises(InsufficientStock):
            record_movement_batch(
                [
                    {"product_id": self.product.id, "quantity": 6},
                    {"product_id": self.product.id, "quantity": 5},
                ]
            )

        movements = record_movement_batch(
            [
                {"product_id": self.product.id, "quantity": 6},
                {"product_id": self.product.id, "quantity": 4},
            ]
        )
        self.assertEqual([(m.previous_quantity, m.new_quantity) for m in movements], [(10, 4), (4, 0)])

    def test_batch_rejects_explicit_empty_reason(self):
        for reason in ("", "   "):
            with self.assertRaises(EmptyReason):
                record_movement_batch([{"product_id": self.product.id, "quantity": 1, "type": "entrada", "reason": reason}])

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertFalse(Movement.objects.exists())

    def test_empty_batch_is_rejected(self):
        with self.assertRaises(LedgerValidationError):
            record_movement_batch([])

    @override_settings(LEDGER_OFFLINE=True)
    def test_offline_store_rejects_mutation(self):
        with self.assertRaises(ConnectivityError) as ctx:
            record_movement(self.product.id, Movement.Type.ENTRADA, 1, "Compra")

        self.assertEqual(ctx.exception.details["status"], "offline")
        self.assertFalse(Movement.objects.exists())

    def test_integrity_failure_rolls_back_and_surfaces_as_consistency_error(self):
        with mock.patch.object(Movement.objects, "create", side_effect=IntegrityError("duplicate sequence")):
            with self.assertRaises(ConsistencyError):
                record_movement(self.product.id, Movement.Type.SALIDA, 1, "Venta")

        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertFalse(SyncOutbox.objects.exists())

    def test_purge_removes_journal_but_keeps_quantities(self):
        record_movement(self.product.id, Movement.Type.SALIDA, 4, "Venta")
        record_movement(self.product.id, Movement.Type.ENTRADA, 1, "Compra")

        deleted = purge_movements()

        self.assertEqual(deleted, 2)
        self.assertFalse(Movement.objects.exists())
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 7)
        self.assertTrue(SyncOutbox.objects.filter(entity="movement", op="purge", entity_id__isnull=True).exists())


class StockQueryTests(TestCase):
    def test_low_stock_alerts_include_products_at_or_below_minimum(self):
        at_minimum = make_product(name="Arroz", quantity=5, min_stock=5)
        below = make_product(name="Fideos", quantity=2, min_stock=6)
        empty = make_product(name="Harina", quantity=0, min_stock=3)
        make_product(name="Aceite", quantity=9, min_stock=3)

        alerts = low_stock_alerts()

        by_product = {alert.product.id: alert for alert in alerts}
        self.assertEqual(set(by_product), {at_minimum.id, below.id, empty.id})
        self.assertEqual(alerts[0].product.id, empty.id)
        self.assertEqual(by_product[empty.id].severity, Severity.CRITICAL)
        self.assertEqual(by_product[below.id].severity, Severity.LOW)
        self.assertEqual(by_product[below.id].difference, 4)
        self.assertEqual(by_product[at_minimum.id].difference, 0)

    def test_low_stock_alerts_accept_an_explicit_product_list(self):
        product = Product(name="Suelto", quantity=1, min_stock=2, price=Decimal("1.00"))

        alerts = low_stock_alerts([product])

        self.assertEqual(len(alerts), 1)
        self.assertEqual(alerts[0].current_stock, 1)

    def test_movements_for_product_are_newest_first(self):
        product = make_product(quantity=10)
        first = record_movement(product.id, Movement.Type.SALIDA, 1, "Venta")
        second = record_movement(product.id, Movement.Type.SALIDA, 2, "Venta")

        ids = [movement.id for movement in get_movements_for_product(product.id)]

        self.assertEqual(ids, [second.id, first.id])

    def test_movements_for_unknown_product_raise_not_found(self):
        with self.assertRaises(ProductNotFound):
            list(get_movements_for_product(uuid.uuid4()))

    def test_inventory_totals(self):
        make_product(quantity=2, price="10.00", cost="4.00")
        make_product(quantity=3, price="1.50", cost="1.00")
        make_product(quantity=100, price="1.00", cost="1.00", is_active=False)

        totals = inventory_totals()

        self.assertEqual(totals["products"], 2)
        self.assertEqual(totals["units"], 5)
        self.assertEqual(totals["total_value"], Decimal("24.50"))
        self.assertEqual(totals["total_cost"], Decimal("11.00"))

    def test_stock_journal_verification_detects_out_of_band_changes(self):
        product = make_product(quantity=10)
        record_movement(product.id, Movement.Type.SALIDA, 3, "Venta")
        self.assertEqual(verify_stock_journal(), [])

        Product.objects.filter(id=product.id).update(quantity=99)

        mismatches = verify_stock_journal()
        self.assertEqual(len(mismatches), 1)
        self.assertEqual(mismatches[0]["kind"], "stock_journal_mismatch")
        self.assertEqual(mismatches[0]["expected"], 7)
        self.assertEqual(mismatches[0]["actual"], 99)


class CatalogCacheTests(TestCase):
    def setUp(self):
        cache.clear()
        self.product = make_product(name="Cafe", quantity=10)

    def test_snapshot_is_refreshed_after_committed_movement(self):
        self.assertEqual(get_product(self.product.id)["quantity"], 10)

        with self.captureOnCommitCallbacks(execute=True):
            record_movement(self.product.id, Movement.Type.SALIDA, 4, "Venta")

        self.assertEqual(get_product(self.product.id)["quantity"], 6)

    def test_snapshot_is_dropped_on_catalog_edit(self):
        self.assertEqual(get_product(self.product.id)["name"], "Cafe")

        with self.captureOnCommitCallbacks(execute=True):
            self.product.name = "Cafe molido"
            self.product.save()

        self.assertEqual(get_product(self.product.id)["name"], "Cafe molido")

    def test_failed_movement_does_not_invalidate(self):
        get_product(self.product.id)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            with self.assertRaises(InsufficientStock):
                record_movement(self.product.id, Movement.Type.SALIDA, 50, "Venta")

        self.assertEqual(callbacks, [])

    def test_unknown_product_raises_not_found(self):
        with self.assertRaises(ProductNotFound):
            get_product(uuid.uuid4())
        with self.assertRaises(ProductNotFound):
            get_product("nope")


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="cashier-inv", password="pass1234", role="cashier")
        self.admin = self.user_model.objects.create_user(username="admin-inv", password="pass1234", role="admin")
        self.product = make_product(name="Leche", quantity=5, min_stock=5)

    def test_unauthenticated_request_uses_standard_envelope(self):
        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")
        self.assertEqual(response.json()["status"], 401)

    def test_list_products_is_paginated(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual(payload["results"][0]["id"], str(self.product.id))
        self.assertTrue(payload["results"][0]["is_low_stock"])

    def test_product_quantity_is_not_writable_through_the_api(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.patch(f"/api/v1/products/{self.product.id}/", {"quantity": 500}, format="json")

        self.assertEqual(response.status_code, 405)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 5)

    def test_record_movement(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/",
            {"product_id": str(self.product.id), "type": "salida", "quantity": 2, "reason": "Venta"},
            format="json",
            HTTP_X_REQUEST_ID="req-mov-1",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response.json()["new_quantity"], 3)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 3)
        self.assertTrue(AuditLog.objects.filter(action="movement.create", request_id="req-mov-1").exists())

    def test_overdraft_returns_conflict_envelope(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/",
            {"product_id": str(self.product.id), "type": "salida", "quantity": 6, "reason": "Venta"},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["errors"]["available"], 5)
        self.assertEqual(payload["status"], 409)

    def test_invalid_quantity_returns_validation_envelope(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/",
            {"product_id": str(self.product.id), "type": "entrada", "quantity": 0, "reason": "Compra"},
            format="json",
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_unknown_product_returns_not_found_envelope(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/",
            {"product_id": str(uuid.uuid4()), "type": "entrada", "quantity": 1, "reason": "Compra"},
            format="json",
        )

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    @override_settings(LEDGER_OFFLINE=True)
    def test_offline_returns_service_unavailable(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/",
            {"product_id": str(self.product.id), "type": "entrada", "quantity": 1, "reason": "Compra"},
            format="json",
        )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "connectivity_error")

    def test_batch_endpoint(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/batch/",
            {"items": [{"product_id": str(self.product.id), "quantity": 1}, {"product_id": str(self.product.id), "quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(response.json()["movements"]), 2)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 3)

    def test_batch_endpoint_rejects_blank_reason(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/movements/batch/",
            {"items": [{"product_id": str(self.product.id), "quantity": 1, "type": "entrada", "reason": ""}]},
            format="json",
        )

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertFalse(Movement.objects.exists())

    def test_failed_audit_write_rolls_back_movement(self):
        self.client.force_authenticate(user=self.cashier)

        with mock.patch.object(AuditLog.objects, "create", side_effect=DatabaseError("audit table unavailable")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self.client.post(
                    "/api/v1/movements/",
                    {"product_id": str(self.product.id), "type": "salida", "quantity": 3, "reason": "Venta"},
                    format="json",
                )

        self.assertEqual(response.status_code, 500)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 5)
        self.assertFalse(Movement.objects.exists())
        self.assertFalse(SyncOutbox.objects.exists())

    def test_cashier_cannot_purge_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/movements/purge/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_can_purge(self):
        record_movement(self.product.id, Movement.Type.ENTRADA, 1, "Compra")
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/movements/purge/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["deleted"], 1)

    def test_product_movements_low_stock_and_totals(self):
        record_movement(self.product.id, Movement.Type.SALIDA, 1, "Venta")
        self.client.force_authenticate(user=self.cashier)

        movements = self.client.get(f"/api/v1/products/{self.product.id}/movements/")
        low_stock = self.client.get("/api/v1/products/low-stock/")
        totals = self.client.get("/api/v1/products/totals/")
        snapshot = self.client.get(f"/api/v1/products/{self.product.id}/snapshot/")

        self.assertEqual(movements.status_code, 200)
        self.assertEqual(movements.json()["count"], 1)
        self.assertEqual(low_stock.json()["results"][0]["product_id"], str(self.product.id))
        self.assertEqual(low_stock.json()["results"][0]["difference"], 1)
        self.assertEqual(totals.json()["units"], 4)
        self.assertEqual(snapshot.json()["id"], str(self.product.id))


@unittest.skipUnless(connection.vendor == "postgresql", "row locking needs PostgreSQL")
class ConcurrentStockTests(TransactionTestCase):
    def test_concurrent_salidas_never_overdraw(self):
        product = make_product(name="Ultimo", quantity=5)
        outcomes = []
        lock = threading.Lock()
        start = threading.Barrier(10)

        def sell_one():
            try:
                start.wait()
                record_movement(product.id, Movement.Type.SALIDA, 1, "Venta")
                result = "ok"
            except InsufficientStock:
                result = "rejected"
            finally:
                connections.close_all()
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=sell_one) for _ in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        product.refresh_from_db()
        self.assertEqual(outcomes.count("ok"), 5)
        self.assertEqual(outcomes.count("rejected"), 5)
        self.assertEqual(product.quantity, 0)
        self.assertEqual(verify_stock_journal(), [])
