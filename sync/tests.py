from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from inventory.ledger import record_movement
from inventory.models import Movement, Product
from sync.models import SyncOutbox


class SyncPullTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="sync-user", password="pass1234", role="cashier")
        self.product = Product.objects.create(name="Galletas", quantity=10, price=Decimal("2.00"))

    def test_unauthenticated_error_uses_standard_envelope(self):
        response = self.client.get("/api/v1/sync/pull", {"cursor": 0})

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")
        self.assertIn("message", response.json())
        self.assertIn("errors", response.json())
        self.assertEqual(response.json()["status"], 401)

    def test_invalid_cursor_uses_validation_envelope(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/sync/pull", {"cursor": -1, "limit": 5})

        self.assertEqual(response.status_code, 422)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertEqual(payload["message"], "Validation failed.")
        self.assertIn("cursor", payload["errors"])

    def test_pull_returns_ledger_changes_after_cursor(self):
        self.client.force_authenticate(user=self.user)
        movement = record_movement(self.product.id, Movement.Type.SALIDA, 2, "Venta")

        response = self.client.get("/api/v1/sync/pull", {"cursor": 0})

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertFalse(payload["has_more"])
        entities = [(update["entity"], update["entity_id"]) for update in payload["updates"]]
        self.assertIn(("movement", str(movement.id)), entities)
        self.assertIn(("product_stock", str(self.product.id)), entities)
        self.assertEqual(payload["server_cursor"], SyncOutbox.objects.order_by("-id").first().id)

        follow_up = self.client.get("/api/v1/sync/pull", {"cursor": payload["server_cursor"]})
        self.assertEqual(follow_up.json()["updates"], [])
        self.assertEqual(follow_up.json()["server_cursor"], payload["server_cursor"])

    def test_pull_pages_with_limit_and_entity_filter(self):
        self.client.force_authenticate(user=self.user)
        for _ in range(3):
            record_movement(self.product.id, Movement.Type.ENTRADA, 1, "Compra")

        first = self.client.get("/api/v1/sync/pull", {"cursor": 0, "limit": 2, "entity": "movement"}).json()
        second = self.client.get("/api/v1/sync/pull", {"cursor": first["server_cursor"], "limit": 2, "entity": "movement"}).json()

        self.assertTrue(first["has_more"])
        self.assertEqual(len(first["updates"]), 2)
        self.assertFalse(second["has_more"])
        self.assertEqual(len(second["updates"]), 1)
        self.assertTrue(all(update["entity"] == "movement" for update in first["updates"] + second["updates"]))
