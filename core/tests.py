from unittest import mock

from django.contrib.auth import get_user_model
from django.db import OperationalError
from django.test import TestCase, override_settings
from rest_framework.test import APIClient

from common.connectivity import ConnectionStatus, get_connection_status
from core.models import AuditLog


class TokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            role="supervisor",
        )

    def test_email_is_normalized_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "token.user@example.com")

    def test_token_can_be_obtained_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN.USER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_bad_credentials_use_standard_envelope(self):
        response = self.client.post("/api/v1/token/", {"username": "token-user", "password": "wrong"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="audit-cashier", password="pass1234", role="cashier")

    def test_customer_create_writes_audit_log(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.post(
            "/api/v1/customers/",
            {"name": "Auditado", "tax_id": "20-77777777-7"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(res.status_code, 201)
        log = AuditLog.objects.get(action="customer.create", entity="customer", request_id="req-123")
        self.assertEqual(log.actor_id, self.admin.id)
        self.assertEqual(str(log.entity_id), res.json()["id"])

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_cashier_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_audit_log_filters_and_export(self):
        AuditLog.objects.create(action="customer.create", entity="customer", actor=self.admin)
        AuditLog.objects.create(action="movement.create", entity="movement", actor=self.admin)
        self.client.force_authenticate(user=self.admin)

        filtered = self.client.get("/api/v1/admin/audit-logs/", {"entity": "movement"})
        export = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(filtered.json()["count"], 1)
        self.assertEqual(export.status_code, 200)
        self.assertIn("movement.create", export.content.decode())


class ConnectionStatusTests(TestCase):
    def test_connected_by_default(self):
        self.assertIs(get_connection_status(), ConnectionStatus.CONNECTED)

    @override_settings(LEDGER_OFFLINE=True)
    def test_offline_flag(self):
        self.assertIs(get_connection_status(), ConnectionStatus.OFFLINE)

    def test_unreachable_store_is_offline(self):
        with mock.patch("common.connectivity.connections") as mocked:
            mocked.__getitem__.return_value.ensure_connection.side_effect = OperationalError("refused")
            with self.assertLogs("common.connectivity", level="WARNING"):
                self.assertIs(get_connection_status(), ConnectionStatus.OFFLINE)

    def test_health_endpoints(self):
        client = APIClient()

        self.assertEqual(client.get("/api/v1/healthz/").json()["status"], "ok")
        self.assertEqual(client.get("/api/v1/readyz/").json()["status"], "connected")
        with override_settings(LEDGER_OFFLINE=True):
            offline = client.get("/api/v1/readyz/")
        self.assertEqual(offline.status_code, 503)
        self.assertEqual(offline.json()["status"], "offline")
