import json
import logging
from datetime import timedelta
from decimal import Decimal
from io import StringIO

from django.contrib.auth import get_user_model
from django.core.management import CommandError, call_command
from django.db import IntegrityError, OperationalError, transaction
from django.test import SimpleTestCase, TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from common.concurrency import StaleWriteError, run_with_retry
from common.errors import ConcurrencyConflict
from common.exceptions import custom_exception_handler
from common.logging import JsonFormatter, RequestIdFilter
from common.permissions import user_has_capability
from common.store import find, parse_uuid
from core.models import AuditLog
from inventory.models import Product, StockRecord
from inventory.services import create_product
from sales.models import Customer, Invoice
from sales.services import LineSelection, create_invoice

User = get_user_model()


class UserModelTests(TestCase):
    def test_email_is_normalized_and_unique_ignoring_case(self):
        user = User.objects.create_user(username="first", password="pass1234", email="  Owner@Example.COM ")
        self.assertEqual(user.email, "owner@example.com")
        self.assertEqual(user.role, User.Role.SELLER)

        with self.assertRaises(IntegrityError), transaction.atomic():
            User.objects.create_user(username="second", password="pass1234", email="OWNER@example.com")

    def test_blank_emails_do_not_collide(self):
        User.objects.create_user(username="a", password="pass1234")
        User.objects.create_user(username="b", password="pass1234")
        self.assertEqual(User.objects.filter(email="").count(), 2)


class RoleCapabilityTests(TestCase):
    def test_matrix(self):
        admin = User.objects.create_user(username="admin", password="pass1234", role=User.Role.ADMIN)
        seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)
        keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        accountant = User.objects.create_user(username="accountant", password="pass1234", role=User.Role.ACCOUNTANT)
        root = User.objects.create_superuser(username="root", password="pass1234", role=User.Role.SELLER)

        self.assertTrue(user_has_capability(keeper, "stock.move"))
        self.assertFalse(user_has_capability(seller, "stock.move"))
        self.assertTrue(user_has_capability(seller, "invoices.create"))
        self.assertFalse(user_has_capability(accountant, "invoices.create"))
        self.assertTrue(user_has_capability(accountant, "invoices.status"))
        self.assertTrue(user_has_capability(admin, "audit.view"))
        self.assertFalse(user_has_capability(keeper, "audit.view"))
        self.assertTrue(user_has_capability(root, "audit.view"))
        self.assertFalse(user_has_capability(admin, "unknown.capability"))


class AuditLogApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="pass1234", role=User.Role.ADMIN)
        self.seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)

    def test_mutations_are_audited_with_request_id(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/products/",
            {"sku": "AUD-1", "name": "Audited", "price": "2.00"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(response["X-Request-ID"], "req-123")
        log = AuditLog.objects.get(action="product.create")
        self.assertEqual(log.actor, self.admin)
        self.assertEqual(log.request_id, "req-123")
        self.assertEqual(log.after_snapshot["sku"], "AUD-1")

    def test_admin_lists_and_filters_audit_logs(self):
        AuditLog.objects.create(actor=self.admin, action="product.create", entity="product")
        AuditLog.objects.create(actor=self.admin, action="invoice.create", entity="invoice")
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/?entity=invoice")

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["action"] for row in response.json()["results"]], ["invoice.create"])
        self.assertEqual(self.client.get("/api/v1/admin/audit-logs/?actor_id=bad").json()["count"], 0)

    def test_audit_logs_are_read_only(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/admin/audit-logs/", {"action": "x", "entity": "y"}, format="json")

        self.assertEqual(response.status_code, 405)
        self.assertEqual(response.json()["code"], "method_not_allowed")

    def test_export_csv(self):
        AuditLog.objects.create(actor=self.admin, action="customer.delete", entity="customer")
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        rows = response.content.decode().strip().splitlines()
        self.assertEqual(rows[0], "id,created_at,actor,action,entity,entity_id,request_id")
        self.assertIn("customer.delete", rows[1])

    def test_seller_denied_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.seller)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message and "audit.view" in message for message in cm.output))


class TokenTests(TestCase):
    def test_token_by_email_carries_role(self):
        User.objects.create_user(username="keeper", password="pass1234", email="keeper@example.com", role=User.Role.WAREHOUSE)
        client = APIClient()

        response = client.post("/api/v1/token/", {"username": "Keeper@Example.com", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        access = response.json()["access"]
        client.credentials(HTTP_AUTHORIZATION=f"Bearer {access}")
        self.assertEqual(client.get("/api/v1/stock/").status_code, 200)

    def test_bad_credentials_use_error_envelope(self):
        response = APIClient().post("/api/v1/token/", {"username": "nobody", "password": "x"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")


class ExceptionHandlerTests(SimpleTestCase):
    def test_unhandled_exception_is_logged_and_hidden(self):
        with self.assertLogs("common.exceptions", level="ERROR"):
            response = custom_exception_handler(RuntimeError("boom"), {"view": None})

        self.assertEqual(response.status_code, 500)
        self.assertEqual(
            response.data,
            {"code": "internal_server_error", "message": "An unexpected error occurred.", "errors": None, "status": 500},
        )

    def test_retryable_domain_error_sets_retry_after(self):
        response = custom_exception_handler(ConcurrencyConflict("stock_record", "abc", 3), {"view": None})

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response["Retry-After"], "1")
        self.assertEqual(response.data["code"], "concurrency_conflict")
        self.assertEqual(response.data["errors"], {"entity": "stock_record", "id": "abc", "attempts": 3})


class RetryTests(SimpleTestCase):
    def test_retries_until_success(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise StaleWriteError("lost race")
            return "done"

        self.assertEqual(run_with_retry(flaky, attempts=3, backoff_base=0), "done")
        self.assertEqual(len(calls), 3)

    def test_reraises_after_exhaustion(self):
        def locked():
            raise OperationalError("database is locked")

        with self.assertLogs("common.concurrency", level="WARNING") as cm:
            with self.assertRaises(OperationalError):
                run_with_retry(locked, attempts=2, backoff_base=0, label="test")
        self.assertTrue(any("retry_exhausted label=test" in message for message in cm.output))

    def test_other_errors_propagate_immediately(self):
        calls = []

        def broken():
            calls.append(1)
            raise KeyError("nope")

        with self.assertRaises(KeyError):
            run_with_retry(broken, attempts=5, backoff_base=0)
        self.assertEqual(len(calls), 1)

    def test_attempts_must_be_positive(self):
        with self.assertRaises(ValueError):
            run_with_retry(lambda: None, attempts=0)


class StructuredLoggingTests(SimpleTestCase):
    def _record(self, **extra):
        record = logging.LogRecord("inventory.services", logging.INFO, __file__, 1, "stock %s", ("moved",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_json_formatter(self):
        payload = json.loads(JsonFormatter().format(self._record(request_id="abc", status_code=201)))

        self.assertEqual(payload["message"], "stock moved")
        self.assertEqual(payload["logger"], "inventory.services")
        self.assertEqual(payload["request_id"], "abc")
        self.assertEqual(payload["status_code"], 201)
        self.assertNotIn("user_id", payload)

    def test_request_id_filter_keeps_explicit_id(self):
        record = self._record(request_id="explicit")
        self.assertTrue(RequestIdFilter().filter(record))
        self.assertEqual(record.request_id, "explicit")

        record = self._record()
        RequestIdFilter().filter(record)
        self.assertIsNone(record.request_id)


class StoreHelperTests(TestCase):
    def test_find_treats_malformed_ids_as_missing(self):
        product = create_product(sku="S-1", name="Stored", price=Decimal("1.00"))

        self.assertEqual(find(Product, product.id), product)
        self.assertEqual(find(Product.objects.filter(is_active=True), str(product.id)), product)
        self.assertIsNone(find(Product, "nope"))
        self.assertIsNone(find(Product, None))
        self.assertIsNone(parse_uuid("nope"))
        self.assertEqual(parse_uuid(str(product.id)), product.id)


class ManagementCommandTests(TestCase):
    def test_seed_demo_data_is_idempotent(self):
        call_command("seed_demo_data", stdout=StringIO())
        call_command("seed_demo_data", stdout=StringIO())

        self.assertEqual(User.objects.filter(username__in=["admin", "seller", "warehouse", "accountant"]).count(), 4)
        self.assertEqual(Product.objects.count(), 3)
        self.assertEqual(StockRecord.objects.get(product__sku="SKU-SHIRT-001").quantity, 8)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_mark_overdue_command(self):
        seller = User.objects.create_user(username="seller", password="pass1234")
        customer = Customer.objects.create(name="Late Payer")
        product = create_product(sku="L-1", name="Late", price=Decimal("5.00"))
        invoice = create_invoice(
            customer.id,
            [LineSelection(product.id, 1)],
            seller.id,
            due_date=timezone.localdate() - timedelta(days=2),
        )
        out = StringIO()

        call_command("mark_overdue_invoices", stdout=out)

        invoice.refresh_from_db()
        self.assertEqual(invoice.status, Invoice.Status.OVERDUE)
        self.assertIn("Marked 1 invoice(s) overdue.", out.getvalue())

    def test_mark_overdue_command_rejects_bad_dates(self):
        for value in ["2024-02-30", "yesterday"]:
            with self.subTest(value=value):
                with self.assertRaises(CommandError):
                    call_command("mark_overdue_invoices", "--as-of", value, stdout=StringIO())
