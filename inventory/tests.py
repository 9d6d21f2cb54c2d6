import threading
import unittest
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.db import connection
from django.test import TestCase, TransactionTestCase, override_settings
from rest_framework.test import APIClient

from common.errors import ConcurrencyConflict, InsufficientStockError, NoStockError, NotFoundError, UniqueConstraintViolation, ValidationError
from core.models import AuditLog
from inventory import services
from inventory.models import MAX_QUANTITY, ImmutableRecordError, Product, StockMovement, StockRecord
from inventory.services import (
    StockLevel,
    apply_movement,
    compute_stock_level,
    create_product,
    deactivate_product,
    ledger_balance,
    stock_percentage,
    stock_records_with_levels,
    update_thresholds,
)

User = get_user_model()


class StockLevelTests(TestCase):
    def test_levels_against_thresholds(self):
        self.assertEqual(compute_stock_level(5, 10, 100), StockLevel.CRITICAL)
        self.assertEqual(compute_stock_level(10, 10, 100), StockLevel.CRITICAL)
        self.assertEqual(compute_stock_level(15, 10, 100), StockLevel.LOW)
        self.assertEqual(compute_stock_level(20, 10, 100), StockLevel.LOW)
        self.assertEqual(compute_stock_level(50, 10, 100), StockLevel.NORMAL)
        self.assertEqual(compute_stock_level(89, 10, 100), StockLevel.NORMAL)
        self.assertEqual(compute_stock_level(90, 10, 100), StockLevel.HIGH)
        self.assertEqual(compute_stock_level(95, 10, 100), StockLevel.HIGH)

    def test_zero_thresholds(self):
        self.assertEqual(compute_stock_level(0, 0, 0), StockLevel.CRITICAL)
        self.assertEqual(compute_stock_level(3, 0, 0), StockLevel.HIGH)

    def test_stock_percentage(self):
        self.assertEqual(stock_percentage(50, 100), Decimal("50.00"))
        self.assertEqual(stock_percentage(1, 3), Decimal("33.33"))
        self.assertEqual(stock_percentage(150, 100), Decimal("100.00"))
        self.assertEqual(stock_percentage(10, 0), Decimal("0"))


class StockLedgerServiceTests(TestCase):
    def setUp(self):
        self.keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        self.product = create_product(sku="SKU-001", name="Widget", price=Decimal("10.00"))

    def test_first_entry_creates_record_with_default_thresholds(self):
        result = apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id, "opening")

        self.assertEqual(result.record.quantity, 5)
        self.assertEqual(result.record.min_stock, 10)
        self.assertEqual(result.record.max_stock, 100)
        self.assertIsNotNone(result.record.last_restock_date)
        self.assertEqual(result.movement.quantity, 5)
        self.assertEqual(result.movement.actor_id, self.keeper.id)

    def test_ledger_sum_matches_on_hand_quantity(self):
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 20, self.keeper.id)
        apply_movement(self.product.id, StockMovement.Kind.EXIT, 7, self.keeper.id)
        apply_movement(self.product.id, StockMovement.Kind.ADJUSTMENT, -3, self.keeper.id, "count")
        apply_movement(self.product.id, StockMovement.Kind.ADJUSTMENT, 4, self.keeper.id, "found")

        record = StockRecord.objects.get(product=self.product)
        self.assertEqual(record.quantity, 14)
        self.assertEqual(ledger_balance(self.product.id), 14)
        self.assertEqual(
            list(StockMovement.objects.filter(product=self.product).values_list("quantity", flat=True)),
            [20, -7, -3, 4],
        )
        self.assertEqual(record.version, 3)

    def test_exit_beyond_on_hand_is_rejected_without_writing(self):
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 3, self.keeper.id)

        with self.assertRaises(InsufficientStockError) as ctx:
            apply_movement(self.product.id, StockMovement.Kind.EXIT, 4, self.keeper.id)

        self.assertEqual(ctx.exception.requested, 4)
        self.assertEqual(ctx.exception.available, 3)
        self.assertEqual(StockRecord.objects.get(product=self.product).quantity, 3)
        self.assertEqual(StockMovement.objects.filter(product=self.product).count(), 1)

    def test_exit_without_stock_record_raises_no_stock(self):
        with self.assertRaises(NoStockError):
            apply_movement(self.product.id, StockMovement.Kind.EXIT, 1, self.keeper.id)
        with self.assertRaises(NoStockError):
            apply_movement(self.product.id, StockMovement.Kind.ADJUSTMENT, -1, self.keeper.id)
        self.assertFalse(StockRecord.objects.filter(product=self.product).exists())
        self.assertFalse(StockMovement.objects.exists())

    def test_positive_adjustment_creates_record(self):
        result = apply_movement(self.product.id, StockMovement.Kind.ADJUSTMENT, 2, self.keeper.id)
        self.assertEqual(result.record.quantity, 2)

    def test_invalid_movements(self):
        cases = [
            (StockMovement.Kind.ENTRY, 0),
            (StockMovement.Kind.EXIT, -2),
            (StockMovement.Kind.ADJUSTMENT, 0),
            (StockMovement.Kind.ENTRY, True),
            (StockMovement.Kind.ENTRY, 1.5),
            ("transfer", 1),
        ]
        for kind, quantity in cases:
            with self.subTest(kind=kind, quantity=quantity):
                with self.assertRaises(ValidationError):
                    apply_movement(self.product.id, kind, quantity, self.keeper.id)
        self.assertFalse(StockMovement.objects.exists())

    def test_missing_actor_or_product(self):
        with self.assertRaises(ValidationError):
            apply_movement(self.product.id, StockMovement.Kind.ENTRY, 1, None)
        with self.assertRaises(NotFoundError):
            apply_movement("not-a-uuid", StockMovement.Kind.ENTRY, 1, self.keeper.id)

    def test_inactive_product_cannot_move(self):
        deactivate_product(self.product.id)
        with self.assertRaises(ValidationError):
            apply_movement(self.product.id, StockMovement.Kind.ENTRY, 1, self.keeper.id)

    def test_quantities_beyond_integer_column_are_rejected(self):
        for kind, quantity in [(StockMovement.Kind.ENTRY, 10**20), (StockMovement.Kind.ADJUSTMENT, -(MAX_QUANTITY + 1))]:
            with self.subTest(kind=kind):
                with self.assertRaises(ValidationError) as ctx:
                    apply_movement(self.product.id, kind, quantity, self.keeper.id)
                self.assertIn("quantity", ctx.exception.details)
        self.assertFalse(StockMovement.objects.exists())

        apply_movement(self.product.id, StockMovement.Kind.ENTRY, MAX_QUANTITY, self.keeper.id)
        with self.assertRaises(ValidationError):
            apply_movement(self.product.id, StockMovement.Kind.ENTRY, 1, self.keeper.id)

        self.assertEqual(StockRecord.objects.get(product=self.product).quantity, MAX_QUANTITY)
        self.assertEqual(ledger_balance(self.product.id), MAX_QUANTITY)
        with self.assertRaises(ValidationError):
            update_thresholds(self.product.id, max_stock=MAX_QUANTITY + 1)

    def test_movements_are_append_only(self):
        movement = apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id).movement

        movement.quantity = 50
        with self.assertRaises(ImmutableRecordError):
            movement.save()
        with self.assertRaises(ImmutableRecordError):
            movement.delete()
        self.assertEqual(StockMovement.objects.get(pk=movement.pk).quantity, 5)

    def test_update_thresholds(self):
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 15, self.keeper.id)

        record = update_thresholds(self.product.id, min_stock=5, max_stock=16, location="A-01")

        self.assertEqual((record.min_stock, record.max_stock, record.location), (5, 16, "A-01"))
        self.assertEqual(record.quantity, 15)
        self.assertEqual(compute_stock_level(record.quantity, record.min_stock, record.max_stock), StockLevel.HIGH)
        with self.assertRaises(ValidationError):
            update_thresholds(self.product.id, min_stock=-1)

    def test_update_thresholds_without_record(self):
        with self.assertRaises(NoStockError):
            update_thresholds(self.product.id, min_stock=1)

    def test_stock_records_with_levels_filter(self):
        other = create_product(sku="SKU-002", name="Gadget", price=Decimal("5.00"))
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id)
        apply_movement(other.id, StockMovement.Kind.ENTRY, 50, self.keeper.id)

        critical = stock_records_with_levels("critical")
        self.assertEqual([row.product_id for row in critical], [self.product.id])
        self.assertEqual(len(stock_records_with_levels()), 2)
        with self.assertRaises(ValidationError):
            stock_records_with_levels("empty")

    def test_duplicate_sku(self):
        with self.assertRaises(UniqueConstraintViolation) as ctx:
            create_product(sku="SKU-001", name="Again", price=Decimal("1.00"))
        self.assertEqual(ctx.exception.details["field"], "sku")


@override_settings(STOCK_RETRY_BACKOFF_SECONDS=0)
class StockConcurrencyTests(TestCase):
    """Interleavings forced by handing the ledger a stale read of the stock record."""

    def setUp(self):
        self.keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        self.product = create_product(sku="SKU-C", name="Contended", price=Decimal("3.00"))
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id)

    def _stale_loader(self, stale_reads):
        real_loader = services._load_stock_record
        calls = []

        def loader(product_id):
            calls.append(product_id)
            record = real_loader(product_id)
            if len(calls) <= stale_reads:
                record.quantity = 5
                record.version = 0
            return record

        return loader, calls

    def test_two_exits_against_five_units(self):
        apply_movement(self.product.id, StockMovement.Kind.EXIT, 4, self.keeper.id)

        # the second exit first sees the pre-exit snapshot, loses the version swap, then retries
        loader, calls = self._stale_loader(stale_reads=1)
        with mock.patch("inventory.services._load_stock_record", side_effect=loader):
            with self.assertRaises(InsufficientStockError) as ctx:
                apply_movement(self.product.id, StockMovement.Kind.EXIT, 4, self.keeper.id)

        self.assertEqual(len(calls), 2)
        self.assertEqual(ctx.exception.available, 1)
        self.assertEqual(StockRecord.objects.get(product=self.product).quantity, 1)
        self.assertEqual(StockMovement.objects.filter(kind=StockMovement.Kind.EXIT).count(), 1)
        self.assertEqual(ledger_balance(self.product.id), 1)

    def test_exhausted_retries_raise_concurrency_conflict(self):
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 1, self.keeper.id)

        loader, calls = self._stale_loader(stale_reads=10)
        with mock.patch("inventory.services._load_stock_record", side_effect=loader):
            with self.assertRaises(ConcurrencyConflict) as ctx:
                apply_movement(self.product.id, StockMovement.Kind.EXIT, 2, self.keeper.id)

        self.assertEqual(len(calls), 3)
        self.assertTrue(ctx.exception.retryable)
        self.assertEqual(ctx.exception.details["attempts"], 3)
        self.assertEqual(StockRecord.objects.get(product=self.product).quantity, 6)
        self.assertEqual(StockMovement.objects.count(), 2)


@unittest.skipUnless(connection.vendor == "postgresql", "row locks need PostgreSQL")
@override_settings(STOCK_RETRY_BACKOFF_SECONDS=0)
class StockConcurrencyPostgresTests(TransactionTestCase):
    def test_parallel_exits_never_oversell(self):
        keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        product = create_product(sku="SKU-P", name="Parallel", price=Decimal("3.00"))
        apply_movement(product.id, StockMovement.Kind.ENTRY, 5, keeper.id)

        barrier = threading.Barrier(2)
        outcomes = []

        def worker():
            barrier.wait()
            try:
                apply_movement(product.id, StockMovement.Kind.EXIT, 4, keeper.id)
                outcomes.append("ok")
            except InsufficientStockError:
                outcomes.append("insufficient")
            finally:
                connection.close()

        threads = [threading.Thread(target=worker) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        self.assertEqual(sorted(outcomes), ["insufficient", "ok"])
        self.assertEqual(StockRecord.objects.get(product=product).quantity, 1)
        self.assertEqual(ledger_balance(product.id), 1)


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(username="admin", password="pass1234", role=User.Role.ADMIN)
        self.keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        self.seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)
        self.product = create_product(sku="SKU-API", name="Api Widget", price=Decimal("12.50"))

    def test_requires_authentication(self):
        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")

    def test_admin_creates_product_and_audits(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/products/",
            {"sku": "SKU-NEW", "name": "New", "price": "4.00", "category": "food"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["sku"], "SKU-NEW")
        self.assertTrue(payload["is_active"])
        self.assertTrue(AuditLog.objects.filter(action="product.create", entity_id=payload["id"]).exists())

    def test_duplicate_sku_returns_unique_violation(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post("/api/v1/products/", {"sku": "SKU-API", "name": "Dup", "price": "1.00"}, format="json")

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "unique_violation")
        self.assertEqual(response.json()["errors"]["field"], "sku")

    def test_seller_cannot_manage_catalog(self):
        self.client.force_authenticate(user=self.seller)

        response = self.client.post("/api/v1/products/", {"sku": "X", "name": "X", "price": "1.00"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_delete_deactivates_product(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/products/{self.product.id}/")

        self.assertEqual(response.status_code, 204)
        self.product.refresh_from_db()
        self.assertFalse(self.product.is_active)
        listed = self.client.get("/api/v1/products/").json()["results"]
        self.assertNotIn(str(self.product.id), {item["id"] for item in listed})
        listed = self.client.get("/api/v1/products/?include_inactive=true").json()["results"]
        self.assertIn(str(self.product.id), {item["id"] for item in listed})

    def test_warehouse_keeper_posts_movements(self):
        self.client.force_authenticate(user=self.keeper)

        response = self.client.post(
            "/api/v1/stock/movements/",
            {"product_id": str(self.product.id), "kind": "entry", "quantity": 8, "reference": "PO-1"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["stock"]["quantity"], 8)
        self.assertEqual(payload["stock"]["level"], "critical")
        self.assertEqual(payload["movement"]["reference"], "PO-1")
        self.assertEqual(payload["movement"]["actor"], str(self.keeper.id))
        self.assertTrue(AuditLog.objects.filter(action="stock.movement", actor=self.keeper).exists())

    def test_insufficient_stock_envelope(self):
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 2, self.keeper.id)
        self.client.force_authenticate(user=self.keeper)

        response = self.client.post(
            "/api/v1/stock/movements/",
            {"product_id": str(self.product.id), "kind": "exit", "quantity": 3},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {
                "code": "insufficient_stock",
                "message": "Requested 3 units but only 2 available.",
                "errors": {"requested": 3, "available": 2},
                "status": 409,
            },
        )

    def test_no_stock_envelope(self):
        self.client.force_authenticate(user=self.keeper)

        response = self.client.post(
            "/api/v1/stock/movements/",
            {"product_id": str(self.product.id), "kind": "exit", "quantity": 1},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "no_stock")

    def test_oversized_movement_quantity_is_a_validation_error(self):
        self.client.force_authenticate(user=self.keeper)

        response = self.client.post(
            "/api/v1/stock/movements/",
            {"product_id": str(self.product.id), "kind": "entry", "quantity": 10**20},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("quantity", response.json()["errors"])
        self.assertFalse(StockMovement.objects.exists())

    def test_movement_is_rolled_back_when_audit_write_fails(self):
        self.client.force_authenticate(user=self.keeper)

        with mock.patch("inventory.views.create_audit_log_from_request", side_effect=RuntimeError("audit store down")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self.client.post(
                    "/api/v1/stock/movements/",
                    {"product_id": str(self.product.id), "kind": "entry", "quantity": 4},
                    format="json",
                )

        self.assertEqual(response.status_code, 500)
        self.assertFalse(StockMovement.objects.exists())
        self.assertFalse(StockRecord.objects.exists())

    def test_seller_cannot_move_stock(self):
        self.client.force_authenticate(user=self.seller)

        response = self.client.post(
            "/api/v1/stock/movements/",
            {"product_id": str(self.product.id), "kind": "entry", "quantity": 1},
            format="json",
        )

        self.assertEqual(response.status_code, 403)
        self.assertFalse(StockMovement.objects.exists())

    def test_stock_listing_with_level_filter(self):
        other = create_product(sku="SKU-FULL", name="Full", price=Decimal("1.00"))
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id)
        apply_movement(other.id, StockMovement.Kind.ENTRY, 95, self.keeper.id)
        self.client.force_authenticate(user=self.seller)

        response = self.client.get("/api/v1/stock/?level=high")

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([row["product_sku"] for row in results], ["SKU-FULL"])
        self.assertEqual(results[0]["percentage"], "95.00")

        response = self.client.get("/api/v1/stock/?level=bogus")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_threshold_update_endpoint(self):
        record = apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id).record
        self.client.force_authenticate(user=self.keeper)

        response = self.client.post(f"/api/v1/stock/{record.id}/thresholds/", {"min_stock": 2, "max_stock": 20}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["level"], "normal")
        self.assertEqual(response.json()["quantity"], 5)

    def test_movement_listing_filters_by_product(self):
        other = create_product(sku="SKU-OTHER", name="Other", price=Decimal("1.00"))
        apply_movement(self.product.id, StockMovement.Kind.ENTRY, 5, self.keeper.id)
        apply_movement(other.id, StockMovement.Kind.ENTRY, 1, self.keeper.id)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get(f"/api/v1/stock/movements/?product_id={self.product.id}")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)
        self.assertEqual(self.client.get("/api/v1/stock/movements/?product_id=nope").json()["count"], 0)
