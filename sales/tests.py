from datetime import timedelta
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from common.errors import (
    InvalidTransitionError,
    InvoiceNumberExhausted,
    NotFoundError,
    ReferentialIntegrityViolation,
    UniqueConstraintViolation,
    ValidationError,
)
from core.models import AuditLog
from inventory.models import MAX_QUANTITY, ImmutableRecordError, StockMovement, StockRecord
from inventory.services import apply_movement, create_product, deactivate_product
from sales.models import Customer, Invoice, InvoiceItem
from sales.services import (
    LineSelection,
    compute_invoice_totals,
    create_invoice,
    delete_customer,
    mark_overdue_invoices,
    transition_status,
)

User = get_user_model()


def invoice_prefix():
    return f"FAC-{timezone.now():%Y%m}-"


class InvoiceTotalsTests(TestCase):
    def test_totals_identity(self):
        totals = compute_invoice_totals([Decimal("200.00"), Decimal("50.00")], tax_rate=Decimal("0.16"))

        self.assertEqual(totals.subtotal, Decimal("250.00"))
        self.assertEqual(totals.tax, Decimal("40.00"))
        self.assertEqual(totals.total, Decimal("290.00"))

    def test_tax_uses_bankers_rounding(self):
        self.assertEqual(compute_invoice_totals([Decimal("0.20")], tax_rate=Decimal("0.125")).tax, Decimal("0.02"))
        self.assertEqual(compute_invoice_totals([Decimal("0.60")], tax_rate=Decimal("0.125")).tax, Decimal("0.08"))

    def test_empty_invoice_totals_are_zero(self):
        totals = compute_invoice_totals([], tax_rate=Decimal("0.16"))
        self.assertEqual((totals.subtotal, totals.tax, totals.total), (Decimal("0.00"), Decimal("0.00"), Decimal("0.00")))


class InvoiceServiceTests(TestCase):
    def setUp(self):
        self.seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)
        self.customer = Customer.objects.create(name="ACME", email="billing@acme.test")
        self.product_a = create_product(sku="A", name="Product A", price=Decimal("100.00"))
        self.product_b = create_product(sku="B", name="Product B", price=Decimal("50.00"))

    def _create(self, lines=None, **kwargs):
        lines = lines or [LineSelection(self.product_a.id, 2), LineSelection(self.product_b.id, 1)]
        return create_invoice(self.customer.id, lines, self.seller.id, **kwargs)

    @override_settings(SALES_TAX_RATE=Decimal("0.16"))
    def test_two_line_invoice(self):
        invoice = self._create()

        self.assertEqual(invoice.status, Invoice.Status.PENDING)
        self.assertEqual(invoice.subtotal, Decimal("250.00"))
        self.assertEqual(invoice.tax, Decimal("40.00"))
        self.assertEqual(invoice.total, Decimal("290.00"))
        self.assertEqual(invoice.invoice_number, f"{invoice_prefix()}0001")
        self.assertEqual(invoice.user_id, self.seller.id)
        items = list(invoice.items.all())
        self.assertEqual([(item.product_id, item.quantity, item.subtotal) for item in items], [
            (self.product_a.id, 2, Decimal("200.00")),
            (self.product_b.id, 1, Decimal("50.00")),
        ])
        self.assertEqual(sum(item.subtotal for item in items), invoice.subtotal)

    def test_invoice_numbers_are_sequential(self):
        first = self._create()
        second = self._create()

        self.assertEqual(first.invoice_number, f"{invoice_prefix()}0001")
        self.assertEqual(second.invoice_number, f"{invoice_prefix()}0002")

    def test_accepts_mapping_lines_and_price_override(self):
        invoice = self._create(
            [{"product_id": str(self.product_a.id), "quantity": 3, "unit_price_override": "90.00"}],
            notes="volume discount",
        )

        item = invoice.items.get()
        self.assertEqual(item.unit_price, Decimal("90.00"))
        self.assertEqual(invoice.subtotal, Decimal("270.00"))
        self.assertEqual(invoice.notes, "volume discount")

    def test_unit_price_is_a_snapshot(self):
        invoice = self._create()

        self.product_a.price = Decimal("999.00")
        self.product_a.save()

        invoice.refresh_from_db()
        self.assertEqual(invoice.items.get(product=self.product_a).unit_price, Decimal("100.00"))
        self.assertEqual(invoice.subtotal, Decimal("250.00"))

    @override_settings(SALES_TAX_RATE=Decimal("0.125"))
    def test_configured_rate_rounds_half_even(self):
        cheap = create_product(sku="C", name="Cheap", price=Decimal("0.20"))

        invoice = self._create([LineSelection(cheap.id, 1)])

        self.assertEqual(invoice.tax, Decimal("0.02"))
        self.assertEqual(invoice.total, Decimal("0.22"))

    def test_invoice_does_not_touch_stock(self):
        keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        apply_movement(self.product_a.id, StockMovement.Kind.ENTRY, 1, keeper.id)

        self._create()

        self.assertEqual(StockRecord.objects.get(product=self.product_a).quantity, 1)
        self.assertEqual(StockMovement.objects.count(), 1)

    def test_rejects_bad_input(self):
        inactive = create_product(sku="OLD", name="Old", price=Decimal("1.00"))
        deactivate_product(inactive.id)

        cases = [
            [],
            [LineSelection(self.product_a.id, 0)],
            [LineSelection(self.product_a.id, -1)],
            [LineSelection(self.product_a.id, True)],
            [LineSelection("not-a-uuid", 1)],
            [LineSelection(inactive.id, 1)],
            [LineSelection(self.product_a.id, 1, Decimal("-1"))],
            ["A x 1"],
        ]
        for lines in cases:
            with self.subTest(lines=lines):
                with self.assertRaises(ValidationError):
                    create_invoice(self.customer.id, lines, self.seller.id)
        self.assertFalse(Invoice.objects.exists())

    @override_settings(SALES_TAX_RATE=Decimal("0.16"))
    def test_amounts_beyond_money_columns_are_rejected_before_writing(self):
        expensive = create_product(sku="BIG", name="Big Ticket", price=Decimal("10000.00"))
        cases = [
            ([LineSelection(expensive.id, 10**9)], "lines[0].subtotal"),
            ([LineSelection(self.product_a.id, MAX_QUANTITY + 1)], "lines[0].quantity"),
            ([LineSelection(expensive.id, 600000), LineSelection(expensive.id, 600000)], "total"),
            ([LineSelection(expensive.id, 900000)], "total"),
        ]
        for lines, field in cases:
            with self.subTest(field=field):
                with self.assertRaises(ValidationError) as ctx:
                    create_invoice(self.customer.id, lines, self.seller.id)
                self.assertIn(field, ctx.exception.details)
        self.assertFalse(Invoice.objects.exists())
        self.assertFalse(InvoiceItem.objects.exists())

    def test_unknown_customer(self):
        with self.assertRaises(NotFoundError):
            create_invoice("5f0c7a3e-8a39-4c1b-9d59-2d5cb2d8a001", [LineSelection(self.product_a.id, 1)], self.seller.id)

    def test_next_number_follows_highest_serial(self):
        with mock.patch("sales.services._next_invoice_number", return_value=f"{invoice_prefix()}0041"):
            self._create()

        self.assertEqual(self._create().invoice_number, f"{invoice_prefix()}0042")

    def test_monthly_sequence_stops_at_four_digits(self):
        with mock.patch("sales.services._next_invoice_number", return_value=f"{invoice_prefix()}9999"):
            self._create()

        with self.assertRaises(InvoiceNumberExhausted) as ctx:
            self._create()

        self.assertEqual(ctx.exception.details["limit"], 9999)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_invoice_number_collision_is_retried(self):
        existing = self._create()
        fresh_number = f"{invoice_prefix()}0042"

        with mock.patch("sales.services._next_invoice_number", side_effect=[existing.invoice_number, fresh_number]):
            invoice = self._create()

        self.assertEqual(invoice.invoice_number, fresh_number)
        self.assertEqual(Invoice.objects.count(), 2)

    def test_invoice_number_collision_exhausts(self):
        existing = self._create()

        with mock.patch("sales.services._next_invoice_number", return_value=existing.invoice_number) as numbering:
            with self.assertRaises(UniqueConstraintViolation):
                self._create()

        self.assertEqual(numbering.call_count, 3)
        self.assertEqual(Invoice.objects.count(), 1)

    def test_totals_and_items_are_immutable(self):
        invoice = self._create()

        invoice.total = Decimal("1.00")
        with self.assertRaises(ImmutableRecordError):
            invoice.save()

        item = invoice.items.first()
        item.quantity = 99
        with self.assertRaises(ImmutableRecordError):
            item.save()

    def test_status_can_be_saved_without_touching_totals(self):
        invoice = self._create()
        invoice.notes = "called customer"
        invoice.save(update_fields=["notes", "updated_at"])

        invoice.refresh_from_db()
        self.assertEqual(invoice.notes, "called customer")


class InvoiceLifecycleTests(TestCase):
    def setUp(self):
        self.seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)
        self.customer = Customer.objects.create(name="ACME")
        self.product = create_product(sku="A", name="Product A", price=Decimal("100.00"))

    def _create(self, **kwargs):
        return create_invoice(self.customer.id, [LineSelection(self.product.id, 1)], self.seller.id, **kwargs)

    def test_pay_sets_paid_at_and_keeps_totals(self):
        invoice = self._create()
        totals = (invoice.subtotal, invoice.tax, invoice.total)

        paid = transition_status(invoice.id, Invoice.Status.PAID)

        self.assertEqual(paid.status, Invoice.Status.PAID)
        self.assertIsNotNone(paid.paid_at)
        self.assertEqual((paid.subtotal, paid.tax, paid.total), totals)

    def test_terminal_states_are_closed(self):
        paid = self._create()
        transition_status(paid.id, Invoice.Status.PAID)
        cancelled = self._create()
        transition_status(cancelled.id, Invoice.Status.CANCELLED)

        for invoice, target in [
            (paid, Invoice.Status.CANCELLED),
            (paid, Invoice.Status.PENDING),
            (paid, Invoice.Status.PAID),
            (cancelled, Invoice.Status.PAID),
            (cancelled, Invoice.Status.PENDING),
        ]:
            with self.subTest(invoice=invoice.invoice_number, target=target):
                with self.assertRaises(InvalidTransitionError):
                    transition_status(invoice.id, target)

        self.assertEqual(Invoice.objects.get(pk=paid.pk).status, Invoice.Status.PAID)
        self.assertEqual(Invoice.objects.get(pk=cancelled.pk).status, Invoice.Status.CANCELLED)

    def test_callers_cannot_request_overdue(self):
        invoice = self._create()

        with self.assertRaises(InvalidTransitionError) as ctx:
            transition_status(invoice.id, Invoice.Status.OVERDUE)

        self.assertEqual(ctx.exception.details, {"attempted": "overdue", "current": "pending"})

    def test_unknown_status_and_invoice(self):
        invoice = self._create()
        with self.assertRaises(ValidationError):
            transition_status(invoice.id, "refunded")
        with self.assertRaises(NotFoundError):
            transition_status("5f0c7a3e-8a39-4c1b-9d59-2d5cb2d8a001", Invoice.Status.PAID)

    def test_mark_overdue_then_settle(self):
        today = timezone.localdate()
        late = self._create(due_date=today - timedelta(days=1))
        on_time = self._create(due_date=today + timedelta(days=1))
        undated = self._create()
        paid_late = self._create(due_date=today - timedelta(days=5))
        transition_status(paid_late.id, Invoice.Status.PAID)

        self.assertEqual(mark_overdue_invoices(today), 1)

        statuses = dict(Invoice.objects.values_list("id", "status"))
        self.assertEqual(statuses[late.id], Invoice.Status.OVERDUE)
        self.assertEqual(statuses[on_time.id], Invoice.Status.PENDING)
        self.assertEqual(statuses[undated.id], Invoice.Status.PENDING)
        self.assertEqual(statuses[paid_late.id], Invoice.Status.PAID)

        self.assertEqual(transition_status(late.id, Invoice.Status.PAID).status, Invoice.Status.PAID)
        self.assertEqual(mark_overdue_invoices(today), 0)


class CustomerServiceTests(TestCase):
    def test_customer_with_invoices_cannot_be_deleted(self):
        seller = User.objects.create_user(username="seller", password="pass1234")
        customer = Customer.objects.create(name="Busy")
        product = create_product(sku="A", name="A", price=Decimal("1.00"))
        create_invoice(customer.id, [LineSelection(product.id, 1)], seller.id)

        with self.assertRaises(ReferentialIntegrityViolation) as ctx:
            delete_customer(customer.id)

        self.assertEqual(ctx.exception.details["referenced_by"], "invoice")
        self.assertTrue(Customer.objects.filter(pk=customer.pk).exists())

    def test_unused_customer_is_deleted(self):
        customer = Customer.objects.create(name="Idle")

        delete_customer(customer.id)

        self.assertFalse(Customer.objects.filter(pk=customer.pk).exists())
        with self.assertRaises(NotFoundError):
            delete_customer(customer.id)


class SalesApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.seller = User.objects.create_user(username="seller", password="pass1234", role=User.Role.SELLER)
        self.accountant = User.objects.create_user(username="accountant", password="pass1234", role=User.Role.ACCOUNTANT)
        self.keeper = User.objects.create_user(username="keeper", password="pass1234", role=User.Role.WAREHOUSE)
        self.customer = Customer.objects.create(name="ACME")
        self.product = create_product(sku="A", name="Product A", price=Decimal("100.00"))

    def _post_invoice(self, user, **extra):
        self.client.force_authenticate(user=user)
        body = {"customer_id": str(self.customer.id), "lines": [{"product_id": str(self.product.id), "quantity": 2}]}
        body.update(extra)
        return self.client.post("/api/v1/invoices/", body, format="json")

    @override_settings(SALES_TAX_RATE=Decimal("0.16"))
    def test_seller_creates_invoice(self):
        response = self._post_invoice(self.seller)

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "pending")
        self.assertEqual((payload["subtotal"], payload["tax"], payload["total"]), ("200.00", "32.00", "232.00"))
        self.assertEqual(payload["items"][0]["unit_price"], "100.00")
        self.assertEqual(payload["customer_name"], "ACME")
        self.assertTrue(AuditLog.objects.filter(action="invoice.create", entity_id=payload["id"]).exists())

    def test_warehouse_keeper_cannot_invoice(self):
        response = self._post_invoice(self.keeper)

        self.assertEqual(response.status_code, 403)
        self.assertFalse(Invoice.objects.exists())

    def test_empty_lines_rejected(self):
        response = self._post_invoice(self.seller, lines=[])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("lines", response.json()["errors"])

    def test_oversized_line_quantity_is_rejected(self):
        response = self._post_invoice(self.seller, lines=[{"product_id": str(self.product.id), "quantity": 10**9}])

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")
        self.assertIn("lines[0].subtotal", response.json()["errors"])

        response = self._post_invoice(self.seller, lines=[{"product_id": str(self.product.id), "quantity": 10**20}])

        self.assertEqual(response.status_code, 400)
        self.assertIn("lines", response.json()["errors"])
        self.assertFalse(Invoice.objects.exists())

    def test_invoice_is_rolled_back_when_audit_write_fails(self):
        with mock.patch("sales.views.create_audit_log_from_request", side_effect=RuntimeError("audit store down")):
            with self.assertLogs("common.exceptions", level="ERROR"):
                response = self._post_invoice(self.seller)

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["code"], "internal_server_error")
        self.assertFalse(Invoice.objects.exists())
        self.assertFalse(InvoiceItem.objects.exists())

    def test_status_endpoint(self):
        invoice_id = self._post_invoice(self.seller).json()["id"]
        self.client.force_authenticate(user=self.accountant)

        response = self.client.post(f"/api/v1/invoices/{invoice_id}/status/", {"status": "paid"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "paid")
        self.assertIsNotNone(response.json()["paid_at"])
        log = AuditLog.objects.get(action="invoice.status")
        self.assertEqual(log.before_snapshot, {"status": "pending"})

        response = self.client.post(f"/api/v1/invoices/{invoice_id}/status/", {"status": "cancelled"}, format="json")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(
            response.json(),
            {
                "code": "invalid_transition",
                "message": "Cannot move invoice from paid to cancelled.",
                "errors": {"attempted": "cancelled", "current": "paid"},
                "status": 409,
            },
        )

    def test_mark_overdue_endpoint(self):
        yesterday = (timezone.localdate() - timedelta(days=1)).isoformat()
        self._post_invoice(self.seller, due_date=yesterday)
        self.client.force_authenticate(user=self.accountant)

        response = self.client.post("/api/v1/invoices/mark-overdue/", {}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"updated": 1})
        self.assertEqual(Invoice.objects.get().status, Invoice.Status.OVERDUE)

        self.client.force_authenticate(user=self.seller)
        self.assertEqual(self.client.post("/api/v1/invoices/mark-overdue/", {}, format="json").status_code, 403)

    def test_invoice_list_filters(self):
        self._post_invoice(self.seller)
        self.client.force_authenticate(user=self.keeper)

        self.assertEqual(self.client.get("/api/v1/invoices/?status=pending").json()["count"], 1)
        self.assertEqual(self.client.get("/api/v1/invoices/?status=paid").json()["count"], 0)
        self.assertEqual(self.client.get(f"/api/v1/invoices/?customer_id={self.customer.id}").json()["count"], 1)

    def test_unknown_invoice_is_404_envelope(self):
        self.client.force_authenticate(user=self.seller)

        response = self.client.get("/api/v1/invoices/5f0c7a3e-8a39-4c1b-9d59-2d5cb2d8a001/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_customer_crud_and_in_use_delete(self):
        self.client.force_authenticate(user=self.seller)

        created = self.client.post("/api/v1/customers/", {"name": "New Co", "email": "", "tax_id": "RFC123"}, format="json")
        self.assertEqual(created.status_code, 201)
        self.assertIsNone(created.json()["email"])

        deleted = self.client.delete(f"/api/v1/customers/{created.json()['id']}/")
        self.assertEqual(deleted.status_code, 204)
        self.assertTrue(AuditLog.objects.filter(action="customer.delete").exists())

        self._post_invoice(self.seller)
        response = self.client.delete(f"/api/v1/customers/{self.customer.id}/")
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "in_use")
