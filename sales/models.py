import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models

from inventory.models import ImmutableRecordError, Product

# Largest amount a DecimalField(max_digits=12, decimal_places=2) column holds.
MAX_MONEY = Decimal("9999999999.99")


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    email = models.EmailField(null=True, blank=True)
    phone = models.CharField(max_length=64, null=True, blank=True)
    address = models.TextField(blank=True, default="")
    tax_id = models.CharField(max_length=32, null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["name"], name="customer_name_idx"),
            models.Index(fields=["email"], name="customer_email_idx"),
        ]


class Invoice(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        PAID = "paid", "Paid"
        CANCELLED = "cancelled", "Cancelled"
        OVERDUE = "overdue", "Overdue"

    FROZEN_FIELDS = ("invoice_number", "customer_id", "subtotal", "tax", "total")

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=32, unique=True)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, related_name="invoices")
    user = models.ForeignKey(settings.AUTH_USER_MODEL, on_delete=models.PROTECT, related_name="invoices")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    tax = models.DecimalField(max_digits=12, decimal_places=2)
    total = models.DecimalField(max_digits=12, decimal_places=2)
    due_date = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="invoice_status_created_idx"),
            models.Index(fields=["status", "due_date"], name="invoice_status_due_idx"),
            models.Index(fields=["customer", "created_at"], name="invoice_customer_created_idx"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            self._check_frozen_fields(kwargs.get("update_fields"))
        super().save(*args, **kwargs)

    def _check_frozen_fields(self, update_fields):
        fields = [
            field
            for field in self.FROZEN_FIELDS
            if update_fields is None or field in update_fields or field.removesuffix("_id") in update_fields
        ]
        if not fields:
            return
        stored = type(self).objects.filter(pk=self.pk).values(*fields).first()
        if stored is not None and any(stored[field] != getattr(self, field) for field in fields):
            raise ImmutableRecordError("Invoice number, customer and totals are fixed at creation.")


class InvoiceItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="invoice_items")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["created_at", "id"]
        indexes = [
            models.Index(fields=["invoice"], name="invoiceitem_invoice_idx"),
            models.Index(fields=["product"], name="invoiceitem_product_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="invoiceitem_quantity_positive"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ImmutableRecordError("Invoice items are fixed at creation.")
        super().save(*args, **kwargs)
