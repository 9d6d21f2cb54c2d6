"""
Invoice engine.

- Totals are derived once, at creation: item.subtotal = quantity * unit_price,
  subtotal = sum(items), tax = subtotal * SALES_TAX_RATE, total = subtotal + tax.
  Money is quantized to 0.01 with ROUND_HALF_EVEN before it is stored.
- unit_price is a snapshot of Product.price (or an explicit override); later
  price changes never reach existing invoices.
- Invoice creation does not touch stock. Debiting inventory on sale is left
  to the caller as an explicit stock movement.
- Status lifecycle: pending -> paid | cancelled | overdue, overdue -> paid |
  cancelled. paid and cancelled are terminal. overdue is only reached through
  mark_overdue_invoices, never requested by a caller.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from django.conf import settings
from django.db import IntegrityError, transaction
from django.db.models import Max
from django.utils import timezone

from common.errors import (
    InvalidTransitionError,
    InvoiceNumberExhausted,
    NotFoundError,
    UniqueConstraintViolation,
    ValidationError,
)
from common.store import find, parse_uuid, protected_delete
from inventory.models import MAX_QUANTITY, Product
from sales.models import MAX_MONEY, Customer, Invoice, InvoiceItem

logger = logging.getLogger(__name__)

MONEY_QUANT = Decimal("0.01")
SERIAL_DIGITS = 4
MAX_SERIAL = 10**SERIAL_DIGITS - 1

CALLER_TRANSITIONS = {
    Invoice.Status.PENDING: {Invoice.Status.PAID, Invoice.Status.CANCELLED},
    Invoice.Status.OVERDUE: {Invoice.Status.PAID, Invoice.Status.CANCELLED},
    Invoice.Status.PAID: set(),
    Invoice.Status.CANCELLED: set(),
}


def _to_money(value):
    return Decimal(value).quantize(MONEY_QUANT, rounding=ROUND_HALF_EVEN)


def get_tax_rate():
    try:
        rate = Decimal(str(getattr(settings, "SALES_TAX_RATE", "0.16")))
    except InvalidOperation as exc:
        raise ValidationError(details={"tax_rate": "SALES_TAX_RATE is not a decimal."}) from exc
    if rate < 0:
        raise ValidationError(details={"tax_rate": "SALES_TAX_RATE must be non-negative."})
    return rate


@dataclass(frozen=True)
class LineSelection:
    product_id: object
    quantity: int
    unit_price_override: Decimal | None = None


@dataclass(frozen=True)
class InvoiceTotals:
    subtotal: Decimal
    tax: Decimal
    total: Decimal


def compute_invoice_totals(line_subtotals, tax_rate=None):
    rate = get_tax_rate() if tax_rate is None else Decimal(str(tax_rate))
    subtotal = _to_money(sum((Decimal(value) for value in line_subtotals), Decimal("0")))
    tax = _to_money(subtotal * rate)
    return InvoiceTotals(subtotal=subtotal, tax=tax, total=subtotal + tax)


def _coerce_selection(raw, index):
    if isinstance(raw, LineSelection):
        selection = raw
    elif isinstance(raw, Mapping):
        if raw.get("product_id") in (None, ""):
            raise ValidationError(details={f"lines[{index}].product_id": "Product is required."})
        selection = LineSelection(
            product_id=raw["product_id"],
            quantity=raw.get("quantity"),
            unit_price_override=raw.get("unit_price_override"),
        )
    else:
        raise ValidationError(details={f"lines[{index}]": "Each line must be a product/quantity selection."})

    product_id = parse_uuid(selection.product_id)
    if product_id is None:
        raise ValidationError(details={f"lines[{index}].product_id": "Product id is malformed."})

    quantity = selection.quantity
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError(details={f"lines[{index}].quantity": "Quantity must be a positive integer."})
    if quantity > MAX_QUANTITY:
        raise ValidationError(details={f"lines[{index}].quantity": f"Quantity must not exceed {MAX_QUANTITY}."})

    override = selection.unit_price_override
    if override is not None:
        try:
            override = _to_money(Decimal(str(override)))
        except InvalidOperation as exc:
            raise ValidationError(details={f"lines[{index}].unit_price_override": "Must be a decimal."}) from exc
        if override < 0 or override > MAX_MONEY:
            raise ValidationError(details={f"lines[{index}].unit_price_override": f"Must be between 0 and {MAX_MONEY}."})
    return LineSelection(product_id, quantity, override)


def _next_invoice_number(now):
    """Next ``PREFIX-YYYYMM-NNNN`` number; serials are zero-padded so the text maximum is the numeric one."""
    prefix = f"{getattr(settings, 'INVOICE_NUMBER_PREFIX', 'FAC')}-{now:%Y%m}-"
    latest = Invoice.objects.filter(invoice_number__startswith=prefix).aggregate(latest=Max("invoice_number"))["latest"]
    suffix = latest[len(prefix):] if latest else ""
    serial = (int(suffix) if suffix.isdigit() else 0) + 1
    if serial > MAX_SERIAL:
        raise InvoiceNumberExhausted(prefix.rstrip("-"), MAX_SERIAL)
    return f"{prefix}{serial:0{SERIAL_DIGITS}d}"


def create_invoice(customer_id, line_selections, actor_id, *, due_date=None, notes=""):
    if not line_selections:
        raise ValidationError(details={"lines": "At least one line item is required."})
    if actor_id is None:
        raise ValidationError(details={"actor_id": "An actor is required."})

    selections = [_coerce_selection(raw, index) for index, raw in enumerate(line_selections)]

    customer = find(Customer, customer_id)
    if customer is None:
        raise NotFoundError("customer", customer_id)

    product_ids = {selection.product_id for selection in selections}
    products = {product.id: product for product in Product.objects.filter(id__in=product_ids, is_active=True)}

    lines = []
    for index, selection in enumerate(selections):
        product = products.get(selection.product_id)
        if product is None:
            raise ValidationError(details={f"lines[{index}].product_id": "Product does not exist or is inactive."})
        unit_price = selection.unit_price_override if selection.unit_price_override is not None else _to_money(product.price)
        subtotal = _to_money(unit_price * selection.quantity)
        if subtotal > MAX_MONEY:
            raise ValidationError(details={f"lines[{index}].subtotal": f"Line subtotal must not exceed {MAX_MONEY}."})
        lines.append({"product": product, "quantity": selection.quantity, "unit_price": unit_price, "subtotal": subtotal})

    # subtotal and tax never exceed total
    totals = compute_invoice_totals(line["subtotal"] for line in lines)
    if totals.total > MAX_MONEY:
        raise ValidationError(details={"total": f"Invoice total must not exceed {MAX_MONEY}."})
    attempts = max(1, getattr(settings, "INVOICE_NUMBER_MAX_ATTEMPTS", 3))

    for attempt in range(attempts):
        invoice_number = _next_invoice_number(timezone.now())
        try:
            with transaction.atomic():
                invoice = Invoice.objects.create(
                    invoice_number=invoice_number,
                    customer=customer,
                    user_id=actor_id,
                    status=Invoice.Status.PENDING,
                    subtotal=totals.subtotal,
                    tax=totals.tax,
                    total=totals.total,
                    due_date=due_date,
                    notes=notes or "",
                )
                InvoiceItem.objects.bulk_create([InvoiceItem(invoice=invoice, **line) for line in lines])
        except IntegrityError:
            if not Invoice.objects.filter(invoice_number=invoice_number).exists():
                raise
            logger.info("invoice_number_collision number=%s attempt=%s", invoice_number, attempt + 1)
            continue
        return get_invoice(invoice.id)

    raise UniqueConstraintViolation("invoice_number", invoice_number)


def get_invoice(invoice_id):
    invoice = find(Invoice.objects.select_related("customer").prefetch_related("items__product"), invoice_id)
    if invoice is None:
        raise NotFoundError("invoice", invoice_id)
    return invoice


def transition_status(invoice_id, new_status):
    if new_status not in Invoice.Status.values:
        raise ValidationError(details={"status": f"Unknown invoice status '{new_status}'."})

    with transaction.atomic():
        invoice = find(Invoice.objects.select_for_update(), invoice_id)
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        current = invoice.status
        if new_status not in CALLER_TRANSITIONS.get(current, set()):
            raise InvalidTransitionError(attempted=new_status, current=current)

        now = timezone.now()
        changes = {"status": new_status, "updated_at": now}
        if new_status == Invoice.Status.PAID:
            changes["paid_at"] = now
        swapped = Invoice.objects.filter(pk=invoice.pk, status=current).update(**changes)
        if swapped != 1:
            current = Invoice.objects.filter(pk=invoice.pk).values_list("status", flat=True).first()
            raise InvalidTransitionError(attempted=new_status, current=current)

    return get_invoice(invoice_id)


def mark_overdue_invoices(as_of=None):
    """Move pending invoices whose due date has passed to overdue; returns how many moved."""
    as_of = as_of or timezone.localdate()
    return Invoice.objects.filter(status=Invoice.Status.PENDING, due_date__lt=as_of).update(
        status=Invoice.Status.OVERDUE,
        updated_at=timezone.now(),
    )


def delete_customer(customer_id):
    customer = find(Customer, customer_id)
    if customer is None:
        raise NotFoundError("customer", customer_id)
    with protected_delete("customer", customer_id), transaction.atomic():
        customer.delete()
