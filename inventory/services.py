"""
Stock ledger.

Inventory model:
- Every change to on-hand quantity is an append-only StockMovement row.
- StockRecord.quantity is the running balance of those rows and is written in
  the same transaction as the movement, so SUM(movement.quantity) per product
  always equals StockRecord.quantity.
- On-hand quantity never goes negative. A rejected movement writes nothing.

Concurrency:
- The record is read with SELECT ... FOR UPDATE and written back with a
  compare-and-swap on ``version``. A lost swap rolls the attempt back and the
  whole read-check-write is retried (see common.concurrency.run_with_retry).
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from decimal import Decimal

from django.conf import settings
from django.db import IntegrityError, OperationalError, transaction
from django.db.models import F, Sum
from django.utils import timezone

from common.concurrency import StaleWriteError, run_with_retry
from common.errors import ConcurrencyConflict, InsufficientStockError, NoStockError, NotFoundError, ValidationError
from common.store import find, parse_uuid, unique_field
from inventory.models import MAX_QUANTITY, Product, StockMovement, StockRecord


class StockLevel(str, enum.Enum):
    CRITICAL = "critical"
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


@dataclass(frozen=True)
class MovementResult:
    record: StockRecord
    movement: StockMovement


def compute_stock_level(quantity, min_stock, max_stock):
    if quantity <= min_stock:
        return StockLevel.CRITICAL
    if quantity <= 2 * min_stock:
        return StockLevel.LOW
    if max_stock <= 0:
        return StockLevel.HIGH if quantity > 0 else StockLevel.NORMAL
    # quantity >= 0.9 * max_stock, kept in integer arithmetic
    if quantity * 10 >= max_stock * 9:
        return StockLevel.HIGH
    return StockLevel.NORMAL


def stock_percentage(quantity, max_stock):
    """Fill ratio against ``max_stock`` as a 0-100 percentage."""
    if max_stock <= 0:
        return Decimal("0")
    ratio = Decimal(quantity) / Decimal(max_stock) * 100
    return min(ratio, Decimal("100")).quantize(Decimal("0.01"))


def ledger_balance(product_id):
    product_id = parse_uuid(product_id)
    if product_id is None:
        return 0
    return StockMovement.objects.filter(product_id=product_id).aggregate(total=Sum("quantity"))["total"] or 0


def default_thresholds():
    return (
        getattr(settings, "STOCK_DEFAULT_MIN_STOCK", 10),
        getattr(settings, "STOCK_DEFAULT_MAX_STOCK", 100),
    )


def _require_int(value, field):
    # bool is an int subclass; reject it explicitly
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(details={field: "Must be an integer."})
    return value


def signed_effect(kind, quantity):
    """Return the signed quantity a movement of ``kind`` applies to stock."""
    if kind not in StockMovement.Kind.values:
        raise ValidationError(details={"kind": f"Unknown movement kind '{kind}'."})

    quantity = _require_int(quantity, "quantity")
    if abs(quantity) > MAX_QUANTITY:
        raise ValidationError(details={"quantity": f"Quantity must not exceed {MAX_QUANTITY}."})
    if kind == StockMovement.Kind.ADJUSTMENT:
        if quantity == 0:
            raise ValidationError(details={"quantity": "Adjustment delta must be non-zero."})
        return quantity

    if quantity <= 0:
        raise ValidationError(details={"quantity": "Quantity must be greater than zero."})
    return quantity if kind == StockMovement.Kind.ENTRY else -quantity


def _get_active_product(product_id):
    product = find(Product, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    if not product.is_active:
        raise ValidationError(details={"product_id": "Product is inactive."})
    return product


def _load_stock_record(product_id):
    return StockRecord.objects.select_for_update().filter(product_id=product_id).first()


def _apply_once(product, kind, effect, actor_id, notes, reference):
    now = timezone.now()
    with transaction.atomic():
        record = _load_stock_record(product.id)

        if record is None:
            if effect < 0:
                raise NoStockError(product.id)
            min_stock, max_stock = default_thresholds()
            try:
                with transaction.atomic():
                    record = StockRecord.objects.create(
                        product=product,
                        quantity=effect,
                        min_stock=min_stock,
                        max_stock=max_stock,
                        last_restock_date=now,
                    )
            except IntegrityError as exc:
                # another caller created the record first
                raise StaleWriteError(f"stock record for {product.id} created concurrently") from exc
        else:
            new_quantity = record.quantity + effect
            if new_quantity < 0:
                raise InsufficientStockError(requested=-effect, available=record.quantity)
            if new_quantity > MAX_QUANTITY:
                raise ValidationError(details={"quantity": f"On-hand quantity would exceed {MAX_QUANTITY}."})

            changes = {"quantity": new_quantity, "version": F("version") + 1, "updated_at": now}
            if effect > 0:
                changes["last_restock_date"] = now
            swapped = StockRecord.objects.filter(pk=record.pk, version=record.version).update(**changes)
            if swapped != 1:
                raise StaleWriteError(f"stock record {record.pk} changed since version {record.version}")
            record.refresh_from_db()

        movement = StockMovement.objects.create(
            product=product,
            quantity=effect,
            kind=kind,
            reference=reference or "",
            actor_id=actor_id,
            notes=notes or "",
        )
    return MovementResult(record=record, movement=movement)


def apply_movement(product_id, kind, quantity, actor_id, notes="", *, reference=None):
    """
    Apply an entry, exit or adjustment to a product's stock.

    ``quantity`` is a positive magnitude for entries and exits and a signed,
    non-zero delta for adjustments. Returns a MovementResult with the updated
    StockRecord and the appended StockMovement.
    """
    effect = signed_effect(kind, quantity)
    if actor_id is None:
        raise ValidationError(details={"actor_id": "An actor is required."})
    product = _get_active_product(product_id)
    attempts = getattr(settings, "STOCK_UPDATE_MAX_ATTEMPTS", 3)

    try:
        return run_with_retry(
            lambda: _apply_once(product, kind, effect, actor_id, notes, reference),
            attempts=attempts,
            backoff_base=getattr(settings, "STOCK_RETRY_BACKOFF_SECONDS", 0.05),
            label="stock.apply_movement",
        )
    except (StaleWriteError, OperationalError) as exc:
        raise ConcurrencyConflict("stock_record", product.id, attempts) from exc


def update_thresholds(product_id, *, min_stock=None, max_stock=None, location=None):
    """Change alerting thresholds or location; quantity is only ever moved by apply_movement."""
    changes = {}
    if min_stock is not None:
        changes["min_stock"] = _require_int(min_stock, "min_stock")
    if max_stock is not None:
        changes["max_stock"] = _require_int(max_stock, "max_stock")
    if location is not None:
        changes["location"] = location
    if any(value < 0 or value > MAX_QUANTITY for key, value in changes.items() if key != "location"):
        raise ValidationError(details={"thresholds": f"Thresholds must be between 0 and {MAX_QUANTITY}."})

    product_uuid = parse_uuid(product_id)
    record = StockRecord.objects.filter(product_id=product_uuid).first() if product_uuid else None
    if record is None:
        raise NoStockError(product_id)
    if changes:
        changes["updated_at"] = timezone.now()
        StockRecord.objects.filter(pk=record.pk).update(version=F("version") + 1, **changes)
        record.refresh_from_db()
    return record


def stock_records_with_levels(level=None):
    """Stock records of active products, each tagged with ``.level``; optionally only one level."""
    if level is not None and level not in {choice.value for choice in StockLevel}:
        raise ValidationError(details={"level": f"Unknown stock level '{level}'."})

    records = StockRecord.objects.select_related("product").filter(product__is_active=True).order_by("product__name")
    rows = []
    for record in records:
        record.level = compute_stock_level(record.quantity, record.min_stock, record.max_stock)
        if level is not None and record.level != level:
            continue
        rows.append(record)
    return rows


def create_product(*, sku, name, price, cost=0, category=Product.Category.OTHER, description="", image_url=""):
    price = Decimal(str(price))
    cost = Decimal(str(cost))
    if price < 0 or cost < 0:
        raise ValidationError(details={"price": "Price and cost must be non-negative."})
    if category not in Product.Category.values:
        raise ValidationError(details={"category": f"Unknown category '{category}'."})

    with unique_field("sku", sku), transaction.atomic():
        return Product.objects.create(
            sku=sku,
            name=name,
            price=price,
            cost=cost,
            category=category,
            description=description,
            image_url=image_url,
        )


def deactivate_product(product_id):
    product = find(Product, product_id)
    if product is None:
        raise NotFoundError("product", product_id)
    if product.is_active:
        product.is_active = False
        product.save(update_fields=["is_active", "updated_at"])
    return product
