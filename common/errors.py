"""Domain errors raised by the stock ledger and invoice services.

Every error carries a stable ``code`` and a ``details`` mapping so the API
layer (see ``common.exceptions``) can render it without inspecting the type.
"""

from __future__ import annotations

from typing import Any


class DomainError(Exception):
    code = "domain_error"
    status_code = 400
    retryable = False
    default_message = "The request could not be completed."

    def __init__(self, message: str | None = None, details: dict[str, Any] | None = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)


class ValidationError(DomainError):
    code = "validation_error"
    default_message = "Validation failed."


class NotFoundError(DomainError):
    code = "not_found"
    status_code = 404
    default_message = "Record was not found."

    def __init__(self, entity: str, entity_id: Any):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(
            f"{entity} {entity_id} was not found.",
            {"entity": entity, "id": str(entity_id)},
        )


class InsufficientStockError(DomainError):
    code = "insufficient_stock"
    status_code = 409
    default_message = "Insufficient stock for this movement."

    def __init__(self, requested: int, available: int):
        self.requested = requested
        self.available = available
        super().__init__(
            f"Requested {requested} units but only {available} available.",
            {"requested": requested, "available": available},
        )


class NoStockError(DomainError):
    code = "no_stock"
    status_code = 409
    default_message = "There is no stock record for this product."

    def __init__(self, product_id: Any):
        self.product_id = product_id
        super().__init__(details={"product_id": str(product_id)})


class InvalidTransitionError(DomainError):
    code = "invalid_transition"
    status_code = 409

    def __init__(self, attempted: str, current: str):
        self.attempted = attempted
        self.current = current
        super().__init__(
            f"Cannot move invoice from {current} to {attempted}.",
            {"attempted": attempted, "current": current},
        )


class UniqueConstraintViolation(DomainError):
    code = "unique_violation"
    status_code = 409

    def __init__(self, field: str, value: Any = None):
        self.field = field
        self.value = value
        details = {"field": field}
        if value is not None:
            details["value"] = str(value)
        super().__init__(f"A record with this {field} already exists.", details)


class ReferentialIntegrityViolation(DomainError):
    code = "in_use"
    status_code = 409

    def __init__(self, entity: str, entity_id: Any, referenced_by: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        self.referenced_by = referenced_by
        details = {"entity": entity, "id": str(entity_id)}
        if referenced_by:
            details["referenced_by"] = referenced_by
        super().__init__(f"Cannot delete {entity}: it is still in use.", details)


class ConcurrencyConflict(DomainError):
    code = "concurrency_conflict"
    status_code = 409
    retryable = True
    default_message = "The record was modified concurrently. Please retry."

    def __init__(self, entity: str, entity_id: Any, attempts: int):
        self.entity = entity
        self.entity_id = entity_id
        self.attempts = attempts
        super().__init__(details={"entity": entity, "id": str(entity_id), "attempts": attempts})


class InvoiceNumberExhausted(DomainError):
    code = "invoice_number_exhausted"
    status_code = 409

    def __init__(self, prefix: str, limit: int):
        self.prefix = prefix
        self.limit = limit
        super().__init__(
            f"All {limit} invoice numbers for {prefix} are in use.",
            {"prefix": prefix, "limit": limit},
        )
