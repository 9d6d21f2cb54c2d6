"""
Thin helpers over the Django ORM for the ledger and invoice services.

- find() returns a row or None, treating malformed ids as "not found".
- unique_field() / protected_delete() translate integrity failures raised by
  the database into domain errors the API layer knows how to render.
"""

import uuid
from contextlib import contextmanager

from django.core.exceptions import ValidationError as DjangoValidationError
from django.db import IntegrityError
from django.db.models import Model, ProtectedError, RestrictedError

from common.errors import ReferentialIntegrityViolation, UniqueConstraintViolation


def parse_uuid(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError, AttributeError):
        return None


def find(source, pk):
    """Fetch one row by primary key from a model class or queryset."""
    queryset = source._default_manager.all() if isinstance(source, type) and issubclass(source, Model) else source
    try:
        return queryset.filter(pk=pk).first()
    except (DjangoValidationError, ValueError, TypeError):
        return None


@contextmanager
def unique_field(field, value=None):
    """Re-raise an ``IntegrityError`` from the wrapped insert as a unique violation on ``field``."""
    try:
        yield
    except IntegrityError as exc:
        raise UniqueConstraintViolation(field, value) from exc


@contextmanager
def protected_delete(entity, entity_id):
    try:
        yield
    except ProtectedError as exc:
        raise ReferentialIntegrityViolation(entity, entity_id, _model_names(exc.protected_objects)) from exc
    except RestrictedError as exc:
        raise ReferentialIntegrityViolation(entity, entity_id, _model_names(exc.restricted_objects)) from exc


def _model_names(objects):
    names = sorted({obj._meta.model_name for obj in objects})
    return ",".join(names) or None
