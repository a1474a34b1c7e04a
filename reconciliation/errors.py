"""Failure kinds raised while reconciling an upload.

Driver-specific error codes are inspected only in :func:`classify_store_error`;
everything above the upsert boundary works with these classes.
"""
from __future__ import annotations

from typing import Iterable, Optional


class ReconciliationError(Exception):
    """Base class for every failure the engine reports."""


class ValidationError(ReconciliationError):
    """A row lacks a value it must supply. The row is skipped, not the group."""

    def __init__(self, message: str, missing: Iterable[str] = ()):
        super().__init__(message)
        self.missing = tuple(missing)


class InvalidInput(ValidationError):
    """A value is present but unusable (non-numeric, negative, bad date)."""


class ParentNotFound(ReconciliationError):
    def __init__(self, entity: str, key: dict):
        self.entity = entity
        self.key = dict(key)
        shown = ", ".join(f"{k}={v}" for k, v in self.key.items())
        super().__init__(f"{entity} not found: {shown}")


class StoreError(ReconciliationError):
    """A store failure that is neither a unique nor a foreign-key breach."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class UniqueViolation(StoreError):
    pass


class ForeignKeyViolation(StoreError):
    pass


class OptionalSubsystemFailure(ReconciliationError):
    """Wraps a failure in a best-effort stage; reported as a warning only."""

    def __init__(self, stage: str, cause: BaseException):
        self.stage = stage
        self.cause = cause
        super().__init__(f"{stage} skipped: {cause}")


# PostgreSQL SQLSTATE classes
_PG_UNIQUE = "23505"
_PG_FOREIGN_KEY = "23503"
# MySQL / MariaDB server error numbers
_MYSQL_UNIQUE = {1062, 1586}
_MYSQL_FOREIGN_KEY = {1451, 1452, 1216, 1217}


def _driver_code(orig) -> Optional[object]:
    for attr in ("pgcode", "sqlstate"):
        code = getattr(orig, attr, None)
        if code:
            return str(code)
    args = getattr(orig, "args", None) or ()
    if args and isinstance(args[0], int):
        return args[0]
    return None


def classify_store_error(exc: BaseException) -> StoreError:
    """Map a DBAPI/SQLAlchemy error onto the engine's taxonomy."""
    orig = getattr(exc, "orig", None) or exc
    message = str(orig).strip().splitlines()[0] if str(orig).strip() else type(orig).__name__
    code = _driver_code(orig)

    if code == _PG_UNIQUE or code in _MYSQL_UNIQUE:
        return UniqueViolation(message, exc)
    if code == _PG_FOREIGN_KEY or code in _MYSQL_FOREIGN_KEY:
        return ForeignKeyViolation(message, exc)

    low = message.lower()
    # SQLite only reports constraint failures through the message text
    if "unique constraint failed" in low or "duplicate key" in low or "duplicate entry" in low:
        return UniqueViolation(message, exc)
    if "foreign key constraint" in low:
        return ForeignKeyViolation(message, exc)
    return StoreError(message, exc)
