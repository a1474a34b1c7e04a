import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session

from models import Branch
from reconciliation.errors import (
    ForeignKeyViolation,
    OptionalSubsystemFailure,
    ParentNotFound,
    StoreError,
    UniqueViolation,
    classify_store_error,
)
from reconciliation.upsert import UpsertEngine


class FakePgError(Exception):
    def __init__(self, message, pgcode):
        super().__init__(message)
        self.pgcode = pgcode


class FakePsycopg3Error(Exception):
    def __init__(self, message, sqlstate):
        super().__init__(message)
        self.sqlstate = sqlstate


def _wrap(orig, cls=IntegrityError):
    return cls("INSERT ...", {}, orig)


def test_postgres_codes():
    assert isinstance(classify_store_error(_wrap(FakePgError("dup", "23505"))), UniqueViolation)
    assert isinstance(classify_store_error(_wrap(FakePgError("fk", "23503"))), ForeignKeyViolation)
    assert isinstance(classify_store_error(_wrap(FakePsycopg3Error("dup", "23505"))), UniqueViolation)


def test_mysql_error_numbers():
    dup = Exception(1062, "Duplicate entry 'a@x' for key 'users.email'")
    fk = Exception(1452, "Cannot add or update a child row: a foreign key constraint fails")
    assert isinstance(classify_store_error(_wrap(dup)), UniqueViolation)
    assert isinstance(classify_store_error(_wrap(fk)), ForeignKeyViolation)


def test_sqlite_messages():
    unique = classify_store_error(_wrap(Exception("UNIQUE constraint failed: users.email")))
    fk = classify_store_error(_wrap(Exception("FOREIGN KEY constraint failed")))
    assert isinstance(unique, UniqueViolation)
    assert str(unique) == "UNIQUE constraint failed: users.email"
    assert isinstance(fk, ForeignKeyViolation)


def test_other_failures_stay_generic():
    err = classify_store_error(_wrap(Exception("database is locked"), OperationalError))
    assert type(err) is StoreError
    assert err.cause is not None


def test_parent_not_found_message():
    err = ParentNotFound("Class", {"school_id": 1, "class_name": "Grade 9"})
    assert str(err) == "Class not found: school_id=1, class_name=Grade 9"


def test_optional_failure_wraps_cause():
    err = OptionalSubsystemFailure("fee_structures", ValueError("bad total"))
    assert str(err) == "fee_structures skipped: bad total"


def test_upsert_classifies_foreign_key_breach(engine):
    upserts = UpsertEngine()
    with Session(engine) as session, session.begin():
        with pytest.raises(ForeignKeyViolation):
            upserts.upsert(session, Branch, {"school_id": 999, "branch_code": "X"}, {"branch_name": "Ghost"})
