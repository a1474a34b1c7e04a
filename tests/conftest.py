import os
import sys

import pytest
import sqlalchemy as sa
from sqlalchemy.orm import Session

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from app import create_app
from extensions import db
from reconciliation.rows import SourceRow


UNIFIED_BASE = {
    "school_code": "SCH01",
    "school_name": "Green Valley School",
    "city": "Pune",
    "state": "Maharashtra",
    "board_type": "cbse",
    "class_name": "Grade 1",
    "class_order": "1",
    "class_category": "PRIMARY",
    "year_name": "2024-25",
    "year_start_date": "2024-04-01",
    "year_end_date": "2025-03-31",
    "section_name": "A",
}


def unified_row(line=2, **overrides):
    data = dict(UNIFIED_BASE)
    data.update(overrides)
    return SourceRow(line, data)


def table_rows(*dicts, sheet=None):
    return [SourceRow(i, d, sheet) for i, d in enumerate(dicts, start=2)]


def count(engine, model, **filters):
    with Session(engine) as session:
        stmt = sa.select(sa.func.count()).select_from(model)
        for name, value in filters.items():
            stmt = stmt.where(getattr(model, name) == value)
        return session.scalar(stmt)


def fetch(engine, model, **filters):
    """Load matching rows, detached from the session."""
    with Session(engine, expire_on_commit=False) as session:
        return session.scalars(sa.select(model).filter_by(**filters)).all()


@pytest.fixture
def app(tmp_path):
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": f"sqlite:///{tmp_path / 'setup.db'}",
        "LOG_LEVEL": "WARNING",
    })
    with app.app_context():
        db.create_all()
    yield app
    with app.app_context():
        db.engine.dispose()


@pytest.fixture
def engine(app):
    with app.app_context():
        yield db.engine


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def seeded(engine):
    """SCH01 with one branch, two classes, one year, three sections and a fee structure."""
    from reconciliation import reconcile_unified

    rows = [
        unified_row(2, branch_code="MAIN", branch_name="Main Campus", is_main_branch="true", total_annual_fee="12000"),
        unified_row(3, section_name="B"),
        unified_row(4, class_name="Grade 2", class_order="2", section_name="A", total_annual_fee="15000"),
    ]
    summary = reconcile_unified(rows, engine)
    assert summary["errors"] == []
    return engine
