"""The single writer: insert-or-update keyed on a natural-key constraint."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, Mapping, Optional

import sqlalchemy as sa
from sqlalchemy.dialects import mysql, postgresql, sqlite
from sqlalchemy.exc import DBAPIError, NoSuchTableError
from sqlalchemy.orm import Session

from .errors import classify_store_error

logger = logging.getLogger(__name__)


def _table_of(target) -> sa.Table:
    return getattr(target, "__table__", target)


class UpsertEngine:
    """Executes idempotent upserts and returns surrogate ids.

    One instance lives for a whole run so the generated-column probe hits the
    store at most once per table.
    """

    def __init__(self):
        self._generated: Dict[str, FrozenSet[str]] = {}

    def generated_columns(self, session: Session, table: sa.Table) -> FrozenSet[str]:
        cached = self._generated.get(table.name)
        if cached is not None:
            return cached
        found = set(c.name for c in table.columns if c.computed is not None)
        try:
            for col in sa.inspect(session.connection()).get_columns(table.name, schema=table.schema):
                if col.get("computed"):
                    found.add(col["name"])
        except (DBAPIError, NoSuchTableError) as exc:
            # Reflection is advisory; the model definition still applies
            logger.warning("Could not inspect %s for generated columns: %s", table.name, exc)
        result = frozenset(found)
        if result:
            logger.info("Table %s has store-generated columns: %s", table.name, ", ".join(sorted(result)))
        self._generated[table.name] = result
        return result

    def upsert(
        self,
        session: Session,
        target,
        key: Mapping[str, Any],
        values: Optional[Mapping[str, Any]] = None,
        *,
        defaults: Optional[Mapping[str, Any]] = None,
        insert_only: Iterable[str] = (),
        update: bool = True,
    ) -> int:
        """Insert ``key`` + ``values``; on key conflict update ``values`` only.

        ``defaults`` fill columns on insert and are never used to update.
        ``insert_only`` names carried values that must not change once stored.
        With ``update=False`` a conflict is a no-op.
        """
        table = _table_of(target)
        generated = self.generated_columns(session, table)
        values = dict(values or {})

        row = dict(defaults or {})
        row.update(values)
        row.update(key)
        row = {k: v for k, v in row.items() if k not in generated}

        frozen = set(key) | set(insert_only) | generated
        mutable = [c for c in values if c not in frozen] if update else []
        touch = bool(mutable) and "updated_at" in table.c

        try:
            pk = self._write(session, table, key, row, mutable, touch)
        except DBAPIError as exc:
            raise classify_store_error(exc) from exc
        if pk is None:
            pk = session.execute(
                sa.select(table.c.id).where(*[table.c[k] == v for k, v in key.items()])
            ).scalar_one()
        return pk

    def _write(self, session, table, key, row, mutable, touch) -> Optional[int]:
        dialect = session.get_bind().dialect.name
        now = datetime.utcnow()

        if dialect in ("postgresql", "sqlite"):
            insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
            stmt = insert(table).values(**row)
            if mutable:
                set_ = {c: stmt.excluded[c] for c in mutable}
                if touch:
                    set_["updated_at"] = now
                stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_)
            else:
                stmt = stmt.on_conflict_do_nothing(index_elements=list(key))
            # DO NOTHING returns no row on conflict; caller re-selects
            return session.execute(stmt.returning(table.c.id)).scalar()

        if dialect in ("mysql", "mariadb"):
            stmt = mysql.insert(table).values(**row)
            if mutable:
                set_ = {c: stmt.inserted[c] for c in mutable}
                if touch:
                    set_["updated_at"] = now
            else:
                set_ = {"id": table.c.id}
            session.execute(stmt.on_duplicate_key_update(set_))
            return None

        # Anything else: look up, then update or insert
        where = [table.c[k] == v for k, v in key.items()]
        existing = session.execute(sa.select(table.c.id).where(*where)).scalar()
        if existing is None:
            return session.execute(sa.insert(table).values(**row)).inserted_primary_key[0]
        if mutable:
            set_ = {c: row[c] for c in mutable if c in row}
            if touch:
                set_["updated_at"] = now
            session.execute(sa.update(table).where(table.c.id == existing).values(**set_))
        return existing
