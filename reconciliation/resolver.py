"""Natural key -> surrogate id resolution, scoped to one reconciliation group."""
from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional, Tuple

import sqlalchemy as sa
from sqlalchemy.orm import Session

from .errors import ParentNotFound
from .upsert import UpsertEngine

CacheKey = Tuple[str, Tuple[Tuple[str, Any], ...]]


def _cache_key(table: sa.Table, key: Mapping[str, Any]) -> CacheKey:
    return table.name, tuple(sorted(key.items()))


class NaturalKeyResolver:
    """Remembers every id produced or found in the current group.

    Row-isolated stages call :meth:`mark` before a row and :meth:`rewind` when
    its savepoint rolls back, so ids of discarded writes never leak into later
    rows.
    """

    def __init__(self, session: Session, upserts: UpsertEngine):
        self.session = session
        self.upserts = upserts
        self._ids: Dict[CacheKey, int] = {}
        self._journal: List[CacheKey] = []

    def mark(self) -> int:
        return len(self._journal)

    def rewind(self, mark: int) -> None:
        while len(self._journal) > mark:
            self._ids.pop(self._journal.pop(), None)

    def _remember(self, ck: CacheKey, pk: int) -> int:
        if ck not in self._ids:
            self._journal.append(ck)
        self._ids[ck] = pk
        return pk

    def resolve(self, model, key: Mapping[str, Any], values: Optional[Mapping[str, Any]] = None, **options) -> int:
        """Lookup-or-create: upsert the entity the row describes."""
        table = getattr(model, "__table__", model)
        pk = self.upserts.upsert(self.session, table, key, values, **options)
        return self._remember(_cache_key(table, key), pk)

    def find(self, model, **key: Any) -> Optional[int]:
        table = getattr(model, "__table__", model)
        ck = _cache_key(table, key)
        if ck in self._ids:
            return self._ids[ck]
        pk = self.session.execute(
            sa.select(table.c.id).where(*[table.c[k] == v for k, v in key.items()])
        ).scalar()
        if pk is not None:
            self._remember(ck, pk)
        return pk

    def require(self, model, label: Optional[str] = None, **key: Any) -> int:
        """Lookup-or-fail for an ancestor the row does not describe."""
        pk = self.find(model, **key)
        if pk is None:
            name = label or getattr(model, "__name__", None) or model.name
            raise ParentNotFound(name, key)
        return pk

    def optional(self, model, **key: Any) -> Optional[int]:
        """Optional ancestor: None when not supplied or not on record."""
        if any(v is None for v in key.values()):
            return None
        return self.find(model, **key)

