# shopguard/services/remote_store.py
"""
Remote data store collaborator.

The store is the system of record and the only durable multi-writer
resource. The core never locks it; uniqueness is enforced by keys, and
writes that violate a key raise StoreConflictError.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from shopguard.core.exceptions import RecordNotFoundError, StoreConflictError

logger = logging.getLogger(__name__)

Record = Dict[str, Any]
Filters = Dict[str, Any]

PROFILES = "profiles"
CART_ITEMS = "cart_items"
FAVORITES = "favorites"
LOGIN_ATTEMPTS = "login_attempts"
PRODUCTS = "products"

UNIQUE_KEYS: Dict[str, List[Tuple[str, ...]]] = {
    PROFILES: [("id",)],
    CART_ITEMS: [("id",), ("user_id", "product_id", "selected_color", "selected_size")],
    FAVORITES: [("id",), ("user_id", "product_id")],
    PRODUCTS: [("id",)],
    LOGIN_ATTEMPTS: [("id",)],
}


class RemoteStore(ABC):
    """
    Operations the core performs against the remote store.

    Filters are equality matches; ``None`` matches a missing/NULL column.
    """

    @abstractmethod
    async def select(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Record]:
        ...

    @abstractmethod
    async def select_one(self, table: str, filters: Filters, columns: str = "*") -> Record:
        """Raises RecordNotFoundError when nothing matches"""

    @abstractmethod
    async def select_in(self, table: str, column: str, values: Sequence[Any], columns: str = "*") -> List[Record]:
        ...

    @abstractmethod
    async def insert(self, table: str, record: Record) -> Record:
        """Raises StoreConflictError on a uniqueness violation"""

    @abstractmethod
    async def update(self, table: str, filters: Filters, values: Record) -> List[Record]:
        ...

    @abstractmethod
    async def delete(self, table: str, filters: Filters) -> int:
        ...

    @abstractmethod
    async def upsert(self, table: str, record: Record, on_conflict: Sequence[str]) -> Record:
        ...

    async def close(self) -> None:
        """Release transport resources"""


def _matches(row: Record, filters: Optional[Filters]) -> bool:
    if not filters:
        return True
    return all(row.get(column) == value for column, value in filters.items())


class InMemoryRemoteStore(RemoteStore):
    """
    Dict-backed store with the same uniqueness rules as the real schema.

    ``calls`` records every operation as ``(operation, table)`` so tests
    can count remote round-trips. ``fail_next`` and ``latency`` simulate
    remote failures and slow responses.
    """

    def __init__(self, latency: float = 0.0, unique_keys: Optional[Dict[str, List[Tuple[str, ...]]]] = None):
        self.latency = latency
        self.unique_keys = unique_keys if unique_keys is not None else UNIQUE_KEYS
        self.tables: Dict[str, List[Record]] = {}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], Exception] = {}

    # Test helpers

    def seed(self, table: str, rows: Iterable[Record]) -> None:
        for row in rows:
            row = dict(row)
            row.setdefault("id", str(uuid.uuid4()))
            self.tables.setdefault(table, []).append(row)

    def rows(self, table: str, filters: Optional[Filters] = None) -> List[Record]:
        return [copy.deepcopy(r) for r in self.tables.get(table, []) if _matches(r, filters)]

    def fail_next(self, operation: str, table: str, error: Exception) -> None:
        self._failures[(operation, table)] = error

    def call_count(self, operation: Optional[str] = None, table: Optional[str] = None) -> int:
        return sum(
            1 for op, tbl in self.calls
            if (operation is None or op == operation) and (table is None or tbl == table)
        )

    # Internals

    async def _enter(self, operation: str, table: str) -> None:
        self.calls.append((operation, table))
        # Every remote call is a suspension point
        await asyncio.sleep(self.latency)
        error = self._failures.pop((operation, table), None)
        if error is not None:
            raise error

    def _conflicts(self, table: str, candidate: Record, ignore: Optional[Record] = None) -> Optional[Tuple[str, ...]]:
        for key in self.unique_keys.get(table, []):
            for row in self.tables.get(table, []):
                if row is ignore:
                    continue
                if all(row.get(c) == candidate.get(c) for c in key):
                    return key
        return None

    # RemoteStore interface

    async def select(self, table: str, filters: Optional[Filters] = None, columns: str = "*") -> List[Record]:
        await self._enter("select", table)
        return self.rows(table, filters)

    async def select_one(self, table: str, filters: Filters, columns: str = "*") -> Record:
        await self._enter("select_one", table)
        rows = self.rows(table, filters)
        if not rows:
            raise RecordNotFoundError(f"No row in {table} matches {filters}", collection=table)
        return rows[0]

    async def select_in(self, table: str, column: str, values: Sequence[Any], columns: str = "*") -> List[Record]:
        await self._enter("select_in", table)
        wanted = set(values)
        return [copy.deepcopy(r) for r in self.tables.get(table, []) if r.get(column) in wanted]

    async def insert(self, table: str, record: Record) -> Record:
        await self._enter("insert", table)
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        conflict = self._conflicts(table, row)
        if conflict:
            raise StoreConflictError(
                f"Duplicate key on {table}{conflict}",
                collection=table,
                details={"key": list(conflict)},
            )
        self.tables.setdefault(table, []).append(row)
        return copy.deepcopy(row)

    async def update(self, table: str, filters: Filters, values: Record) -> List[Record]:
        await self._enter("update", table)
        updated = []
        for row in self.tables.get(table, []):
            if _matches(row, filters):
                merged = {**row, **values}
                if self._conflicts(table, merged, ignore=row):
                    raise StoreConflictError(f"Duplicate key on {table}", collection=table)
                row.update(values)
                updated.append(copy.deepcopy(row))
        return updated

    async def delete(self, table: str, filters: Filters) -> int:
        await self._enter("delete", table)
        rows = self.tables.get(table, [])
        keep = [r for r in rows if not _matches(r, filters)]
        removed = len(rows) - len(keep)
        self.tables[table] = keep
        return removed

    async def upsert(self, table: str, record: Record, on_conflict: Sequence[str]) -> Record:
        await self._enter("upsert", table)
        for row in self.tables.get(table, []):
            if all(row.get(c) == record.get(c) for c in on_conflict):
                row.update({k: v for k, v in record.items() if k != "id"})
                return copy.deepcopy(row)
        row = dict(record)
        row.setdefault("id", str(uuid.uuid4()))
        self.tables.setdefault(table, []).append(row)
        return copy.deepcopy(row)
