"""
Storage abstractions for entity data.

This module provides:
- EntityStorage: Abstract async storage primitives consumed by models
- Transaction: Handle passed through the operations of one transaction
- InMemoryStorage: In-memory implementation for testing

Storage works on raw rows (plain dicts, storage shape). Encryption never
happens here: by the time a row reaches storage its encrypted columns
already hold tagged ciphertext.
"""

from __future__ import annotations

import asyncio
import copy
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import (
    TYPE_CHECKING,
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Tuple,
    TypeVar,
)

from .errors import StorageError
from .options import Include, QueryOptions, Where

if TYPE_CHECKING:
    from .model import Model, Relation

T = TypeVar("T")

AGGREGATES = ("count", "sum", "min", "max")


class Transaction:
    """Handle for one open transaction. Backends attach their own state."""

    def __init__(self, storage: EntityStorage, connection: Any = None) -> None:
        self.storage = storage
        self.connection = connection
        self.active = True

    def __repr__(self) -> str:
        state = "active" if self.active else "finished"
        return f"Transaction({type(self.storage).__name__}, {state})"


class EntityStorage(ABC):
    """
    Abstract storage interface for entity types.

    All methods are async to support both in-memory and database backends.
    """

    @abstractmethod
    async def find(self, model: Model, options: QueryOptions) -> List[Dict[str, Any]]:
        """Return raw rows matching the options, with included relations nested under their alias."""
        ...

    @abstractmethod
    async def count(self, model: Model, options: QueryOptions) -> int:
        """Count rows matching the options."""
        ...

    @abstractmethod
    async def aggregate(
        self, model: Model, fn: str, field: str, options: QueryOptions
    ) -> Any:
        """Compute count/sum/min/max of a column over the matching rows."""
        ...

    @abstractmethod
    async def insert(
        self,
        model: Model,
        values: Dict[str, Any],
        transaction: Optional[Transaction] = None,
    ) -> Dict[str, Any]:
        """Insert a row and return it as stored (generated primary key included)."""
        ...

    @abstractmethod
    async def update(
        self,
        model: Model,
        values: Dict[str, Any],
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        """Assign ``values`` to every matching row; return the affected count."""
        ...

    @abstractmethod
    async def delete(
        self,
        model: Model,
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        """Delete matching rows; return the affected count."""
        ...

    @abstractmethod
    def transaction(self) -> Any:
        """Async context manager yielding a Transaction; rolls back on error."""
        ...

    async def run_in_transaction(
        self, fn: Callable[[Transaction], Awaitable[T]]
    ) -> T:
        """
        Run ``fn`` inside one transaction.

        Commits when ``fn`` returns, rolls back and re-raises when it fails.
        """
        async with self.transaction() as tx:
            return await fn(tx)


# =============================================================================
# Predicate evaluation (in-memory)
# =============================================================================


def like_to_regex(pattern: str) -> "re.Pattern[str]":
    """Translate a SQL LIKE pattern (% and _) into a compiled regex."""
    parts = []
    for char in pattern:
        if char == "%":
            parts.append(".*")
        elif char == "_":
            parts.append(".")
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts), re.DOTALL)


def _compare(op: str, actual: Any, expected: Any) -> bool:
    if op == "$eq":
        if expected is None:
            return actual is None
        return actual is not None and actual == expected
    if op in ("$ne", "$not"):
        if expected is None:
            return actual is not None
        return actual is not None and actual != expected
    if op == "$in":
        if not isinstance(expected, (list, tuple)):
            raise StorageError(f"Operator {op} expects a list")
        return actual is not None and actual in expected
    if op == "$notIn":
        if not isinstance(expected, (list, tuple)):
            raise StorageError(f"Operator {op} expects a list")
        return actual is not None and actual not in expected
    if op == "$like":
        if not isinstance(expected, str) or not isinstance(actual, str):
            return False
        return like_to_regex(expected).fullmatch(actual) is not None
    if actual is None or expected is None:
        return False
    try:
        if op == "$gt":
            return actual > expected
        if op == "$gte":
            return actual >= expected
        if op == "$lt":
            return actual < expected
        if op == "$lte":
            return actual <= expected
    except TypeError:
        return False
    raise StorageError(f"Unsupported operator: {op}")


def is_filtered(include: Include) -> bool:
    """True if the include, or any include nested in it, carries a predicate."""
    if include.where is not None:
        return True
    return any(is_filtered(item) for item in include.include)


def _sort_key(value: Any) -> Tuple[bool, Any]:
    # nulls last
    return (value is None, value if value is not None else 0)


def matches(row: Dict[str, Any], where: Optional[Where]) -> bool:
    """Evaluate a predicate tree against one raw row."""
    if not where:
        return True
    for name, value in where.items():
        if name == "$and":
            items = value if isinstance(value, (list, tuple)) else [value]
            if not all(matches(row, item) for item in items):
                return False
            continue
        if name == "$or":
            if isinstance(value, dict):
                items = [{k: v} for k, v in value.items()]
            else:
                items = list(value)
            if not any(matches(row, item) for item in items):
                return False
            continue
        actual = row.get(name)
        if isinstance(value, dict):
            for op, expected in value.items():
                if not _compare(op, actual, expected):
                    return False
        elif isinstance(value, (list, tuple)):
            # an empty list matches nothing
            if actual is None or actual not in value:
                return False
        elif value is None:
            if actual is not None:
                return False
        elif actual != value:
            return False
    return True


# =============================================================================
# In-memory storage
# =============================================================================


class InMemoryStorage(EntityStorage):
    """
    In-memory storage implementation for testing.

    Uses asyncio.Lock around each primitive. Transactions snapshot every
    table on entry and restore the snapshot if the block raises, so they
    assume a single writer while open.
    """

    def __init__(self) -> None:
        self._tables: Dict[str, List[Dict[str, Any]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = asyncio.Lock()

    def rows(self, table: str) -> List[Dict[str, Any]]:
        """Return a copy of a table's raw rows (for inspection in tests)."""
        return copy.deepcopy(self._tables.get(table, []))

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._lock:
            snapshot = copy.deepcopy(self._tables), dict(self._sequences)
        tx = Transaction(self)
        try:
            yield tx
        except BaseException:
            async with self._lock:
                self._tables, self._sequences = snapshot
            raise
        finally:
            tx.active = False

    async def find(self, model: Model, options: QueryOptions) -> List[Dict[str, Any]]:
        async with self._lock:
            rows = self._select(model, options.where, options.include)
            rows = self._order(model, rows, options.order)
            start = options.offset or 0
            end = start + options.limit if options.limit is not None else None
            return copy.deepcopy(rows[start:end])

    async def count(self, model: Model, options: QueryOptions) -> int:
        async with self._lock:
            return len(self._select(model, options.where, options.include))

    async def aggregate(
        self, model: Model, fn: str, field: str, options: QueryOptions
    ) -> Any:
        if fn not in AGGREGATES:
            raise StorageError(f"Unsupported aggregate: {fn}")
        async with self._lock:
            rows = self._select(model, options.where, options.include)
        values = [row.get(field) for row in rows if row.get(field) is not None]
        if fn == "count":
            return len(values)
        if not values:
            return None
        try:
            if fn == "sum":
                return sum(values)
            if fn == "min":
                return min(values)
            return max(values)
        except TypeError as e:
            raise StorageError(f"Cannot compute {fn}({field}): {e}")

    async def insert(
        self,
        model: Model,
        values: Dict[str, Any],
        transaction: Optional[Transaction] = None,
    ) -> Dict[str, Any]:
        async with self._lock:
            table = self._tables.setdefault(model.table, [])
            row = copy.deepcopy(values)
            pk = model.primary_key
            if row.get(pk) is None:
                next_id = self._sequences.get(model.table, 0) + 1
                self._sequences[model.table] = next_id
                row[pk] = next_id
            elif isinstance(row[pk], int):
                self._sequences[model.table] = max(
                    self._sequences.get(model.table, 0), row[pk]
                )
            if any(existing.get(pk) == row[pk] for existing in table):
                raise StorageError(
                    f"Duplicate primary key {row[pk]!r} for table {model.table}"
                )
            table.append(row)
            return copy.deepcopy(row)

    async def update(
        self,
        model: Model,
        values: Dict[str, Any],
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        async with self._lock:
            affected = 0
            for row in self._tables.get(model.table, []):
                if matches(row, where):
                    row.update(copy.deepcopy(values))
                    affected += 1
            return affected

    async def delete(
        self,
        model: Model,
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        async with self._lock:
            table = self._tables.get(model.table, [])
            kept = [row for row in table if not matches(row, where)]
            self._tables[model.table] = kept
            return len(table) - len(kept)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _select(
        self, model: Model, where: Optional[Where], includes: List[Include]
    ) -> List[Dict[str, Any]]:
        selected = []
        for row in self._tables.get(model.table, []):
            if not matches(row, where):
                continue
            joined = dict(row)
            if self._join(model, joined, includes):
                selected.append(joined)
        return selected

    def _join(
        self, model: Model, row: Dict[str, Any], includes: List[Include]
    ) -> bool:
        """Attach included relations to ``row``; False if an include predicate excludes it."""
        for include in includes:
            relation, target = model.resolve_include(include)
            related = self._related_rows(model, relation, target, row)
            matched = []
            for item in related:
                if not matches(item, include.where):
                    continue
                joined = dict(item)
                if self._join(target, joined, include.include):
                    matched.append(joined)
            # a filtered include behaves as an inner join
            if is_filtered(include) and not matched:
                return False
            alias = relation.alias or target.name
            if relation.many:
                row[alias] = matched
            else:
                row[alias] = matched[0] if matched else None
        return True

    def _related_rows(
        self, model: Model, relation: Relation, target: Model, row: Dict[str, Any]
    ) -> List[Dict[str, Any]]:
        table = self._tables.get(target.table, [])
        if relation.many:
            own_id = row.get(model.primary_key)
            return [item for item in table if item.get(relation.foreign_key) == own_id]
        ref = row.get(relation.foreign_key)
        if ref is None:
            return []
        return [item for item in table if item.get(target.primary_key) == ref]

    @staticmethod
    def _order(
        model: Model,
        rows: List[Dict[str, Any]],
        order: Optional[List[Tuple[str, str]]],
    ) -> List[Dict[str, Any]]:
        keys = order or [(model.primary_key, "ASC")]
        for name, direction in reversed(keys):
            rows = sorted(
                rows,
                key=lambda r: _sort_key(r.get(name)),
                reverse=str(direction).upper() == "DESC",
            )
        return rows
