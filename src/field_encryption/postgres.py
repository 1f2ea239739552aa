"""
PostgreSQL storage backend.

This module provides:
- SqlBuilder: Compiles predicate trees into parameterised SQL
- PostgresStorage: asyncpg-backed EntityStorage

Architecture:
- Predicates compile to WHERE clauses with $n placeholders; identifiers are
  always quoted
- Filtered includes compile to EXISTS sub-queries on the related table
- Included relations are loaded with one extra query per relation and nested
  under their alias
- Transactions run on a single pooled connection
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, AsyncIterator, Dict, List, Optional

import asyncpg

from .errors import StorageError
from .options import Include, QueryOptions, Where
from .storage import AGGREGATES, EntityStorage, Transaction, is_filtered

if TYPE_CHECKING:
    from .model import Model

# InterfaceError covers client-side failures such as DataError on a bad parameter
DRIVER_ERRORS = (asyncpg.PostgresError, asyncpg.InterfaceError)


def quote_ident(name: str) -> str:
    """Quote a SQL identifier."""
    return '"' + name.replace('"', '""') + '"'


class SqlBuilder:
    """
    Accumulates query parameters while compiling predicates.
    """

    def __init__(self) -> None:
        self.params: List[Any] = []
        self._aliases = 0

    def param(self, value: Any) -> str:
        self.params.append(value)
        return f"${len(self.params)}"

    def alias(self) -> str:
        name = f"t{self._aliases}"
        self._aliases += 1
        return name

    def where(self, where: Optional[Where], alias: str) -> str:
        """Compile a predicate tree against the table aliased ``alias``."""
        if not where:
            return "TRUE"
        parts = []
        for name, value in where.items():
            if name == "$and":
                items = value if isinstance(value, (list, tuple)) else [value]
                parts.append("(" + " AND ".join(self.where(i, alias) for i in items) + ")" if items else "TRUE")
            elif name == "$or":
                if isinstance(value, dict):
                    items = [{k: v} for k, v in value.items()]
                else:
                    items = list(value)
                parts.append("(" + " OR ".join(self.where(i, alias) for i in items) + ")" if items else "FALSE")
            else:
                parts.append(self._column(f"{alias}.{quote_ident(name)}", value))
        return " AND ".join(parts)

    def _column(self, column: str, value: Any) -> str:
        if isinstance(value, dict):
            if not value:
                return "TRUE"
            return " AND ".join(self._operator(column, op, v) for op, v in value.items())
        if isinstance(value, (list, tuple)):
            if not value:
                return "FALSE"
            return f"{column} = ANY({self.param(list(value))})"
        if value is None:
            return f"{column} IS NULL"
        return f"{column} = {self.param(value)}"

    def _operator(self, column: str, op: str, value: Any) -> str:
        if op == "$eq":
            if value is None:
                return f"{column} IS NULL"
            return f"{column} = {self.param(value)}"
        if op in ("$ne", "$not"):
            if value is None:
                return f"{column} IS NOT NULL"
            return f"{column} <> {self.param(value)}"
        if op in ("$in", "$notIn"):
            if not isinstance(value, (list, tuple)):
                raise StorageError(f"Operator {op} expects a list")
            if not value:
                return "FALSE" if op == "$in" else "TRUE"
            clause = f"{column} = ANY({self.param(list(value))})"
            return clause if op == "$in" else f"NOT ({clause})"
        if op == "$like":
            return f"{column} LIKE {self.param(value)}"
        comparisons = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}
        if op in comparisons:
            return f"{column} {comparisons[op]} {self.param(value)}"
        raise StorageError(f"Unsupported operator: {op}")

    def includes(self, model: Model, includes: List[Include], alias: str) -> List[str]:
        """Compile filtered includes into EXISTS clauses."""
        clauses = []
        for include in includes:
            if not is_filtered(include):
                continue
            relation, target = model.resolve_include(include)
            inner = self.alias()
            if relation.many:
                join = f"{inner}.{quote_ident(relation.foreign_key)} = {alias}.{quote_ident(model.primary_key)}"
            else:
                join = f"{inner}.{quote_ident(target.primary_key)} = {alias}.{quote_ident(relation.foreign_key)}"
            conditions = [join, self.where(include.where, inner)]
            conditions.extend(self.includes(target, include.include, inner))
            clauses.append(
                f"EXISTS (SELECT 1 FROM {quote_ident(target.table)} AS {inner} "
                f"WHERE {' AND '.join(conditions)})"
            )
        return clauses

    def filters(self, model: Model, where: Optional[Where], includes: List[Include], alias: str) -> str:
        return " AND ".join([self.where(where, alias)] + self.includes(model, includes, alias))


class PostgresStorage(EntityStorage):
    """
    PostgreSQL storage backend (asyncpg).

    The schema is managed outside this layer; encrypted columns must be TEXT.
    """

    def __init__(self, pool: asyncpg.Pool) -> None:
        """
        Initialize PostgreSQL storage.

        Args:
            pool: asyncpg connection pool
        """
        self._pool = pool

    @property
    def pool(self) -> asyncpg.Pool:
        """Get the connection pool."""
        return self._pool

    def _executor(self, transaction: Optional[Transaction]) -> Any:
        if transaction is not None and transaction.connection is not None:
            return transaction.connection
        return self._pool

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Transaction]:
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                tx = Transaction(self, conn)
                try:
                    yield tx
                finally:
                    tx.active = False

    async def find(self, model: Model, options: QueryOptions) -> List[Dict[str, Any]]:
        sql = SqlBuilder()
        alias = sql.alias()
        query = (
            f"SELECT {alias}.* FROM {quote_ident(model.table)} AS {alias} "
            f"WHERE {sql.filters(model, options.where, options.include, alias)}"
        )
        order = options.order or [(model.primary_key, "ASC")]
        query += " ORDER BY " + ", ".join(
            f"{alias}.{quote_ident(name)} {'DESC' if str(d).upper() == 'DESC' else 'ASC'}"
            for name, d in order
        )
        if options.limit is not None:
            query += f" LIMIT {sql.param(options.limit)}"
        if options.offset:
            query += f" OFFSET {sql.param(options.offset)}"
        executor = self._executor(options.transaction)
        try:
            records = await executor.fetch(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to find rows in {model.table}: {e}")
        rows = [dict(record) for record in records]
        await self._load_includes(model, rows, options.include, executor)
        return rows

    async def count(self, model: Model, options: QueryOptions) -> int:
        sql = SqlBuilder()
        alias = sql.alias()
        query = (
            f"SELECT COUNT(*) FROM {quote_ident(model.table)} AS {alias} "
            f"WHERE {sql.filters(model, options.where, options.include, alias)}"
        )
        try:
            return await self._executor(options.transaction).fetchval(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to count rows in {model.table}: {e}")

    async def aggregate(
        self, model: Model, fn: str, field: str, options: QueryOptions
    ) -> Any:
        if fn not in AGGREGATES:
            raise StorageError(f"Unsupported aggregate: {fn}")
        sql = SqlBuilder()
        alias = sql.alias()
        query = (
            f"SELECT {fn.upper()}({alias}.{quote_ident(field)}) FROM {quote_ident(model.table)} AS {alias} "
            f"WHERE {sql.filters(model, options.where, options.include, alias)}"
        )
        try:
            return await self._executor(options.transaction).fetchval(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to compute {fn}({field}) on {model.table}: {e}")

    async def insert(
        self,
        model: Model,
        values: Dict[str, Any],
        transaction: Optional[Transaction] = None,
    ) -> Dict[str, Any]:
        row = {k: v for k, v in values.items() if not (k == model.primary_key and v is None)}
        sql = SqlBuilder()
        if row:
            columns = ", ".join(quote_ident(name) for name in row)
            placeholders = ", ".join(sql.param(value) for value in row.values())
            query = f"INSERT INTO {quote_ident(model.table)} ({columns}) VALUES ({placeholders}) RETURNING *"
        else:
            query = f"INSERT INTO {quote_ident(model.table)} DEFAULT VALUES RETURNING *"
        try:
            record = await self._executor(transaction).fetchrow(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to insert into {model.table}: {e}")
        return dict(record) if record is not None else dict(values)

    async def update(
        self,
        model: Model,
        values: Dict[str, Any],
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        if not values:
            return 0
        sql = SqlBuilder()
        alias = sql.alias()
        assignments = ", ".join(f"{quote_ident(name)} = {sql.param(value)}" for name, value in values.items())
        query = (
            f"UPDATE {quote_ident(model.table)} AS {alias} SET {assignments} "
            f"WHERE {sql.where(where, alias)}"
        )
        try:
            status = await self._executor(transaction).execute(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to update {model.table}: {e}")
        return _affected(status)

    async def delete(
        self,
        model: Model,
        where: Optional[Where],
        transaction: Optional[Transaction] = None,
    ) -> int:
        sql = SqlBuilder()
        alias = sql.alias()
        query = f"DELETE FROM {quote_ident(model.table)} AS {alias} WHERE {sql.where(where, alias)}"
        try:
            status = await self._executor(transaction).execute(query, *sql.params)
        except DRIVER_ERRORS as e:
            raise StorageError(f"Failed to delete from {model.table}: {e}")
        return _affected(status)

    async def _load_includes(
        self,
        model: Model,
        rows: List[Dict[str, Any]],
        includes: List[Include],
        executor: Any,
    ) -> None:
        """Load included relations and nest them under their alias."""
        if not rows:
            return
        for include in includes:
            relation, target = model.resolve_include(include)
            alias_name = relation.alias or target.name
            link = relation.foreign_key if relation.many else target.primary_key
            if relation.many:
                keys = list({row[model.primary_key] for row in rows if row.get(model.primary_key) is not None})
            else:
                keys = list({row[relation.foreign_key] for row in rows if row.get(relation.foreign_key) is not None})
            related: List[Dict[str, Any]] = []
            if keys:
                sql = SqlBuilder()
                alias = sql.alias()
                query = (
                    f"SELECT {alias}.* FROM {quote_ident(target.table)} AS {alias} "
                    f"WHERE {alias}.{quote_ident(link)} = ANY({sql.param(keys)}) AND "
                    f"{sql.filters(target, include.where, include.include, alias)} "
                    f"ORDER BY {alias}.{quote_ident(target.primary_key)} ASC"
                )
                try:
                    records = await executor.fetch(query, *sql.params)
                except DRIVER_ERRORS as e:
                    raise StorageError(f"Failed to load {alias_name} of {model.table}: {e}")
                related = [dict(record) for record in records]
                await self._load_includes(target, related, include.include, executor)
            for row in rows:
                if relation.many:
                    row[alias_name] = [r for r in related if r.get(link) == row.get(model.primary_key)]
                else:
                    ref = row.get(relation.foreign_key)
                    row[alias_name] = next((r for r in related if r.get(link) == ref), None)


def _affected(status: str) -> int:
    """Parse the affected row count from a command status such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0
