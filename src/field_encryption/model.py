"""
Entity types and entity instances.

This module provides:
- FieldDef: A declared field (default value, encrypted flag)
- Relation: A declared relation to another entity type
- Entity: An entity instance (data values + change flags)
- SaveContext: Pending-save context for one create/update call
- BulkContext: Context for bulk update/destroy calls
- FindAndCountResult: Result of find_and_count
- Model: An entity type, its hooks and its data-access operations

Lifecycle hooks (``Model.add_hook``):
- before_find(options), after_find(rows, options)
- before_count(options)
- before_build(values, options)
- before_create(ctx), after_create(ctx), before_update(ctx), after_update(ctx)
- before_bulk_create(ctxs), after_bulk_create(ctxs)
- before_bulk_update(ctx), before_bulk_destroy(ctx)
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Set,
    Tuple,
    Union,
)

from . import pipeline
from .errors import StorageError
from .options import Include, QueryOptions, SaveOptions
from .registry import FieldRegistry, RelationField

if TYPE_CHECKING:
    from .pipeline import MigrationResult
    from .store import Store

logger = logging.getLogger(__name__)

HOOK_EVENTS = (
    "before_find",
    "after_find",
    "before_count",
    "before_build",
    "before_create",
    "after_create",
    "before_update",
    "after_update",
    "before_bulk_create",
    "after_bulk_create",
    "before_bulk_update",
    "before_bulk_destroy",
)


# =============================================================================
# Data Classes
# =============================================================================


@dataclass
class FieldDef:
    """A declared field."""

    name: str
    default: Any = None  # value or zero-argument callable
    encrypt: bool = False

    def default_value(self) -> Any:
        return self.default() if callable(self.default) else self.default


@dataclass
class Relation:
    """A declared relation. ``many`` relations expose a list of entities."""

    kind: str  # "belongs_to" | "has_many"
    target: str
    alias: Optional[str]
    foreign_key: str

    @property
    def many(self) -> bool:
        return self.kind == "has_many"


@dataclass
class SaveContext:
    """
    Pending-save context, scoped to one save call.

    ``originals`` holds the plaintext of fields swapped to ciphertext before
    the write, so they can be restored once the write completes or fails.
    """

    entity: Entity
    options: SaveOptions
    originals: Dict[str, Any] = field(default_factory=dict)

    def restore(self) -> None:
        """Put the swapped plaintext back on the entity."""
        for name, value in self.originals.items():
            self.entity.set_raw(name, value)
        self.originals.clear()


@dataclass
class BulkContext:
    """Context for bulk update/destroy: the values being assigned and the options."""

    values: Dict[str, Any]
    options: QueryOptions


@dataclass
class FindAndCountResult:
    count: int
    rows: List[Any]


# =============================================================================
# Entity
# =============================================================================


class Entity:
    """
    An entity instance.

    Holds the raw data values and the set of changed fields. ``get`` returns
    plaintext: values of encrypted fields that still hold ciphertext are
    decrypted on access.
    """

    def __init__(
        self, model: Model, values: Dict[str, Any], is_new_record: bool = True
    ) -> None:
        self.model = model
        self.is_new_record = is_new_record
        self._values: Dict[str, Any] = dict(values)
        self._changed: Set[str] = set(values) if is_new_record else set()

    def __repr__(self) -> str:
        return f"<{self.model.name} {self.model.primary_key}={self.pk!r}>"

    @property
    def pk(self) -> Any:
        return self._values.get(self.model.primary_key)

    def get(self, name: str, default: Any = None) -> Any:
        value = self._values.get(name, default)
        cryptor = self.model.store.cryptor
        if cryptor is not None and self.model.is_encrypted(name) and cryptor.is_encrypted(value):
            decrypted = cryptor.decrypt(value)
            if decrypted is not None:
                return decrypted
        return value

    def set(self, name: str, value: Any) -> None:
        if name not in self._values or self._values[name] != value:
            self._changed.add(name)
        self._values[name] = value

    def __getitem__(self, name: str) -> Any:
        if name not in self._values:
            raise KeyError(name)
        return self.get(name)

    def __setitem__(self, name: str, value: Any) -> None:
        self.set(name, value)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def get_raw(self, name: str) -> Any:
        """Return the stored value as is (no decryption)."""
        return self._values.get(name)

    def has_value(self, name: str) -> bool:
        return name in self._values

    def set_raw(self, name: str, value: Any) -> None:
        """Replace a value without touching the change flags."""
        self._values[name] = value

    def changed(self, name: Optional[str] = None) -> Union[bool, List[str]]:
        """Return whether ``name`` changed, or the sorted changed field names."""
        if name is not None:
            return name in self._changed
        return sorted(self._changed)

    def mark_changed(self, name: str) -> None:
        self._changed.add(name)

    def clear_changes(self) -> None:
        self._changed.clear()

    def raw_values(self) -> Dict[str, Any]:
        return dict(self._values)

    def to_dict(self) -> Dict[str, Any]:
        """Return the data values with encrypted fields as plaintext."""
        return {name: self.get(name) for name in self._values}


# =============================================================================
# Model
# =============================================================================


class Model:
    """
    An entity type bound to a store.

    Fields declared with ``encrypt=True`` are tracked by the model's
    FieldRegistry; the crypto interceptor attached by the store uses it to
    rewrite queries and values.
    """

    def __init__(
        self,
        store: Store,
        name: str,
        table: Optional[str] = None,
        primary_key: str = "id",
    ) -> None:
        self.store = store
        self.name = name
        self.table = table or name
        self.primary_key = primary_key
        self.fields: Dict[str, FieldDef] = {primary_key: FieldDef(primary_key)}
        self.relations: List[Relation] = []
        self.registry = FieldRegistry(lambda: self.relations)
        self._hooks: Dict[str, List[Callable[..., Any]]] = defaultdict(list)

    def __repr__(self) -> str:
        return f"Model({self.name!r}, table={self.table!r})"

    # -------------------------------------------------------------------------
    # Schema
    # -------------------------------------------------------------------------

    def field(self, name: str, *, default: Any = None, encrypt: bool = False) -> Model:
        """Declare a field. Encrypted fields are stored as tagged text."""
        self.fields[name] = FieldDef(name=name, default=default, encrypt=encrypt)
        if encrypt:
            self.registry.mark_encrypted(name)
        return self

    def encrypted_field(self, name: str, *, default: Any = None) -> Model:
        return self.field(name, default=default, encrypt=True)

    def belongs_to(
        self, target: str, alias: Optional[str] = None, foreign_key: Optional[str] = None
    ) -> Model:
        """Declare that this entity type references ``target`` through ``foreign_key``."""
        foreign_key = foreign_key or f"{alias or target.lower()}_id"
        if foreign_key not in self.fields:
            self.fields[foreign_key] = FieldDef(foreign_key)
        self.relations.append(Relation("belongs_to", target, alias, foreign_key))
        self.registry.reset_relations()
        return self

    def has_many(
        self, target: str, alias: Optional[str] = None, foreign_key: Optional[str] = None
    ) -> Model:
        """Declare that rows of ``target`` reference this entity type through ``foreign_key``."""
        foreign_key = foreign_key or f"{self.name.lower()}_id"
        self.relations.append(Relation("has_many", target, alias, foreign_key))
        self.registry.reset_relations()
        return self

    def resolve_include(self, include: Include) -> Tuple[Relation, Model]:
        """Find the relation an include refers to, and its target model."""
        target_name = include.model if isinstance(include.model, str) else include.model.name
        for relation in self.relations:
            if include.alias is not None and relation.alias != include.alias:
                continue
            if relation.target == target_name:
                return relation, self.store.model(target_name)
        raise StorageError(
            f"Model {self.name} has no relation to {target_name}"
            + (f" as {include.alias}" if include.alias else "")
        )

    # -------------------------------------------------------------------------
    # Field registry
    # -------------------------------------------------------------------------

    def is_encrypted(self, name: str) -> bool:
        return self.registry.is_encrypted(name)

    def has_encrypted_fields(self) -> bool:
        return self.registry.has_encrypted_fields()

    def get_encrypted(self) -> List[str]:
        return self.registry.encrypted_fields()

    def has_relation_fields(self) -> bool:
        return self.registry.has_relation_fields()

    def get_relation_fields(self) -> List[RelationField]:
        return self.registry.relation_fields()

    # -------------------------------------------------------------------------
    # Hooks
    # -------------------------------------------------------------------------

    def add_hook(self, event: str, fn: Callable[..., Any]) -> Model:
        if event not in HOOK_EVENTS:
            raise ValueError(f"Unknown hook event: {event}")
        self._hooks[event].append(fn)
        return self

    def run_hooks(self, event: str, *args: Any) -> None:
        for fn in self._hooks.get(event, ()):
            fn(*args)

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def build(
        self,
        values: Dict[str, Any],
        *,
        is_new_record: bool = True,
        options: Optional[QueryOptions] = None,
    ) -> Entity:
        """Build an entity from a values map (decrypting it through the hooks)."""
        values = dict(values)
        self.run_hooks("before_build", values, options)
        entity = Entity(self, values, is_new_record=is_new_record)
        if is_new_record:
            for name, definition in self.fields.items():
                if entity.has_value(name) or definition.default is None:
                    continue
                entity.set(name, definition.default_value())
        return entity

    async def find_all(self, options: Optional[QueryOptions] = None) -> List[Any]:
        """Return matching entities, or raw dict rows when ``options.raw`` is set."""
        options = (options or QueryOptions()).copy()
        self.run_hooks("before_find", options)
        rows = await self.store.storage.find(self, options)
        return self._finish_rows(rows, options)

    async def find_one(self, options: Optional[QueryOptions] = None) -> Any:
        options = (options or QueryOptions()).copy(limit=1)
        items = await self.find_all(options)
        return items[0] if items else None

    async def find_by_pk(self, pk: Any, options: Optional[QueryOptions] = None) -> Any:
        options = options or QueryOptions()
        where = dict(options.where or {})
        where[self.primary_key] = pk
        return await self.find_one(options.copy(where=where))

    async def find_and_count(
        self, options: Optional[QueryOptions] = None
    ) -> FindAndCountResult:
        """Count all matching rows and return one page of them."""
        options = (options or QueryOptions()).copy()
        self.run_hooks("before_count", options)
        count = await self.store.storage.count(self, options)
        rows = await self.store.storage.find(self, options)
        return FindAndCountResult(count=count, rows=self._finish_rows(rows, options))

    async def count(self, options: Optional[QueryOptions] = None) -> int:
        options = (options or QueryOptions()).copy()
        self.run_hooks("before_count", options)
        return await self.store.storage.count(self, options)

    async def sum(self, field: str, options: Optional[QueryOptions] = None) -> Any:
        return await self._aggregate("sum", field, options)

    async def min(self, field: str, options: Optional[QueryOptions] = None) -> Any:
        return await self._aggregate("min", field, options)

    async def max(self, field: str, options: Optional[QueryOptions] = None) -> Any:
        return await self._aggregate("max", field, options)

    async def _aggregate(
        self, fn: str, field: str, options: Optional[QueryOptions]
    ) -> Any:
        options = (options or QueryOptions()).copy()
        self.run_hooks("before_count", options)
        return await self.store.storage.aggregate(self, fn, field, options)

    def _finish_rows(self, rows: List[Dict[str, Any]], options: QueryOptions) -> List[Any]:
        if options.raw:
            self.run_hooks("after_find", rows, options)
            return rows
        return [self.build(row, is_new_record=False, options=options) for row in rows]

    # -------------------------------------------------------------------------
    # Writes
    # -------------------------------------------------------------------------

    async def create(
        self, values: Dict[str, Any], options: Optional[SaveOptions] = None
    ) -> Entity:
        return await self.save(self.build(values), options)

    async def save(self, entity: Entity, options: Optional[SaveOptions] = None) -> Entity:
        """
        Insert a new entity or write the changed fields of an existing one.

        Args:
            entity: Entity built by this model
            options: Save options (transaction, key, crypto flags)

        Returns:
            The same entity, with its change flags cleared
        """
        ctx = SaveContext(entity=entity, options=options or SaveOptions())
        storage = self.store.storage
        if entity.is_new_record:
            self.run_hooks("before_create", ctx)
            try:
                row = await storage.insert(
                    self, self._storage_values(entity), ctx.options.transaction
                )
            except Exception:
                ctx.restore()
                raise
            entity.set_raw(self.primary_key, row.get(self.primary_key))
            entity.is_new_record = False
            logger.debug("Inserted %s %r", self.name, entity.pk)
            self.run_hooks("after_create", ctx)
        else:
            self.run_hooks("before_update", ctx)
            changes = {
                name: entity.get_raw(name)
                for name in entity.changed()
                if name in self.fields and name != self.primary_key
            }
            if changes:
                try:
                    await storage.update(
                        self, changes, {self.primary_key: entity.pk}, ctx.options.transaction
                    )
                except Exception:
                    ctx.restore()
                    raise
            self.run_hooks("after_update", ctx)
        entity.clear_changes()
        return entity

    async def bulk_create(
        self, items: Iterable[Dict[str, Any]], options: Optional[SaveOptions] = None
    ) -> List[Entity]:
        options = options or SaveOptions()
        contexts = [SaveContext(entity=self.build(values), options=options) for values in items]
        self.run_hooks("before_bulk_create", contexts)
        try:
            for ctx in contexts:
                row = await self.store.storage.insert(
                    self, self._storage_values(ctx.entity), options.transaction
                )
                ctx.entity.set_raw(self.primary_key, row.get(self.primary_key))
                ctx.entity.is_new_record = False
        except Exception:
            for ctx in contexts:
                ctx.restore()
            raise
        self.run_hooks("after_bulk_create", contexts)
        for ctx in contexts:
            ctx.entity.clear_changes()
        return [ctx.entity for ctx in contexts]

    async def update(
        self, values: Dict[str, Any], options: Optional[QueryOptions] = None
    ) -> int:
        """Bulk-assign ``values`` to every row matching ``options.where``."""
        ctx = BulkContext(values=dict(values), options=(options or QueryOptions()).copy())
        self.run_hooks("before_bulk_update", ctx)
        return await self.store.storage.update(
            self, ctx.values, ctx.options.where, ctx.options.transaction
        )

    async def destroy(self, options: Optional[QueryOptions] = None) -> int:
        """Delete every row matching ``options.where``."""
        ctx = BulkContext(values={}, options=(options or QueryOptions()).copy())
        self.run_hooks("before_bulk_destroy", ctx)
        return await self.store.storage.delete(
            self, ctx.options.where, ctx.options.transaction
        )

    def _storage_values(self, entity: Entity) -> Dict[str, Any]:
        return {
            name: value
            for name, value in entity.raw_values().items()
            if name in self.fields
        }

    # -------------------------------------------------------------------------
    # Migrations
    # -------------------------------------------------------------------------

    async def re_encrypt(
        self, options: Optional[QueryOptions] = None, **config: Any
    ) -> MigrationResult:
        """Re-encrypt every matching row with a new key. See pipeline.re_encrypt."""
        return await pipeline.re_encrypt(self, options, **config)

    async def encrypt_existing(
        self, options: Optional[QueryOptions] = None, **config: Any
    ) -> MigrationResult:
        """Encrypt plaintext rows in place. See pipeline.encrypt_existing."""
        return await pipeline.encrypt_existing(self, options, **config)

    async def decrypt_existing(
        self, options: Optional[QueryOptions] = None, **config: Any
    ) -> MigrationResult:
        """Write every matching row back as plaintext. See pipeline.decrypt_existing."""
        return await pipeline.decrypt_existing(self, options, **config)
