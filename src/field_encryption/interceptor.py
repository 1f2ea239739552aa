"""
Query and lifecycle interceptor.

Hooks one entity type's data-access surface so that:
- predicates going out have their encrypted-field literals encrypted
  (including $and/$or groups, lists, operators and joined includes);
- raw rows coming back are decrypted;
- entities built from a values map are decrypted, recursively through
  related entities;
- values being written are encrypted, and the in-memory entity gets its
  plaintext back once the write completes.

Every entry point honours ``crypto=False`` on its options.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

from .crypto import Cryptor
from .options import Include, QueryOptions, Where

if TYPE_CHECKING:
    from .model import BulkContext, Model, SaveContext

logger = logging.getLogger(__name__)

# operators whose values are encrypted one by one; $like is handled apart
INNER_OPERATORS = ("$in", "$notIn", "$eq", "$ne", "$not")

_SCALARS = (str, int, float, bool)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, _SCALARS)


class CryptoInterceptor:
    """
    Binds a Cryptor to one model through its lifecycle hooks.
    """

    def __init__(self, model: Model, cryptor: Cryptor) -> None:
        self.model = model
        self.cryptor = cryptor

    def attach(self) -> CryptoInterceptor:
        """Register the interceptor on every hook of the model."""
        (
            self.model.add_hook("before_find", self.before_find)
            .add_hook("after_find", self.after_find)
            .add_hook("before_count", self.before_find)
            .add_hook("before_build", self.before_build)
            .add_hook("before_create", self.before_save)
            .add_hook("after_create", self.after_save)
            .add_hook("before_update", self.before_save)
            .add_hook("after_update", self.after_save)
            .add_hook("before_bulk_create", self.before_bulk_create)
            .add_hook("after_bulk_create", self.after_bulk_create)
            .add_hook("before_bulk_update", self.bulk_changes)
            .add_hook("before_bulk_destroy", self.bulk_changes)
        )
        return self

    # =========================================================================
    # Outgoing predicates
    # =========================================================================

    def _encrypt_scalar(self, value: Any, key: Optional[str]) -> Any:
        """Encrypt one literal; returns None when it cannot be encrypted."""
        if self.cryptor.is_encrypted(value):
            return value
        return self.cryptor.encrypt(value, key)

    def prepare_where(
        self, where: Optional[Where], model: Optional[Model] = None, key: Optional[str] = None
    ) -> None:
        """
        Encrypt, in place, the literals of ``where`` that target encrypted fields.

        Args:
            where: Predicate tree
            model: Entity type whose registry applies (defaults to this model)
            key: Key to encrypt with (defaults to the active key)
        """
        if model is None:
            model = self.model
        if not isinstance(where, dict) or not where:
            return
        for name in list(where):
            value = where[name]
            if name == "$and":
                items = value if isinstance(value, list) else [value]
                for item in items:
                    self.prepare_where(item, model, key)
                continue
            if name == "$or":
                if isinstance(value, list):
                    for item in value:
                        self.prepare_where(item, model, key)
                elif isinstance(value, dict):
                    self.prepare_where(value, model, key)
                continue
            if not model.is_encrypted(name) or value is None:
                continue
            if isinstance(value, list):
                where[name] = self._encrypt_list(value, key)
            elif isinstance(value, dict):
                self._encrypt_operators(value, key)
            elif _is_scalar(value):
                enc = self._encrypt_scalar(value, key)
                if enc is not None:
                    where[name] = enc

    def _encrypt_list(self, values: List[Any], key: Optional[str]) -> List[Any]:
        # non-scalars and failed encryptions are dropped; an empty list matches nothing
        encrypted = []
        for value in values:
            if not _is_scalar(value):
                continue
            enc = self._encrypt_scalar(value, key)
            if enc is None:
                continue
            encrypted.append(enc)
        return encrypted

    def _encrypt_operators(self, operators: Dict[str, Any], key: Optional[str]) -> None:
        for op, value in list(operators.items()):
            if op == "$like":
                if not isinstance(value, str) or self.cryptor.is_encrypted(value):
                    continue
                # NOTE: the ciphertext replaces the pattern, so $like only
                # matches the exact stored value, never a substring.
                if value.startswith("%"):
                    value = value[1:]
                if value.endswith("%"):
                    value = value[:-1]
                operators[op] = self.cryptor.encrypt(value, key)
            elif op in INNER_OPERATORS:
                if isinstance(value, list):
                    for idx, item in enumerate(value):
                        if not _is_scalar(item):
                            continue
                        enc = self._encrypt_scalar(item, key)
                        if enc is not None:
                            value[idx] = enc
                elif _is_scalar(value):
                    enc = self._encrypt_scalar(value, key)
                    if enc is not None:
                        operators[op] = enc

    def prepare_include(
        self, includes: Iterable[Include], model: Optional[Model] = None, key: Optional[str] = None
    ) -> None:
        """Rewrite the predicates of joined includes with each related model's registry."""
        if model is None:
            model = self.model
        for include in includes:
            _, target = model.resolve_include(include)
            if include.where:
                self.prepare_where(include.where, target, key)
            if include.include:
                self.prepare_include(include.include, target, key)

    # =========================================================================
    # Reads
    # =========================================================================

    def before_find(self, options: QueryOptions) -> None:
        if not options.crypto:
            return
        self.prepare_where(options.where, key=options.key)
        self.prepare_include(options.include, key=options.key)

    def after_find(self, rows: List[Dict[str, Any]], options: QueryOptions) -> None:
        """Decrypt every encrypted-looking value of raw rows, registry or not."""
        if not options.crypto:
            return
        for row in rows:
            self.decrypt_row(row, options.key)

    def decrypt_row(self, row: Dict[str, Any], key: Optional[str] = None) -> None:
        if not isinstance(row, dict):
            return
        for name, value in row.items():
            if isinstance(value, dict):
                self.decrypt_row(value, key)
                continue
            if isinstance(value, list):
                for item in value:
                    self.decrypt_row(item, key)
                continue
            if not self.cryptor.is_encrypted(value):
                continue
            decrypted = self.cryptor.decrypt(value, key)
            if decrypted is not None:
                row[name] = decrypted

    def before_build(self, values: Dict[str, Any], options: Optional[QueryOptions]) -> None:
        if options is not None and not options.crypto:
            return
        key = options.key if options is not None else None
        fields = options.crypto_fields if options is not None else None
        self.decrypt_entity(values, self.model, key, fields)

    def decrypt_entity(
        self,
        data: Any,
        model: Model,
        key: Optional[str] = None,
        fields: Optional[List[str]] = None,
    ) -> None:
        """
        Decrypt, in place, the encrypted fields of a values map and of its related entities.

        Args:
            data: Values map (storage shape)
            model: Entity type of ``data``
            key: Fallback decryption key
            fields: Explicit field subset replacing the registry's list
        """
        if not isinstance(data, dict):
            return
        for name in fields if fields is not None else model.get_encrypted():
            value = data.get(name)
            if not isinstance(value, str) or not self.cryptor.is_encrypted(value):
                continue
            decrypted = self.cryptor.decrypt(value, key)
            if decrypted is None:
                logger.warning("Could not decrypt field %s of %s entity", name, model.name)
                continue
            data[name] = decrypted
        if not model.has_relation_fields():
            return
        for relation in model.get_relation_fields():
            nested = data.get(relation.field)
            if nested is None:
                continue
            related = model.store.model(relation.model)
            if not related.has_encrypted_fields() and not related.has_relation_fields():
                continue
            if isinstance(nested, list):
                for item in nested:
                    self.decrypt_entity(item, related, key)
            else:
                self.decrypt_entity(nested, related, key)

    # =========================================================================
    # Writes
    # =========================================================================

    def before_save(self, ctx: SaveContext) -> None:
        """Swap encrypted fields to ciphertext, remembering the plaintext in ``ctx``."""
        options = ctx.options
        if not options.crypto:
            return
        entity = ctx.entity
        fields = options.crypto_fields if options.crypto_fields is not None else self.model.get_encrypted()
        for name in fields:
            if entity.has_value(name):
                value = entity.get_raw(name)
            else:
                definition = self.model.fields.get(name)
                value = definition.default_value() if definition is not None else None
            if value is None or self.cryptor.is_encrypted(value):
                continue
            if options.force_change:
                entity.mark_changed(name)
            if not entity.changed(name):
                continue
            enc = self.cryptor.encrypt(value, options.key)
            if enc is None:
                continue
            entity.set_raw(name, enc)
            ctx.originals[name] = value

    def after_save(self, ctx: SaveContext) -> None:
        """Give the in-memory entity its plaintext back."""
        ctx.restore()

    def before_bulk_create(self, contexts: List[SaveContext]) -> None:
        for ctx in contexts:
            self.before_save(ctx)

    def after_bulk_create(self, contexts: List[SaveContext]) -> None:
        for ctx in contexts:
            self.after_save(ctx)

    def bulk_changes(self, ctx: BulkContext) -> None:
        """Encrypt the predicate and the literal values of a bulk update/destroy."""
        options = ctx.options
        if not options.crypto:
            return
        self.prepare_where(options.where, key=options.key)
        for name, value in list(ctx.values.items()):
            if not self.model.is_encrypted(name) or value is None:
                continue
            if self.cryptor.is_encrypted(value):
                continue
            enc = self.cryptor.encrypt(value, options.key)
            if enc is None:
                continue
            ctx.values[name] = enc
