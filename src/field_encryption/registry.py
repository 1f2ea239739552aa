"""
Per-entity-type field registry.

Tracks which fields of an entity type are encrypted and which fields hold
related entities, so that nested results can be decrypted recursively.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional


@dataclass(frozen=True)
class RelationField:
    """A field holding a related entity (or collection of entities)."""

    model: str  # related entity type name
    field: str  # alias under which the related data is exposed


class FieldRegistry:
    """
    Encrypted and relation field metadata for one entity type.

    Fields are only ever added. Relation fields are computed lazily from the
    entity type's declared relations and memoised.
    """

    def __init__(self, relations: Optional[Callable[[], Iterable]] = None) -> None:
        """
        Args:
            relations: Callable returning the entity type's declared relations.
                Each relation needs ``target`` and ``alias`` attributes.
        """
        self._encrypted: List[str] = []
        self._encrypted_map: Dict[str, bool] = {}
        self._relations_source = relations
        self._relation_fields: Optional[List[RelationField]] = None

    def mark_encrypted(self, name: str) -> None:
        if name in self._encrypted_map:
            return
        self._encrypted.append(name)
        self._encrypted_map[name] = True

    def is_encrypted(self, name: str) -> bool:
        return name in self._encrypted_map

    def has_encrypted_fields(self) -> bool:
        return len(self._encrypted) != 0

    def encrypted_fields(self) -> List[str]:
        """Return the encrypted field names in declaration order."""
        return list(self._encrypted)

    def relation_fields(self) -> List[RelationField]:
        """Return the relations that expose an alias (memoised)."""
        if self._relation_fields is not None:
            return self._relation_fields
        names = []
        source = self._relations_source() if self._relations_source else ()
        for relation in source:
            if not relation.alias:
                continue
            names.append(RelationField(model=relation.target, field=relation.alias))
        self._relation_fields = names
        return names

    def has_relation_fields(self) -> bool:
        return len(self.relation_fields()) != 0

    def reset_relations(self) -> None:
        """Forget the memoised relation fields after a new relation is declared."""
        self._relation_fields = None
