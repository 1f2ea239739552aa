"""
Option objects passed through the model operations.

This module provides:
- Include: a joined related entity type, with its own predicate
- QueryOptions: options for find/count/aggregate and bulk update/destroy
- SaveOptions: options for create/update of single entities and bulk create

Predicates are plain mappings:
    {"email": "a@b.com"}
    {"age": {"$gte": 18}, "$or": [{"name": "a"}, {"name": "b"}]}
    {"status": ["new", "open"]}

Supported operators: $and, $or, $eq, $ne, $not, $in, $notIn, $like,
$gt, $gte, $lt, $lte.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple, Union

if TYPE_CHECKING:
    from .model import Model
    from .storage import Transaction

Where = Dict[str, Any]

LOGICAL_OPERATORS = ("$and", "$or")
COMPARISON_OPERATORS = ("$eq", "$ne", "$not", "$in", "$notIn", "$like", "$gt", "$gte", "$lt", "$lte")


@dataclass
class Include:
    """A related entity type joined into a read, addressed by its alias."""

    model: Union[str, "Model"]
    alias: Optional[str] = None
    where: Optional[Where] = None
    include: List["Include"] = field(default_factory=list)


@dataclass
class QueryOptions:
    """
    Read and bulk-write options.

    ``crypto=False`` disables every encryption rewrite for the call.
    ``key`` is the key used to encrypt predicate values and the fallback key
    for decryption. ``crypto_fields`` restricts decryption of built entities
    to an explicit subset of fields.
    """

    where: Optional[Where] = None
    include: List[Include] = field(default_factory=list)
    raw: bool = False
    limit: Optional[int] = None
    offset: Optional[int] = None
    order: Optional[List[Tuple[str, str]]] = None
    transaction: Optional["Transaction"] = None
    crypto: bool = True
    key: Optional[str] = None
    crypto_fields: Optional[List[str]] = None

    def copy(self, **changes: Any) -> QueryOptions:
        """Return a copy with its own predicate tree, applying ``changes``."""
        clone = replace(self, **changes)
        if "where" not in changes:
            clone.where = copy.deepcopy(self.where)
        if "include" not in changes:
            clone.include = _copy_includes(self.include)
        return clone


@dataclass
class SaveOptions:
    """
    Write options for create/update.

    ``force_change`` marks every encrypted field as changed so it is
    rewritten even if the application did not touch it.
    """

    transaction: Optional["Transaction"] = None
    crypto: bool = True
    key: Optional[str] = None
    force_change: bool = False
    crypto_fields: Optional[List[str]] = None


def _copy_includes(includes: List[Include]) -> List[Include]:
    return [
        Include(
            model=item.model,
            alias=item.alias,
            where=copy.deepcopy(item.where),
            include=_copy_includes(item.include),
        )
        for item in includes
    ]
