"""
Batch re-key pipeline.

This module provides:
- re_encrypt: Re-encrypt every matching row under a new key
- encrypt_existing: Encrypt plaintext rows in place
- decrypt_existing: Write every matching row back as plaintext
- MigrationResult: Summary of a migration

Migration strategy:
1. Register the keys involved so old and new ciphertext both stay readable
2. Open one transaction for the whole job
3. Snapshot the primary keys of the matching rows under the old encryption context
4. Walk those keys in sequential pages of ``batch_size`` (capped by ``max_items``)
5. Save each row under the new context; an ``on_item`` failure skips the row
6. Any other error rolls the whole job back

Pages and rows are processed strictly one after the other. With crypto
disabled every entry point is a no-op returning an empty result.
"""

from __future__ import annotations

import copy
import inspect
import logging
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .errors import MigrationError
from .options import QueryOptions, SaveOptions

if TYPE_CHECKING:
    from .model import Entity, Model
    from .storage import Transaction

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE: int = 100

OnItem = Callable[["Entity"], Any]


@dataclass
class MigrationResult:
    """Summary of a migration. ``values`` holds plaintext snapshots when requested."""

    encrypted: int = 0
    decrypted: int = 0
    values: Optional[List[Dict[str, Any]]] = None


def page_windows(total: int, batch_size: int) -> List[Tuple[int, int]]:
    """Split ``total`` rows into sequential (offset, limit) windows."""
    if batch_size <= 0:
        raise MigrationError(f"Batch size must be positive, got {batch_size}")
    return [
        (offset, min(batch_size, total - offset))
        for offset in range(0, total, batch_size)
    ]


def _crypto_disabled(model: Model, action: str) -> bool:
    if model.store.cryptor is not None:
        return False
    logger.info("Crypto is disabled for model %s, skipping %s", model.name, action)
    return True


async def _matching_keys(
    model: Model, options: QueryOptions, max_items: Optional[int]
) -> List[Any]:
    """
    Snapshot the primary keys of the rows selected by ``options``.

    The predicate is evaluated once, before anything is rewritten, so
    rows that no longer match after re-encryption are not skipped.
    """
    options = options.copy(offset=None, limit=max_items)
    model.run_hooks("before_count", options)
    rows = await model.store.storage.find(model, options)
    return [row[model.primary_key] for row in rows]


def _register_key(model: Model, key: Optional[str], label: str) -> None:
    if key is None:
        return
    if model.store.cryptor.add_key(key) is False:
        raise MigrationError(f"The {label} must be a string of at least 32 characters")


async def _migrate(
    model: Model,
    action: str,
    read_options: QueryOptions,
    save_options: SaveOptions,
    *,
    batch_size: int,
    max_items: Optional[int],
    on_item: Optional[OnItem],
    values: bool,
    mark_fields: Optional[List[str]] = None,
) -> Tuple[int, Optional[List[Dict[str, Any]]]]:
    """Run one paginated migration inside a single transaction."""
    if batch_size <= 0:
        raise MigrationError(f"Batch size must be positive, got {batch_size}")
    snapshots: Optional[List[Dict[str, Any]]] = [] if values else None

    async def job(tx: Transaction) -> int:
        base = read_options.copy(transaction=tx)
        pks = await _matching_keys(model, base, max_items)
        row_save = replace(save_options, transaction=tx)
        done = 0
        for offset, limit in page_windows(len(pks), batch_size):
            chunk = pks[offset:offset + limit]
            page = await model.find_all(
                base.copy(where={model.primary_key: chunk}, offset=None, limit=None)
            )
            for entity in page:
                if on_item is not None:
                    try:
                        result = on_item(entity)
                        if inspect.isawaitable(result):
                            await result
                    except Exception as e:
                        logger.warning(
                            "Error thrown in on_item() for batch %d-%d of %s. Skipping item: %s",
                            offset,
                            offset + limit,
                            model.name,
                            e,
                        )
                        continue
                if snapshots is not None:
                    snapshots.append(copy.deepcopy(entity.to_dict()))
                for name in mark_fields or ():
                    entity.mark_changed(name)
                await model.save(entity, row_save)
                done += 1
        return done

    try:
        done = await model.store.storage.run_in_transaction(job)
    except Exception as e:
        logger.error("Could not finalize %s on model %s", action, model.name)
        logger.debug("%s failure on model %s", action, model.name, exc_info=True)
        if isinstance(e, MigrationError):
            raise
        raise MigrationError(f"{action} on model {model.name} failed: {e}") from e
    logger.info("%s on model %s successfully finalized (%d rows)", action, model.name, done)
    return done, snapshots


async def re_encrypt(
    model: Model,
    options: Optional[QueryOptions] = None,
    *,
    new_key: str,
    old_key: Optional[str] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_items: Optional[int] = None,
    on_item: Optional[OnItem] = None,
    fields: Optional[List[str]] = None,
    values: bool = False,
) -> MigrationResult:
    """
    Re-encrypt every matching row with ``new_key``.

    Args:
        model: Entity type to migrate
        options: Read options selecting the rows (predicate on plaintext values)
        new_key: Key to encrypt with
        old_key: Key the data is currently encrypted with (defaults to the active key)
        batch_size: Rows per page
        max_items: Maximum number of rows to process
        on_item: Callback invoked per row before it is saved; raising skips the row
        fields: Restrict the migration to these fields
        values: Collect a plaintext snapshot of every processed row

    Returns:
        MigrationResult with the ``encrypted`` count

    Raises:
        MigrationError: If a key is invalid or the job failed
            (in which case nothing was committed)
    """
    if _crypto_disabled(model, "re-encryption"):
        return MigrationResult()
    if not new_key:
        raise MigrationError("A new re-encryption key was not supplied")
    _register_key(model, new_key, "new key")
    _register_key(model, old_key, "old key")
    read_options = (options or QueryOptions()).copy(
        crypto=True, key=old_key, crypto_fields=fields or None
    )
    save_options = SaveOptions(key=new_key, force_change=True, crypto_fields=fields or None)
    done, snapshots = await _migrate(
        model,
        "Re-encryption",
        read_options,
        save_options,
        batch_size=batch_size,
        max_items=max_items,
        on_item=on_item,
        values=values,
    )
    return MigrationResult(encrypted=done, values=snapshots)


async def encrypt_existing(
    model: Model,
    options: Optional[QueryOptions] = None,
    *,
    new_key: str,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_items: Optional[int] = None,
    on_item: Optional[OnItem] = None,
    fields: Optional[List[str]] = None,
    values: bool = False,
) -> MigrationResult:
    """
    Encrypt a table whose encrypted fields still hold plaintext.

    Rows are read with crypto disabled (the predicate is matched against
    plaintext as stored), then saved with ``new_key``. Values that are
    already encrypted are left untouched.

    Returns:
        MigrationResult with the ``encrypted`` count
    """
    if _crypto_disabled(model, "encryption"):
        return MigrationResult()
    if not new_key:
        raise MigrationError("A new encryption key was not supplied")
    _register_key(model, new_key, "new key")
    read_options = (options or QueryOptions()).copy(crypto=False)
    save_options = SaveOptions(key=new_key, force_change=True, crypto_fields=fields or None)
    done, snapshots = await _migrate(
        model,
        "Encryption",
        read_options,
        save_options,
        batch_size=batch_size,
        max_items=max_items,
        on_item=on_item,
        values=values,
    )
    return MigrationResult(encrypted=done, values=snapshots)


async def decrypt_existing(
    model: Model,
    options: Optional[QueryOptions] = None,
    *,
    old_key: Optional[str] = None,
    batch_size: int = DEFAULT_BATCH_SIZE,
    max_items: Optional[int] = None,
    on_item: Optional[OnItem] = None,
    fields: Optional[List[str]] = None,
    values: bool = False,
) -> MigrationResult:
    """
    Write every matching row back with its encrypted fields as plaintext.

    Returns:
        MigrationResult with the ``decrypted`` count
    """
    if _crypto_disabled(model, "decryption"):
        return MigrationResult()
    _register_key(model, old_key, "old key")
    targets = list(fields) if fields else model.get_encrypted()
    read_options = (options or QueryOptions()).copy(
        crypto=True, key=old_key, crypto_fields=targets
    )
    save_options = SaveOptions(crypto=False, crypto_fields=targets)
    done, snapshots = await _migrate(
        model,
        "Decryption",
        read_options,
        save_options,
        batch_size=batch_size,
        max_items=max_items,
        on_item=on_item,
        values=values,
        mark_fields=targets,
    )
    return MigrationResult(decrypted=done, values=snapshots)
