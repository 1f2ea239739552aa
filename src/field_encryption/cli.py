"""
Field encryption migration CLI.

Usage:
    field-encryption re-encrypt --table users --fields email,phone --new-key KEY
    field-encryption encrypt --table users --fields email --new-key KEY
    field-encryption decrypt --table users --fields email [--old-key KEY]
    field-encryption signature KEY

Or run directly:
    python -m field_encryption.cli

PostgreSQL setup:
    Set DATABASE_URL (and FIELD_CRYPTO_KEY / FIELD_CRYPTO_KEYS for the keys
    already in use) in the environment or a .env file.
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from typing import List, Optional

import asyncpg

from .config import StoreConfig, load_config
from .crypto import Cryptor
from .errors import ConfigError, FieldEncryptionError
from .options import QueryOptions
from .pipeline import DEFAULT_BATCH_SIZE, MigrationResult
from .postgres import PostgresStorage
from .store import Store

logger = logging.getLogger(__name__)

COMMANDS = ("re-encrypt", "encrypt", "decrypt")


def _fields(raw: str) -> List[str]:
    names = [name.strip() for name in raw.split(",") if name.strip()]
    if not names:
        raise argparse.ArgumentTypeError("at least one field name is required")
    return names


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="field-encryption",
        description="Batch encryption maintenance for encrypted table columns.",
    )
    parser.add_argument("--env-file", default=None, help="Load settings from this .env file")
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="cmd", required=True)

    for name in COMMANDS:
        cmd = sub.add_parser(name)
        cmd.add_argument("--table", required=True)
        cmd.add_argument("--primary-key", default="id")
        cmd.add_argument("--fields", type=_fields, required=True, help="Comma-separated encrypted columns")
        cmd.add_argument("--old-key", default=None)
        cmd.add_argument("--batch", type=int, default=DEFAULT_BATCH_SIZE)
        cmd.add_argument("--max", type=int, default=None, dest="max_items")
        cmd.add_argument("--where", default=None, help="JSON predicate selecting the rows")
        if name != "decrypt":
            cmd.add_argument("--new-key", required=True)

    signature = sub.add_parser("signature")
    signature.add_argument("key")
    return parser


def _cryptor(config: StoreConfig, args: argparse.Namespace) -> Cryptor:
    """Use the configured keys, falling back to the keys given on the command line."""
    cryptor = Cryptor.from_config(config.crypto)
    if cryptor is not None:
        return cryptor
    key = getattr(args, "new_key", None) or args.old_key
    if not key:
        raise ConfigError("No crypto key configured; set FIELD_CRYPTO_KEY or pass --old-key")
    return Cryptor(
        key,
        keys=config.crypto.historical_keys(),
        prefix=config.crypto.prefix,
        separator=config.crypto.separator,
    )


async def run_migration(args: argparse.Namespace) -> MigrationResult:
    """Run one migration sub-command against PostgreSQL."""
    config = load_config(args.env_file)
    if not config.database_url:
        raise ConfigError("DATABASE_URL must be set in environment or .env file")

    pool = await asyncpg.create_pool(config.database_url)
    if pool is None:
        raise ConfigError("Failed to create connection pool")
    try:
        store = Store(PostgresStorage(pool), cryptor=_cryptor(config, args))
        model = store.define(args.table, table=args.table, primary_key=args.primary_key)
        for name in args.fields:
            model.encrypted_field(name)
        logger.debug("Running %s on table %s (fields: %s)", args.cmd, args.table, ", ".join(args.fields))

        options = QueryOptions(where=json.loads(args.where) if args.where else None)
        common = dict(
            batch_size=args.batch,
            max_items=args.max_items,
            fields=args.fields,
        )
        if args.cmd == "re-encrypt":
            return await model.re_encrypt(
                options, new_key=args.new_key, old_key=args.old_key, **common
            )
        if args.cmd == "encrypt":
            return await model.encrypt_existing(options, new_key=args.new_key, **common)
        return await model.decrypt_existing(options, old_key=args.old_key, **common)
    finally:
        await pool.close()


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.cmd == "signature":
        try:
            print(Cryptor(args.key).current_version)
        except ConfigError as e:
            print(f"ERROR: {e}", file=sys.stderr)
            return 2
        return 0

    try:
        result = asyncio.run(run_migration(args))
    except json.JSONDecodeError as e:
        print(f"ERROR: --where is not valid JSON: {e}", file=sys.stderr)
        return 2
    except FieldEncryptionError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    if args.cmd == "decrypt":
        print(f"Decrypted {result.decrypted} rows of {args.table}")
    else:
        print(f"Encrypted {result.encrypted} rows of {args.table}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
