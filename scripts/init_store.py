#!/usr/bin/env python3
"""
Create the SQLite schema, write the default availability rules and manage the blacklist.

Usage:
  DATABASE_PATH=./data/meetbook.db python3 scripts/init_store.py
  DATABASE_PATH=./data/meetbook.db python3 scripts/init_store.py --delete default-weekdays
  DATABASE_PATH=./data/meetbook.db python3 scripts/init_store.py --block spam@example.com --reason abuse
  DATABASE_PATH=./data/meetbook.db python3 scripts/init_store.py --unblock 3
  DATABASE_PATH=./data/meetbook.db python3 scripts/init_store.py --list-blocked
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from meetbook.application.ports.errors import DuplicateError, InvalidInputError, NotFoundError
from meetbook.core.config import settings
from meetbook.domain.entities.blacklist import BlacklistEntry
from meetbook.infrastructure.store.seed import default_rules
from meetbook.infrastructure.store.sqlite_store import (
    SqliteAvailabilityRuleStore,
    SqliteBlacklistStore,
    SqliteDatabase,
)


async def manage_blacklist(db: SqliteDatabase, args: argparse.Namespace) -> int:
    store = SqliteBlacklistStore(db)
    if args.block:
        try:
            entry = await store.add_entry(BlacklistEntry(email=args.block, reason=args.reason))
        except (DuplicateError, InvalidInputError) as e:
            print(f"Not blocked: {e}")
            return 1
        print(f"Blocked {entry.email} (entry {entry.entry_id})")
        return 0
    if args.unblock is not None:
        try:
            await store.remove_entry(args.unblock)
        except NotFoundError:
            print(f"Blacklist entry {args.unblock} not found")
            return 1
        print(f"Removed blacklist entry {args.unblock}")
        return 0

    for entry in await store.list_entries():
        print(f"{entry.entry_id}\t{entry.email}\t{entry.reason}")
    return 0


async def main(args: argparse.Namespace) -> int:
    if not settings.DATABASE_PATH:
        print("DATABASE_PATH is not set; nothing to initialize.")
        return 1

    db = SqliteDatabase(settings.DATABASE_PATH, timeout_seconds=settings.REQUEST_TIMEOUT_SECONDS)
    await db.initialize()

    if args.block or args.unblock is not None or args.list_blocked:
        return await manage_blacklist(db, args)

    store = SqliteAvailabilityRuleStore(db)
    if args.delete:
        try:
            await store.delete_rule(settings.OWNER_ID, args.delete)
        except NotFoundError:
            print(f"Rule {args.delete!r} not found for {settings.OWNER_ID}")
            return 1
        print(f"Deleted rule {args.delete!r}")
        return 0

    for rule in default_rules(settings):
        await store.upsert_rule(rule)
        print(f"Upserted rule {rule.rule_id} ({rule.open_from:%H:%M}-{rule.open_until:%H:%M} {rule.timezone})")
    return 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__, formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--delete", metavar="RULE_ID", help="delete a rule instead of seeding")
    parser.add_argument("--block", metavar="EMAIL", help="add an e-mail address to the blacklist")
    parser.add_argument("--reason", default="", help="reason stored with --block")
    parser.add_argument("--unblock", metavar="ENTRY_ID", type=int, help="remove a blacklist entry")
    parser.add_argument("--list-blocked", action="store_true", help="print the blacklist")
    sys.exit(asyncio.run(main(parser.parse_args())))
