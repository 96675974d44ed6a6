#!/usr/bin/env python3
"""Import legacy user accounts from a JSON export.

Usage:
    # DATABASE_URL points at the target store:
    DATABASE_URL=postgresql://... python scripts/migrate_users.py users.json

    # Validate the export without writing anything:
    python scripts/migrate_users.py users.json --dry-run

The export is a JSON array of legacy user objects (email, password hash,
premium flags, 2FA state, Polar identifiers, createdAt). Accounts that were
already migrated are reported and skipped.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path

from pydantic import ValidationError as RecordValidationError


def load_records(path: Path) -> list:
    """Parse the export and validate each entry, reporting bad rows by index."""
    from nullpass.service.migration import MigrationRecord

    raw = json.loads(path.read_text())
    if not isinstance(raw, list):
        raise ValueError("export must be a JSON array of user objects")
    records = []
    for index, item in enumerate(raw):
        try:
            records.append(MigrationRecord.model_validate(item))
        except RecordValidationError as exc:
            print(f"Skipping entry {index}: {exc.errors()[0].get('msg')}")
    return records


async def migrate_all(records: list, dry_run: bool = False) -> dict:
    # Import here so env defaults below apply before settings load
    from nullpass.service.errors import ServiceError
    from nullpass.service.runtime import Runtime

    counts = {"created": 0, "updated": 0, "skipped": 0, "failed": 0}
    if dry_run:
        for record in records:
            print(f"[DRY RUN] Would migrate {record.email}")
        counts["skipped"] = len(records)
        return counts

    runtime = Runtime()
    try:
        for record in records:
            try:
                _, created = runtime.migration.migrate_user(record)
            except ServiceError as exc:
                if exc.status_code == 409:
                    counts["skipped"] += 1
                    print(f"{record.email}: already migrated")
                else:
                    counts["failed"] += 1
                    print(f"{record.email}: {exc.message}")
                continue
            counts["created" if created else "updated"] += 1
            print(f"{record.email}: {'created' if created else 'updated'}")
    finally:
        await runtime.close()
    return counts


def main():
    parser = argparse.ArgumentParser(
        description="Migrate legacy users into NullPass",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("export", type=Path, help="Path to the JSON user export")
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Validate the export without writing anything",
    )
    args = parser.parse_args()

    if not args.export.exists():
        print(f"Error: {args.export} not found")
        sys.exit(1)

    if not os.environ.get("DATABASE_URL"):
        os.environ["USE_MEMORY_STORE"] = "true"
        print("Note: Using in-memory store (set DATABASE_URL for persistence)")
    os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")

    try:
        records = load_records(args.export)
        counts = asyncio.run(migrate_all(records, args.dry_run))
    except Exception as e:
        print(f"Error: {e}")
        sys.exit(1)

    print(
        "\nDone: {created} created, {updated} updated, {skipped} skipped, {failed} failed".format(
            **counts
        )
    )
    if counts["failed"]:
        sys.exit(2)


if __name__ == "__main__":
    main()
