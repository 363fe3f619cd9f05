"""Permanently delete trashed items older than the retention window.

Meant to be run by an external scheduler (cron, systemd timer, k8s CronJob).
Reads the same VAULT_* settings as the library.

Usage:
    uv run python scripts/purge_trash.py                      # configured window
    uv run python scripts/purge_trash.py --retention-days 7
    uv run python scripts/purge_trash.py --dry-run
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from vaultfs import VaultAsync, get_settings


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Purge expired trash")
    parser.add_argument(
        "--retention-days",
        type=int,
        default=None,
        help="Override VAULT_TRASH_RETENTION_DAYS",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="List what would be purged without deleting anything",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def run(args: argparse.Namespace) -> int:
    async with VaultAsync(get_settings()) as vault:
        if args.dry_run:
            expired = await vault.trash.list_expired(args.retention_days)
            for entry in expired:
                print(f"would purge {entry.item_type} {entry.id} ({entry.name}) of {entry.owner_id}")
            print(f"{len(expired)} items would be purged")
            return 0

        result = await vault.trash.auto_purge(args.retention_days)
        print(
            f"purged {result.purged_files} files and {result.purged_folders} folders, "
            f"{result.failed} failed"
        )
        if result.orphaned_keys:
            print(f"{len(result.orphaned_keys)} objects could not be deleted:", file=sys.stderr)
            for key in result.orphaned_keys:
                print(f"  {key}", file=sys.stderr)
        return 1 if result.failed else 0


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(run(args)))


if __name__ == "__main__":
    main()
