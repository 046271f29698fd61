from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from scriptorium.core.config import get_settings
from scriptorium.core.errors import StorageError
from scriptorium.core.logging import configure_logging
from scriptorium.persistence.migrations import apply_migrations, applied_migrations, discover_migrations
from scriptorium.runtime.relational import create_database


async def _run(database_url: str, directory: Path | None, status_only: bool) -> int:
    db = create_database(database_url)
    try:
        if status_only:
            try:
                done = await applied_migrations(db)
            except StorageError:
                # No state table yet: nothing has been applied.
                done = set()
            for script in discover_migrations(directory):
                marker = "applied" if script.name in done else "pending"
                print(f"{marker} {script.name}")
            return 0
        report = await apply_migrations(db, directory)
        print(f"applied={len(report.applied)} skipped={len(report.skipped)} failed={len(report.failed)}")
        for name, error in sorted(report.failed.items()):
            print(f"failed {name}: {error}")
        return 0 if report.ok else 1
    finally:
        await db.close()


def main() -> None:
    # Apply pending SQL migrations against DATABASE_URL or an explicit DSN.
    parser = argparse.ArgumentParser(description="Run schema migrations")
    parser.add_argument("--database-url", default=None)
    parser.add_argument("--dir", default=None, help="Directory of migration_NNN_*.sql files")
    parser.add_argument("--status", action="store_true", help="List applied and pending scripts only")
    args = parser.parse_args()

    configure_logging("INFO")
    database_url = args.database_url or get_settings().database_url
    if not database_url:
        parser.error("DATABASE_URL is not set; pass --database-url")
    directory = Path(args.dir) if args.dir else None
    sys.exit(asyncio.run(_run(database_url, directory, args.status)))


if __name__ == "__main__":
    main()
