from __future__ import annotations

import argparse
from pathlib import Path

from scriptorium.persistence.dialect import convert_sqlite_to_postgres


def main() -> None:
    # Translate SQLite migration files into PostgreSQL syntax for the server substrate.
    parser = argparse.ArgumentParser(description="Convert SQLite SQL files to PostgreSQL")
    parser.add_argument("paths", nargs="+", help="SQL files to convert")
    parser.add_argument("--output-dir", default=None, help="Write converted files here instead of in place")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    output_dir = Path(args.output_dir) if args.output_dir else None
    totals: dict[str, int] = {}
    for raw_path in args.paths:
        path = Path(raw_path)
        result = convert_sqlite_to_postgres(path.read_text(encoding="utf-8"))
        for name, count in result.counts.items():
            totals[name] = totals.get(name, 0) + count
        for warning in result.warnings:
            print(f"warning file={path.name} {warning}")
        if args.dry_run:
            continue
        target = (output_dir / path.name) if output_dir else path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(result.sql, encoding="utf-8")
        print(f"converted file={target}")

    for name, count in sorted(totals.items()):
        print(f"{name}={count}")


if __name__ == "__main__":
    main()
