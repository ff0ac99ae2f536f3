#!/usr/bin/env python
"""Migration CLI: list, apply, rollback migrations for the position store.

Usage (examples):

python scripts/migrate.py --db positions.db list
python scripts/migrate.py --db positions.db apply [--dry-run]
python scripts/migrate.py --db positions.db rollback --version 3
python scripts/migrate.py --db positions.db rollback --last [--dry-run] [--yes]
"""
import argparse
import sqlite3
import sys
from pathlib import Path

# Project root on sys.path so `signal_trading` imports when run as a script.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_trading.db_migrations import (  # noqa: E402
    MIGRATIONS,
    applied_versions,
    apply_migrations,
    pending_versions,
    rollback_last,
    rollback_migration,
    schema_version,
)


def list_migrations(conn):
    applied = {row[0]: row[1] for row in conn.execute("SELECT version, applied_at FROM schema_migrations")}
    print(f"Schema version: {schema_version(conn)}")
    print("Available migrations:")
    for v, step in sorted(MIGRATIONS.items()):
        status = "applied" if v in applied else "pending"
        print(f"  {v}: {status} (applied_at={applied.get(v, '-')}) {step.__name__.lstrip('_')}")


def confirm(prompt: str) -> bool:
    try:
        answer = input(f"{prompt} This may DROP data. Type 'yes' to continue: ")
    except (EOFError, BrokenPipeError):
        # Non-interactive stdin
        return True
    return answer.strip().lower() == "yes"


def cmd_apply(conn, args) -> None:
    if args.dry_run:
        pending = pending_versions(conn)
        if pending:
            print("Pending migrations:", pending)
        else:
            print("No pending migrations; database up-to-date.")
        return

    applied = apply_migrations(conn)
    if applied:
        print("Applied migrations:", applied)
    else:
        print("No migrations applied; database up-to-date.")


def cmd_rollback(conn, args) -> int:
    if args.version is not None:
        version = args.version
    elif args.last:
        versions = applied_versions(conn)
        if not versions:
            print("No applied migrations to rollback")
            return 0
        version = versions[-1]
    else:
        print("rollback needs --version N or --last")
        return 2

    if args.dry_run:
        print(f"Would rollback migration {version} (dry-run)")
        return 0
    if not args.yes and not confirm(f"Are you sure you want to rollback migration {version}?"):
        print("Aborted.")
        return 0

    if args.last:
        rolled = rollback_last(conn)
        print(f"Rolled back migration {rolled}")
    else:
        rollback_migration(conn, version)
        print(f"Rolled back migration {version}")
    return 0


def main():
    parser = argparse.ArgumentParser(description="Position store migrations")
    parser.add_argument("--db", required=True, help="Path to sqlite DB file")
    sub = parser.add_subparsers(dest="cmd")

    sub.add_parser("list")
    apply_p = sub.add_parser("apply")
    apply_p.add_argument("--dry-run", action="store_true", help="Show pending migrations without applying them")

    rb = sub.add_parser("rollback")
    rb.add_argument("--version", type=int, help="Rollback a specific migration version")
    rb.add_argument("--last", action="store_true", help="Rollback the last applied migration")
    rb.add_argument("--dry-run", action="store_true", help="Show which migration would be rolled back")
    rb.add_argument("--yes", action="store_true", help="Do not prompt for confirmation")

    args = parser.parse_args()
    if args.cmd is None:
        parser.print_help()
        return 0

    db = Path(args.db)
    db.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(db), timeout=30)
    try:
        applied_versions(conn)  # ensures schema_migrations exists
        if args.cmd == "list":
            list_migrations(conn)
        elif args.cmd == "apply":
            cmd_apply(conn, args)
        elif args.cmd == "rollback":
            return cmd_rollback(conn, args)
        return 0
    except (sqlite3.Error, RuntimeError) as e:
        print(f"Migration error: {e}", file=sys.stderr)
        return 1
    finally:
        conn.close()


if __name__ == '__main__':
    sys.exit(main())
