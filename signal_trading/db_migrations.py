"""Versioned schema migrations for the SQLite position store.

MIGRATIONS maps a version to its upgrade step, MIGRATION_DOWNS to the
matching downgrade. Each step runs in its own BEGIN IMMEDIATE transaction
together with its ``schema_migrations`` bookkeeping row, so a failed step
leaves neither schema changes nor a version record behind.
"""
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

POSITION_INDICES = {
    "idx_positions_status": "positions(status)",
    "idx_positions_token_status": "positions(token_id, status)",
    "idx_positions_owner": "positions(owner)",
    "idx_positions_max_exit": "positions(max_exit_ts)",
}

TRACKING_COLUMNS = ("last_monitored_at", "recovered_at")


def _create_positions(conn):
    # value holds the full JSON document; the other columns are query keys
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS positions (
            position_id TEXT PRIMARY KEY,
            token_id TEXT NOT NULL,
            status TEXT NOT NULL,
            max_exit_ts REAL NOT NULL,
            owner TEXT,
            vault_address TEXT,
            value TEXT NOT NULL,
            exit_tx_hash TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )


def _drop_positions(conn):
    conn.execute("DROP TABLE IF EXISTS positions")


def _create_indices(conn):
    """Indices used by recovery and the status tools."""
    for name, target in POSITION_INDICES.items():
        conn.execute(f"CREATE INDEX IF NOT EXISTS {name} ON {target}")


def _drop_indices(conn):
    for name in POSITION_INDICES:
        conn.execute(f"DROP INDEX IF EXISTS {name}")


def _add_tracking_columns(conn):
    """Monitoring and recovery timestamps."""
    for column in TRACKING_COLUMNS:
        conn.execute(f"ALTER TABLE positions ADD COLUMN {column} TEXT")


def _drop_tracking_columns(conn):
    # Requires SQLite >= 3.35
    for column in reversed(TRACKING_COLUMNS):
        conn.execute(f"ALTER TABLE positions DROP COLUMN {column}")


MIGRATIONS: Dict[int, Callable] = {
    1: _create_positions,
    2: _create_indices,
    3: _add_tracking_columns,
}

MIGRATION_DOWNS: Dict[int, Callable] = {
    1: _drop_positions,
    2: _drop_indices,
    3: _drop_tracking_columns,
}


def _ensure_table(conn) -> None:
    conn.execute(
        "CREATE TABLE IF NOT EXISTS schema_migrations (version INTEGER PRIMARY KEY, applied_at TEXT NOT NULL)"
    )
    if conn.in_transaction:
        conn.commit()


def _transactional(conn, step: Callable, sql: str, params) -> None:
    """Run a schema step plus its bookkeeping statement atomically."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        step(conn)
        conn.execute(sql, params)
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def applied_versions(conn) -> List[int]:
    _ensure_table(conn)
    return [row[0] for row in conn.execute("SELECT version FROM schema_migrations ORDER BY version")]


def pending_versions(conn) -> List[int]:
    applied = set(applied_versions(conn))
    return [v for v in sorted(MIGRATIONS) if v not in applied]


def schema_version(conn) -> int:
    """Highest applied version, 0 for an empty database."""
    versions = applied_versions(conn)
    return versions[-1] if versions else 0


def apply_migrations(conn) -> List[int]:
    """Apply pending migrations in version order; returns the versions applied now."""
    done = []
    for version in pending_versions(conn):
        _transactional(
            conn,
            MIGRATIONS[version],
            "INSERT INTO schema_migrations(version, applied_at) VALUES(?, ?)",
            (version, datetime.now(timezone.utc).isoformat()),
        )
        done.append(version)
    return done


def rollback_migration(conn, version: int) -> None:
    """Run the down step of one version and forget it was applied.

    Raises:
        RuntimeError: If no down migration is registered for the version
    """
    if version not in MIGRATION_DOWNS:
        raise RuntimeError(f"No down migration registered for version {version}")
    _transactional(conn, MIGRATION_DOWNS[version], "DELETE FROM schema_migrations WHERE version = ?", (version,))


def rollback_last(conn) -> Optional[int]:
    """Roll back the newest applied version; None when nothing is applied."""
    version = schema_version(conn)
    if version == 0:
        return None
    rollback_migration(conn, version)
    return version
