import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

from .exceptions import PersistenceError
from .logging_setup import logger
from .models import Position, PositionStatus, utcnow

_OPEN = (PositionStatus.ACTIVE.value, PositionStatus.PENDING.value)


class PositionStore(ABC):
    """Durable store of position snapshots.

    Implementations are synchronous; async callers go through
    ``asyncio.to_thread``. Every failure surfaces as PersistenceError.
    """

    @abstractmethod
    def connect(self) -> None:
        pass

    @abstractmethod
    def upsert(self, position: Position, owner: Optional[str] = None, vault_address: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def get(self, position_id: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def query_active_or_pending(self) -> List[Dict[str, Any]]:
        """Raw records of every ACTIVE or PENDING position, unparsed."""
        pass

    @abstractmethod
    def update_status(self, position_id: str, status: PositionStatus, exit_tx_hash: Optional[str] = None) -> None:
        pass

    @abstractmethod
    def mark_expired_before_now(self, now: Optional[datetime] = None) -> int:
        """Mark open positions whose deadline has passed as EXPIRED; return the count."""
        pass

    @abstractmethod
    def mark_recovered(self, position_ids: Iterable[str], now: Optional[datetime] = None) -> None:
        pass

    @abstractmethod
    def position_stats(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    def close(self) -> None:
        pass


class SQLitePositionStore(PositionStore):
    """SQLite-backed position store.

    Indexed columns (status, token id, owner, vault, deadline) sit next to the
    full JSON document in ``value``. All writes use BEGIN IMMEDIATE
    transactions; a lock serializes use of the shared connection across
    threads.
    """

    def __init__(self, path: Path):
        self.path = Path(path)
        self.conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def connect(self) -> None:
        if self.conn is not None:
            return
        from .db_migrations import apply_migrations

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(str(self.path), timeout=30, check_same_thread=False, isolation_level=None)
            conn.row_factory = sqlite3.Row
            applied = apply_migrations(conn)
        except (sqlite3.Error, OSError) as e:
            raise PersistenceError(f"Failed to open position store at {self.path}: {e}", original=e) from e
        self.conn = conn
        if applied:
            logger.info(f"Schema migrations applied | db={self.path} versions={applied}")
        logger.info(f"Position store connected | db={self.path}")

    def _require(self) -> sqlite3.Connection:
        if self.conn is None:
            raise PersistenceError("Position store is not connected; call connect() first")
        return self.conn

    def _write(self, sql: str, params=()) -> int:
        conn = self._require()
        with self._lock:
            try:
                conn.execute("BEGIN IMMEDIATE")
                cur = conn.execute(sql, params)
                conn.commit()
                return cur.rowcount
            except sqlite3.Error as e:
                if conn.in_transaction:
                    conn.rollback()
                raise PersistenceError(f"Write failed: {e}", original=e) from e

    def _read(self, sql: str, params=()) -> List[sqlite3.Row]:
        conn = self._require()
        with self._lock:
            try:
                return conn.execute(sql, params).fetchall()
            except sqlite3.Error as e:
                raise PersistenceError(f"Read failed: {e}", original=e) from e

    # --- Position APIs ---
    def upsert(self, position: Position, owner: Optional[str] = None, vault_address: Optional[str] = None) -> None:
        data = json.dumps(position.to_dict())
        self._write(
            """
            INSERT INTO positions(position_id, token_id, status, max_exit_ts, owner, vault_address,
                                  value, exit_tx_hash, created_at, updated_at)
            VALUES(?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(position_id) DO UPDATE SET
                status = excluded.status,
                max_exit_ts = excluded.max_exit_ts,
                owner = COALESCE(excluded.owner, positions.owner),
                vault_address = COALESCE(excluded.vault_address, positions.vault_address),
                value = excluded.value,
                exit_tx_hash = COALESCE(excluded.exit_tx_hash, positions.exit_tx_hash),
                updated_at = excluded.updated_at
            """,
            (
                position.id,
                position.token_id,
                position.status.value,
                position.signal.max_exit_time.timestamp(),
                owner or position.owner,
                vault_address or position.vault_address,
                data,
                position.exit_tx_hash,
                position.created_at.isoformat(),
                position.updated_at.isoformat(),
            ),
        )

    def get(self, position_id: str) -> Optional[Dict[str, Any]]:
        rows = self._read("SELECT * FROM positions WHERE position_id = ?", (position_id,))
        if not rows:
            return None
        return dict(rows[0])

    def list_positions(self, status: Optional[str] = None, limit: Optional[int] = None) -> List[Dict[str, Any]]:
        sql = "SELECT position_id, token_id, status, owner, vault_address, max_exit_ts, updated_at FROM positions"
        params: List[Any] = []
        if status:
            sql += " WHERE status = ?"
            params.append(status)
        sql += " ORDER BY updated_at DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        return [dict(r) for r in self._read(sql, params)]

    def query_active_or_pending(self) -> List[Dict[str, Any]]:
        rows = self._read(
            "SELECT position_id, token_id, status, owner, vault_address, value FROM positions "
            "WHERE status IN (?, ?) ORDER BY created_at",
            _OPEN,
        )
        return [dict(r) for r in rows]

    def update_status(self, position_id: str, status: PositionStatus, exit_tx_hash: Optional[str] = None) -> None:
        self._write(
            """
            UPDATE positions
            SET status = ?,
                value = json_set(value, '$.status', ?),
                exit_tx_hash = COALESCE(?, exit_tx_hash),
                updated_at = ?
            WHERE position_id = ?
            """,
            (status.value, status.value, exit_tx_hash, utcnow().isoformat(), position_id),
        )

    def mark_expired_before_now(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        count = self._write(
            """
            UPDATE positions
            SET status = ?,
                value = json_set(value, '$.status', ?, '$.exit_reason', 'time_exit'),
                updated_at = ?
            WHERE status IN (?, ?) AND max_exit_ts <= ?
            """,
            (
                PositionStatus.EXPIRED.value,
                PositionStatus.EXPIRED.value,
                now.isoformat(),
                *_OPEN,
                now.timestamp(),
            ),
        )
        if count:
            logger.info(f"Expired stale positions | count={count}")
        return count

    def mark_recovered(self, position_ids: Iterable[str], now: Optional[datetime] = None) -> None:
        ids = list(position_ids)
        if not ids:
            return
        stamp = (now or utcnow()).isoformat()
        placeholders = ",".join("?" for _ in ids)
        self._write(f"UPDATE positions SET recovered_at = ? WHERE position_id IN ({placeholders})", (stamp, *ids))

    def mark_monitored(self, position_ids: Iterable[str], now: Optional[datetime] = None) -> None:
        ids = list(position_ids)
        if not ids:
            return
        stamp = (now or utcnow()).isoformat()
        placeholders = ",".join("?" for _ in ids)
        self._write(f"UPDATE positions SET last_monitored_at = ? WHERE position_id IN ({placeholders})", (stamp, *ids))

    def position_stats(self) -> Dict[str, Any]:
        by_status = {
            r["status"]: r["n"] for r in self._read("SELECT status, COUNT(*) AS n FROM positions GROUP BY status")
        }
        active_by_token = {
            r["token_id"]: r["n"]
            for r in self._read(
                "SELECT token_id, COUNT(*) AS n FROM positions WHERE status = ? GROUP BY token_id",
                (PositionStatus.ACTIVE.value,),
            )
        }
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "active_by_token": active_by_token,
        }

    def close(self) -> None:
        if self.conn is None:
            return
        with self._lock:
            try:
                self.conn.close()
            except sqlite3.Error as e:
                logger.warning(f"Error closing position store | db={self.path} error={e}")
            self.conn = None
