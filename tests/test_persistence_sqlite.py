import json
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from signal_trading.exceptions import PersistenceError
from signal_trading.models import Position, PositionStatus, TrailingStopConfig
from signal_trading.persistence_sqlite import SQLitePositionStore


def make_position(signal, pid="pos_1", status=PositionStatus.ACTIVE, owner="alice", now=None):
    pos = Position(
        id=pid,
        signal=signal,
        trailing_stop=TrailingStopConfig.for_targets(len(signal.targets), Decimal("0.01")),
        original_amount=Decimal("1000"),
        remaining_amount=Decimal("1000"),
        status=status,
        owner=owner,
        vault_address="0xvault",
    )
    if now is not None:
        pos.created_at = pos.updated_at = now
    return pos


@pytest.fixture
def store(tmp_path: Path):
    s = SQLitePositionStore(tmp_path / "positions.db")
    s.connect()
    yield s
    s.close()


def test_upsert_and_get(store, buy_signal):
    pos = make_position(buy_signal)
    store.upsert(pos)

    row = store.get("pos_1")
    assert row["status"] == "active"
    assert row["token_id"] == "contentos"
    assert row["owner"] == "alice"
    assert Position.from_dict(json.loads(row["value"])).remaining_amount == Decimal("1000")


def test_upsert_overwrites_snapshot(store, buy_signal):
    pos = make_position(buy_signal)
    store.upsert(pos)
    pos.remaining_amount = Decimal("500")
    pos.exit_tx_hash = "0xexit"
    store.upsert(pos)

    row = store.get("pos_1")
    assert json.loads(row["value"])["remaining_amount"] == "500"
    assert row["exit_tx_hash"] == "0xexit"
    assert store.position_stats()["total"] == 1


def test_get_missing_returns_none(store):
    assert store.get("nope") is None


def test_query_active_or_pending(store, buy_signal):
    store.upsert(make_position(buy_signal, "pos_a", PositionStatus.ACTIVE))
    store.upsert(make_position(buy_signal, "pos_p", PositionStatus.PENDING))
    store.upsert(make_position(buy_signal, "pos_c", PositionStatus.CLOSED))

    ids = {r["position_id"] for r in store.query_active_or_pending()}
    assert ids == {"pos_a", "pos_p"}


def test_update_status_rewrites_document(store, buy_signal):
    store.upsert(make_position(buy_signal))
    store.update_status("pos_1", PositionStatus.CLOSED, exit_tx_hash="0xdead")

    row = store.get("pos_1")
    assert row["status"] == "closed"
    assert row["exit_tx_hash"] == "0xdead"
    assert json.loads(row["value"])["status"] == "closed"


def test_mark_expired_before_now(store, make_signal, now):
    store.upsert(make_position(make_signal(days=1), "pos_old", now=now))
    store.upsert(make_position(make_signal(days=10), "pos_new", now=now))

    count = store.mark_expired_before_now(now + timedelta(days=2))

    assert count == 1
    row = store.get("pos_old")
    assert row["status"] == "expired"
    data = json.loads(row["value"])
    assert data["status"] == "expired"
    assert data["exit_reason"] == "time_exit"
    assert store.get("pos_new")["status"] == "active"
    # second pass finds nothing left to expire
    assert store.mark_expired_before_now(now + timedelta(days=2)) == 0


def test_mark_recovered_and_monitored(store, buy_signal, now):
    store.upsert(make_position(buy_signal))
    store.mark_recovered(["pos_1"], now)
    store.mark_monitored(["pos_1"], now)

    row = store.get("pos_1")
    assert row["recovered_at"] == now.isoformat()
    assert row["last_monitored_at"] == now.isoformat()


def test_position_stats(store, make_signal):
    store.upsert(make_position(make_signal(), "pos_a"))
    store.upsert(make_position(make_signal(token_id="bitcoin"), "pos_b"))
    store.upsert(make_position(make_signal(), "pos_c", PositionStatus.FAILED))

    stats = store.position_stats()
    assert stats["total"] == 3
    assert stats["by_status"] == {"active": 2, "failed": 1}
    assert stats["active_by_token"] == {"contentos": 1, "bitcoin": 1}


def test_list_positions_filters(store, buy_signal):
    store.upsert(make_position(buy_signal, "pos_a"))
    store.upsert(make_position(buy_signal, "pos_b", PositionStatus.CLOSED))

    assert [r["position_id"] for r in store.list_positions(status="closed")] == ["pos_b"]
    assert len(store.list_positions(limit=1)) == 1


def test_data_survives_reopen(tmp_path: Path, buy_signal):
    db = tmp_path / "reopen.db"
    first = SQLitePositionStore(db)
    first.connect()
    first.upsert(make_position(buy_signal))
    first.close()

    second = SQLitePositionStore(db)
    second.connect()
    assert second.get("pos_1")["status"] == "active"
    second.close()


def test_connect_failure_raises_persistence_error(tmp_path: Path):
    # A directory cannot be opened as a database file.
    store = SQLitePositionStore(tmp_path)
    with pytest.raises(PersistenceError):
        store.connect()


def test_use_before_connect_raises(tmp_path: Path):
    store = SQLitePositionStore(tmp_path / "never.db")
    with pytest.raises(PersistenceError):
        store.get("pos_1")
