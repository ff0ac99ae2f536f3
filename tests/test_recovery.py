import json
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

import pytest

from signal_trading.groups import GroupStore
from signal_trading.models import Position, PositionStatus, TrailingStopConfig
from signal_trading.persistence_sqlite import SQLitePositionStore
from signal_trading.recovery import RecoveryManager
from signal_trading.registry import PositionRegistry
from signal_trading.trailing_stop import NoExit, Phase, TrailingStopEngine


def persisted_position(signal, pid, status=PositionStatus.ACTIVE, now=None):
    pos = Position(
        id=pid,
        signal=signal,
        trailing_stop=TrailingStopConfig.for_targets(len(signal.targets), Decimal("0.05")),
        original_amount=Decimal("1000"),
        remaining_amount=Decimal("500"),
        status=status,
        entry_tx_hash="0xentry",
    )
    if now is not None:
        pos.created_at = pos.updated_at = now
    return pos


def make_manager(store):
    groups = GroupStore()
    registry = PositionRegistry(groups)
    engine = TrailingStopEngine()
    return RecoveryManager(store, registry, groups, engine), registry, groups, engine


@pytest.fixture
def store(tmp_path: Path):
    s = SQLitePositionStore(tmp_path / "recovery.db")
    s.connect()
    yield s
    s.close()


def test_recovery_resumes_trailing_state(store, make_signal, now):
    pos = persisted_position(make_signal(targets=("110", "120")), "pos_trail", now=now)
    pos.trailing_stop.targets_hit = [True, False]
    pos.trailing_stop.tp1_hit = True
    pos.trailing_stop.is_active = True
    pos.trailing_stop.peak_price = Decimal("115")
    store.upsert(pos)

    recovery, registry, groups, engine = make_manager(store)
    result = recovery.recover(now)

    assert result.total_recovered == 1
    assert result.active_count == 1
    restored = registry.get("pos_trail")
    assert engine.is_registered("pos_trail")
    assert engine.phase(restored) is Phase.TRAILING
    assert restored.trailing_stop.peak_price == Decimal("115")
    assert restored.trailing_stop.targets_hit == [True, False]
    assert groups.get("contentos").total_exposure == Decimal("500")
    # TP1 already taken: back above it nothing fires
    assert engine.evaluate(restored, Decimal("111"), now) == NoExit()


def test_recovery_is_idempotent(store, buy_signal, now):
    store.upsert(persisted_position(buy_signal, "pos_1", now=now))
    recovery, registry, groups, _ = make_manager(store)

    first = recovery.recover(now)
    second = recovery.recover(now)

    assert first.total_recovered == 1
    assert second.total_recovered == 0
    assert len(registry) == 1
    assert len(groups.get("contentos").positions) == 1


def test_recovery_expires_overdue_positions(store, make_signal, now):
    store.upsert(persisted_position(make_signal(days=1), "pos_old", now=now))
    store.upsert(persisted_position(make_signal(days=10), "pos_new", now=now))
    recovery, registry, _, _ = make_manager(store)

    result = recovery.recover(now + timedelta(days=2))

    assert result.expired_count == 1
    assert result.total_recovered == 1
    assert registry.get("pos_old") is None
    assert store.get("pos_old")["status"] == "expired"


def test_recovery_restores_pending_without_tracking(store, buy_signal, now):
    store.upsert(persisted_position(buy_signal, "pos_pending", PositionStatus.PENDING, now=now))
    recovery, registry, groups, engine = make_manager(store)

    result = recovery.recover(now)

    assert result.total_recovered == 1
    assert result.active_count == 0
    assert registry.get("pos_pending").status is PositionStatus.PENDING
    assert not engine.is_registered("pos_pending")
    assert groups.get("contentos") is not None


def test_recovery_skips_unreadable_records(store, buy_signal, now):
    store.upsert(persisted_position(buy_signal, "pos_good", now=now))
    store.upsert(persisted_position(buy_signal, "pos_bad", now=now))
    store._write(
        "UPDATE positions SET value = ? WHERE position_id = ?",
        (json.dumps({"id": "pos_bad", "status": "active"}), "pos_bad"),
    )
    recovery, registry, _, _ = make_manager(store)

    result = recovery.recover(now)

    assert result.total_recovered == 1
    assert result.failures == 1
    assert result.errors[0].position_id == "pos_bad"
    assert registry.get("pos_good") is not None
    assert registry.get("pos_bad") is None


def test_recovery_marks_recovered(store, buy_signal, now):
    store.upsert(persisted_position(buy_signal, "pos_1", now=now))
    recovery, _, _, _ = make_manager(store)
    recovery.recover(now)
    assert store.get("pos_1")["recovered_at"] == now.isoformat()
