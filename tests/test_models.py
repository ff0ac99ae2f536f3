from datetime import datetime, timezone
from decimal import Decimal

import pytest

from signal_trading.models import (
    Direction,
    Position,
    PositionStatus,
    TargetExit,
    TrailingStopConfig,
    parse_timestamp,
)


def test_direction_parse_accepts_aliases():
    assert Direction.parse("buy") is Direction.BUY
    assert Direction.parse("BUY") is Direction.BUY
    assert Direction.parse("Put Options") is Direction.PUT_OPTIONS
    assert Direction.parse("put_options") is Direction.PUT_OPTIONS
    assert Direction.parse("putoptions") is Direction.PUT_OPTIONS
    assert Direction.parse(" hold ") is Direction.HOLD


def test_direction_parse_rejects_unknown():
    with pytest.raises(ValueError):
        Direction.parse("sell")


def test_direction_opposes():
    assert Direction.BUY.opposes(Direction.PUT_OPTIONS)
    assert Direction.PUT_OPTIONS.opposes(Direction.BUY)
    assert not Direction.BUY.opposes(Direction.BUY)
    assert not Direction.HOLD.opposes(Direction.BUY)
    assert not Direction.BUY.opposes(Direction.HOLD)


def test_buy_signal_price_checks(buy_signal):
    assert buy_signal.is_target_reached(Decimal("110"), Decimal("110"))
    assert not buy_signal.is_target_reached(Decimal("109.99"), Decimal("110"))
    assert buy_signal.is_stop_loss_breached(Decimal("90"))
    assert not buy_signal.is_stop_loss_breached(Decimal("90.01"))


def test_put_signal_price_checks(put_signal):
    assert put_signal.is_target_reached(Decimal("89"), Decimal("90"))
    assert not put_signal.is_target_reached(Decimal("91"), Decimal("90"))
    assert put_signal.is_stop_loss_breached(Decimal("110"))
    assert not put_signal.is_stop_loss_breached(Decimal("109"))


def test_hold_signal_never_triggers(make_signal):
    hold = make_signal(direction=Direction.HOLD)
    assert not hold.is_target_reached(Decimal("1000"), Decimal("110"))
    assert not hold.is_stop_loss_breached(Decimal("1"))


def test_signal_is_immutable(buy_signal):
    with pytest.raises(AttributeError):
        buy_signal.stop_loss = Decimal("1")


def test_trailing_config_validation():
    with pytest.raises(ValueError):
        TrailingStopConfig.for_targets(2, Decimal("0"))
    with pytest.raises(ValueError):
        TrailingStopConfig.for_targets(2, Decimal("0.6"))
    config = TrailingStopConfig.for_targets(3, Decimal("0.5"))
    assert config.targets_hit == [False, False, False]
    assert not config.is_active and not config.tp1_hit


def test_parse_timestamp_variants():
    assert parse_timestamp("2025-06-01T00:00:00Z") == datetime(2025, 6, 1, tzinfo=timezone.utc)
    naive = parse_timestamp("2025-06-01T00:00:00")
    assert naive.tzinfo is not None
    aware = parse_timestamp("2025-06-01T02:00:00+02:00")
    assert aware == datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_position_serialization_preserves_progress(buy_signal, now):
    trailing = TrailingStopConfig.for_targets(3, Decimal("0.02"), [Decimal("40"), Decimal("40"), Decimal("100")])
    trailing.targets_hit = [True, False, False]
    trailing.tp1_hit = True
    trailing.is_active = True
    trailing.peak_price = Decimal("115.5")
    pos = Position(
        id="pos_1",
        signal=buy_signal,
        trailing_stop=trailing,
        original_amount=Decimal("1000"),
        remaining_amount=Decimal("600"),
        status=PositionStatus.ACTIVE,
        target_exit_history=[
            TargetExit(0, Decimal("110"), Decimal("110.2"), Decimal("400"), Decimal("40"), now, "0xabc")
        ],
        entry_tx_hash="0x1",
        owner="alice",
        vault_address="0xvault",
        created_at=now,
        updated_at=now,
    )

    restored = Position.from_dict(pos.to_dict())

    assert restored.signal == pos.signal
    assert restored.trailing_stop.targets_hit == [True, False, False]
    assert restored.trailing_stop.peak_price == Decimal("115.5")
    assert restored.trailing_stop.partial_exit_percentages == [Decimal("40"), Decimal("40"), Decimal("100")]
    assert restored.target_exit_history[0].tx_hash == "0xabc"
    assert restored.remaining_amount == Decimal("600")
    assert restored.status is PositionStatus.ACTIVE
    assert restored.exited_amount == Decimal("400")


def test_position_from_dict_rejects_bad_status(buy_signal, now):
    pos = Position(
        id="pos_1",
        signal=buy_signal,
        trailing_stop=TrailingStopConfig.for_targets(3, Decimal("0.01")),
        original_amount=Decimal("1"),
        remaining_amount=Decimal("1"),
        created_at=now,
        updated_at=now,
    )
    data = pos.to_dict()
    data["status"] = "weird"
    with pytest.raises(ValueError):
        Position.from_dict(data)


def test_terminal_statuses():
    assert PositionStatus.CLOSED.is_terminal
    assert PositionStatus.EXPIRED.is_terminal
    assert PositionStatus.FAILED.is_terminal
    assert not PositionStatus.ACTIVE.is_terminal
    assert not PositionStatus.PENDING.is_terminal
