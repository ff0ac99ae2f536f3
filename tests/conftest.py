import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path

import pytest

# Make the project importable without installation.
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_trading.models import Direction, Signal  # noqa: E402

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def build_signal(
    direction=Direction.BUY,
    price="100",
    targets=("110", "120", "130"),
    stop="90",
    days=3,
    token="COS",
    token_id="contentos",
    now=NOW,
) -> Signal:
    return Signal(
        token=token,
        token_id=token_id,
        direction=direction,
        current_price=Decimal(price),
        targets=tuple(Decimal(t) for t in targets),
        stop_loss=Decimal(stop),
        max_exit_time=now + timedelta(days=days),
    )


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def make_signal():
    return build_signal


@pytest.fixture
def buy_signal():
    return build_signal()


@pytest.fixture
def put_signal():
    return build_signal(direction=Direction.PUT_OPTIONS, targets=("90", "80", "70"), stop="110")
