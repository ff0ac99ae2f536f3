from datetime import datetime, timezone
from decimal import Decimal

import pytest

from signal_trading.exceptions import ValidationError
from signal_trading.models import Direction
from signal_trading.signal_parser import parse_signal, signal_summary, token_symbol


def payload(**overrides):
    base = {
        "token": "COS (contentos)",
        "tokenId": "contentos",
        "signal": "Buy",
        "currentPrice": 0.0061,
        "targets": [0.0067, 0.0072],
        "stopLoss": 0.0055,
        "maxExitTime": "2025-06-01T00:00:00Z",
        "timeline": "Short-term (1-7 days)",
        "tradeTip": "Breakout above resistance",
    }
    base.update(overrides)
    return base


def test_parse_buy_signal():
    signal = parse_signal(payload())

    assert signal.token == "COS"
    assert signal.token_id == "contentos"
    assert signal.direction is Direction.BUY
    assert signal.current_price == Decimal("0.0061")
    assert signal.targets == (Decimal("0.0067"), Decimal("0.0072"))
    assert signal.stop_loss == Decimal("0.0055")
    assert signal.max_exit_time == datetime(2025, 6, 1, tzinfo=timezone.utc)


def test_parse_keeps_extra_fields_as_metadata():
    signal = parse_signal(payload())
    assert signal.metadata["timeline"] == "Short-term (1-7 days)"
    assert signal.metadata["tradeTip"] == "Breakout above resistance"
    assert signal.metadata["display_name"] == "COS (contentos)"


def test_parse_put_signal():
    signal = parse_signal(
        payload(signal="Put Options", currentPrice=100, targets=[95, 90, 85], stopLoss=103)
    )
    assert signal.direction is Direction.PUT_OPTIONS
    assert signal.targets == (Decimal("95"), Decimal("90"), Decimal("85"))


def test_parse_hold_signal_skips_price_checks():
    signal = parse_signal(payload(signal="Hold", targets=[0.001], stopLoss=0.01))
    assert signal.direction is Direction.HOLD


def test_parse_accepts_snake_case_keys():
    data = payload()
    data["token_id"] = data.pop("tokenId")
    data["stop_loss"] = data.pop("stopLoss")
    signal = parse_signal(data)
    assert signal.token_id == "contentos"


@pytest.mark.parametrize(
    "overrides",
    [
        {"signal": "Sell"},
        {"currentPrice": 0},
        {"currentPrice": -1},
        {"targets": []},
        {"targets": [0.0072, 0.0067]},  # not ascending
        {"targets": [0.0050, 0.0072]},  # below entry
        {"stopLoss": 0.0070},  # above entry
        {"maxExitTime": "not a date"},
        {"tokenId": ""},
    ],
)
def test_parse_rejects_malformed_buy(overrides):
    with pytest.raises(ValidationError):
        parse_signal(payload(**overrides))


def test_parse_rejects_put_with_wrong_sides():
    with pytest.raises(ValidationError):
        parse_signal(payload(signal="Put Options", currentPrice=100, targets=[105], stopLoss=110))
    with pytest.raises(ValidationError):
        parse_signal(payload(signal="Put Options", currentPrice=100, targets=[95], stopLoss=90))
    with pytest.raises(ValidationError):
        parse_signal(payload(signal="Put Options", currentPrice=100, targets=[85, 95], stopLoss=110))


def test_parse_rejects_missing_field():
    data = payload()
    del data["stopLoss"]
    with pytest.raises(ValidationError) as exc:
        parse_signal(data)
    assert exc.value.field is not None


def test_parse_rejects_non_mapping():
    with pytest.raises(ValidationError):
        parse_signal(["not", "a", "dict"])


def test_token_symbol():
    assert token_symbol("COS (contentos)") == "COS"
    assert token_symbol("BTC") == "BTC"
    assert token_symbol("bitcoin", fallback="BTC") == "BTC"
    assert token_symbol("bitcoin") == "bitcoin"


def test_signal_summary_lists_targets():
    text = signal_summary(parse_signal(payload()))
    assert "TP1=0.0067" in text
    assert "TP2=0.0072" in text
    assert "SL=0.0055" in text
