from decimal import Decimal
from pathlib import Path

import pytest

from signal_trading.config import ConflictPolicy, EngineConfig


def test_defaults():
    config = EngineConfig()
    assert config.admission.max_concurrent_positions == 10
    assert config.admission.max_positions_per_token == 3
    assert config.admission.conflict_resolution is ConflictPolicy.RISK_BASED
    assert config.trailing.default_trail_pct == Decimal("0.01")
    assert config.trailing.partial_exit_percentages is None
    assert config.monitor.interval_seconds == 30.0


def test_from_yaml_with_env_interpolation(tmp_path: Path, monkeypatch):
    monkeypatch.setenv("TEST_VAULT_ADDRESS", "0xfeed")
    monkeypatch.setenv("TEST_STATE_DIR", str(tmp_path))
    path = tmp_path / "config.yaml"
    path.write_text(
        """
admission:
  max_concurrent_positions: 4
  conflict_resolution: prioritize_latest
  max_total_exposure: 2500.5
trailing:
  default_trail_pct: 0.02
  partial_exit_percentages: [40, 40, 20]
  dust_thresholds:
    shiba: 0.000001
executor:
  vault_address: "${TEST_VAULT_ADDRESS}"
persistence:
  db_path: "${TEST_STATE_DIR}/positions.db"
"""
    )

    config = EngineConfig.from_yaml(str(path))

    assert config.admission.max_concurrent_positions == 4
    assert config.admission.conflict_resolution is ConflictPolicy.PRIORITIZE_LATEST
    assert config.admission.max_total_exposure == Decimal("2500.5")
    assert config.trailing.default_trail_pct == Decimal("0.02")
    assert config.trailing.partial_exit_percentages == [Decimal("40"), Decimal("40"), Decimal("20")]
    assert config.trailing.dust_thresholds == {"shiba": Decimal("0.000001")}
    assert config.executor.vault_address == "0xfeed"
    assert config.persistence.db_path == f"{tmp_path}/positions.db"
    # untouched sections keep defaults
    assert config.oracle.vs_currency == "usd"


def test_unknown_key_rejected(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("monitor:\n  interval: 5\n")
    with pytest.raises(ValueError):
        EngineConfig.from_yaml(str(path))


def test_bad_policy_rejected(tmp_path: Path):
    path = tmp_path / "bad.yaml"
    path.write_text("admission:\n  conflict_resolution: coin_flip\n")
    with pytest.raises(ValueError):
        EngineConfig.from_yaml(str(path))


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        EngineConfig.from_yaml("/nonexistent/config.yaml")


def test_yaml_round_trip(tmp_path: Path):
    config = EngineConfig()
    config.admission.conflict_resolution = ConflictPolicy.SEPARATE
    config.trailing.dust_thresholds = {"contentos": Decimal("0.0001")}
    path = tmp_path / "out" / "config.yaml"

    config.to_yaml(str(path))
    loaded = EngineConfig.from_yaml(str(path))

    assert loaded == config
