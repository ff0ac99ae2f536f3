"""Configuration loader for the position engine.

Supports YAML format with environment variable interpolation.
"""
import os
from dataclasses import dataclass, field, fields
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml


class ConflictPolicy(Enum):
    """How opposing or crowded signals on the same token are resolved."""

    FIRST_WINS = "first_wins"
    MERGE_SIMILAR = "merge_similar"
    PRIORITIZE_LATEST = "prioritize_latest"
    RISK_BASED = "risk_based"
    SEPARATE = "separate"


@dataclass
class AdmissionConfig:
    """Admission control limits."""
    max_concurrent_positions: int = 10
    max_positions_per_token: int = 3
    conflict_resolution: ConflictPolicy = ConflictPolicy.RISK_BASED
    max_total_exposure: Decimal = Decimal('10000')  # USD across all positions
    max_single_token_exposure: Decimal = Decimal('2000')  # USD per token
    merge_price_tolerance: Decimal = Decimal('0.05')  # 5% relative


@dataclass
class TrailingConfig:
    """Trailing-stop and partial-exit parameters."""
    default_trail_pct: Decimal = Decimal('0.01')  # 1% trailing stop
    partial_exit_percentages: Optional[List[Decimal]] = None  # None = default table
    dust_threshold: Decimal = Decimal('0.01')  # close when remaining drops below
    dust_thresholds: Dict[str, Decimal] = field(default_factory=dict)  # per token id
    group_target_tolerance: Decimal = Decimal('0.01')


@dataclass
class MonitorConfig:
    """Monitoring loop settings."""
    interval_seconds: float = 30.0
    price_timeout_seconds: float = 10.0
    execution_timeout_seconds: float = 60.0
    closed_retention_seconds: float = 60.0


@dataclass
class ExecutorConfig:
    """Swap execution settings."""
    vault_address: str = ""
    quote_token: str = "USDC"
    max_slippage: Decimal = Decimal('1.0')  # percent
    total_capital: Decimal = Decimal('10000')  # USD base for entry allocation


@dataclass
class OracleConfig:
    """CoinGecko price oracle settings."""
    base_url: str = "https://api.coingecko.com/api/v3"
    api_key: Optional[str] = None
    vs_currency: str = "usd"
    timeout: int = 10
    cache_seconds: float = 30.0
    max_retries: int = 5
    max_backoff_seconds: float = 60.0


@dataclass
class PersistenceConfig:
    """Database and logging settings."""
    db_path: str = "positions.db"
    log_file: str = "signal_trading.log"
    log_level: str = "INFO"
    log_json: bool = False  # serialized file sink


_DECIMAL_FIELDS = {
    "max_total_exposure",
    "max_single_token_exposure",
    "merge_price_tolerance",
    "default_trail_pct",
    "dust_threshold",
    "group_target_tolerance",
    "max_slippage",
    "total_capital",
}


def _coerce(key: str, value: Any) -> Any:
    if value is None:
        return None
    if key in _DECIMAL_FIELDS:
        return Decimal(str(value))
    if key == "partial_exit_percentages":
        return [Decimal(str(v)) for v in value]
    if key == "dust_thresholds":
        return {str(k): Decimal(str(v)) for k, v in value.items()}
    if key == "conflict_resolution":
        return ConflictPolicy(value)
    return value


def _build(cls, raw: Optional[Dict[str, Any]]):
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(f"Unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: _coerce(k, v) for k, v in raw.items()})


def _plain(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, list):
        return [_plain(v) for v in value]
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    return value


@dataclass
class EngineConfig:
    """Complete engine configuration."""
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
    trailing: TrailingConfig = field(default_factory=TrailingConfig)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)
    executor: ExecutorConfig = field(default_factory=ExecutorConfig)
    oracle: OracleConfig = field(default_factory=OracleConfig)
    persistence: PersistenceConfig = field(default_factory=PersistenceConfig)

    @classmethod
    def from_yaml(cls, config_path: str) -> "EngineConfig":
        """Load configuration from YAML file with env var interpolation.

        Args:
            config_path: Path to YAML config file

        Returns:
            EngineConfig instance

        Example YAML:
            admission:
              max_concurrent_positions: 10
              conflict_resolution: risk_based
            trailing:
              default_trail_pct: 0.01
            executor:
              vault_address: "${VAULT_ADDRESS}"
            persistence:
              db_path: "${STATE_DIR}/positions.db"
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")

        with config_file.open("r") as f:
            raw = f.read()

        # Interpolate environment variables: ${VAR_NAME}
        for key, value in os.environ.items():
            raw = raw.replace(f"${{{key}}}", value)

        data = yaml.safe_load(raw) or {}

        return cls(
            admission=_build(AdmissionConfig, data.get("admission")),
            trailing=_build(TrailingConfig, data.get("trailing")),
            monitor=_build(MonitorConfig, data.get("monitor")),
            executor=_build(ExecutorConfig, data.get("executor")),
            oracle=_build(OracleConfig, data.get("oracle")),
            persistence=_build(PersistenceConfig, data.get("persistence")),
        )

    def to_yaml(self, output_path: str) -> None:
        """Save configuration to YAML file."""
        data = {
            section: {f.name: _plain(getattr(getattr(self, section), f.name)) for f in fields(getattr(self, section))}
            for section in ("admission", "trailing", "monitor", "executor", "oracle", "persistence")
        }

        output_file = Path(output_path)
        output_file.parent.mkdir(parents=True, exist_ok=True)
        with output_file.open("w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)
