"""
Signal-driven position lifecycle engine.

Ingests trading signals, opens and manages positions against pooled vault
capital, and closes them on profit targets, stop losses, trailing stops and
deadlines:
- Admission control with per-token and global limits and conflict policies
- Per-token position groups with combined targets and grouped exits
- Target ladder with partial exits and a trailing stop armed at TP1
- Crash-safe persistence with SQLite and idempotent startup recovery
- Non-reentrant async monitoring loop with bounded price and swap calls
- Structured logging via loguru
- Configuration-driven (YAML)

Core Modules:
    models: Signal, Position, TrailingStopConfig and TargetExit
    signal_parser: Inbound payload validation
    admission: Admission control and conflict resolution
    registry: Authoritative in-memory position store
    groups: Per-token position groups
    trailing_stop: Target-exit and trailing-stop engine
    position_manager: Façade tying admission, execution and monitoring together
    monitor: Periodic monitoring loop
    persistence_sqlite: SQLite position store
    recovery: Startup recovery
    coingecko_oracle: CoinGecko price oracle

Example:
    >>> from signal_trading.config import EngineConfig
    >>> from signal_trading.position_manager import PositionManager
    >>> from signal_trading.persistence_sqlite import SQLitePositionStore
    >>> from signal_trading.coingecko_oracle import CoinGeckoPriceOracle
    >>>
    >>> config = EngineConfig.from_yaml("config.yaml")
    >>> manager = PositionManager(
    ...     config,
    ...     oracle=CoinGeckoPriceOracle.from_config(config.oracle),
    ...     executor=my_executor,
    ...     store=SQLitePositionStore(config.persistence.db_path),
    ... )
"""

__version__ = "0.1.0"
__all__ = [
    "models",
    "signal_parser",
    "admission",
    "registry",
    "groups",
    "trailing_stop",
    "execution",
    "price_oracle",
    "coingecko_oracle",
    "persistence_sqlite",
    "db_migrations",
    "recovery",
    "pnl",
    "position_manager",
    "monitor",
    "config",
    "exceptions",
]
