"""Offline demo of the position engine.

Shows:
1. Parsing signal payloads
2. Admission with a risk-based conflict
3. Partial exits on the target ladder
4. Trailing stop after TP1
5. Restart recovery from SQLite
"""
import asyncio
import sys
import tempfile
from datetime import timedelta
from decimal import Decimal
from pathlib import Path

# Add parent directory to path so we can import signal_trading
sys.path.insert(0, str(Path(__file__).parent.parent))

from signal_trading.config import EngineConfig
from signal_trading.execution import InMemoryExecutor
from signal_trading.logging_setup import logger, setup_logging
from signal_trading.models import utcnow
from signal_trading.persistence_sqlite import SQLitePositionStore
from signal_trading.position_manager import PositionManager
from signal_trading.price_oracle import StaticPriceOracle


def payload(direction, price, targets, stop, days):
    return {
        "token": "COS (contentos)",
        "tokenId": "contentos",
        "signal": direction,
        "currentPrice": price,
        "targets": targets,
        "stopLoss": stop,
        "maxExitTime": (utcnow() + timedelta(days=days)).isoformat(),
        "timeline": "Short-term (1-7 days)",
    }


async def main():
    setup_logging(log_file=None, level="INFO", enable_console=True)
    logger.info("=== Signal Engine Demo ===")

    db_path = Path(tempfile.mkdtemp()) / "positions.db"
    config = EngineConfig()
    config.persistence.db_path = str(db_path)
    config.executor.vault_address = "0xdemo"

    oracle = StaticPriceOracle({"contentos": Decimal("100")})
    executor = InMemoryExecutor()
    manager = PositionManager(config, oracle=oracle, executor=executor, store=SQLitePositionStore(db_path))
    await manager.init()

    # Step 1: open a BUY position
    result = await manager.submit_payload(payload("Buy", 100, [110, 120, 130], 90, 3), Decimal("1000"))
    logger.info(f"Buy signal: {result.message}")

    # Step 2: walk the price up the target ladder
    for price in ("105", "110", "121", "119"):
        oracle.set_price("contentos", Decimal(price))
        await manager.monitor_all_positions()
        for p in manager.get_active_positions():
            logger.info(
                f"price={price} remaining={p.remaining_amount} targets_hit={p.trailing_stop.targets_hit} "
                f"trailing={p.trailing_stop.is_active}"
            )

    # Step 3: an opposing signal with lower risk replaces whatever is left
    result = await manager.submit_payload(payload("Put Options", 119, [110, 100, 95], 122, 30), Decimal("500"))
    logger.info(f"Put signal: {result.message}")
    logger.info(f"Stats: {manager.get_stats()}")
    await manager.close()

    # Step 4: restart and recover
    restarted = PositionManager(config, oracle=oracle, executor=executor, store=SQLitePositionStore(db_path))
    recovery = await restarted.init()
    logger.info(f"Recovered {recovery.total_recovered} position(s) after restart")
    await restarted.close()
    logger.info(f"Swaps executed: {len(executor.swaps)}")


if __name__ == "__main__":
    asyncio.run(main())
