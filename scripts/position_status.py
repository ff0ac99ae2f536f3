#!/usr/bin/env python
"""Position status CLI: query persisted positions.

Usage:
    python scripts/position_status.py --db positions.db list [--status active] [--limit 20]
    python scripts/position_status.py --db positions.db show <position_id>
    python scripts/position_status.py --db positions.db stats
"""
import argparse
import json
import sys
from datetime import datetime, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from signal_trading.exceptions import PersistenceError  # noqa: E402
from signal_trading.logging_setup import setup_logging  # noqa: E402
from signal_trading.persistence_sqlite import SQLitePositionStore  # noqa: E402


def format_ts(epoch) -> str:
    return datetime.fromtimestamp(float(epoch), tz=timezone.utc).strftime("%Y-%m-%d %H:%M")


def list_positions(store, status=None, limit=None):
    rows = store.list_positions(status=status, limit=limit)
    if not rows:
        print("No positions")
        return

    print(f"\n{'Position ID':<22} {'Token':<16} {'Status':<9} {'Exit by':<17} {'Owner':<12}")
    print("-" * 80)
    for row in rows:
        print(
            f"{row['position_id']:<22} "
            f"{row['token_id']:<16} "
            f"{row['status']:<9} "
            f"{format_ts(row['max_exit_ts']):<17} "
            f"{row['owner'] or '-':<12}"
        )


def show_position(store, position_id) -> bool:
    row = store.get(position_id)
    if not row:
        print(f"Position not found: {position_id}")
        return False

    data = json.loads(row["value"])
    signal = data["signal"]
    trailing = data["trailing_stop"]
    print(f"\n=== Position: {position_id} ===")
    print(f"Status: {row['status']}")
    print(f"Token: {signal['token']} ({signal['token_id']}) {signal['direction']}")
    print(f"Entry Price: {signal['current_price']}")
    print(f"Targets: {', '.join(signal['targets'])}")
    print(f"Targets Hit: {trailing['targets_hit']}")
    print(f"Stop Loss: {signal['stop_loss']}")
    print(f"Max Exit Time: {signal['max_exit_time']}")
    print(f"Trailing Active: {trailing['is_active']} (trail {trailing['trail_percent']})")
    if trailing.get("peak_price") or trailing.get("lowest_price"):
        print(f"Peak/Trough: {trailing.get('peak_price') or '-'} / {trailing.get('lowest_price') or '-'}")
    print(f"Amount: {data['remaining_amount']} remaining of {data['original_amount']}")
    print(f"Entry Tx: {data.get('entry_tx_hash') or '(none)'}")
    print(f"Exit Tx: {row['exit_tx_hash'] or '(none)'}")
    if data.get("exit_reason"):
        print(f"Exit Reason: {data['exit_reason']}")

    exits = data.get("target_exit_history") or []
    if exits:
        print(f"\nTarget Exits ({len(exits)}):")
        print(f"{'Target':<8} {'Price':<14} {'Amount':<14} {'Pct':<6} {'When':<25}")
        print("-" * 70)
        for e in exits:
            print(
                f"TP{e['target_index'] + 1:<6} {e['actual_exit_price']:<14} {e['amount_exited']:<14} "
                f"{e['percentage']:<6} {e['timestamp']:<25}"
            )
    return True


def show_stats(store):
    stats = store.position_stats()
    print(f"\nTotal positions: {stats['total']}")
    print("By status:")
    for status, count in sorted(stats["by_status"].items()):
        print(f"  {status:<9} {count}")
    if stats["active_by_token"]:
        print("Active by token:")
        for token_id, count in sorted(stats["active_by_token"].items()):
            print(f"  {token_id:<16} {count}")


def main():
    parser = argparse.ArgumentParser(description="Position status CLI")
    parser.add_argument("--db", required=True, help="Path to SQLite database")

    sub = parser.add_subparsers(dest="cmd")
    lst = sub.add_parser("list")
    lst.add_argument("--status", help="Only positions with this status")
    lst.add_argument("--limit", type=int, help="Maximum rows")
    show = sub.add_parser("show")
    show.add_argument("position_id")
    sub.add_parser("stats")

    args = parser.parse_args()

    db_path = Path(args.db)
    if not db_path.exists():
        print(f"Database not found: {db_path}")
        return 1

    setup_logging(log_file=None, level="WARNING")
    store = SQLitePositionStore(db_path)
    try:
        store.connect()
        if args.cmd == "list":
            list_positions(store, status=args.status, limit=args.limit)
        elif args.cmd == "show":
            if not show_position(store, args.position_id):
                return 1
        elif args.cmd == "stats":
            show_stats(store)
        else:
            parser.print_help()
    except PersistenceError as e:
        print(f"Store error: {e}")
        return 1
    finally:
        store.close()
    return 0


if __name__ == "__main__":
    sys.exit(main())
