"""P&L helpers for closed and partially closed positions."""
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional

from .models import Direction, Position


@dataclass
class PositionPnL:
    """Summary of a position's realized result."""
    position_id: str
    direction: Direction
    entry_price: Decimal
    exited_amount: Decimal
    realized_pnl: Decimal  # in quote currency
    pnl_percent: Decimal
    exit_reason: Optional[str] = None


def exit_pnl(direction: Direction, entry_price: Decimal, exit_price: Decimal, amount: Decimal) -> Decimal:
    """P&L of exiting ``amount`` (quote-currency notional) at ``exit_price``.

    BUY profits when price rises; PUT_OPTIONS profits when price falls.
    """
    if entry_price <= 0:
        return Decimal('0')
    move = (exit_price - entry_price) / entry_price
    if direction is Direction.BUY:
        return amount * move
    if direction is Direction.PUT_OPTIONS:
        return -amount * move
    if direction is Direction.HOLD:
        return Decimal('0')
    raise ValueError(f"Unhandled direction {direction}")


def realized_pnl(position: Position) -> PositionPnL:
    """Sum target exits plus the final exit of a position."""
    total = Decimal('0')
    for record in position.target_exit_history:
        total += exit_pnl(position.direction, position.entry_price, record.actual_exit_price, record.amount_exited)
    if position.final_exit_amount > 0 and position.exit_price is not None:
        total += exit_pnl(position.direction, position.entry_price, position.exit_price, position.final_exit_amount)

    exited = position.exited_amount
    pct = (total / exited) * Decimal('100') if exited > 0 else Decimal('0')
    return PositionPnL(
        position_id=position.id,
        direction=position.direction,
        entry_price=position.entry_price,
        exited_amount=exited,
        realized_pnl=total,
        pnl_percent=pct,
        exit_reason=position.exit_reason,
    )


def aggregate_pnl(results: List[PositionPnL]) -> dict:
    """Aggregate realized P&L across positions."""
    if not results:
        return {"total_positions": 0, "total_realized_pnl": Decimal('0'), "win_count": 0, "loss_count": 0}

    wins = len([r for r in results if r.realized_pnl > 0])
    losses = len([r for r in results if r.realized_pnl < 0])
    return {
        "total_positions": len(results),
        "total_realized_pnl": sum((r.realized_pnl for r in results), Decimal('0')),
        "win_count": wins,
        "loss_count": losses,
        "win_rate_percent": Decimal(wins) / Decimal(len(results)) * 100,
    }
