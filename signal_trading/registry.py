"""Position registry: authoritative in-memory store of positions.

The registry owns every Position and is the only component that mutates one.
Each mutation updates the owning PositionGroup before returning, so group
metrics are never stale.
"""
import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional, Sequence

from .exceptions import PositionStateError
from .groups import GroupStore
from .logging_setup import logger
from .models import (
    Direction,
    Position,
    PositionStatus,
    Signal,
    TargetExit,
    TrailingStopConfig,
    utcnow,
)
from .trailing_stop import commit_target_hit

TIME_EXIT_REASON = "time_exit"


def new_position_id() -> str:
    return f"pos_{uuid.uuid4().hex[:16]}"


def weighted_targets(
    old_targets: Sequence[Decimal],
    new_targets: Sequence[Decimal],
    old_weight: Decimal,
    new_weight: Decimal,
    direction: Direction = Direction.BUY,
) -> List[Decimal]:
    """Per-index weighted average of two target lists.

    The shorter list is padded by repeating its own last element, which pulls
    the merged tail towards that element. The result is ordered the way the
    direction reaches its targets: ascending for BUY, descending for PUT_OPTIONS.
    """
    old_targets = list(old_targets)
    new_targets = list(new_targets)
    if direction is Direction.PUT_OPTIONS:
        descending = True
    elif direction is Direction.BUY or direction is Direction.HOLD:
        descending = False
    else:
        raise ValueError(f"Unhandled direction {direction}")

    if not old_targets or not new_targets:
        return sorted(old_targets or new_targets, reverse=descending)
    total = old_weight + new_weight
    if total <= 0:
        old_weight = new_weight = Decimal('1')
        total = Decimal('2')
    if len(old_targets) != len(new_targets):
        logger.warning(
            f"Merging target lists of different length, padding with last target | "
            f"old={len(old_targets)} new={len(new_targets)}"
        )
    out = []
    for i in range(max(len(old_targets), len(new_targets))):
        t1 = old_targets[i] if i < len(old_targets) else old_targets[-1]
        t2 = new_targets[i] if i < len(new_targets) else new_targets[-1]
        out.append((t1 * old_weight + t2 * new_weight) / total)
    return sorted(out, reverse=descending)


class PositionRegistry:
    """Owns the position map and keeps position groups in sync."""

    def __init__(
        self,
        groups: GroupStore,
        *,
        default_trail_pct: Decimal = Decimal('0.01'),
        partial_exit_percentages: Optional[List[Decimal]] = None,
        dust_threshold: Decimal = Decimal('0.01'),
        dust_thresholds: Optional[Dict[str, Decimal]] = None,
        closed_retention: timedelta = timedelta(seconds=60),
    ):
        self.groups = groups
        self.default_trail_pct = default_trail_pct
        self.partial_exit_percentages = partial_exit_percentages
        self.default_dust_threshold = dust_threshold
        self.dust_thresholds = dict(dust_thresholds or {})
        self.closed_retention = closed_retention
        self._positions: Dict[str, Position] = {}

    def __len__(self) -> int:
        return len(self._positions)

    def __contains__(self, position_id: str) -> bool:
        return position_id in self._positions

    # --- Queries ---
    def get(self, position_id: str) -> Optional[Position]:
        return self._positions.get(position_id)

    def list_active(self) -> List[Position]:
        """All PENDING and ACTIVE positions."""
        return [p for p in self._positions.values() if p.is_open]

    def list_all(self) -> List[Position]:
        return list(self._positions.values())

    def positions_for_token(self, token_id: str) -> List[Position]:
        return [p for p in self._positions.values() if p.is_open and p.token_id == token_id]

    def total_exposure(self) -> Decimal:
        return sum((p.remaining_amount for p in self.list_active()), Decimal('0'))

    def token_exposure(self, token_id: str) -> Decimal:
        group = self.groups.get(token_id)
        return group.total_exposure if group is not None else Decimal('0')

    def dust_threshold(self, token_id: str) -> Decimal:
        return self.dust_thresholds.get(token_id, self.default_dust_threshold)

    def _require_open(self, position_id: str) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise PositionStateError(f"Position {position_id} not found")
        if position.status.is_terminal:
            raise PositionStateError(f"Position {position_id} is {position.status.value} and can no longer change")
        return position

    # --- Mutations ---
    def create(
        self,
        signal: Signal,
        size: Decimal,
        *,
        owner: Optional[str] = None,
        vault_address: Optional[str] = None,
        trail_percent: Optional[Decimal] = None,
        partial_exit_percentages: Optional[List[Decimal]] = None,
        now: Optional[datetime] = None,
    ) -> Position:
        """Create a PENDING position and attach it to its token group."""
        if size <= 0:
            raise ValueError(f"Position size must be positive, got {size}")
        now = now or utcnow()
        position = Position(
            id=new_position_id(),
            signal=signal,
            trailing_stop=TrailingStopConfig.for_targets(
                len(signal.targets),
                trail_percent or self.default_trail_pct,
                partial_exit_percentages or self.partial_exit_percentages,
            ),
            original_amount=size,
            remaining_amount=size,
            current_price=signal.current_price,
            owner=owner,
            vault_address=vault_address,
            created_at=now,
            updated_at=now,
        )
        self._positions[position.id] = position
        self.groups.attach(position)
        logger.info(
            f"Position created | id={position.id} token={signal.token} direction={signal.direction.value} "
            f"size={size} open_positions={len(self.list_active())}"
        )
        return position

    def merge(self, position_id: str, signal: Signal, size: Decimal, now: Optional[datetime] = None) -> Position:
        """Fold a new signal of the same direction into an existing position.

        Sizes add up, targets become the size-weighted per-index average and
        target progress restarts for the new target list.
        """
        position = self._require_open(position_id)
        if size <= 0:
            raise ValueError(f"Merge size must be positive, got {size}")
        targets = weighted_targets(
            position.signal.targets, signal.targets, position.remaining_amount, size, position.direction
        )
        position.signal = replace(position.signal, targets=tuple(targets))
        position.remaining_amount += size
        position.original_amount += size
        position.trailing_stop = TrailingStopConfig.for_targets(
            len(targets),
            position.trailing_stop.trail_percent,
            position.trailing_stop.partial_exit_percentages,
        )
        position.touch(now)
        self.groups.refresh(position.token_id)
        logger.info(
            f"Positions merged | id={position.id} token={position.signal.token} "
            f"remaining={position.remaining_amount} targets={[str(t) for t in targets]}"
        )
        return position

    def activate(
        self,
        position_id: str,
        entry_tx_hash: Optional[str] = None,
        token_amount_received: Optional[Decimal] = None,
        now: Optional[datetime] = None,
    ) -> Position:
        position = self._require_open(position_id)
        position.status = PositionStatus.ACTIVE
        if entry_tx_hash is not None:
            position.entry_tx_hash = entry_tx_hash
        if token_amount_received is not None:
            position.token_amount_received = (position.token_amount_received or Decimal('0')) + token_amount_received
        position.touch(now)
        self.groups.refresh(position.token_id)
        logger.info(f"Position active | id={position.id} entry_tx={entry_tx_hash}")
        return position

    def fail(self, position_id: str, reason: str, now: Optional[datetime] = None) -> Position:
        position = self._require_open(position_id)
        self._finish(position, PositionStatus.FAILED, reason, now)
        logger.warning(f"Position failed | id={position.id} reason={reason}")
        return position

    def apply_partial(
        self,
        position_id: str,
        percentage: Decimal,
        target_index: int,
        price: Decimal,
        *,
        tx_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> TargetExit:
        """Record a target-driven partial exit.

        exit_amount = remaining * percentage / 100. The position closes when the
        remainder falls below the token's dust threshold or percentage >= 100.
        """
        position = self._require_open(position_id)
        now = now or utcnow()
        percentage = Decimal(percentage)
        exit_amount = position.remaining_amount * percentage / Decimal('100')
        exit_amount = min(exit_amount, position.remaining_amount)
        targets = position.signal.targets
        record = TargetExit(
            target_index=target_index,
            target_price=targets[target_index] if 0 <= target_index < len(targets) else price,
            actual_exit_price=price,
            amount_exited=exit_amount,
            percentage=percentage,
            timestamp=now,
            tx_hash=tx_hash,
        )
        position.target_exit_history.append(record)
        position.remaining_amount = max(Decimal('0'), position.remaining_amount - exit_amount)
        position.current_price = price
        commit_target_hit(position, target_index)
        position.touch(now)

        logger.info(
            f"Partial exit | id={position.id} target={target_index + 1} pct={percentage} "
            f"exited={exit_amount} remaining={position.remaining_amount}"
        )

        if percentage >= 100 or position.remaining_amount < self.dust_threshold(position.token_id):
            if tx_hash:
                position.exit_tx_hash = tx_hash
            self._finish(position, PositionStatus.CLOSED, f"target_{target_index + 1}_hit", now, price=price)
        else:
            self.groups.refresh(position.token_id)
        return record

    def close(
        self,
        position_id: str,
        price: Decimal,
        reason: str,
        *,
        exit_tx_hash: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Position:
        """Exit the whole remaining amount. time_exit closes as EXPIRED, anything else as CLOSED."""
        position = self._require_open(position_id)
        now = now or utcnow()
        position.final_exit_amount += position.remaining_amount
        position.remaining_amount = Decimal('0')
        position.current_price = price
        if exit_tx_hash:
            position.exit_tx_hash = exit_tx_hash
        status = PositionStatus.EXPIRED if reason == TIME_EXIT_REASON else PositionStatus.CLOSED
        self._finish(position, status, reason, now, price=price)
        return position

    def _finish(
        self,
        position: Position,
        status: PositionStatus,
        reason: str,
        now: Optional[datetime],
        price: Optional[Decimal] = None,
    ) -> None:
        now = now or utcnow()
        position.status = status
        position.exit_reason = reason
        if price is not None:
            position.exit_price = price
        position.retain_until = now + self.closed_retention
        position.touch(now)
        self.groups.detach(position)
        logger.info(
            f"Position {status.value} | id={position.id} token={position.signal.token} reason={reason} "
            f"exit_price={price}"
        )

    def restore(self, position: Position) -> bool:
        """Load a recovered position as-is. Returns False if the id is already known."""
        if position.id in self._positions:
            return False
        self._positions[position.id] = position
        if position.is_open:
            self.groups.attach(position)
        return True

    def purge_terminal(self, now: Optional[datetime] = None) -> List[str]:
        """Drop terminal positions whose retention window has passed."""
        now = now or utcnow()
        expired = [
            pid
            for pid, p in self._positions.items()
            if p.status.is_terminal and (p.retain_until is None or p.retain_until <= now)
        ]
        for pid in expired:
            del self._positions[pid]
        if expired:
            logger.debug(f"Purged terminal positions | ids={expired}")
        return expired
